"""
Domain events emitted by the credit ledger after a successful commit.

Events are queued on an Outbox while a transactional scope is open and handed
to an EventDispatcher only once that scope has committed. A rolled-back
attempt simply drops its outbox, so no event can describe a write that never
became durable.

Usage:
    dispatcher = EventDispatcher()
    dispatcher.subscribe(CreditsAdded, lambda event: print(event.new_balance))
"""

from __future__ import annotations

from collections import defaultdict
from decimal import Decimal
from typing import Any, Callable, DefaultDict, Dict, List, Optional, Type

from pydantic import BaseModel, Field

from credit_ledger.domain.models import OwnerRef
from credit_ledger.utils.logging import get_logger

log = get_logger(__name__)


class LedgerEvent(BaseModel):
    """Base class for ledger events."""

    model_config = {"frozen": True}


class CreditsAdded(LedgerEvent):
    owner: OwnerRef
    transaction_id: int
    amount: Decimal
    new_balance: Decimal
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    credit_type: Optional[str] = None


class CreditsDeducted(LedgerEvent):
    owner: OwnerRef
    transaction_id: int
    amount: Decimal
    new_balance: Decimal
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    credit_type: Optional[str] = None


class CreditsTransferred(LedgerEvent):
    """
    Emitted once per transfer; `transaction_id` is the recipient's credit record.
    """

    transaction_id: int
    sender: OwnerRef
    recipient: OwnerRef
    amount: Decimal
    sender_new_balance: Decimal
    recipient_new_balance: Decimal
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    credit_type: Optional[str] = None


EventHandler = Callable[[LedgerEvent], None]


class EventDispatcher:
    """
    Synchronous in-process fan-out of ledger events to subscribed handlers.

    Handlers registered for `LedgerEvent` receive every event. A handler that
    raises is logged and skipped; the write it describes is already committed.
    """

    def __init__(self) -> None:
        self._handlers: DefaultDict[Type[LedgerEvent], List[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: Type[LedgerEvent], handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: Type[LedgerEvent], handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def dispatch(self, event: LedgerEvent) -> None:
        event_name = type(event).__name__
        for event_type, handlers in list(self._handlers.items()):
            if not isinstance(event, event_type):
                continue
            for handler in list(handlers):
                try:
                    handler(event)
                except Exception:  # noqa: BLE001 - delivery failures must not undo a commit
                    log.exception(
                        f"[EVENT HANDLER FAILED] {event_name}",
                        extra={"event": event_name, "handler": getattr(handler, "__name__", repr(handler))},
                    )


class Outbox:
    """Events collected during one transactional attempt."""

    def __init__(self) -> None:
        self._events: List[LedgerEvent] = []

    def add(self, event: LedgerEvent) -> None:
        self._events.append(event)

    @property
    def events(self) -> List[LedgerEvent]:
        return list(self._events)

    def flush(self, dispatcher: Optional[EventDispatcher]) -> None:
        events, self._events = self._events, []
        if dispatcher is None:
            return
        for event in events:
            dispatcher.dispatch(event)


__all__ = [
    "LedgerEvent",
    "CreditsAdded",
    "CreditsDeducted",
    "CreditsTransferred",
    "EventHandler",
    "EventDispatcher",
    "Outbox",
]
