from __future__ import annotations

import json
import logging

from credit_ledger.utils.logging import JsonFormatter, _json_formatter

EXPECTED_TRANSACTION_ID = 42


def _record(msg: str = "credit appended") -> logging.LogRecord:
    return logging.LogRecord(
        name="credit_ledger.ledger",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )


def test_json_formatter_promotes_standard_extra_fields() -> None:
    record = _record()
    record.transaction_id = EXPECTED_TRANSACTION_ID
    record.owner = "user:1"

    payload = json.loads(_json_formatter(record))

    assert payload["level"] == "INFO"
    assert payload["logger"] == "credit_ledger.ledger"
    assert payload["message"] == "credit appended"
    assert payload["transaction_id"] == EXPECTED_TRANSACTION_ID
    assert payload["owner"] == "user:1"
    assert "pathname" not in payload


def test_json_formatter_supports_nested_extra_field() -> None:
    record = _record()
    record.extra = {"attempts": 3}

    payload = json.loads(_json_formatter(record))

    assert payload["attempts"] == 3


def test_json_formatter_stringifies_decimals_and_includes_exceptions() -> None:
    from decimal import Decimal

    try:
        raise RuntimeError("boom")
    except RuntimeError:
        import sys

        record = logging.LogRecord(
            "credit_ledger.events", logging.ERROR, __file__, 1, "handler failed", (), sys.exc_info()
        )
    record.amount = Decimal("1.50")

    payload = json.loads(JsonFormatter().format(record))

    assert payload["amount"] == "1.50"
    assert "RuntimeError: boom" in payload["exc_info"]
