"""JSON encoding of lifecycle events."""

import json
from dataclasses import fields, is_dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from escrow_loans.models import LoanEvent


def to_jsonable(value: Any) -> Any:
    """Reduce ``value`` to JSON primitives.

    Decimals become strings so drop and token amounts keep full precision.
    """
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def event_to_dict(event: LoanEvent) -> dict[str, Any]:
    return to_jsonable(event)


def encode_event(event: LoanEvent, indent: int | None = None) -> str:
    """Serialize an event as one JSON document."""
    return json.dumps(event_to_dict(event), indent=indent, ensure_ascii=False)
