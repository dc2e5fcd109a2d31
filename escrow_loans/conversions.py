"""Conversions between human units and XRPL-native units.

Amounts of XRP are carried on the ledger as integer strings of drops
(1 XRP = 1,000,000 drops). Times are seconds since the Ripple epoch,
2000-01-01T00:00:00Z, which is 946,684,800 seconds after the Unix epoch.
"""

import math
import operator
import time
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

DROPS_PER_XRP = Decimal(1_000_000)
RIPPLE_EPOCH_OFFSET = 946_684_800

DISPLAY_TIME_FORMAT = "%Y-%m-%d %H:%M:%S %Z"


def _to_decimal(value: str | int | float | Decimal) -> Decimal | None:
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite():
        return None
    return number


def normalize_drops(value: str | int | float | Decimal) -> str:
    """Round an amount in drops to a canonical integer string.

    Non-finite or unparsable input yields ``"0"``.
    """
    number = _to_decimal(value)
    if number is None:
        return "0"
    rounded = number.quantize(Decimal(1), rounding=ROUND_HALF_UP)
    # Avoid "-0"
    return str(int(rounded))


def to_ledger_amount(value: str | int | float | Decimal) -> str:
    """Convert an XRP amount to an integer drops string.

    Parameters
    ----------
    value : str | int | float | Decimal
        Amount of XRP, e.g. ``"5.2"``.

    Returns
    -------
    str
        Drops, e.g. ``"5200000"``. ``"0"`` for non-finite input.
    """
    number = _to_decimal(value)
    if number is None:
        return "0"
    return normalize_drops(number * DROPS_PER_XRP)


def drops_to_xrp(drops: str | int) -> Decimal:
    """Convert drops to XRP for display."""
    number = _to_decimal(drops)
    if number is None:
        return Decimal(0)
    return number / DROPS_PER_XRP


def to_ledger_time(unix_seconds: int | float) -> int:
    """Convert Unix seconds to Ripple-epoch seconds."""
    return math.floor(unix_seconds) - RIPPLE_EPOCH_OFFSET


def ledger_now(now: float | None = None) -> int:
    """Current time in Ripple-epoch seconds."""
    return to_ledger_time(time.time() if now is None else now)


def ledger_epoch_from_now_plus_minutes(minutes: int, now: float | None = None) -> int:
    """Ripple-epoch timestamp ``minutes`` from now.

    Parameters
    ----------
    minutes : int
        Offset in whole minutes. Fractional minutes raise ``TypeError``, so
        distinct offsets always give distinct timestamps.
    now : float | None
        Unix time to count from (defaults to the wall clock).

    Returns
    -------
    int
        ``floor(now) + minutes * 60 - 946684800``.
    """
    unix_now = time.time() if now is None else now
    return math.floor(unix_now) + operator.index(minutes) * 60 - RIPPLE_EPOCH_OFFSET


def from_ledger_time(ledger_seconds: int) -> datetime:
    """Convert Ripple-epoch seconds to an aware UTC datetime."""
    return datetime.fromtimestamp(ledger_seconds + RIPPLE_EPOCH_OFFSET, tz=timezone.utc)


def format_ledger_time(ledger_seconds: int, fmt: str = DISPLAY_TIME_FORMAT) -> str:
    """Format Ripple-epoch seconds for display."""
    return from_ledger_time(ledger_seconds).strftime(fmt)
