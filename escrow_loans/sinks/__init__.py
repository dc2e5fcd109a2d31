"""Output sinks for loan lifecycle events."""

from escrow_loans.config import EscrowLoansConfig
from escrow_loans.sinks.console import ConsoleSink
from escrow_loans.sinks.kafka import KafkaSink

__all__ = ["ConsoleSink", "KafkaSink", "create_sinks"]


def create_sinks(config: EscrowLoansConfig, console: bool = False) -> list:
    """Build the sinks enabled by ``config``."""
    sinks: list = []
    if console:
        sinks.append(ConsoleSink(pretty=False))
    if config.kafka.enabled:
        sinks.append(KafkaSink(config.kafka))
    return sinks
