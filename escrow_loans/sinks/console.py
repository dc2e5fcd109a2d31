"""Console sink for following lifecycle events locally."""

from collections import Counter

from escrow_loans.models import LoanEvent
from escrow_loans.sinks.serialization import encode_event


class ConsoleSink:
    """Print each lifecycle event as JSON."""

    def __init__(self, pretty: bool = True) -> None:
        self.pretty = pretty
        self.counts: Counter[str] = Counter()
        self.loans: set[str] = set()

    def write(self, event: LoanEvent) -> None:
        print(encode_event(event, indent=2 if self.pretty else None))
        self.counts[event.event_type] += 1
        self.loans.add(event.subject)

    def close(self) -> None:
        """Print per-type totals."""
        print(f"\n{len(self.loans)} loan(s), {sum(self.counts.values())} event(s)")
        for event_type, count in sorted(self.counts.items()):
            print(f"  {event_type}: {count}")
