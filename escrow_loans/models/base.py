"""Event envelope published for every loan transition."""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class LoanEvent:
    """One applied lifecycle transition.

    Attributes
    ----------
    event_id : str
        Unique id of this event.
    event_type : str
        ``loan.<status>``, for example ``loan.collateral_locked``.
    event_time : datetime
        When the controller persisted the transition (UTC).
    source : str
        Component that applied the transition.
    subject : str
        Loan id; sinks key and partition by it.
    data : dict
        The loan record after the transition.
    metadata : dict
        Extra context such as ``previous_status``.
    """

    event_id: str
    event_type: str
    event_time: datetime
    source: str
    subject: str
    data: dict
    metadata: dict = field(default_factory=dict)
