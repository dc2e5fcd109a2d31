"""Local authorization check for signing steps.

This only blocks obviously wrong prompts; the ledger independently rejects
transactions signed by the wrong account.
"""

from escrow_loans.exceptions import AuthorizationError
from escrow_loans.models import Role


def short_address(address: str) -> str:
    """Abbreviate an address for messages (``rAbCdE…wXyZ``)."""
    if len(address) <= 10:
        return address
    return f"{address[:6]}…{address[-4:]}"


def check_signer(required_address: str, connected_account: str | None, role: Role | str) -> str | None:
    """Return the reason a signer may not act, or ``None`` if it may.

    Parameters
    ----------
    required_address : str
        Address the step must be signed by.
    connected_account : str | None
        Account of the connected wallet session.
    role : Role | str
        Role name used in the message.
    """
    label = role.value if isinstance(role, Role) else role
    if not required_address:
        return f"Missing {label} address."
    if not connected_account:
        return f"Connect the {label} wallet first."
    if connected_account != required_address:
        return f"Wrong wallet connected. Expected {label} {short_address(required_address)}."
    return None


def require_signer(required_address: str, connected_account: str | None, role: Role | str) -> None:
    """Raise :class:`AuthorizationError` unless the connected account may sign."""
    reason = check_signer(required_address, connected_account, role)
    if reason is not None:
        raise AuthorizationError(reason)
