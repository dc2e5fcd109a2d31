"""Custom exception hierarchy for escrow-loans."""


class EscrowLoansError(Exception):
    """Base exception for all escrow-loans errors."""


class ConfigurationError(EscrowLoansError):
    """Raised when configuration is invalid or missing."""


class AuthorizationError(EscrowLoansError):
    """Raised when the connected wallet may not sign the requested step."""


class SignatureDeclinedError(EscrowLoansError):
    """Raised when a signature request was rejected or expired."""


class LoanNotFoundError(EscrowLoansError):
    """Raised when no persisted record exists for a loan id."""


class InvalidLoanStateError(EscrowLoansError):
    """Raised when a loan is in an invalid state for the operation."""


class LoanTermsError(EscrowLoansError):
    """Raised when offer terms are inconsistent."""


class LedgerError(EscrowLoansError):
    """Raised when the ledger rejects a request or the connection fails."""


class SinkError(EscrowLoansError):
    """Raised when an event sink operation fails."""


class WalletError(EscrowLoansError):
    """Raised when the wallet signing platform fails."""
