"""Persistent loan record stores."""

from escrow_loans.store.loans import (
    InMemoryLoanStore,
    JsonFileLoanStore,
    LoanStore,
    PostgresLoanStore,
    create_store,
)

__all__ = ["InMemoryLoanStore", "JsonFileLoanStore", "LoanStore", "PostgresLoanStore", "create_store"]
