"""Loan record stores keyed by ``loan:<id>``."""

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from escrow_loans.config import EscrowLoansConfig
from escrow_loans.exceptions import ConfigurationError
from escrow_loans.models import Loan, loan_key
from escrow_loans.models.loan import KEY_PREFIX

logger = logging.getLogger(__name__)


class LoanStore(Protocol):
    """Persistence for whole loan records."""

    def get(self, loan_id: str) -> Loan | None: ...

    def put(self, loan: Loan) -> None: ...

    def keys(self) -> list[str]: ...


@dataclass
class InMemoryLoanStore:
    """In-memory store holding the serialized record per key."""

    records: dict[str, dict[str, Any]] = field(default_factory=dict)

    def get(self, loan_id: str) -> Loan | None:
        """Load a loan, or ``None`` when the key is unknown."""
        record = self.records.get(loan_key(loan_id))
        return Loan.from_record(record) if record is not None else None

    def put(self, loan: Loan) -> None:
        """Replace the whole record."""
        self.records[loan.key] = loan.to_record()

    def keys(self) -> list[str]:
        return sorted(self.records)


class JsonFileLoanStore:
    """Store all records in one JSON object on disk.

    The file maps ``loan:<id>`` keys to records, the same layout a browser
    keeps in local storage.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        with open(self.path, encoding="utf-8") as f:
            return json.load(f)

    def _write(self, data: dict[str, Any]) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
        os.replace(tmp_path, self.path)

    def get(self, loan_id: str) -> Loan | None:
        with self._lock:
            record = self._read().get(loan_key(loan_id))
        return Loan.from_record(record) if record is not None else None

    def put(self, loan: Loan) -> None:
        with self._lock:
            data = self._read()
            data[loan.key] = loan.to_record()
            self._write(data)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(k for k in self._read() if k.startswith(KEY_PREFIX))


class PostgresLoanStore:
    """Store records as JSONB rows in PostgreSQL."""

    TABLE_DDL = """
        CREATE TABLE IF NOT EXISTS loan_records (
            key TEXT PRIMARY KEY,
            value JSONB NOT NULL
        )
    """

    def __init__(self, connection_string: str) -> None:
        """Initialize PostgreSQL store.

        Parameters
        ----------
        connection_string : str
            libpq connection string or URL.
        """
        import psycopg

        self.connection_string = connection_string
        self.conn = psycopg.connect(connection_string, autocommit=True)
        with self.conn.cursor() as cur:
            cur.execute(self.TABLE_DDL)
        logger.info("Connected to PostgreSQL loan store")

    def get(self, loan_id: str) -> Loan | None:
        with self.conn.cursor() as cur:
            cur.execute("SELECT value FROM loan_records WHERE key = %s", (loan_key(loan_id),))
            row = cur.fetchone()
        if row is None:
            return None
        value = row[0]
        if isinstance(value, str):
            value = json.loads(value)
        return Loan.from_record(value)

    def put(self, loan: Loan) -> None:
        from psycopg.types.json import Jsonb

        with self.conn.cursor() as cur:
            cur.execute(
                "INSERT INTO loan_records (key, value) VALUES (%s, %s) "
                "ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value",
                (loan.key, Jsonb(loan.to_record())),
            )

    def keys(self) -> list[str]:
        with self.conn.cursor() as cur:
            cur.execute("SELECT key FROM loan_records WHERE key LIKE %s ORDER BY key", (f"{KEY_PREFIX}%",))
            return [row[0] for row in cur.fetchall()]

    def close(self) -> None:
        self.conn.close()


def create_store(config: EscrowLoansConfig) -> LoanStore:
    """Build the store selected by ``config.store.backend``."""
    backend = config.store.backend
    if backend == "memory":
        return InMemoryLoanStore()
    if backend == "json":
        return JsonFileLoanStore(config.store.json_path)
    if backend == "postgres":
        return PostgresLoanStore(config.postgres.connection_string)
    raise ConfigurationError(f"Unknown store backend {backend!r}")
