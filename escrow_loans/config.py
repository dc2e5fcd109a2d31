"""Configuration management for escrow-loans."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from escrow_loans.exceptions import ConfigurationError

STORE_BACKENDS = ("memory", "json", "postgres")


@dataclass
class XummConfig:
    """Wallet signing platform configuration."""

    api_key: str = ""
    api_secret: str = ""
    api_url: str = "https://xumm.app/api/v1/platform"
    network: str = "TESTNET"
    poll_interval: float = 2.0

    @property
    def is_configured(self) -> bool:
        """Whether signing is available at all."""
        return bool(self.api_key)

    def headers(self) -> dict[str, str]:
        """Get request headers for the platform API."""
        headers = {"X-API-Key": self.api_key, "Content-Type": "application/json"}
        if self.api_secret:
            headers["X-API-Secret"] = self.api_secret
        return headers


@dataclass
class LedgerConfig:
    """XRPL WebSocket endpoint configuration."""

    url: str = "wss://s.altnet.rippletest.net:51233/"


@dataclass
class PostgresConfig:
    """Database holding loan records when LOAN_STORE=postgres."""

    host: str = "localhost"
    port: int = 5432
    database: str = "escrow_loans"
    user: str = "postgres"
    password: str = "postgres"

    @property
    def connection_string(self) -> str:
        """libpq URI for psycopg.connect."""
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"


@dataclass
class StoreConfig:
    """Loan record persistence configuration."""

    backend: str = "memory"
    json_path: Path = field(default_factory=lambda: Path("data/loans.json"))

    def __post_init__(self) -> None:
        if self.backend not in STORE_BACKENDS:
            raise ConfigurationError(
                f"Unknown store backend {self.backend!r}, expected one of {', '.join(STORE_BACKENDS)}"
            )


@dataclass
class KafkaConfig:
    """Kafka producer configuration for lifecycle events."""

    bootstrap_servers: str | None = None
    topic: str = "loans.lifecycle"
    acks: str = "all"
    linger_ms: int = 5
    retries: int = 3

    @property
    def enabled(self) -> bool:
        """Whether lifecycle events are published to Kafka."""
        return bool(self.bootstrap_servers)

    def to_dict(self) -> dict[str, Any]:
        """Producer settings keyed by librdkafka property names."""
        return {
            "bootstrap.servers": self.bootstrap_servers,
            "acks": self.acks,
            "linger.ms": self.linger_ms,
            "retries": self.retries,
        }


@dataclass
class LoanDefaults:
    """Default offer terms."""

    currency_code: str = "CRD"
    credit_amount: str = "100"
    collateral_xrp: str = "5"
    repay_xrp: str = "5.2"
    due_minutes: int = 10
    grace_minutes: int = 10


@dataclass
class EscrowLoansConfig:
    """Main configuration for escrow-loans."""

    xumm: XummConfig = field(default_factory=XummConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    postgres: PostgresConfig = field(default_factory=PostgresConfig)
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    defaults: LoanDefaults = field(default_factory=LoanDefaults)
    app_url: str = "http://localhost:3000/"
    log_level: str = "INFO"
    log_format: str = "standard"

    @classmethod
    def from_env(cls) -> "EscrowLoansConfig":
        """Read every setting from the environment.

        Raises
        ------
        ConfigurationError
            When a numeric variable or the store backend is malformed.
        """
        import os

        try:
            xumm = XummConfig(
                api_key=os.getenv("XUMM_API_KEY", ""),
                api_secret=os.getenv("XUMM_API_SECRET", ""),
                api_url=os.getenv("XUMM_API_URL", "https://xumm.app/api/v1/platform"),
                network=os.getenv("XUMM_NETWORK", "TESTNET"),
                poll_interval=float(os.getenv("XUMM_POLL_INTERVAL", "2")),
            )

            ledger = LedgerConfig(
                url=os.getenv("XRPL_WSS", "wss://s.altnet.rippletest.net:51233/"),
            )

            store = StoreConfig(
                backend=os.getenv("LOAN_STORE", "memory"),
                json_path=Path(os.getenv("LOAN_STORE_PATH", "data/loans.json")),
            )

            postgres = PostgresConfig(
                host=os.getenv("POSTGRES_HOST", "localhost"),
                port=int(os.getenv("POSTGRES_PORT", "5432")),
                database=os.getenv("POSTGRES_DB", "escrow_loans"),
                user=os.getenv("POSTGRES_USER", "postgres"),
                password=os.getenv("POSTGRES_PASSWORD", "postgres"),
            )

            kafka = KafkaConfig(
                bootstrap_servers=os.getenv("KAFKA_BOOTSTRAP_SERVERS") or None,
                topic=os.getenv("KAFKA_TOPIC", "loans.lifecycle"),
            )

            defaults = LoanDefaults(
                currency_code=os.getenv("LOAN_CURRENCY", "CRD"),
                credit_amount=os.getenv("LOAN_CREDIT_AMOUNT", "100"),
                collateral_xrp=os.getenv("LOAN_COLLATERAL_XRP", "5"),
                repay_xrp=os.getenv("LOAN_REPAY_XRP", "5.2"),
                due_minutes=int(os.getenv("LOAN_DUE_MINUTES", "10")),
                grace_minutes=int(os.getenv("LOAN_GRACE_MINUTES", "10")),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}") from e

        return cls(
            xumm=xumm,
            ledger=ledger,
            store=store,
            postgres=postgres,
            kafka=kafka,
            defaults=defaults,
            app_url=os.getenv("APP_URL", "http://localhost:3000/"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "standard"),
        )
