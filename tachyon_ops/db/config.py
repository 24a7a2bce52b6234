"""Relational store configuration.

Connection parameters for the target database. Instances are built once by
the environment context and passed to the components that need them.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.engine import URL, make_url

DEFAULT_DRIVER = "postgresql+asyncpg"


@dataclass
class DatabaseConfig:
    """Database connection configuration.

    Attributes:
        host: Database host
        port: Database port
        database: Database name
        user: Authentication username
        password: Authentication password
        ssl: Whether to require TLS
        ssl_reject_unauthorized: Verify the server certificate when TLS is on
        driver: SQLAlchemy driver name (e.g. postgresql+asyncpg)
        url: Full SQLAlchemy URL, overrides the discrete fields when set
        pool_size: Connection pool size
        pool_timeout: Seconds to wait for a free pooled connection
        idle_timeout: Seconds before idle pooled connections are recycled
        connect_timeout: Connection timeout in seconds
        retry_attempts: Number of connection attempts at startup
        retry_delay: Initial delay between connection attempts in seconds
    """

    host: str = "localhost"
    port: int = 5432
    database: str = "tachyon_dev"
    user: str = "tachyon_dev"
    password: str = ""
    ssl: bool = False
    ssl_reject_unauthorized: bool = False
    driver: str = DEFAULT_DRIVER
    url: Optional[str] = None
    pool_size: int = 20
    pool_timeout: float = 10.0
    idle_timeout: float = 30.0
    connect_timeout: float = 10.0
    retry_attempts: int = 3
    retry_delay: float = 1.0
    connect_args: dict = field(default_factory=dict)

    @classmethod
    def from_mapping(
        cls,
        values: Mapping[str, str],
        defaults: Optional["DatabaseConfig"] = None,
    ) -> "DatabaseConfig":
        """Build a configuration from POSTGRES_* style variables.

        Args:
            values: Variable mapping (dotenv file values merged with environ)
            defaults: Values used for variables that are not present

        Returns:
            DatabaseConfig instance
        """
        base = defaults or cls()

        def _bool(name: str, default: bool) -> bool:
            raw = values.get(name)
            if raw is None or raw == "":
                return default
            return raw.strip().lower() == "true"

        return cls(
            host=values.get("POSTGRES_HOST") or base.host,
            port=int(values.get("POSTGRES_PORT") or base.port),
            database=values.get("POSTGRES_DB") or base.database,
            user=values.get("POSTGRES_USER") or base.user,
            password=values.get("POSTGRES_PASSWORD") or base.password,
            ssl=_bool("POSTGRES_SSL", base.ssl),
            ssl_reject_unauthorized=_bool(
                "POSTGRES_SSL_REJECT_UNAUTHORIZED", base.ssl_reject_unauthorized
            ),
            driver=values.get("DATABASE_DRIVER") or base.driver,
            url=values.get("DATABASE_URL") or base.url,
            pool_size=int(values.get("POSTGRES_MAX_CONNECTIONS") or base.pool_size),
            pool_timeout=base.pool_timeout,
            idle_timeout=base.idle_timeout,
            connect_timeout=float(values.get("POSTGRES_CONNECT_TIMEOUT") or base.connect_timeout),
            retry_attempts=int(values.get("POSTGRES_RETRY_ATTEMPTS") or base.retry_attempts),
            retry_delay=float(values.get("POSTGRES_RETRY_DELAY") or base.retry_delay),
        )

    @property
    def is_sqlite(self) -> bool:
        """Check if the target is a SQLite database (local tooling and tests)."""
        return self.sqlalchemy_url.get_backend_name() == "sqlite"

    @property
    def sqlalchemy_url(self) -> URL:
        """Get the SQLAlchemy URL for this configuration."""
        if self.url:
            return make_url(self.url)

        return URL.create(
            drivername=self.driver,
            username=self.user or None,
            password=self.password or None,
            host=self.host,
            port=self.port,
            database=self.database,
        )

    def safe_url(self) -> str:
        """Render the URL with the password masked, for logs and banners."""
        return self.sqlalchemy_url.render_as_string(hide_password=True)

    def validate(self, production: bool = False) -> list[str]:
        """Validate configuration.

        Args:
            production: Apply the stricter production rules

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if self.url:
            try:
                make_url(self.url)
            except Exception as e:
                errors.append(f"DATABASE_URL is not a valid URL: {e}")
            return errors

        if not self.host:
            errors.append("POSTGRES_HOST is required")
        if not self.database:
            errors.append("POSTGRES_DB is required")
        if not self.user:
            errors.append("POSTGRES_USER is required")
        if self.pool_size < 1:
            errors.append("POSTGRES_MAX_CONNECTIONS must be at least 1")

        if production:
            if not self.password:
                errors.append("POSTGRES_PASSWORD is required in production")
            if not self.ssl:
                errors.append("Production should use SSL (POSTGRES_SSL=true)")

        return errors
