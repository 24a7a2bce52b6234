"""Environment resolution for migration runs.

Resolves an operator-supplied environment name into a fully populated
target: environment descriptor (risk tier, confirmation policy), database
connection parameters and the automated-mode flag. The resulting
EnvironmentContext is the composition root for a single command.

Configuration sources, lowest precedence first:
- Built-in defaults per environment
- Per-environment dotenv file (``.env.local``, ``.env.staging``, ...)
- Explicit variables passed by the caller (normally ``os.environ``)

An optional ``environments.yaml`` in the same directory can add
environments or adjust the built-in ones.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml
from dotenv import dotenv_values

from ..db.config import DatabaseConfig
from ..db.connection import Database
from ..db.migrations.registry import MigrationCatalog, load_catalog
from ..db.migrations.runner import MigrationExecutor
from ..utils.confirmation import ConfirmationGate, ConfirmationPolicy, PromptFn
from ..utils.resilience import RetryConfig

logger = logging.getLogger(__name__)

OVERRIDES_FILE = "environments.yaml"


class ConfigurationError(Exception):
    """Raised when the target environment cannot be resolved or is misconfigured."""

    pass


class RiskTier(str, Enum):
    """Human-readable risk of running irreversible operations against a target."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class EnvironmentConfig:
    """Static descriptor of a target environment.

    Attributes:
        name: Environment name (local, staging, production)
        env_file: Dotenv file holding the connection variables
        risk: Risk tier
        requires_confirmation: Whether an operator must type the keyword
        confirmation_keyword: Keyword the operator must type
        description: Description shown in the target banner
    """

    name: str
    env_file: str
    risk: RiskTier
    requires_confirmation: bool
    confirmation_keyword: str
    description: str

    @property
    def policy(self) -> ConfirmationPolicy:
        """Confirmation policy for this environment."""
        return ConfirmationPolicy(
            requires_confirmation=self.requires_confirmation,
            confirmation_keyword=self.confirmation_keyword,
        )

    @property
    def is_production(self) -> bool:
        return self.risk is RiskTier.HIGH


BUILTIN_ENVIRONMENTS: dict[str, EnvironmentConfig] = {
    "local": EnvironmentConfig(
        name="local",
        env_file=".env.local",
        risk=RiskTier.LOW,
        requires_confirmation=False,
        confirmation_keyword="yes",
        description="Local Docker PostgreSQL (Safe)",
    ),
    "staging": EnvironmentConfig(
        name="staging",
        env_file=".env.staging",
        risk=RiskTier.MEDIUM,
        requires_confirmation=True,
        confirmation_keyword="staging",
        description="Staging PostgreSQL (Shared)",
    ),
    "production": EnvironmentConfig(
        name="production",
        env_file=".env.production",
        risk=RiskTier.HIGH,
        requires_confirmation=True,
        confirmation_keyword="production",
        description="Production PostgreSQL (LIVE DATA)",
    ),
}

# Names accepted by the older npm scripts
ENVIRONMENT_ALIASES = {"dev": "staging", "prod": "production"}

DEFAULT_DATABASE_CONFIGS: dict[str, DatabaseConfig] = {
    "local": DatabaseConfig(password="dev_password"),
    "staging": DatabaseConfig(ssl=True),
    "production": DatabaseConfig(ssl=True, ssl_reject_unauthorized=True),
}

TARGET_BANNERS: dict[RiskTier, tuple[str, str]] = {
    RiskTier.LOW: (
        "Target: LOCAL DEVELOPMENT DATABASE",
        "Safe to run migrations without risk to cloud data",
    ),
    RiskTier.MEDIUM: (
        "Target: {name} ENVIRONMENT",
        "WARNING: These migrations will affect a shared database!",
    ),
    RiskTier.HIGH: (
        "Target: {name} ENVIRONMENT",
        "CRITICAL: These migrations will affect LIVE PRODUCTION data!",
    ),
}


def is_true(value: Optional[str]) -> bool:
    return (value or "").strip().lower() == "true"


def load_environment_overrides(path: Path) -> dict[str, EnvironmentConfig]:
    """Load additional or adjusted environments from a YAML file.

    Expected layout::

        environments:
          qa:
            env_file: .env.qa
            risk: medium
            requires_confirmation: true
            confirmation_keyword: qa
            description: QA database

    Fields omitted for a built-in environment keep their built-in values.

    Args:
        path: YAML file path

    Returns:
        Mapping of environment name to descriptor (empty if the file is absent)

    Raises:
        ConfigurationError: If the file cannot be parsed or an entry is invalid
    """
    if not path.exists():
        return {}

    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    entries = data.get("environments") or {}
    if not isinstance(entries, dict):
        raise ConfigurationError(f"{path}: 'environments' must be a mapping")

    result: dict[str, EnvironmentConfig] = {}
    for name, raw in entries.items():
        raw = raw or {}
        base = BUILTIN_ENVIRONMENTS.get(name)
        try:
            risk_value = raw.get("risk", base.risk.value if base else RiskTier.MEDIUM.value)
            result[name] = EnvironmentConfig(
                name=name,
                env_file=raw.get("env_file", base.env_file if base else f".env.{name}"),
                risk=RiskTier(str(risk_value).lower()),
                requires_confirmation=bool(
                    raw.get("requires_confirmation", base.requires_confirmation if base else True)
                ),
                confirmation_keyword=str(
                    raw.get("confirmation_keyword", base.confirmation_keyword if base else name)
                ),
                description=raw.get("description", base.description if base else name),
            )
        except (ValueError, AttributeError) as e:
            raise ConfigurationError(f"{path}: invalid environment '{name}': {e}") from e

    logger.debug(f"Loaded {len(result)} environment override(s) from {path}")
    return result


@dataclass
class EnvironmentContext:
    """Fully resolved target for one command invocation.

    Attributes:
        config: Environment descriptor
        database: Database connection parameters
        automated: True when running unattended
        env_file: Dotenv file that was read, if any
    """

    config: EnvironmentConfig
    database: DatabaseConfig
    automated: bool = False
    env_file: Optional[Path] = None
    retry_config: Optional[RetryConfig] = field(default=None, repr=False)

    @property
    def name(self) -> str:
        return self.config.name

    def describe(self) -> list[str]:
        """Lines of the target banner shown before any command runs.

        The password is always masked.
        """
        headline, warning = TARGET_BANNERS[self.config.risk]
        return [
            headline.format(name=self.name.upper()),
            warning,
            "",
            f"Environment: {self.config.description}",
            f"Database:    {self.database.safe_url()}",
            f"SSL:         {'enabled' if self.database.ssl else 'disabled'}",
            f"Mode:        {'automated' if self.automated else 'interactive'}",
        ]

    def open_database(self) -> Database:
        """Build an unopened database handle for this target (caller owns it)."""
        return Database(self.database, retry_config=self.retry_config)

    def build_executor(
        self,
        database: Database,
        catalog: Optional[MigrationCatalog] = None,
    ) -> MigrationExecutor:
        """Build a migration executor stamped with this environment's name."""
        return MigrationExecutor(database, catalog or load_catalog(), self.name)

    def confirmation_gate(self, prompt: Optional[PromptFn] = None) -> ConfirmationGate:
        """Build the confirmation gate for this target."""
        return ConfirmationGate(prompt=prompt)

    def require_confirmation(self, gate: ConfirmationGate) -> None:
        """Run the confirmation gate with this target's policy.

        Raises:
            ConfirmationDeclinedError: If the operator did not confirm
        """
        gate.require(self.config.policy, self.automated, self.name)


def resolve_environment(
    name: Optional[str],
    environ: Mapping[str, str],
    auto_confirm: bool = False,
    env_dir: Path | str = ".",
) -> EnvironmentContext:
    """Resolve an environment name into a target context.

    Args:
        name: Environment name (local, staging, production or an alias)
        environ: Explicit process variables; they override dotenv file values
        auto_confirm: Explicit automated-mode flag (e.g. ``--yes``)
        env_dir: Directory holding the dotenv files and environments.yaml

    Returns:
        Resolved EnvironmentContext

    Raises:
        ConfigurationError: If the name is missing or unknown, or the
            resulting database configuration is invalid
    """
    if not name:
        raise ConfigurationError(
            "MIGRATION_ENV not set. Pass --env or set MIGRATION_ENV to one of: "
            + ", ".join(sorted(BUILTIN_ENVIRONMENTS))
        )

    env_dir = Path(env_dir)
    environments = {
        **BUILTIN_ENVIRONMENTS,
        **load_environment_overrides(env_dir / OVERRIDES_FILE),
    }

    key = ENVIRONMENT_ALIASES.get(name, name)
    if key not in environments:
        raise ConfigurationError(
            f"Invalid environment '{name}'. Must be one of: {', '.join(sorted(environments))}"
        )
    config = environments[key]

    env_path = env_dir / config.env_file
    values: dict[str, str] = {}
    loaded: Optional[Path] = None
    if env_path.exists():
        logger.info(f"Loading environment from: {config.env_file}")
        values.update({k: v for k, v in dotenv_values(env_path).items() if v is not None})
        loaded = env_path
    else:
        logger.info(f"Environment file not found: {config.env_file}; using process variables")
    values.update(environ)

    defaults = DEFAULT_DATABASE_CONFIGS.get(config.name, DatabaseConfig(ssl=True))
    try:
        database = DatabaseConfig.from_mapping(values, defaults=replace(defaults))
    except ValueError as e:
        raise ConfigurationError(f"Invalid database settings for {config.name}: {e}") from e

    errors = database.validate(production=config.is_production)
    if errors:
        raise ConfigurationError(
            f"Invalid configuration for {config.name}: " + "; ".join(errors)
        )

    automated = (
        auto_confirm or is_true(values.get("CI")) or is_true(values.get("AUTO_CONFIRM"))
    )

    return EnvironmentContext(
        config=config,
        database=database,
        automated=automated,
        env_file=loaded,
    )
