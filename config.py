"""
Configuration loading and validation for the Bitrix24 REST client.

Settings come from config.toml; credentials come from .env / the environment.
"""

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from rate_limiter import RestrictionParams

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is missing or invalid."""


@dataclass(frozen=True)
class ThrottleConfig:
    amount: float = 30
    speed: float = 0.001
    sleep: float = 1000

    def to_params(self) -> RestrictionParams:
        return RestrictionParams(amount=self.amount, speed=self.speed, sleep=self.sleep)


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: float = 30.0
    user_agent: str = "b24-rest-client/0.1.0"


@dataclass(frozen=True)
class ClientConfig:
    client_side_warning: bool = True
    client_side_warning_message: str = "It is not safe to use hook requests on the client side"


@dataclass(frozen=True)
class LoggingConfig:
    verbose_console_logging: bool = True
    channels: dict[str, bool] = field(default_factory=dict)


@dataclass(frozen=True)
class OAuthConfig:
    token_url: str = "https://oauth.bitrix.info/oauth/token/"
    token_file: str = "token.json"


@dataclass(frozen=True)
class AppConfig:
    throttle: ThrottleConfig = ThrottleConfig()
    http: HttpConfig = HttpConfig()
    client: ClientConfig = ClientConfig()
    logging: LoggingConfig = LoggingConfig()
    oauth: OAuthConfig = OAuthConfig()
    project_root: Path = Path(".")

    def resolve_path(self, path: str | Path) -> Path:
        """Resolve a path relative to project_root.

        - Expands ~ to home directory
        - Returns absolute paths unchanged
        - Resolves relative paths against project_root
        """
        p = Path(path).expanduser()
        if p.is_absolute():
            return p
        return self.project_root / p


@dataclass(frozen=True)
class EnvCredentials:
    webhook_url: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    refresh_token: str | None = None
    domain: str | None = None

    @property
    def has_webhook(self) -> bool:
        return bool(self.webhook_url)

    @property
    def has_oauth(self) -> bool:
        return bool(self.client_id and self.client_secret and self.refresh_token)


def _section(raw: dict, name: str, cls):
    values = raw.get(name, {})
    if not isinstance(values, dict):
        raise ConfigurationError(f"[{name}] must be a table in the configuration file.")
    try:
        return cls(**values)
    except TypeError as e:
        raise ConfigurationError(f"Unknown key in [{name}]: {e}") from e


def load_config(config_path: str | Path = "config.toml", required: bool = False) -> AppConfig:
    """Load configuration from TOML file and return an AppConfig instance.

    Applies defaults for any missing sections/keys so older config files
    still work after new settings are added. A missing file yields the
    defaults unless ``required`` is set.
    """
    config_file = Path(config_path)
    if not config_file.exists():
        if required:
            raise ConfigurationError(f"Configuration file '{config_path}' not found.")
        logger.info(f"No configuration file at {config_file}, using defaults")
        return AppConfig(project_root=config_file.resolve().parent)

    try:
        with open(config_file, "rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in '{config_path}': {e}") from e

    logging_raw = dict(raw.get("logging", {}))
    logging_raw["channels"] = {str(k): bool(v) for k, v in logging_raw.get("channels", {}).items()}
    logging_cfg = _section({"logging": logging_raw}, "logging", LoggingConfig)

    throttle = _section(raw, "throttle", ThrottleConfig)
    if throttle.amount <= 0 or throttle.speed < 0 or throttle.sleep <= 0:
        raise ConfigurationError("[throttle] amount and sleep must be positive, speed non-negative.")

    return AppConfig(
        throttle=throttle,
        http=_section(raw, "http", HttpConfig),
        client=_section(raw, "client", ClientConfig),
        logging=logging_cfg,
        oauth=_section(raw, "oauth", OAuthConfig),
        project_root=config_file.resolve().parent,
    )


def load_credentials_env(project_root: Path = Path(".")) -> EnvCredentials:
    """Read Bitrix24 credentials from .env (if present) and the environment.

    Raises ConfigurationError when neither a webhook URL nor a complete
    OAuth client/refresh-token set is available.
    """
    load_dotenv(dotenv_path=project_root / ".env")
    credentials = EnvCredentials(
        webhook_url=os.getenv("B24_WEBHOOK_URL"),
        client_id=os.getenv("B24_CLIENT_ID"),
        client_secret=os.getenv("B24_CLIENT_SECRET"),
        refresh_token=os.getenv("B24_REFRESH_TOKEN"),
        domain=os.getenv("B24_DOMAIN"),
    )
    if not credentials.has_webhook and not credentials.has_oauth:
        raise ConfigurationError(
            "Set B24_WEBHOOK_URL, or B24_CLIENT_ID / B24_CLIENT_SECRET / B24_REFRESH_TOKEN, in .env."
        )
    return credentials
