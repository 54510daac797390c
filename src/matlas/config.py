"""Configuration management with validation.

Configuration is assembled once at the pipeline entry point and passed
explicitly to every component. After that only manifest ``${VAR}`` expansion
reads the environment.
Values are resolved in order: explicit (CLI flag or config file), then the
environment, then the credentials store file.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from dotenv import dotenv_values

from .masking import mask_credential

logger = logging.getLogger(__name__)


class OutputFormat(str, Enum):
    """Supported report formats."""

    TABLE = "table"
    JSON = "json"
    YAML = "yaml"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_BASE_URL = "https://cloud.mongodb.com/api/atlas/v2"
DEFAULT_CONFIG_PATH = Path("~/.matlas/config.yaml")
DEFAULT_CREDENTIALS_PATH = Path("~/.matlas/credentials")

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BACKOFF_MS = 250
MAX_RETRIES_LIMIT = 10

DEFAULT_DISCOVER_TIMEOUT_SECONDS = 600
DEFAULT_APPLY_TIMEOUT_SECONDS = 1800
DEFAULT_HTTP_TIMEOUT_SECONDS = 60

DEFAULT_MAX_CONCURRENCY = 5
MAX_CONCURRENCY_LIMIT = 50

DEFAULT_CACHE_MAX_ENTRIES = 100
DEFAULT_CACHE_TTL_SECONDS = 3600

DEFAULT_ENUMERATION_CONCURRENCY = 5
DEFAULT_ENUMERATION_TIMEOUT_SECONDS = 300
DEFAULT_TEMP_USER_PROPAGATION_SECONDS = 10

# SECURITY: bound manifest and config file sizes
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024
MAX_CONFIG_FILE_SIZE_BYTES = 64 * 1024


@dataclass(frozen=True)
class RetryConfig:
    """Remote client retry policy."""

    max_attempts: int = DEFAULT_MAX_RETRIES
    backoff_ms: int = DEFAULT_RETRY_BACKOFF_MS


@dataclass(frozen=True)
class Credentials:
    """Admin API key pair.

    ``source`` records where the pair came from (``explicit``, ``env``,
    ``store``) and is safe to log; the keys are not.
    """

    public_key: str
    private_key: str
    source: str = "explicit"

    def __repr__(self) -> str:
        return (
            f"Credentials(public_key={mask_credential(self.public_key)!r}, private_key='***', "
            f"source={self.source!r})"
        )


@dataclass(frozen=True)
class Config:
    """matlas configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-pipeline.
    """

    public_key: str = ""
    private_key: str = ""
    credentials_source: str = ""
    project_id: str = ""
    org_id: str = ""
    base_url: str = DEFAULT_BASE_URL

    # Data-plane overrides
    mongodb_uri: str = ""
    mongodb_username: str = ""
    mongodb_password: str = ""

    output: OutputFormat = OutputFormat.TABLE
    discover_timeout_seconds: int = DEFAULT_DISCOVER_TIMEOUT_SECONDS
    apply_timeout_seconds: int = DEFAULT_APPLY_TIMEOUT_SECONDS
    http_timeout_seconds: int = DEFAULT_HTTP_TIMEOUT_SECONDS
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    retry: RetryConfig = field(default_factory=RetryConfig)

    cache_max_entries: int = DEFAULT_CACHE_MAX_ENTRIES
    cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS

    enumeration_concurrency: int = DEFAULT_ENUMERATION_CONCURRENCY
    enumeration_timeout_seconds: int = DEFAULT_ENUMERATION_TIMEOUT_SECONDS
    temp_user_propagation_seconds: int = DEFAULT_TEMP_USER_PROPAGATION_SECONDS

    json_logs: bool = False
    # Unresolved manifest ${VAR} references fail loading instead of warning
    strict_env: bool = False

    def __post_init__(self) -> None:
        errors: list[str] = []

        if bool(self.public_key) != bool(self.private_key):
            errors.append("API_PUB_KEY and API_PRIV_KEY must be set together")

        if not self.base_url.startswith(("https://", "http://")):
            errors.append(f"base URL must be http(s): {self.base_url}")

        if not (1 <= self.max_concurrency <= MAX_CONCURRENCY_LIMIT):
            errors.append(f"max concurrency must be between 1 and {MAX_CONCURRENCY_LIMIT}")

        if not (1 <= self.retry.max_attempts <= MAX_RETRIES_LIMIT):
            errors.append(f"retry attempts must be between 1 and {MAX_RETRIES_LIMIT}")
        if self.retry.backoff_ms < 0:
            errors.append("retry backoff must not be negative")

        for name in (
            "discover_timeout_seconds",
            "apply_timeout_seconds",
            "http_timeout_seconds",
            "enumeration_timeout_seconds",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive")

        if self.cache_max_entries < 1:
            errors.append("cache max entries must be at least 1")
        if self.enumeration_concurrency < 1:
            errors.append("enumeration concurrency must be at least 1")
        if self.temp_user_propagation_seconds < 0:
            errors.append("temp user propagation window must not be negative")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def has_credentials(self) -> bool:
        return bool(self.public_key and self.private_key)

    def credentials(self) -> Credentials:
        """Return the resolved API key pair.

        Raises:
            ConfigurationError: If no credentials were found anywhere.
        """
        if not self.has_credentials:
            raise ConfigurationError(
                "No admin API credentials found. Set API_PUB_KEY and API_PRIV_KEY, "
                "add publicKey/privateKey to the config file, or populate "
                f"{DEFAULT_CREDENTIALS_PATH}"
            )
        return Credentials(self.public_key, self.private_key, self.credentials_source)

    def with_overrides(self, **overrides: Any) -> Config:
        """Return a copy with explicit (CLI) values applied; empty values are ignored."""
        applied = {k: v for k, v in overrides.items() if v not in (None, "")}
        if not applied:
            return self
        if "public_key" in applied or "private_key" in applied:
            applied.setdefault("credentials_source", "explicit")
        return replace(self, **applied)

    @classmethod
    def from_env(cls, config_file: str | Path | None = None) -> Config:
        """Load configuration from the config file and environment variables.

        Environment Variables:
            API_PUB_KEY / API_PRIV_KEY: Admin API key pair
            PROJECT_ID / ORG_ID: Default project and organization
            CONFIG_FILE: Config file path (default: ~/.matlas/config.yaml)
            MONGODB_URI / MONGODB_USERNAME / MONGODB_PASSWORD: Data-plane overrides
            MATLAS_BASE_URL: Admin API base URL
            MATLAS_MAX_RETRIES: Retry attempts for transient errors (default: 3)
            MATLAS_RETRY_BACKOFF_MS: Initial retry backoff (default: 250)
            MATLAS_MAX_CONCURRENCY: Executor worker cap (default: 5)
            MATLAS_DISCOVER_TIMEOUT: Discovery deadline in seconds (default: 600)
            MATLAS_APPLY_TIMEOUT: Apply deadline in seconds (default: 1800)
            MATLAS_LOG_FORMAT: "json" for structured logs
            MATLAS_CREDENTIALS_FILE: Credentials store (default: ~/.matlas/credentials)
        """

        def get_int(key: str, default: int, file_value: Any = None) -> int:
            value = file_value if file_value is not None else os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_output(value: str | None) -> OutputFormat:
            if not value:
                return OutputFormat.TABLE
            try:
                return OutputFormat(value)
            except ValueError as e:
                valid = [f.value for f in OutputFormat]
                raise ConfigurationError(f"output must be one of {valid}: {value}") from e

        path = config_file or os.environ.get("CONFIG_FILE")
        file_data = load_config_file(Path(path) if path else None, required=bool(path))
        retry_data = file_data.get("retry") or {}

        public_key, private_key, source = resolve_credentials(
            file_data.get("publicKey", ""), file_data.get("privateKey", "")
        )

        return cls(
            public_key=public_key,
            private_key=private_key,
            credentials_source=source,
            project_id=file_data.get("projectId") or os.environ.get("PROJECT_ID", ""),
            org_id=file_data.get("orgId") or os.environ.get("ORG_ID", ""),
            base_url=(
                file_data.get("baseUrl") or os.environ.get("MATLAS_BASE_URL", DEFAULT_BASE_URL)
            ),
            mongodb_uri=os.environ.get("MONGODB_URI", ""),
            mongodb_username=os.environ.get("MONGODB_USERNAME", ""),
            mongodb_password=os.environ.get("MONGODB_PASSWORD", ""),
            output=get_output(file_data.get("output")),
            discover_timeout_seconds=get_int(
                "MATLAS_DISCOVER_TIMEOUT", DEFAULT_DISCOVER_TIMEOUT_SECONDS
            ),
            apply_timeout_seconds=get_int(
                "MATLAS_APPLY_TIMEOUT", DEFAULT_APPLY_TIMEOUT_SECONDS, file_data.get("timeout")
            ),
            max_concurrency=get_int(
                "MATLAS_MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY, file_data.get("maxConcurrency")
            ),
            retry=RetryConfig(
                max_attempts=get_int(
                    "MATLAS_MAX_RETRIES", DEFAULT_MAX_RETRIES, retry_data.get("maxAttempts")
                ),
                backoff_ms=get_int(
                    "MATLAS_RETRY_BACKOFF_MS", DEFAULT_RETRY_BACKOFF_MS, retry_data.get("backoffMs")
                ),
            ),
            json_logs=os.environ.get("MATLAS_LOG_FORMAT", "").lower() == "json",
        )


def load_config_file(path: Path | None, required: bool = False) -> dict[str, Any]:
    """Read the YAML config file.

    Args:
        path: Explicit path; the default location is used when None.
        required: Raise if the file does not exist (explicit paths only).

    Returns:
        The parsed mapping, or an empty dict when no file is present.

    Raises:
        ConfigurationError: If the file is unreadable, too large, or not a mapping.
    """
    target = (path or DEFAULT_CONFIG_PATH).expanduser()
    if not target.exists():
        if required:
            raise ConfigurationError(f"Config file not found: {target}")
        return {}

    if target.stat().st_size > MAX_CONFIG_FILE_SIZE_BYTES:
        raise ConfigurationError(
            f"Config file exceeds maximum size of {MAX_CONFIG_FILE_SIZE_BYTES} bytes: {target}"
        )

    try:
        data = yaml.safe_load(target.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to read config file {target}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file must contain a YAML mapping: {target}")

    logger.debug("Loaded config file", extra={"path": str(target)})
    return data


def resolve_credentials(
    explicit_public: str = "", explicit_private: str = ""
) -> tuple[str, str, str]:
    """Resolve the admin API key pair.

    Order: explicit values, then ``API_PUB_KEY``/``API_PRIV_KEY``, then the
    dotenv-format credentials store.

    Returns:
        ``(public_key, private_key, source)``; empty strings when nothing is found.
    """
    if explicit_public and explicit_private:
        return explicit_public, explicit_private, "explicit"

    env_public = os.environ.get("API_PUB_KEY", "")
    env_private = os.environ.get("API_PRIV_KEY", "")
    if env_public and env_private:
        return env_public, env_private, "env"

    store = Path(os.environ.get("MATLAS_CREDENTIALS_FILE", str(DEFAULT_CREDENTIALS_PATH)))
    store = store.expanduser()
    if store.is_file():
        values = dotenv_values(store)
        store_public = values.get("API_PUB_KEY") or ""
        store_private = values.get("API_PRIV_KEY") or ""
        if store_public and store_private:
            return store_public, store_private, "store"

    return "", "", ""
