"""
Configuration management for the MongoDB slow queries plugin.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults, password from MONGODB_PASSWORD)
2. YAML config file (/etc/mongodb-slow-queries/config.yml or --config path)
3. Environment variables (MONGODB_SLOW_QUERIES_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)

The database name has no default. load_config() refuses to return a
configuration without one, so a missing database is reported before any
connection attempt is made.
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from mongodb_slow_queries.errors import InvalidArgumentError

DEFAULT_CONFIG_PATH = Path("/etc/mongodb-slow-queries/config.yml")
DEFAULT_ENV_PREFIX = "MONGODB_SLOW_QUERIES_"
PASSWORD_ENV_VAR = "MONGODB_PASSWORD"

# Characters pymongo refuses in database names.
_INVALID_DATABASE_CHARS = (" ", ".", "/", "\\", '"', "$", "\x00")

# =============================================================================
# MongoDB Connection Configuration
# =============================================================================


def _default_password() -> str:
    """Return the password from the MONGODB_PASSWORD environment variable."""
    return os.environ.get(PASSWORD_ENV_VAR, "")


class MongoDBConfig(BaseModel):
    """Connection parameters for the monitored MongoDB instance.

    Attributes:
        host: Hostname or address of the mongod/mongos.
        port: TCP port.
        username: Optional username.
        password: Optional password.
        database: Database whose system.profile collection is sampled.
    """

    model_config = ConfigDict(frozen=True)

    host: str = Field(
        default="localhost",
        description="Hostname",
    )
    port: int = Field(
        default=27017,
        description="Port",
        ge=1,
        le=65535,
    )
    username: str = Field(
        default="",
        description="Username",
    )
    password: str = Field(
        default_factory=_default_password,
        description="Password (defaults to $MONGODB_PASSWORD)",
        repr=False,
    )
    database: str = Field(
        default="",
        description="Database name",
    )

    @field_validator("database")
    @classmethod
    def validate_database(cls, v: str) -> str:
        """Reject names MongoDB does not accept as database names."""
        invalid = [c for c in _INVALID_DATABASE_CHARS if c in v]
        if invalid:
            listed = ", ".join(map(repr, invalid))
            raise ValueError(f"Invalid database name: {v!r} contains {listed}")
        return v

    @property
    def has_credentials(self) -> bool:
        """Whether both username and password are set.

        A lone username or a lone password is ignored and the connection is
        made anonymously.
        """
        return bool(self.username) and bool(self.password)


# =============================================================================
# Plugin Configuration
# =============================================================================


class PluginConfig(BaseModel):
    """Mackerel plugin settings.

    Attributes:
        metric_key_prefix: Prefix for metric and graph names.
        timeout_seconds: Upper bound on one whole collection.
        window_seconds: Width of the sampling window.
    """

    model_config = ConfigDict(frozen=True)

    metric_key_prefix: str = Field(
        default="mongodb",
        description="Metric key prefix",
    )
    timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for connect, ping, query and decode combined",
        gt=0,
        le=300,
    )
    window_seconds: int = Field(
        default=60,
        description="Sampling window width in seconds",
        gt=0,
    )

    @field_validator("metric_key_prefix")
    @classmethod
    def validate_metric_key_prefix(cls, v: str) -> str:
        """Fall back to the default prefix when an empty one is given."""
        v = v.strip()
        return v or "mongodb"


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stderr: Whether to log to stderr.
        json_format: Whether to emit JSON records.
    """

    model_config = ConfigDict(frozen=True)

    level: str = Field(
        default="warning",
        description="Log level: debug, info, warn, error",
    )
    log_to_stderr: bool = Field(
        default=True,
        description="Whether to log to stderr",
    )
    json_format: bool = Field(
        default=True,
        description="Emit JSON-formatted log records",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        mongodb: Connection parameters.
        plugin: Plugin output and timing settings.
        logging: Logging configuration.
    """

    model_config = ConfigDict(frozen=True)

    mongodb: MongoDBConfig = Field(
        default_factory=MongoDBConfig,
        description="MongoDB connection parameters",
    )
    plugin: PluginConfig = Field(
        default_factory=PluginConfig,
        description="Plugin settings",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys are separated by a double underscore, for example
    ``MONGODB_SLOW_QUERIES_MONGODB__HOST=db1``. Values are kept as strings;
    the Pydantic models coerce them to their field types.

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = value

    return result


def build_arg_parser() -> argparse.ArgumentParser:
    """Build the command-line parser.

    Connection flags default to None so that only flags given on the command
    line override the lower configuration layers.
    """
    parser = argparse.ArgumentParser(
        prog="mackerel-plugin-mongodb-slow-queries",
        description="Report MongoDB slow query statistics to Mackerel",
    )

    parser.add_argument("--config", "-c", type=str, help="Path to configuration file")
    parser.add_argument(
        "--metric-key-prefix",
        type=str,
        help="Metric key prefix (default: mongodb)",
    )
    parser.add_argument("--host", type=str, help="Hostname (default: localhost)")
    parser.add_argument("--port", type=str, help="Port (default: 27017)")
    parser.add_argument("--username", type=str, help="Username")
    parser.add_argument(
        "--password",
        type=str,
        help=f"Password (default: ${PASSWORD_ENV_VAR})",
    )
    parser.add_argument("--database", type=str, help="Database name (required)")
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    return parser


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """
    Parse command-line arguments into a configuration dictionary.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Dictionary with parsed arguments.
    """
    parsed = build_arg_parser().parse_args(args)

    result: dict[str, Any] = {}

    if parsed.config:
        result["_config_path"] = parsed.config

    mongodb = {
        field: getattr(parsed, field)
        for field in ("host", "port", "username", "password", "database")
        if getattr(parsed, field) is not None
    }
    if mongodb:
        result["mongodb"] = mongodb

    if parsed.metric_key_prefix is not None:
        result["plugin"] = {"metric_key_prefix": parsed.metric_key_prefix}

    if parsed.log_level:
        result["logging"] = {"level": parsed.log_level}

    if parsed.debug:
        result.setdefault("logging", {})["level"] = "debug"

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_args: list[str] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, uses the CLI
            --config argument or the default path when it exists.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Fully configured AppConfig instance with a database name.

    Raises:
        InvalidArgumentError: If a source cannot be read, a value is invalid,
            or no database name was supplied.

    Example:
        >>> config = load_config(cli_args=["--database", "app"])
        >>> config.mongodb.host
        'localhost'
    """
    config_dict: dict[str, Any] = {}

    cli_config = _parse_cli_args(cli_args)

    if config_path is None:
        if "_config_path" in cli_config:
            config_path = Path(cli_config.pop("_config_path"))
        elif DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    else:
        cli_config.pop("_config_path", None)
        config_path = Path(config_path)

    if config_path is not None:
        try:
            yaml_config = _load_yaml_config(config_path)
        except (OSError, yaml.YAMLError) as e:
            raise InvalidArgumentError(
                f"Cannot read configuration file: {e}",
                details={"path": str(config_path)},
            ) from e
        config_dict = _deep_merge(config_dict, yaml_config)

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)

    try:
        config = AppConfig(**config_dict)
    except ValidationError as e:
        raise InvalidArgumentError(
            f"Invalid configuration: {e.error_count()} error(s)",
            details={
                "errors": [
                    {"loc": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
                    for err in e.errors()
                ]
            },
        ) from e

    if not config.mongodb.database:
        raise InvalidArgumentError("Database name is required")

    return config
