"""Configuration management module.

Builds the SessionRequest and LauncherSettings for one invocation from three
layers, each producing a new frozen value:

    defaults  ->  command-line flags  ->  config file

The config file is TOML with flat ``key = value`` pairs. Every key must name
a field of SessionRequest or LauncherSettings:

    login_host = "minerva.hpc.mssm.edu"
    account = "acc_mylab"
    cores = 8
    memory = 8000
    binds = ["/sc/arion/projects/mylab"]

Security:
- Unknown keys are rejected rather than ignored
- Values are type-checked before use
"""

import logging
import types
from dataclasses import fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar, Union, get_args, get_origin, get_type_hints

try:
    import tomli  # type: ignore[import]
except ImportError:
    # Fallback for newer Python versions
    try:
        import tomllib as tomli  # type: ignore[import]
    except ImportError as e:
        raise ImportError("toml library not available. Install with: pip install tomli") from e

from hpcsession.errors import ConfigError
from hpcsession.models import LauncherSettings, SessionRequest

logger = logging.getLogger(__name__)

T = TypeVar("T", SessionRequest, LauncherSettings)


class ConfigManager:
    """Load the config file and layer values onto requests and settings."""

    DEFAULT_CONFIG_DIR = Path.home() / ".hpcsession"
    DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.toml"

    @classmethod
    def load_file(cls, custom_path: str | None = None) -> dict[str, Any]:
        """Read the config file.

        Args:
            custom_path: Explicit config file. Must exist when given.

        Returns:
            Flat mapping of config keys (empty when the default file is absent)

        Raises:
            ConfigError: If the file is unreadable, not TOML, or missing when explicit
        """
        if custom_path:
            path = Path(custom_path).expanduser()
            if not path.exists():
                raise ConfigError(f"Config file not found: {path}")
        else:
            path = cls.DEFAULT_CONFIG_FILE
            if not path.exists():
                logger.debug(f"No config file at {path}, using defaults")
                return {}

        try:
            with open(path, "rb") as f:
                data = tomli.load(f)
        except tomli.TOMLDecodeError as e:
            raise ConfigError(f"Failed to parse config file {path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read config file {path}: {e}") from e

        logger.debug(f"Loaded config from {path}: {sorted(data)}")
        return data

    @classmethod
    def split(cls, values: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
        """Partition flat config values into request and settings fields.

        Raises:
            ConfigError: On a key that names neither
        """
        request_fields = {f.name for f in fields(SessionRequest)}
        settings_fields = {f.name for f in fields(LauncherSettings)}

        request_values: dict[str, Any] = {}
        settings_values: dict[str, Any] = {}
        for key, value in values.items():
            if key in request_fields:
                request_values[key] = value
            elif key in settings_fields:
                settings_values[key] = value
            else:
                raise ConfigError(f"Unknown config key: {key}")
        return request_values, settings_values

    @classmethod
    def apply(cls, base: T, values: dict[str, Any]) -> T:
        """Return a copy of base with values applied.

        Values are converted to the field's type where the conversion is
        lossless (enum values from strings, tuples from lists).

        Raises:
            ConfigError: On an unknown key or a value of the wrong type
        """
        hints = get_type_hints(type(base))
        converted: dict[str, Any] = {}
        for key, value in values.items():
            if key not in hints:
                raise ConfigError(f"Unknown config key: {key}")
            converted[key] = _coerce(key, value, hints[key])
        return replace(base, **converted)

    @classmethod
    def resolve(
        cls,
        cli_request: dict[str, Any],
        cli_settings: dict[str, Any],
        config_path: str | None = None,
    ) -> tuple[SessionRequest, LauncherSettings]:
        """Layer defaults, command-line values and the config file.

        Args:
            cli_request: Request fields given on the command line
            cli_settings: Settings fields given on the command line
            config_path: Explicit config file, or None for the default location

        Returns:
            Tuple of (SessionRequest, LauncherSettings)
        """
        file_request, file_settings = cls.split(cls.load_file(config_path))

        request = cls.apply(cls.apply(SessionRequest(), cli_request), file_request)
        settings = cls.apply(cls.apply(LauncherSettings(), cli_settings), file_settings)
        return request, settings


def _coerce(key: str, value: Any, hint: Any) -> Any:
    """Check value against a field annotation, converting where lossless."""
    origin = get_origin(hint)

    if origin in (Union, types.UnionType):
        options = get_args(hint)
        if value is None and type(None) in options:
            return None
        for option in options:
            if option is type(None):
                continue
            try:
                return _coerce(key, value, option)
            except ConfigError:
                continue
        raise ConfigError(f"Invalid value for {key}: {value!r}")

    if origin is tuple:
        if not isinstance(value, list | tuple) or not all(isinstance(v, str) for v in value):
            raise ConfigError(f"{key} must be a list of strings, got {value!r}")
        return tuple(value)

    if isinstance(hint, type) and issubclass(hint, Enum):
        if isinstance(value, hint):
            return value
        try:
            return hint(value)
        except ValueError as e:
            choices = ", ".join(member.value for member in hint)
            raise ConfigError(f"{key} must be one of {choices}, got {value!r}") from e

    if hint is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{key} must be an integer, got {value!r}")
        return value

    if hint is bool:
        if not isinstance(value, bool):
            raise ConfigError(f"{key} must be true or false, got {value!r}")
        return value

    if hint is str:
        if not isinstance(value, str):
            raise ConfigError(f"{key} must be a string, got {value!r}")
        return value

    raise ConfigError(f"Unsupported config key type for {key}")


__all__ = ["ConfigError", "ConfigManager"]
