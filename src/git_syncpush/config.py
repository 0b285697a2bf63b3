import argparse
import logging
import os
import re
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from .constants import DEFAULT_MAX_LOG_SIZE, ENV_PREFIX
from .errors import ConfigError


class Secret:
    """Holds a sensitive string and keeps it out of logs and reprs.

    The value is only reachable through `reveal()`; every other rendering of
    the object is masked.
    """

    __slots__ = ("_value",)

    MASK = "********"

    def __init__(self, value: str):
        self._value = value

    def reveal(self) -> str:
        """Returns the plaintext value."""
        return self._value

    def redact(self, text: str) -> str:
        """Masks every occurrence of the secret inside `text`."""
        if not self._value:
            return text
        return text.replace(self._value, self.MASK)

    def __str__(self) -> str:
        return self.MASK

    def __repr__(self) -> str:
        return f"Secret('{self.MASK}')"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Secret):
            return NotImplemented
        return self._value == other._value

    def __hash__(self) -> int:
        return hash(self._value)


def mask_url(url: str) -> str:
    """Removes `user:password@` userinfo from a remote address.

    Args:
        url (str): A remote address (HTTPS, SSH URL or scp-like syntax).

    Returns:
        str: The address with any credentials replaced by a mask.
    """
    if "://" not in url:
        # scp-like syntax (git@host:path) carries no password.
        return url
    parts = urlsplit(url)
    if parts.password is None:
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    netloc = f"{parts.username}:{Secret.MASK}@{host}"
    return urlunsplit(parts._replace(netloc=netloc))


def parse_size(value: int | str) -> int:
    """Converts human-readable size strings (e.g., '100MB') to bytes."""
    if isinstance(value, int):
        return value
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([kmg]b?)$", str(value).strip().lower())
    if not match:
        raise ValueError(f"Invalid size format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "k": 1024,
        "kb": 1024,
        "m": 1024**2,
        "mb": 1024**2,
        "g": 1024**3,
        "gb": 1024**3,
    }
    return int(num * multiplier[unit])


_DURATION_UNITS = {
    "ms": 0.001,
    "msec": 0.001,
    "millisecond": 0.001,
    "s": 1,
    "sec": 1,
    "second": 1,
    "m": 60,
    "min": 60,
    "minute": 60,
    "h": 3600,
    "hr": 3600,
    "hour": 3600,
    "d": 86400,
    "day": 86400,
}

_DURATION_TOKEN = re.compile(r"(\d+(?:\.\d+)?)\s*([a-z]*)")


def parse_duration(value: int | float | str) -> float:
    """Converts human-readable durations (e.g., '30s', '1m 30s', '2h') to seconds.

    Bare numbers are interpreted as seconds. Compound durations are summed.

    Args:
        value (int | float | str): The duration to parse.

    Returns:
        float: The duration in seconds.

    Raises:
        ValueError: If the value is malformed or not strictly positive.
    """
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip().lower()
        tokens = _DURATION_TOKEN.findall(text)
        leftover = _DURATION_TOKEN.sub("", text).replace(",", "").strip()
        if not tokens or leftover:
            raise ValueError(f"Invalid duration format '{value}'")

        seconds = 0.0
        for num, unit in tokens:
            unit = unit or "s"
            if unit not in _DURATION_UNITS:
                unit = unit.removesuffix("s")
            if unit not in _DURATION_UNITS:
                raise ValueError(f"Invalid duration format '{value}'")
            seconds += float(num) * _DURATION_UNITS[unit]

    if seconds <= 0:
        raise ValueError(f"Duration must be positive, got '{value}'")
    return seconds


def parse_bind(value: str) -> tuple[str, int]:
    """Splits a bind address such as '0.0.0.0:8080' or '[::1]:8080'.

    An empty host (':8080') binds on all IPv4 interfaces.
    """
    host, sep, port_str = str(value).strip().rpartition(":")
    if not sep or not port_str.isdigit():
        raise ValueError(f"Invalid bind address '{value}' (expected host:port)")
    port = int(port_str)
    if not 0 <= port <= 65535:
        raise ValueError(f"Invalid port in bind address '{value}'")
    host = host.removeprefix("[").removesuffix("]") or "0.0.0.0"
    return host, port


@dataclass
class LoggingConfig:
    """Logging settings.

    Attributes:
        level (str): Minimum level name for the application logger.
        file (Path | None): Optional log file, rotated by size.
        max_log_size (int): Max bytes for the log file before rotation.
    """

    level: str = "INFO"
    file: Path | None = None
    max_log_size: int = DEFAULT_MAX_LOG_SIZE


@dataclass
class Settings:
    """Startup settings for the agent.

    Attributes:
        repo (str): Address of the remote repository.
        path (Path): Local path where the working tree is materialized.
        period (float): Seconds between synchronization cycles.
        author_name (str): Name used as both author and committer.
        author_email (str): Email used as both author and committer.
        username (str): Remote username for basic authentication.
        password (Secret): Remote password; never rendered in plaintext.
        http_bind (str): Bind address of the readiness probe server.
        logging (LoggingConfig): Logging settings.
        warnings (list[str]): Problems found while loading that were
            tolerated. They are reported once logging is configured.
    """

    repo: str
    path: Path
    period: float
    author_name: str
    author_email: str
    username: str
    password: Secret
    http_bind: str
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    warnings: list[str] = field(default_factory=list, compare=False)

    REQUIRED = (
        "repo",
        "path",
        "period",
        "author_name",
        "author_email",
        "username",
        "password",
        "http_bind",
    )

    @classmethod
    def load(
        cls, args: argparse.Namespace, environ: Mapping[str, str] | None = None
    ) -> "Settings":
        """Builds settings from flags, environment and an optional TOML file.

        Precedence, highest first: command-line flags, `GITSYNCPUSH_*`
        environment variables, the `[sync]`/`[logging]` sections of the config
        file, built-in defaults.

        Args:
            args (argparse.Namespace): Parsed flags; unset flags are None.
            environ (Mapping[str, str] | None): Environment to read. Defaults
                to `os.environ`.

        Returns:
            Settings: The validated settings.

        Raises:
            ConfigError: If a required setting is missing or a value is invalid.
        """
        environ = os.environ if environ is None else environ

        warnings: list[str] = []
        file_data: dict[str, dict[str, Any]] = {"sync": {}, "logging": {}}
        config_path = getattr(args, "config", None) or environ.get(
            f"{ENV_PREFIX}CONFIG"
        )
        if config_path:
            file_data = _read_config_file(Path(config_path).expanduser(), warnings)

        def resolve(name: str, section: str = "sync", flag: str | None = None) -> Any:
            value = getattr(args, flag or name, None)
            if value is None:
                value = environ.get(f"{ENV_PREFIX}{(flag or name).upper()}")
            if value is None:
                value = file_data[section].get(name)
            return value

        values = {name: resolve(name) for name in cls.REQUIRED}
        missing = [name for name, value in values.items() if value in (None, "")]
        if missing:
            flags = ", ".join(f"--{name.replace('_', '-')}" for name in missing)
            raise ConfigError(f"Missing required settings: {flags}")

        try:
            period = parse_duration(values["period"])
            parse_bind(values["http_bind"])
        except ValueError as e:
            raise ConfigError(str(e)) from e

        log_config = LoggingConfig()
        updates: dict[str, Any] = {}
        if (level := resolve("level", "logging", flag="log_level")) is not None:
            level = str(level).upper()
            if not isinstance(logging.getLevelName(level), int):
                raise ConfigError(f"Invalid log level '{level}'")
            updates["level"] = level
        if (log_file := resolve("file", "logging", flag="log_file")) is not None:
            updates["file"] = Path(log_file).expanduser()
        if (size := file_data["logging"].get("max_log_size")) is not None:
            try:
                updates["max_log_size"] = parse_size(size)
            except ValueError as e:
                warnings.append(
                    f"Config error in [logging].max_log_size: {e}. "
                    "Falling back to default."
                )
        log_config = replace(log_config, **updates)

        return cls(
            repo=str(values["repo"]),
            path=Path(values["path"]).expanduser(),
            period=period,
            author_name=str(values["author_name"]),
            author_email=str(values["author_email"]),
            username=str(values["username"]),
            password=Secret(str(values["password"])),
            http_bind=str(values["http_bind"]),
            logging=log_config,
            warnings=warnings,
        )

    def __repr__(self) -> str:
        return (
            f"Settings(repo={mask_url(self.repo)!r}, path={str(self.path)!r}, "
            f"period={self.period!r}, author_name={self.author_name!r}, "
            f"author_email={self.author_email!r}, username={self.username!r}, "
            f"password={self.password!r}, http_bind={self.http_bind!r}, "
            f"logging={self.logging!r})"
        )


_KNOWN_KEYS = {
    "sync": set(Settings.REQUIRED),
    "logging": {"level", "file", "max_log_size"},
}


def _read_config_file(
    path: Path, warnings: list[str]
) -> dict[str, dict[str, Any]]:
    """Parses the TOML config file into its known sections.

    Unknown sections and keys are ignored, with a message added to
    `warnings`.

    Args:
        path (Path): Path to the TOML file.
        warnings (list[str]): Collects messages about ignored entries.

    Returns:
        dict[str, dict[str, Any]]: The `sync` and `logging` sections.

    Raises:
        ConfigError: If the file cannot be read, is not valid TOML, or a known
            section is not a table.
    """
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Config syntax error in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Could not read config file {path}: {e}") from e

    unknown_sections = set(data) - set(_KNOWN_KEYS)
    if unknown_sections:
        warnings.append(
            f"Unknown config sections in {path}: "
            f"{', '.join(sorted(unknown_sections))}. Ignoring."
        )

    sections: dict[str, dict[str, Any]] = {}
    for section, valid_keys in _KNOWN_KEYS.items():
        updates = data.get(section, {})
        if not isinstance(updates, dict):
            raise ConfigError(f"Config error in {path}: [{section}] must be a table")
        invalid_keys = set(updates) - valid_keys
        if invalid_keys:
            warnings.append(
                f"Unknown config keys in [{section}]: "
                f"{', '.join(sorted(invalid_keys))}. Ignoring."
            )
        sections[section] = {k: v for k, v in updates.items() if k in valid_keys}
    return sections
