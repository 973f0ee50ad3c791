"""Configuration manager for the Cortex ``config.toml`` file.

The file only needs to hold the keys a user changed: anything missing
falls back to the schema defaults, and ``CORTEX_<SECTION>__<KEY>``
environment variables fill in keys the file does not set.
"""

from __future__ import annotations

import logging
import os
import platform
import stat
import tomllib
from pathlib import Path
from typing import Any

import tomli_w

from cortex.config.defaults import DEFAULT_CONFIG
from cortex.config.schema import CortexConfig
from cortex.errors import CortexError

logger = logging.getLogger(__name__)

_CONFIG_DIR_ENV = "CORTEX_CONFIG_DIR"
_DEFAULT_CONFIG_DIR = "~/.config/cortex"
_CONFIG_FILE = "config.toml"

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


class ConfigManager:
    """Reads, edits and locates the Cortex config file.

    The directory is ``$CORTEX_CONFIG_DIR`` when set, otherwise
    ``~/.config/cortex``. Writes are ``chmod 600`` on Linux and macOS since
    the file may hold a redis password or a webhook URL with a token.
    """

    def __init__(self, config_dir: Path | None = None) -> None:
        if config_dir is None:
            config_dir = Path(os.environ.get(_CONFIG_DIR_ENV, _DEFAULT_CONFIG_DIR)).expanduser()
        self._config_dir = config_dir

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def load(self) -> CortexConfig:
        """Build the effective configuration.

        An unreadable file falls back to defaults; a readable file with
        invalid values raises pydantic's ``ValidationError``.
        """
        try:
            raw = self._read_file()
        except CortexError as exc:
            logger.warning("%s; using defaults", exc.message)
            raw = {}
        return CortexConfig(**raw)

    def init(self, force: bool = False) -> bool:
        """Write a config file holding every default value.

        Returns False, leaving the file alone, if one already exists and
        *force* is not set.
        """
        if self.exists() and not force:
            return False
        self._write(DEFAULT_CONFIG)
        logger.info("Wrote default config to %s", self.get_config_path())
        return True

    def set_value(self, dotted_key: str, raw_value: str) -> CortexConfig:
        """Set ``section.key`` to *raw_value* in the config file.

        The value is coerced to the type of the key's default and the whole
        configuration is validated before anything is written.

        Raises:
            CortexError: unknown key, uncoercible value, or unreadable file.
            pydantic.ValidationError: the new value breaks a config invariant.
        """
        section, _, key = dotted_key.partition(".")
        defaults = DEFAULT_CONFIG.get(section)
        if defaults is None or key not in defaults:
            raise CortexError(f"Unknown config key: {dotted_key}", {"key": dotted_key})

        value = _coerce(raw_value, defaults[key], dotted_key)
        data = _deep_merge(self._read_file(), {section: {key: value}})
        config = CortexConfig(**data)
        self._write(data)
        logger.info("Config %s set in %s", dotted_key, self.get_config_path())
        return config

    def exists(self) -> bool:
        """Return ``True`` if the config file exists on disk."""
        return self.get_config_path().is_file()

    def get_config_path(self) -> Path:
        """Return the full path to the config TOML file."""
        return self._config_dir / _CONFIG_FILE

    # ------------------------------------------------------------------
    # File I/O
    # ------------------------------------------------------------------

    def _read_file(self) -> dict[str, Any]:
        path = self.get_config_path()
        if not path.is_file():
            logger.debug("Config file not found at %s", path)
            return {}
        try:
            with open(path, "rb") as fh:
                return tomllib.load(fh)
        except (tomllib.TOMLDecodeError, OSError) as exc:
            raise CortexError(f"Failed to read config at {path}: {exc}") from exc

    def _write(self, data: dict[str, Any]) -> None:
        path = self.get_config_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as fh:
            tomli_w.dump(data, fh)
        if platform.system() in ("Linux", "Darwin"):
            os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)  # 0o600


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _coerce(raw: str, default: object, dotted_key: str) -> object:
    """Convert CLI text to the type of *default*."""
    text = raw.strip()
    try:
        if isinstance(default, bool):
            if text.lower() in _TRUE:
                return True
            if text.lower() in _FALSE:
                return False
            raise ValueError(text)
        if isinstance(default, int):
            return int(text)
        if isinstance(default, float):
            return float(text)
    except ValueError as exc:
        expected = type(default).__name__
        raise CortexError(
            f"Invalid value for {dotted_key}: {raw!r} (expected {expected})",
            {"key": dotted_key},
        ) from exc
    return raw


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *override* into a copy of *base*.

    Nested dicts are merged rather than replaced so that setting one key
    keeps the rest of its section.
    """
    merged: dict[str, Any] = {}
    for key in {*base, *override}:
        base_val = base.get(key)
        over_val = override.get(key)
        if isinstance(base_val, dict) and isinstance(over_val, dict):
            merged[key] = _deep_merge(base_val, over_val)
        elif key in override:
            merged[key] = over_val
        else:
            merged[key] = base_val
    return merged
