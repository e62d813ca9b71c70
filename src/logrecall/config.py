"""Settings loaded from <root>/config.toml."""

import logging
import os
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from logrecall.errors import ConfigError

log = logging.getLogger(__name__)

# Index location
DEFAULT_ROOT = Path.home() / ".local" / "share" / "logrecall"
ROOT_ENV_VAR = "LOGRECALL_HOME"
CONFIG_NAME = "config.toml"

# Log locations
CLAUDE_DIR = Path.home() / ".claude" / "projects"
CODEX_DIR = Path.home() / ".codex"


@dataclass(frozen=True)
class Settings:
    root: Path
    embeddings: bool = True
    auto_index_on_search: bool = True
    claude_dir: Path = CLAUDE_DIR
    codex_dir: Path = CODEX_DIR
    model: str = "all-MiniLM-L6-v2"
    embedding_batch_size: int = 64
    lexical_weight: float = 0.4
    semantic_weight: float = 0.6
    lock_timeout: float = 10.0
    sync_timeout: float | None = 60.0
    workers: int = 4

    @property
    def db_path(self) -> Path:
        return self.root / "index.db"

    @property
    def lock_path(self) -> Path:
        return self.root / "index.lock"


_BOOL_KEYS = {"embeddings", "auto_index_on_search"}
_PATH_KEYS = {"claude_dir", "codex_dir"}
_INT_KEYS = {"embedding_batch_size", "workers"}
_FLOAT_KEYS = {"lexical_weight", "semantic_weight", "lock_timeout", "sync_timeout"}


def resolve_root(root: Path | None = None) -> Path:
    """Pick the index root: explicit argument, then $LOGRECALL_HOME, then the default."""
    if root is None:
        env = os.environ.get(ROOT_ENV_VAR)
        root = Path(env) if env else DEFAULT_ROOT
    root = root.expanduser()
    if root.exists() and not root.is_dir():
        raise ConfigError(f"Index root is not a directory: {root}")
    return root


def _coerce(key: str, value: Any) -> Any:
    if key in _BOOL_KEYS:
        if not isinstance(value, bool):
            raise ConfigError(f"config.toml: '{key}' must be true or false")
        return value
    if key in _PATH_KEYS:
        if not isinstance(value, str) or not value:
            raise ConfigError(f"config.toml: '{key}' must be a path string")
        return Path(value).expanduser()
    if key in _INT_KEYS:
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ConfigError(f"config.toml: '{key}' must be a positive integer")
        return value
    if key in _FLOAT_KEYS:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise ConfigError(f"config.toml: '{key}' must be a non-negative number")
        # sync_timeout = 0 disables the time bound
        if key == "sync_timeout" and value == 0:
            return None
        return float(value)
    if key == "model":
        if not isinstance(value, str) or not value:
            raise ConfigError("config.toml: 'model' must be a non-empty string")
        return value
    raise ConfigError(f"config.toml: '{key}' cannot be set from the config file")


def load_settings(root: Path | None = None, **overrides: Any) -> Settings:
    """Load settings for an index root, applying keyword overrides last."""
    root = resolve_root(root)
    values: dict[str, Any] = {}

    config_path = root / CONFIG_NAME
    if config_path.exists():
        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {config_path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Cannot read {config_path}: {e}") from e

        known = {f.name for f in fields(Settings)} - {"root"}
        for key, value in data.items():
            if key not in known:
                log.warning("Ignoring unknown config key '%s' in %s", key, config_path)
                continue
            values[key] = _coerce(key, value)

    values.update({k: v for k, v in overrides.items() if v is not None})
    settings = Settings(root=root, **values)

    if settings.lexical_weight == 0 and settings.semantic_weight == 0:
        raise ConfigError("config.toml: lexical_weight and semantic_weight cannot both be 0")
    return settings
