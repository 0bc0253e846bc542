from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

from platformdirs import user_config_path, user_data_path

from .errors import ConfigError

APP_NAME = "relpm"
DEFAULT_API_URL = "https://api.github.com"
DEFAULT_TIMEOUT_S = 30.0
DEFAULT_RETRIES = 3
DEFAULT_BACKOFF_S = 0.5
DEFAULT_CACHE_KEEP = 2

LIBRARY_FILENAME = "library.json"
REGISTRY_FILENAME = "registry.json"
CACHE_DIRNAME = "cache"
PACKAGES_DIRNAME = "packages"


@dataclass(frozen=True)
class Config:
    api_url: str = DEFAULT_API_URL
    token: str | None = None
    timeout_s: float = DEFAULT_TIMEOUT_S
    retries: int = DEFAULT_RETRIES  # extra attempts for transient network errors
    backoff_s: float = DEFAULT_BACKOFF_S
    cache_keep: int = DEFAULT_CACHE_KEEP  # cached versions kept per package, besides installed ones
    data_dir: str | None = None
    registry_path: str | None = None

    @property
    def data_path(self) -> Path:
        if self.data_dir:
            return Path(self.data_dir).expanduser()
        return user_data_path(APP_NAME)

    @property
    def library_path(self) -> Path:
        return self.data_path / LIBRARY_FILENAME

    @property
    def cache_path(self) -> Path:
        return self.data_path / CACHE_DIRNAME

    @property
    def packages_path(self) -> Path:
        return self.data_path / PACKAGES_DIRNAME

    @property
    def registry_file(self) -> Path:
        if self.registry_path:
            return Path(self.registry_path).expanduser()
        return self.data_path / REGISTRY_FILENAME


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("RELPM_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path(APP_NAME) / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Could not read config file {path}: {e}") from e
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return Config(**filtered)  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    # owner-only from creation: the file holds the token
    tmp.unlink(missing_ok=True)
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, stat.S_IRUSR | stat.S_IWUSR)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n")
    tmp.replace(path)

    return path


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {value!r}") from e


def apply_env(cfg: Config) -> Config:
    """Environment overrides config; CLI flags are applied on top by the caller."""
    return replace(
        cfg,
        api_url=os.getenv("RELPM_API_URL") or cfg.api_url,
        token=os.getenv("RELPM_TOKEN") or os.getenv("GITHUB_TOKEN") or cfg.token,
        timeout_s=_env_float("RELPM_TIMEOUT_S", cfg.timeout_s),
        data_dir=os.getenv("RELPM_DATA_DIR") or cfg.data_dir,
        registry_path=os.getenv("RELPM_REGISTRY") or cfg.registry_path,
    )


def redact_token(token: str | None) -> str | None:
    if not token:
        return token
    if len(token) <= 10:
        return token[:2] + "..." + token[-2:]
    return token[:6] + "..." + token[-4:]
