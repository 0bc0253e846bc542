from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable
from urllib.parse import urlsplit

from .errors import ConfigError


@dataclass(frozen=True)
class Package:
    id: str
    name: str
    url: str
    asset_pattern: str | None = None

    @property
    def repo(self) -> str:
        """``owner/repo`` for the source repository, from either form of ``url``."""
        raw = self.url.strip()
        if raw.startswith(("http://", "https://")):
            raw = urlsplit(raw).path
        parts = [p for p in raw.strip("/").split("/") if p]
        if len(parts) < 2:
            raise ConfigError(f"Package {self.id!r} has an invalid repository reference: {self.url!r}")
        repo = parts[1][:-4] if parts[1].endswith(".git") else parts[1]
        return f"{parts[0]}/{repo}"

    def __str__(self) -> str:
        return self.id


def wildcard_to_regex(pattern: str) -> str:
    return "^" + re.escape(pattern).replace(r"\*", ".*").replace(r"\?", ".") + "$"


def _parse_package(raw: Any) -> Package | None:
    if not isinstance(raw, dict):
        return None
    pid = raw.get("id")
    url = raw.get("url")
    if not isinstance(pid, str) or not pid.strip() or not isinstance(url, str) or not url.strip():
        return None
    name = raw.get("name")
    pattern = raw.get("asset_pattern")
    return Package(
        id=pid.strip(),
        name=name.strip() if isinstance(name, str) and name.strip() else pid.strip(),
        url=url.strip(),
        asset_pattern=pattern.strip() if isinstance(pattern, str) and pattern.strip() else None,
    )


class Registry:
    def __init__(self, packages: Iterable[Package] = ()) -> None:
        self._packages: dict[str, Package] = {}
        for package in packages:
            self._packages[package.id] = package

    @classmethod
    def load(cls, path: Path) -> "Registry":
        if not path.exists():
            return cls()
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Could not read package registry {path}: {e}") from e
        items = raw.get("packages") if isinstance(raw, dict) else raw
        if not isinstance(items, list):
            raise ConfigError(f"Package registry {path} must contain a list of packages.")
        return cls(p for item in items if (p := _parse_package(item)) is not None)

    def values(self) -> list[Package]:
        return [self._packages[k] for k in sorted(self._packages)]

    def find_by_name(self, name: str) -> Package | None:
        """Exact lookup by id first, then by display name."""
        if name in self._packages:
            return self._packages[name]
        for package in self.values():
            if package.name == name:
                return package
        return None

    def search(self, pattern: str) -> list[Package]:
        if not pattern:
            pattern = "*"
        regex = re.compile(wildcard_to_regex(pattern))
        return [p for p in self.values() if regex.match(p.id) or regex.match(p.name)]
