from __future__ import annotations

import json
import logging
import re
import shutil
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable

from .errors import DownloadFailureError, RelpmError
from .locking import KeyedLocks, file_lock, write_json_atomic
from .versions import sort_newest_first, versions_equal

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "manifest.json"
SCHEMA_VERSION = 1

FetchFn = Callable[[Path], Awaitable[None]]

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._+-]")


def safe_name(value: str) -> str:
    cleaned = _UNSAFE_RE.sub("_", value.strip())
    if cleaned in ("", ".", ".."):
        cleaned = "_" + cleaned
    return cleaned


@dataclass(frozen=True)
class CacheEntry:
    package_id: str
    version: str
    cached_asset_path: str
    source_asset_name: str
    source_url: str | None = None
    cached_at: str | None = None

    @property
    def key(self) -> str:
        return f"{self.package_id}@{self.version}"


def _parse_entry(raw: Any) -> CacheEntry | None:
    if not isinstance(raw, dict):
        return None
    fields = ("package_id", "version", "cached_asset_path", "source_asset_name")
    if not all(isinstance(raw.get(f), str) and raw.get(f) for f in fields):
        return None
    source_url = raw.get("source_url")
    cached_at = raw.get("cached_at")
    return CacheEntry(
        package_id=raw["package_id"],
        version=raw["version"],
        cached_asset_path=raw["cached_asset_path"],
        source_asset_name=raw["source_asset_name"],
        source_url=source_url if isinstance(source_url, str) else None,
        cached_at=cached_at if isinstance(cached_at, str) else None,
    )


class AssetCache:
    """
    Downloaded release assets, keyed by (package id, version).

    Files live at ``<root>/<package>/<version>/<asset name>``; ``manifest.json``
    records where each one came from. Entries are written once and only ever
    removed by :meth:`remove`, :meth:`prune` or :meth:`clear`.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.manifest_path = root / MANIFEST_FILENAME
        self.lock_path = root / (MANIFEST_FILENAME + ".lock")
        self._locks = KeyedLocks()

    def _read(self) -> dict[str, CacheEntry]:
        if not self.manifest_path.exists():
            return {}
        try:
            raw = json.loads(self.manifest_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            # everything here can be downloaded again
            logger.warning("Ignoring unreadable cache manifest %s: %s", self.manifest_path, e)
            return {}
        items = raw.get("entries") if isinstance(raw, dict) else None
        if not isinstance(items, dict):
            return {}
        return {e.key: e for item in items.values() if (e := _parse_entry(item)) is not None}

    def _write(self, entries: dict[str, CacheEntry]) -> None:
        payload = {
            "schema_version": SCHEMA_VERSION,
            "entries": {k: asdict(entries[k]) for k in sorted(entries)},
        }
        write_json_atomic(self.manifest_path, json.dumps(payload, indent=2, sort_keys=True) + "\n")

    def entry(self, package_id: str, version: str) -> CacheEntry | None:
        found = self._read().get(f"{package_id}@{version}")
        if found is None:
            return None
        if not Path(found.cached_asset_path).is_file():
            logger.debug("Cached file for %s is gone, treating as a miss", found.key)
            return None
        return found

    def has(self, package_id: str, version: str) -> bool:
        return self.entry(package_id, version) is not None

    def entries(self, package_id: str | None = None) -> list[CacheEntry]:
        found = list(self._read().values())
        if package_id is not None:
            found = [e for e in found if e.package_id == package_id]
        return sorted(found, key=lambda e: e.key)

    async def ensure(
        self,
        package_id: str,
        version: str,
        fetch: FetchFn,
        *,
        asset_name: str,
        source_url: str | None = None,
    ) -> Path:
        """
        Return the cached file for ``(package_id, version)``, calling ``fetch``
        to download it on a miss.

        ``fetch`` receives a temporary path to write to. The file only becomes
        visible under its final name (and in the manifest) once ``fetch``
        returns; on error or cancellation the partial file is removed.
        Concurrent calls for the same key in this process share one download.
        """
        async with self._locks.hold((package_id, version)):
            hit = self.entry(package_id, version)
            if hit is not None:
                logger.debug("Cache hit for %s", hit.key)
                return Path(hit.cached_asset_path)

            target_dir = self.root / safe_name(package_id) / safe_name(version)
            name = safe_name(Path(asset_name).name)
            final = target_dir / name
            tmp = target_dir / f".{name}.{uuid.uuid4().hex}.part"
            try:
                try:
                    target_dir.mkdir(parents=True, exist_ok=True)
                    await fetch(tmp)
                    if not tmp.is_file():
                        raise DownloadFailureError(f"Download of {asset_name} produced no file.")
                    tmp.replace(final)
                except RelpmError:
                    raise
                except OSError as e:
                    raise DownloadFailureError(f"Could not store {asset_name} in the cache: {e}") from e
            except BaseException:
                tmp.unlink(missing_ok=True)
                raise

            entry = CacheEntry(
                package_id=package_id,
                version=version,
                cached_asset_path=str(final),
                source_asset_name=asset_name,
                source_url=source_url,
                cached_at=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            )
            try:
                with file_lock(self.lock_path):
                    entries = self._read()
                    entries[entry.key] = entry
                    self._write(entries)
            except OSError as e:
                raise DownloadFailureError(f"Could not record {asset_name} in the cache manifest: {e}") from e
            logger.debug("Cached %s at %s", entry.key, final)
            return final

    def _delete_files(self, entry: CacheEntry) -> None:
        path = Path(entry.cached_asset_path)
        path.unlink(missing_ok=True)
        version_dir = path.parent
        for d in (version_dir, version_dir.parent):
            if d == self.root or not d.is_dir():
                continue
            try:
                next(d.iterdir())
            except StopIteration:
                d.rmdir()

    def remove(self, package_id: str, version: str) -> bool:
        with file_lock(self.lock_path):
            entries = self._read()
            entry = entries.pop(f"{package_id}@{version}", None)
            if entry is None:
                return False
            self._delete_files(entry)
            self._write(entries)
        return True

    def prune(self, package_id: str, *, keep: int, protect: Iterable[str] = ()) -> list[CacheEntry]:
        """
        Drop cached versions of ``package_id`` beyond the ``keep`` newest,
        never touching versions listed in ``protect`` (those still installed).
        """
        protected = [v for v in protect if v]
        removed: list[CacheEntry] = []
        with file_lock(self.lock_path):
            entries = self._read()
            mine = sort_newest_first(
                [e for e in entries.values() if e.package_id == package_id],
                key=lambda e: e.version,
            )
            for entry in mine[max(keep, 0):]:
                if any(versions_equal(entry.version, v) for v in protected):
                    continue
                self._delete_files(entry)
                entries.pop(entry.key, None)
                removed.append(entry)
            if removed:
                self._write(entries)
        for entry in removed:
            logger.info("Pruned cached %s", entry.key)
        return removed

    def clear(self) -> int:
        with file_lock(self.lock_path):
            count = len(self._read())
            for child in self.root.iterdir():
                if child in (self.lock_path,):
                    continue
                if child.is_dir():
                    shutil.rmtree(child)
                else:
                    child.unlink()
        return count
