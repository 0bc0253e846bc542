from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

from .errors import LibraryCorruptionError
from .locking import file_lock, write_json_atomic

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def normalize_path(path: str | Path) -> str:
    return str(Path(path).expanduser().resolve())


@dataclass(frozen=True)
class SlotManifest:
    full_path: str
    version: str | None  # None: files removed by an update that did not finish

    @property
    def is_broken(self) -> bool:
        return self.version is None


@dataclass
class PackageModel:
    key: str
    slots: dict[int, SlotManifest] = field(default_factory=dict)

    def slot_at(self, path: str | Path) -> int | None:
        wanted = normalize_path(path)
        for idx, manifest in sorted(self.slots.items()):
            if manifest.full_path == wanted:
                return idx
        return None


def _parse_packages(raw: Any, *, path: Path) -> dict[str, PackageModel]:
    if not isinstance(raw, dict) or not isinstance(raw.get("packages", {}), dict):
        raise LibraryCorruptionError(f"Library manifest {path} has an unexpected structure.")

    packages: dict[str, PackageModel] = {}
    for key, item in raw.get("packages", {}).items():
        slots_raw = item.get("slots") if isinstance(item, dict) else None
        if not isinstance(slots_raw, list):
            raise LibraryCorruptionError(f"Library manifest {path}: package {key!r} has no slot list.")
        model = PackageModel(key=key)
        for slot_raw in slots_raw:
            if not isinstance(slot_raw, dict):
                raise LibraryCorruptionError(f"Library manifest {path}: invalid slot entry for {key!r}.")
            idx = slot_raw.get("slot")
            full_path = slot_raw.get("full_path")
            version = slot_raw.get("version")
            if not isinstance(idx, int) or idx < 0 or not isinstance(full_path, str):
                raise LibraryCorruptionError(f"Library manifest {path}: invalid slot entry for {key!r}.")
            if version is not None and not isinstance(version, str):
                raise LibraryCorruptionError(f"Library manifest {path}: invalid version for {key!r}.")
            model.slots[idx] = SlotManifest(full_path=full_path, version=version)
        if model.slots:
            packages[key] = model
    return packages


def _first_free(used: dict[int, SlotManifest]) -> int:
    idx = 0
    while idx in used:
        idx += 1
    return idx


def _dump_packages(packages: dict[str, PackageModel]) -> str:
    payload: dict[str, Any] = {"schema_version": SCHEMA_VERSION, "packages": {}}
    for key in sorted(packages):
        model = packages[key]
        payload["packages"][key] = {
            "slots": [
                {"slot": idx, "full_path": m.full_path, "version": m.version}
                for idx, m in sorted(model.slots.items())
            ]
        }
    return json.dumps(payload, indent=2, sort_keys=True) + "\n"


class Library:
    """
    Durable record of which package is installed in which slot.

    Reads are served from the in-memory copy loaded at construction (or the
    last mutation). Every mutation locks the manifest, reloads it from disk,
    applies the change and writes it back before returning.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.lock_path = path.with_name(path.name + ".lock")
        self._packages = self._read()

    def _read(self) -> dict[str, PackageModel]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise LibraryCorruptionError(
                f"Library manifest {self.path} is not valid JSON ({e}). Fix or remove it manually."
            ) from e
        except OSError as e:
            raise LibraryCorruptionError(f"Library manifest {self.path} is unreadable: {e}") from e
        return _parse_packages(raw, path=self.path)

    def reload(self) -> None:
        self._packages = self._read()

    def get(self, package_id: str) -> PackageModel | None:
        model = self._packages.get(package_id)
        if model is None or not model.slots:
            return None
        return PackageModel(key=model.key, slots=dict(model.slots))

    def packages(self) -> list[PackageModel]:
        return [m for key in sorted(self._packages) if (m := self.get(key)) is not None]

    def is_installed(self, package_id: str) -> bool:
        return self.get(package_id) is not None

    def is_installed_in_slot(self, package_id: str, slot: int) -> bool:
        model = self.get(package_id)
        return model is not None and slot in model.slots

    def is_installed_at_location(self, package_id: str, path: str | Path) -> tuple[bool, int | None]:
        model = self.get(package_id)
        if model is None:
            return False, None
        idx = model.slot_at(path)
        return idx is not None, idx

    def next_free_slot(self, package_id: str) -> int:
        model = self.get(package_id)
        return _first_free(model.slots) if model else 0

    @contextmanager
    def _locked(self, what: str) -> Iterator[dict[str, PackageModel]]:
        try:
            with file_lock(self.lock_path):
                packages = self._read()
                yield packages
                self._packages = packages
        except OSError as e:
            raise LibraryCorruptionError(f"Could not {what} in library manifest {self.path}: {e}") from e

    def claim_slot(self, package_id: str, full_path: str | Path) -> tuple[int, bool]:
        """
        Slot for installing ``package_id`` at ``full_path``, read from disk
        under the manifest lock: the slot already recorded there (``True``)
        or the smallest free index (``False``).
        """
        with self._locked("claim a slot") as packages:
            model = packages.get(package_id)
            if model is None:
                return 0, False
            idx = model.slot_at(full_path)
            if idx is not None:
                return idx, True
            return _first_free(model.slots), False

    def set_slot(self, package_id: str, slot: int, manifest: SlotManifest, *, replace: bool = False) -> None:
        """
        Record ``manifest`` as ``slot``. A slot recorded for another path is
        only overwritten with ``replace=True``.
        """
        if slot < 0:
            raise ValueError("slot index must be >= 0")
        manifest = SlotManifest(full_path=normalize_path(manifest.full_path), version=manifest.version)
        with self._locked("record a slot") as packages:
            model = packages.setdefault(package_id, PackageModel(key=package_id))
            for idx, other in model.slots.items():
                if idx != slot and other.full_path == manifest.full_path:
                    raise ValueError(
                        f"[{package_id}] {manifest.full_path} is already recorded as slot {idx}."
                    )
            current = model.slots.get(slot)
            if current is not None and current.full_path != manifest.full_path and not replace:
                raise ValueError(f"[{package_id}] slot {slot} is already recorded at {current.full_path}.")
            model.slots[slot] = manifest
            write_json_atomic(self.path, _dump_packages(packages))
        logger.debug("[%s] slot %d -> %s (%s)", package_id, slot, manifest.full_path, manifest.version)

    def remove_slot(self, package_id: str, slot: int) -> None:
        with self._locked("remove a slot") as packages:
            model = packages.get(package_id)
            if model is None or slot not in model.slots:
                return
            del model.slots[slot]
            if not model.slots:
                del packages[package_id]
            write_json_atomic(self.path, _dump_packages(packages))
        logger.debug("[%s] slot %d removed", package_id, slot)
