from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .errors import (
    ConflictingSelectorError,
    NotInstalledAtPathError,
    NotInstalledGloballyError,
    NotInstalledHereError,
    PathNotFoundError,
    SlotNotFoundError,
)
from .library import PackageModel, SlotManifest


@dataclass(frozen=True)
class Selector:
    """
    Which installation a command targets.

    ``global_`` selects the default install directory, ``path`` an explicit
    directory and ``slot`` an explicit slot index. With none of them set the
    current working directory is used.
    """

    global_: bool = False
    path: str | None = None
    slot: int | None = None

    def chosen(self) -> tuple[str, ...]:
        names: list[str] = []
        if self.global_:
            names.append("--global")
        if self.path:
            names.append("--path")
        if self.slot is not None:
            names.append("--slot")
        return tuple(names)


def check_selector(selector: Selector, *, package: str) -> None:
    chosen = selector.chosen()
    if len(chosen) < 2:
        return
    if chosen[0] == "--global":
        detail = f"--global selects the default install location and can't be combined with {' or '.join(chosen[1:])}"
    else:
        detail = f"specify {' OR '.join(chosen)}, but not both"
    raise ConflictingSelectorError(chosen, f"[{package}] Conflicting options {', '.join(chosen)}: {detail}.")


def resolve_slot(
    model: PackageModel | None,
    selector: Selector,
    *,
    package: str,
    default_dir: str | Path,
    cwd: str | Path,
    is_dir: Callable[[str], bool] = os.path.isdir,
) -> tuple[int, SlotManifest]:
    """
    Map ``selector`` to one slot of ``model``, returned as ``(index, manifest)``.

    Precedence is global, then path, then slot, then the current directory.
    Each selector kind fails with its own error so callers can say exactly
    what was not found. No filesystem access happens except the directory
    check for an explicit path.
    """
    check_selector(selector, package=package)

    if selector.global_:
        idx = model.slot_at(default_dir) if model else None
        if idx is None:
            raise NotInstalledGloballyError(f"[{package}] Package is not globally installed ({default_dir}).")
        return idx, model.slots[idx]

    if selector.path:
        idx = model.slot_at(selector.path) if model else None
        if idx is not None:
            return idx, model.slots[idx]
        if model is not None and not is_dir(selector.path):
            raise PathNotFoundError(f"[{package}] Path is not a valid directory: {selector.path}")
        raise NotInstalledAtPathError(f"[{package}] Package is not installed in path: {selector.path}")

    if selector.slot is not None:
        if model is None or selector.slot not in model.slots:
            raise SlotNotFoundError(f"[{package}] Package is not installed in slot {selector.slot}.")
        return selector.slot, model.slots[selector.slot]

    idx = model.slot_at(cwd) if model else None
    if idx is None:
        raise NotInstalledHereError(f"[{package}] Package is not installed in the current directory: {cwd}")
    return idx, model.slots[idx]
