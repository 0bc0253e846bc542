from __future__ import annotations

import logging
import os
import shutil
import uuid
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Callable

from .archive import unpack_asset
from .cache import safe_name
from .config import DEFAULT_CACHE_KEEP
from .errors import (
    ErrorKind,
    ExtractionFailureError,
    LibraryCorruptionError,
    NoReleasesFoundError,
    PackageNotFoundError,
    RelpmError,
    SlotNotFoundError,
    UninstallFailureError,
)
from .library import Library, SlotManifest, normalize_path
from .locking import KeyedLocks, async_file_lock
from .registry import Package, Registry
from .releases import ReleaseResolver
from .slots import Selector, check_selector, resolve_slot
from .versions import versions_equal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperationResult:
    ok: bool
    action: str
    package: str
    kind: ErrorKind | None = None
    message: str = ""
    slot: int | None = None
    path: str | None = None
    version: str | None = None
    previous_version: str | None = None
    error: RelpmError | None = field(default=None, compare=False, repr=False)

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    @property
    def changed(self) -> bool:
        return self.ok and self.kind is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "action": self.action,
            "package": self.package,
            "kind": self.kind.value if self.kind else None,
            "message": self.message,
            "slot": self.slot,
            "path": self.path,
            "version": self.version,
            "previous_version": self.previous_version,
        }


def _failure(action: str, package: str, error: RelpmError) -> OperationResult:
    logger.debug("%s %s failed: %s", action, package, error)
    return OperationResult(ok=False, action=action, package=package, kind=error.kind, message=str(error), error=error)


class DeploymentEngine:
    """
    Installs, updates and uninstalls packages into slots.

    The engine is the only writer of the Library and of install directories.
    Operations on one package are serialized, within this process by an
    asyncio lock and across processes by ``<locks_dir>/<package>.lock``;
    different packages may run concurrently. Every public operation returns
    an :class:`OperationResult` instead of raising :class:`RelpmError`.
    """

    def __init__(
        self,
        *,
        registry: Registry,
        library: Library,
        resolver: ReleaseResolver,
        packages_dir: Path,
        cache_keep: int = DEFAULT_CACHE_KEEP,
        cwd: Callable[[], str] = os.getcwd,
        locks_dir: Path | None = None,
    ) -> None:
        self.registry = registry
        self.library = library
        self.resolver = resolver
        self.packages_dir = packages_dir
        self.cache_keep = cache_keep
        self.cwd = cwd
        self.locks_dir = locks_dir or library.path.parent / "locks"
        self._locks = KeyedLocks()

    def default_install_dir(self, package: Package) -> Path:
        return self.packages_dir / package.id

    @asynccontextmanager
    async def _exclusive(self, package: Package) -> AsyncIterator[None]:
        async with self._locks.hold(package.id), AsyncExitStack() as stack:
            lock_path = self.locks_dir / f"{safe_name(package.id)}.lock"
            try:
                await stack.enter_async_context(async_file_lock(lock_path))
            except OSError as e:
                raise LibraryCorruptionError(f"[{package}] Could not lock {lock_path}: {e}") from e
            # another process may have changed the library while we waited
            self.library.reload()
            yield

    def _package(self, name: str) -> Package:
        if not name or not name.strip():
            raise PackageNotFoundError("No package name specified.")
        package = self.registry.find_by_name(name.strip())
        if package is None:
            raise PackageNotFoundError(f"Package {name!r} not found in the registry. Try `relpm search`.")
        return package

    def _heal(self, package: Package) -> None:
        model = self.library.get(package.id)
        if model is None:
            return
        for idx, manifest in sorted(model.slots.items()):
            if manifest.is_broken or Path(manifest.full_path).is_dir():
                continue
            logger.warning(
                "[%s] Slot %d at %s no longer exists on disk, forgetting it",
                package,
                idx,
                manifest.full_path,
            )
            self.library.remove_slot(package.id, idx)

    def _prune_cache(self, package: Package) -> None:
        model = self.library.get(package.id)
        installed = [m.version for m in model.slots.values() if m.version] if model else []
        try:
            self.resolver.cache.prune(package.id, keep=self.cache_keep, protect=installed)
        except OSError as e:
            # the operation itself succeeded; `relpm cache prune` can retry
            logger.warning("[%s] Could not prune the download cache: %s", package, e)

    def _install_target(self, package: Package, selector: Selector) -> tuple[Path, int | None]:
        if selector.global_:
            return Path(normalize_path(self.default_install_dir(package))), None
        if selector.path:
            return Path(normalize_path(selector.path)), None
        if selector.slot is not None:
            model = self.library.get(package.id)
            if model is None or selector.slot not in model.slots:
                raise SlotNotFoundError(f"[{package}] Package is not installed in slot {selector.slot}.")
            return Path(model.slots[selector.slot].full_path), selector.slot
        return Path(normalize_path(self.cwd())), None

    async def _deploy(
        self, package: Package, version: str, cached: Path, asset_name: str, target: Path, *, managed: bool
    ) -> None:
        """
        Unpack ``cached`` into a staging directory next to ``target`` and swap
        it into place. ``target`` is left untouched unless the swap happens.
        """
        if target.exists():
            if not target.is_dir():
                raise ExtractionFailureError(f"[{package}] Install path exists and is not a directory: {target}")
            if not managed and any(target.iterdir()):
                raise ExtractionFailureError(
                    f"[{package}] Install path is not empty and not managed by relpm: {target}"
                )

        token = uuid.uuid4().hex[:8]
        stage = target.parent / f".{target.name}.relpm-stage-{token}"
        backup = target.parent / f".{target.name}.relpm-backup-{token}"
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            try:
                await unpack_asset(cached, stage, asset_name=asset_name)
            except ExtractionFailureError:
                # a bad download must not be served from the cache on retry
                try:
                    self.resolver.cache.remove(package.id, version)
                except OSError as e:
                    logger.warning("[%s] Could not evict %s from the download cache: %s", package, version, e)
                raise
            had_existing = target.exists()
            if had_existing:
                target.rename(backup)
            try:
                stage.rename(target)
            except OSError:
                if had_existing and backup.exists() and not target.exists():
                    backup.rename(target)
                raise
        except OSError as e:
            raise ExtractionFailureError(f"[{package}] Could not install into {target}: {e}") from e
        finally:
            if stage.exists():
                shutil.rmtree(stage, ignore_errors=True)
            if backup.exists():
                shutil.rmtree(backup, ignore_errors=True)

    def _record(self, package: Package, slot: int, target: Path, version: str, *, hint: str) -> None:
        try:
            self.library.set_slot(package.id, slot, SlotManifest(full_path=str(target), version=version))
        except LibraryCorruptionError as e:
            logger.error("[%s] %s is in place at %s but slot %d was not recorded", package, version, target, slot)
            raise LibraryCorruptionError(
                f"{e} {version} is in place at {target} but not recorded as slot {slot}; {hint}."
            ) from e

    def _remove_files(self, package: Package, target: Path) -> None:
        if not target.exists() and not target.is_symlink():
            return
        try:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            else:
                target.unlink()
        except OSError as e:
            raise UninstallFailureError(
                f"[{package}] Could not remove {target}: {e}. The slot is still recorded; retry the uninstall."
            ) from e

    async def install(
        self,
        package_name: str,
        requested_version: str | None = None,
        selector: Selector | None = None,
    ) -> OperationResult:
        selector = selector or Selector()
        try:
            package = self._package(package_name)
            check_selector(selector, package=package.id)
            async with self._exclusive(package):
                return await self._install(package, requested_version, selector)
        except RelpmError as e:
            return _failure("install", package_name, e)

    async def _install(self, package: Package, requested_version: str | None, selector: Selector) -> OperationResult:
        self._heal(package)
        target, slot = self._install_target(package, selector)

        releases = await self.resolver.list_releases(package)
        if not releases:
            raise NoReleasesFoundError(f"[{package}] No releases found for {package.repo}.")
        version, asset = self.resolver.resolve_asset(package, releases, requested_version)
        cached = await self.resolver.materialize(package, asset, version)

        if slot is None:
            slot, managed = self.library.claim_slot(package.id, target)
        else:
            managed = True
        model = self.library.get(package.id)
        previous = model.slots[slot].version if model and slot in model.slots else None

        logger.info("[%s] Installing %s into slot %d (%s)", package, version, slot, target)
        await self._deploy(package, version, cached, asset.name, target, managed=managed)
        hint = "install again" if managed else "remove that directory and install again"
        self._record(package, slot, target, version, hint=hint)
        self._prune_cache(package)

        return OperationResult(
            ok=True,
            action="install",
            package=package.id,
            message=f"[{package}] Installed {version} into slot {slot} at {target}",
            slot=slot,
            path=str(target),
            version=version,
            previous_version=previous,
        )

    async def update(
        self,
        package_name: str,
        selector: Selector | None = None,
        requested_version: str | None = None,
    ) -> OperationResult:
        selector = selector or Selector()
        try:
            package = self._package(package_name)
            check_selector(selector, package=package.id)
            async with self._exclusive(package):
                return await self._update(package, selector, requested_version)
        except RelpmError as e:
            return _failure("update", package_name, e)

    async def _update(self, package: Package, selector: Selector, requested_version: str | None) -> OperationResult:
        self._heal(package)
        slot, current = resolve_slot(
            self.library.get(package.id),
            selector,
            package=package.id,
            default_dir=self.default_install_dir(package),
            cwd=self.cwd(),
        )
        target = Path(current.full_path)

        releases = await self.resolver.list_releases(package)
        if not releases:
            raise NoReleasesFoundError(f"[{package}] No releases found for {package.repo}.")

        if requested_version is None:
            up_to_date = not self.resolver.is_update_available(package, releases, current.version)
        else:
            up_to_date = current.version is not None and versions_equal(requested_version, current.version)
        if up_to_date:
            return OperationResult(
                ok=True,
                action="update",
                package=package.id,
                kind=ErrorKind.NO_UPDATE_AVAILABLE,
                message=f"[{package}] No update available, slot {slot} is at {current.version}",
                slot=slot,
                path=str(target),
                version=current.version,
                previous_version=current.version,
            )

        version, asset = self.resolver.resolve_asset(package, releases, requested_version)
        # fetch before touching the installed files so a download failure changes nothing
        cached = await self.resolver.materialize(package, asset, version)

        logger.info("[%s] Removing %s from slot %d (%s)", package, current.version, slot, target)
        # recorded as broken first, so a failure from here on leaves a slot the next update repairs
        self.library.set_slot(package.id, slot, SlotManifest(full_path=str(target), version=None))
        self._remove_files(package, target)

        try:
            await self._deploy(package, version, cached, asset.name, target, managed=True)
        except BaseException as e:
            logger.error(
                "[%s] Slot %d at %s was uninstalled but not reinstalled (%s). "
                "It stays recorded without a version; run the update again to retry.",
                package,
                slot,
                target,
                e.__class__.__name__,
            )
            if isinstance(e, RelpmError):
                raise ExtractionFailureError(
                    f"{e} Slot {slot} at {target} was uninstalled but not reinstalled; run the update again."
                ) from e
            raise

        self._record(package, slot, target, version, hint="run the update again")
        self._prune_cache(package)
        return OperationResult(
            ok=True,
            action="update",
            package=package.id,
            message=f"[{package}] Updated slot {slot} from {current.version} to {version}",
            slot=slot,
            path=str(target),
            version=version,
            previous_version=current.version,
        )

    async def uninstall(self, package_name: str, selector: Selector | None = None) -> OperationResult:
        selector = selector or Selector()
        try:
            package = self._package(package_name)
            check_selector(selector, package=package.id)
            async with self._exclusive(package):
                return await self._uninstall(package, selector)
        except RelpmError as e:
            return _failure("uninstall", package_name, e)

    async def _uninstall(self, package: Package, selector: Selector) -> OperationResult:
        self._heal(package)
        slot, current = resolve_slot(
            self.library.get(package.id),
            selector,
            package=package.id,
            default_dir=self.default_install_dir(package),
            cwd=self.cwd(),
        )
        target = Path(current.full_path)

        logger.info("[%s] Uninstalling slot %d (%s)", package, slot, target)
        self._remove_files(package, target)
        self.library.remove_slot(package.id, slot)
        self._prune_cache(package)
        return OperationResult(
            ok=True,
            action="uninstall",
            package=package.id,
            message=f"[{package}] Uninstalled slot {slot} from {target}",
            slot=slot,
            path=str(target),
            previous_version=current.version,
        )
