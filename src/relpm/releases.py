from __future__ import annotations

import fnmatch
import logging
import platform
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence

from .cache import AssetCache
from .errors import NoMatchingAssetForPlatformError, VersionNotFoundError
from .registry import Package
from .versions import is_newer, sort_newest_first, versions_equal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReleaseAsset:
    name: str
    download_url: str
    size: int | None = None


@dataclass(frozen=True)
class Release:
    tag: str
    assets: tuple[ReleaseAsset, ...] = ()
    prerelease: bool = False

    @property
    def version(self) -> str:
        return self.tag


class ReleaseHost(Protocol):
    async def list_releases(self, repo: str) -> list[Release]:
        ...

    async def download(self, url: str, dest: Path) -> None:
        ...


_OS_ALIASES: dict[str, tuple[str, ...]] = {
    "linux": ("linux",),
    "windows": ("windows", "win64", "win32", "win"),
    "macos": ("macos", "darwin", "osx", "mac", "apple"),
}

_ARCH_ALIASES: dict[str, tuple[str, ...]] = {
    "x86_64": ("x86_64", "amd64", "x64"),
    "aarch64": ("aarch64", "arm64"),
    "x86": ("i386", "i686", "x86", "386"),
    "armv7": ("armv7", "armhf", "arm"),
}

_TOKEN_SPLIT_RE = re.compile(r"[^a-z0-9]+")


def current_platform() -> tuple[str, str]:
    if sys.platform.startswith("win"):
        os_name = "windows"
    elif sys.platform == "darwin":
        os_name = "macos"
    else:
        os_name = "linux"

    machine = platform.machine().lower()
    arch = machine
    for canonical, aliases in _ARCH_ALIASES.items():
        if machine in aliases or machine == canonical:
            arch = canonical
            break
    return os_name, arch


def _tokens(name: str) -> set[str]:
    # "_" separates tokens ("linux_amd64"), so keep "x86_64" whole first
    lower = name.lower().replace("x86_64", "amd64")
    return {t for t in _TOKEN_SPLIT_RE.split(lower) if t}


def _names_os(tokens: set[str], os_name: str) -> bool:
    return any(alias in tokens for alias in _OS_ALIASES[os_name])


def _names_any_os(tokens: set[str]) -> bool:
    return any(_names_os(tokens, os_name) for os_name in _OS_ALIASES)


def _names_arch(tokens: set[str], arch: str) -> bool:
    return any(alias in tokens for alias in _ARCH_ALIASES.get(arch, (arch,)))


def match_assets(
    assets: Sequence[ReleaseAsset],
    *,
    asset_pattern: str | None = None,
    os_name: str,
    arch: str,
) -> list[ReleaseAsset]:
    """
    Assets usable on ``os_name``/``arch``, best first, ties in published order.

    An explicit ``asset_pattern`` glob wins over name heuristics. Otherwise
    assets naming the OS are used, those also naming the architecture first;
    if nothing names the OS, assets naming no OS at all are taken as
    platform-neutral.
    """
    if asset_pattern:
        pattern = asset_pattern.lower()
        return [a for a in assets if fnmatch.fnmatchcase(a.name.lower(), pattern)]

    tokenized = [(a, _tokens(a.name)) for a in assets]
    for_os = [(a, t) for a, t in tokenized if _names_os(t, os_name)]
    if for_os:
        with_arch = [a for a, t in for_os if _names_arch(t, arch)]
        other_arch = [a for a, t in for_os if not _names_arch(t, arch) and not _names_foreign_arch(t, arch)]
        return with_arch + other_arch
    return [a for a, t in tokenized if not _names_any_os(t)]


def _names_foreign_arch(tokens: set[str], arch: str) -> bool:
    return any(_names_arch(tokens, other) for other in _ARCH_ALIASES if other != arch)


class ReleaseResolver:
    def __init__(self, host: ReleaseHost, cache: AssetCache, *, platform_id: tuple[str, str] | None = None) -> None:
        self.host = host
        self.cache = cache
        self.os_name, self.arch = platform_id or current_platform()

    async def list_releases(self, package: Package) -> list[Release]:
        releases = await self.host.list_releases(package.repo)
        return sort_newest_first(releases, key=lambda r: r.version)

    def newest(self, releases: Sequence[Release]) -> Release | None:
        ordered = sort_newest_first(releases, key=lambda r: r.version)
        return ordered[0] if ordered else None

    def is_update_available(self, package: Package, releases: Sequence[Release], installed_version: str | None) -> bool:
        newest = self.newest(releases)
        if newest is None:
            return False
        available = is_newer(newest.version, installed_version)
        logger.debug("[%s] installed=%s newest=%s update=%s", package, installed_version, newest.version, available)
        return available

    def resolve_asset(
        self,
        package: Package,
        releases: Sequence[Release],
        requested_version: str | None = None,
    ) -> tuple[str, ReleaseAsset]:
        if requested_version:
            release = next((r for r in releases if versions_equal(r.version, requested_version)), None)
            if release is None:
                known = ", ".join(r.version for r in sort_newest_first(releases, key=lambda r: r.version)[:10])
                raise VersionNotFoundError(
                    f"[{package}] No release with version {requested_version!r}. Available: {known or '<none>'}"
                )
        else:
            release = self.newest(releases)
            if release is None:
                raise VersionNotFoundError(f"[{package}] No releases to choose from.")

        candidates = match_assets(
            release.assets,
            asset_pattern=package.asset_pattern,
            os_name=self.os_name,
            arch=self.arch,
        )
        if not candidates:
            names = ", ".join(a.name for a in release.assets) or "<no assets>"
            wanted = f"pattern {package.asset_pattern!r}" if package.asset_pattern else f"{self.os_name}/{self.arch}"
            raise NoMatchingAssetForPlatformError(
                f"[{package}] Release {release.version} has no asset for {wanted}. Assets: {names}"
            )
        if len(candidates) > 1:
            logger.debug(
                "[%s] %d assets match %s/%s, using %s",
                package,
                len(candidates),
                self.os_name,
                self.arch,
                candidates[0].name,
            )
        return release.version, candidates[0]

    async def materialize(self, package: Package, asset: ReleaseAsset, version: str) -> Path:
        async def fetch(dest: Path) -> None:
            logger.info("[%s] Downloading %s (%s)", package, asset.name, version)
            await self.host.download(asset.download_url, dest)

        return await self.cache.ensure(
            package.id,
            version,
            fetch,
            asset_name=asset.name,
            source_url=asset.download_url,
        )
