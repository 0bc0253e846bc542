from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    PACKAGE_NOT_FOUND = "package_not_found"
    NOT_INSTALLED = "not_installed"
    SLOT_NOT_FOUND = "slot_not_found"
    PATH_NOT_FOUND = "path_not_found"
    CONFLICTING_SELECTOR = "conflicting_selector"
    NO_RELEASES_FOUND = "no_releases_found"
    VERSION_NOT_FOUND = "version_not_found"
    NO_MATCHING_ASSET = "no_matching_asset_for_platform"
    NO_UPDATE_AVAILABLE = "no_update_available"
    DOWNLOAD_FAILURE = "download_failure"
    EXTRACTION_FAILURE = "extraction_failure"
    UNINSTALL_FAILURE = "uninstall_failure"
    LIBRARY_CORRUPTION = "library_corruption"
    CONFIG = "config"


class RelpmError(RuntimeError):
    kind: ErrorKind = ErrorKind.CONFIG


class ConfigError(RelpmError):
    kind = ErrorKind.CONFIG


class PackageNotFoundError(RelpmError):
    kind = ErrorKind.PACKAGE_NOT_FOUND


class NotInstalledError(RelpmError):
    kind = ErrorKind.NOT_INSTALLED


class NotInstalledGloballyError(NotInstalledError):
    pass


class NotInstalledAtPathError(NotInstalledError):
    pass


class NotInstalledHereError(NotInstalledError):
    pass


class SlotNotFoundError(NotInstalledError):
    kind = ErrorKind.SLOT_NOT_FOUND


class PathNotFoundError(RelpmError):
    kind = ErrorKind.PATH_NOT_FOUND


class ConflictingSelectorError(RelpmError):
    kind = ErrorKind.CONFLICTING_SELECTOR

    def __init__(self, selectors: tuple[str, ...], message: str) -> None:
        super().__init__(message)
        self.selectors = selectors


class NoReleasesFoundError(RelpmError):
    kind = ErrorKind.NO_RELEASES_FOUND


class VersionNotFoundError(RelpmError):
    kind = ErrorKind.VERSION_NOT_FOUND


class NoMatchingAssetForPlatformError(RelpmError):
    kind = ErrorKind.NO_MATCHING_ASSET


class NoUpdateAvailableError(RelpmError):
    """Raised internally when the installed version is already the newest; reported as success."""

    kind = ErrorKind.NO_UPDATE_AVAILABLE


class DownloadFailureError(RelpmError):
    kind = ErrorKind.DOWNLOAD_FAILURE


class ExtractionFailureError(RelpmError):
    kind = ErrorKind.EXTRACTION_FAILURE


class UninstallFailureError(RelpmError):
    kind = ErrorKind.UNINSTALL_FAILURE


class LibraryCorruptionError(RelpmError):
    kind = ErrorKind.LIBRARY_CORRUPTION


class HTTPStatusError(DownloadFailureError):
    def __init__(self, status_code: int, url: str, body: str = "") -> None:
        super().__init__(f"HTTP {status_code} for {url}" + (f": {body}" if body else ""))
        self.status_code = status_code
        self.url = url
        self.body = body
