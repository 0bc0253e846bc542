from __future__ import annotations

import asyncio
import os
import shutil
import stat
import tarfile
import zipfile
from pathlib import Path

from .errors import ExtractionFailureError

TAR_SUFFIXES = (".tar", ".tar.gz", ".tgz", ".tar.bz2", ".tbz2", ".tar.xz", ".txz")
COPY_CHUNK = 1024 * 1024


def archive_kind(name: str) -> str:
    lower = name.lower()
    if lower.endswith(".zip"):
        return "zip"
    if lower.endswith(TAR_SUFFIXES):
        return "tar"
    return "file"


def _safe_target(dest: Path, name: str) -> Path:
    if not name or name.startswith(("/", "\\")) or (len(name) > 1 and name[1] == ":"):
        raise ExtractionFailureError(f"Archive contains an absolute path entry: {name!r}")
    base = dest.resolve()
    target = (dest / name).resolve()
    if not str(target).startswith(str(base) + os.sep) and target != base:
        raise ExtractionFailureError(f"Archive contains an invalid path entry: {name!r}")
    return target


async def _extract_zip(src: Path, dest: Path) -> None:
    with zipfile.ZipFile(src, "r") as zf:
        for info in zf.infolist():
            await asyncio.sleep(0)
            target = _safe_target(dest, info.filename)
            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info, "r") as fsrc, target.open("wb") as out:
                shutil.copyfileobj(fsrc, out, COPY_CHUNK)
            mode = (info.external_attr >> 16) & 0o777
            if mode:
                os.chmod(target, mode)


async def _extract_tar(src: Path, dest: Path) -> None:
    with tarfile.open(src, "r:*") as tf:
        for member in tf:
            await asyncio.sleep(0)
            target = _safe_target(dest, member.name)
            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            if member.issym():
                link_to = (target.parent / member.linkname).resolve()
                base = dest.resolve()
                if os.path.isabs(member.linkname) or not str(link_to).startswith(str(base) + os.sep):
                    raise ExtractionFailureError(f"Archive contains a symlink leaving the install dir: {member.name!r}")
                target.parent.mkdir(parents=True, exist_ok=True)
                os.symlink(member.linkname, target)
                continue
            if not member.isfile():
                # hard links, devices and fifos have no place in a release asset
                continue
            fsrc = tf.extractfile(member)
            if fsrc is None:
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            with fsrc, target.open("wb") as out:
                shutil.copyfileobj(fsrc, out, COPY_CHUNK)
            os.chmod(target, member.mode & 0o777)


async def _copy_file(src: Path, dest: Path, name: str) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    target = _safe_target(dest, name)
    with src.open("rb") as fsrc, target.open("wb") as out:
        while chunk := fsrc.read(COPY_CHUNK):
            out.write(chunk)
            await asyncio.sleep(0)
    # a bare release binary is meant to be run
    target.chmod(target.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


async def unpack_asset(src: Path, dest: Path, *, asset_name: str) -> None:
    """
    Unpack a cached release asset into ``dest``.

    Zip and tar archives are extracted with path traversal checks; any other
    file is copied in as-is and marked executable. The event loop gets a
    turn between archive members so a cancelled task stops promptly.
    """
    dest.mkdir(parents=True, exist_ok=True)
    kind = archive_kind(asset_name)
    try:
        if kind == "zip":
            await _extract_zip(src, dest)
        elif kind == "tar":
            await _extract_tar(src, dest)
        else:
            await _copy_file(src, dest, Path(asset_name).name)
    except (zipfile.BadZipFile, tarfile.TarError) as e:
        raise ExtractionFailureError(f"Could not unpack {asset_name}: {e}") from e
    except OSError as e:
        raise ExtractionFailureError(f"Could not write {asset_name} to {dest}: {e}") from e
