from __future__ import annotations

from functools import cmp_to_key
from typing import Callable, Iterable, TypeVar

T = TypeVar("T")


def _split_version(version: str) -> tuple[tuple[int, ...], tuple[str, ...] | None]:
    if not isinstance(version, str):
        raise ValueError("version must be str")
    raw = version.strip()
    if raw[:1] in ("v", "V"):
        raw = raw[1:]
    if not raw:
        raise ValueError("empty version")
    raw = raw.split("+", 1)[0]  # ignore build metadata
    if "-" in raw:
        main_s, pre_s = raw.split("-", 1)
        pre_parts = tuple(p for p in pre_s.split(".") if p != "")
    else:
        main_s = raw
        pre_parts = None
    main_parts = main_s.split(".")
    if any(not p.isdigit() for p in main_parts):
        raise ValueError(f"Unsupported version format: {version!r}")
    nums = [int(p) for p in main_parts]
    while len(nums) < 3:
        nums.append(0)
    # 1.0 and 1.0.0 compare equal
    while len(nums) > 3 and nums[-1] == 0:
        nums.pop()
    return tuple(nums), pre_parts


def compare_versions(a: str, b: str) -> int:
    """
    Order two release tags.

    Dotted numeric cores compare numerically ("10" > "2"), a leading "v" is
    ignored, prereleases sort below their release and build metadata is
    dropped. Tags that do not parse fall back to plain string comparison.
    """
    try:
        ma, pa = _split_version(a)
        mb, pb = _split_version(b)
    except ValueError:
        if a < b:
            return -1
        if a > b:
            return 1
        return 0
    if ma < mb:
        return -1
    if ma > mb:
        return 1

    if pa is None and pb is None:
        return 0
    if pa is None:
        return 1
    if pb is None:
        return -1

    for i in range(max(len(pa), len(pb))):
        if i >= len(pa):
            return -1
        if i >= len(pb):
            return 1
        x = pa[i]
        y = pb[i]
        x_num = x.isdigit()
        y_num = y.isdigit()
        if x_num and y_num:
            xi = int(x)
            yi = int(y)
            if xi < yi:
                return -1
            if xi > yi:
                return 1
            continue
        if x_num and not y_num:
            return -1
        if not x_num and y_num:
            return 1
        if x < y:
            return -1
        if x > y:
            return 1
    return 0


def versions_equal(a: str, b: str) -> bool:
    return compare_versions(a, b) == 0


def is_newer(candidate: str, installed: str | None) -> bool:
    if installed is None:
        return True
    return compare_versions(candidate, installed) > 0


def sort_newest_first(items: Iterable[T], key: Callable[[T], str]) -> list[T]:
    # sorted() is stable, so equal versions keep their published order
    return sorted(items, key=cmp_to_key(lambda x, y: compare_versions(key(x), key(y))), reverse=True)
