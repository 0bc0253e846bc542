from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import textwrap
from dataclasses import asdict, replace
from typing import Any, Awaitable, Callable

from ._version import __version__
from .cache import AssetCache
from .config import Config, apply_env, config_path, load_config, redact_token, save_config
from .deploy import DeploymentEngine, OperationResult
from .errors import RelpmError
from .github import GitHubClient
from .library import Library
from .registry import Registry
from .releases import ReleaseResolver
from .slots import Selector


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="relpm",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Install binary GitHub release assets into independent local slots.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              RELPM_CONFIG_PATH, RELPM_API_URL, RELPM_TOKEN (or GITHUB_TOKEN), RELPM_TIMEOUT_S,
              RELPM_DATA_DIR, RELPM_REGISTRY
            """
        ),
    )
    p.add_argument("--version", action="version", version=f"relpm {__version__}")
    p.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-v info, -vv debug)")

    def _add_runtime_overrides(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--api-url", help="GitHub API base URL (default: https://api.github.com)")
        parser.add_argument("--token", help="GitHub token (overrides config/env)")
        parser.add_argument("--timeout-s", type=float, help="HTTP timeout in seconds")
        parser.add_argument("--data-dir", help="Application data directory (library, cache, default installs)")
        parser.add_argument("--registry", help="Path to the package registry JSON file")

    def _add_selector(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("-g", "--global", dest="global_", action="store_true", help="Target the default install location")
        parser.add_argument("-p", "--path", help="Target an explicit install directory")
        parser.add_argument("-s", "--slot", type=int, help="Target an existing slot by index")

    sub = p.add_subparsers(dest="cmd", required=True)

    install = sub.add_parser("install", aliases=["i"], help="Install a package into a slot")
    _add_runtime_overrides(install)
    install.add_argument("package", help="Package name, optionally name@version")
    install.add_argument("--version", dest="requested_version", help="Release version to install (default: newest)")
    _add_selector(install)
    install.add_argument("--json", action="store_true", help="Output JSON")

    update = sub.add_parser("update", aliases=["up"], help="Update an installed slot to a newer release")
    _add_runtime_overrides(update)
    update.add_argument("package", help="Package name, optionally name@version")
    update.add_argument("--version", dest="requested_version", help="Release version to switch to (default: newest)")
    _add_selector(update)
    update.add_argument("--json", action="store_true", help="Output JSON")

    uninstall = sub.add_parser("uninstall", aliases=["remove", "rm"], help="Remove a package from a slot")
    _add_runtime_overrides(uninstall)
    uninstall.add_argument("package", help="Package name")
    _add_selector(uninstall)
    uninstall.add_argument("--json", action="store_true", help="Output JSON")

    ls = sub.add_parser("list", aliases=["ls"], help="List installed packages and their slots")
    _add_runtime_overrides(ls)
    ls.add_argument("--json", action="store_true", help="Output JSON")

    search = sub.add_parser("search", help="Search the package registry")
    _add_runtime_overrides(search)
    search.add_argument("pattern", nargs="?", default="*", help="Wildcard pattern, e.g. `tool*` (default: *)")
    search.add_argument("--json", action="store_true", help="Output JSON")

    cache = sub.add_parser("cache", help="Inspect or trim the download cache")
    cache_sub = cache.add_subparsers(dest="subcmd", required=True)
    cache_list = cache_sub.add_parser("list", help="List cached assets")
    _add_runtime_overrides(cache_list)
    cache_list.add_argument("--json", action="store_true", help="Output JSON")
    cache_prune = cache_sub.add_parser("prune", help="Apply the retention policy to every package")
    _add_runtime_overrides(cache_prune)
    cache_prune.add_argument("--keep", type=int, help="Versions to keep per package besides installed ones")
    cache_clear = cache_sub.add_parser("clear", help="Delete every cached asset")
    _add_runtime_overrides(cache_clear)

    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config (token redacted)")
    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--api-url")
    cfg_set.add_argument("--token")
    cfg_set.add_argument("--timeout-s", type=float)
    cfg_set.add_argument("--retries", type=int)
    cfg_set.add_argument("--backoff-s", type=float)
    cfg_set.add_argument("--cache-keep", type=int)
    cfg_set.add_argument("--data-dir")
    cfg_set.add_argument("--registry-path")

    return p


def _runtime_config(args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    cfg = apply_env(load_config())
    return replace(
        cfg,
        api_url=getattr(args, "api_url", None) or cfg.api_url,
        token=getattr(args, "token", None) or cfg.token,
        timeout_s=getattr(args, "timeout_s", None) or cfg.timeout_s,
        data_dir=getattr(args, "data_dir", None) or cfg.data_dir,
        registry_path=getattr(args, "registry", None) or cfg.registry_path,
    )


def _split_name_and_version(package_arg: str, version_arg: str | None) -> tuple[str, str | None]:
    name = package_arg.strip()
    at_idx = name.rfind("@")
    if at_idx > 0:
        shorthand_name = name[:at_idx].strip()
        shorthand_version = name[at_idx + 1 :].strip()
        if shorthand_version:
            if version_arg:
                raise RelpmError("Specify version either as @<version> or --version, not both.")
            return shorthand_name, shorthand_version
    return name, version_arg


def _selector(args: argparse.Namespace) -> Selector:
    return Selector(global_=bool(args.global_), path=args.path or None, slot=args.slot)


def build_engine(cfg: Config, client: GitHubClient) -> DeploymentEngine:
    cache = AssetCache(cfg.cache_path)
    return DeploymentEngine(
        registry=Registry.load(cfg.registry_file),
        library=Library(cfg.library_path),
        resolver=ReleaseResolver(client, cache),
        packages_dir=cfg.packages_path,
        cache_keep=cfg.cache_keep,
    )


def _run_with_engine(cfg: Config, call: Callable[[DeploymentEngine], Awaitable[OperationResult]]) -> OperationResult:
    async def _main() -> OperationResult:
        async with GitHubClient(
            api_url=cfg.api_url,
            token=cfg.token,
            timeout_s=cfg.timeout_s,
            retries=cfg.retries,
            backoff_s=cfg.backoff_s,
        ) as client:
            engine = build_engine(cfg, client)
            return await call(engine)

    return asyncio.run(_main())


def _report(result: OperationResult, *, as_json: bool) -> int:
    if as_json:
        print(json.dumps(result.to_dict(), indent=2, sort_keys=True))
        return result.exit_code
    if result.ok:
        print(result.message)
    else:
        print(f"error: {result.message}", file=sys.stderr)
    return result.exit_code


def cmd_install(args: argparse.Namespace) -> int:
    cfg = _runtime_config(args)
    name, version = _split_name_and_version(args.package, args.requested_version)
    selector = _selector(args)
    result = _run_with_engine(cfg, lambda engine: engine.install(name, version, selector))
    return _report(result, as_json=args.json)


def cmd_update(args: argparse.Namespace) -> int:
    cfg = _runtime_config(args)
    name, version = _split_name_and_version(args.package, args.requested_version)
    selector = _selector(args)
    result = _run_with_engine(cfg, lambda engine: engine.update(name, selector, version))
    return _report(result, as_json=args.json)


def cmd_uninstall(args: argparse.Namespace) -> int:
    cfg = _runtime_config(args)
    selector = _selector(args)
    result = _run_with_engine(cfg, lambda engine: engine.uninstall(args.package, selector))
    return _report(result, as_json=args.json)


def cmd_list(args: argparse.Namespace) -> int:
    cfg = _runtime_config(args)
    library = Library(cfg.library_path)
    rows: list[dict[str, Any]] = []
    for model in library.packages():
        for idx, manifest in sorted(model.slots.items()):
            rows.append({"package": model.key, "slot": idx, "version": manifest.version, "path": manifest.full_path})

    if args.json:
        print(json.dumps(rows, indent=2, sort_keys=True))
        return 0
    if not rows:
        print("No packages installed.")
        return 0
    table = [["PACKAGE", "SLOT", "VERSION", "PATH"]]
    for row in rows:
        table.append([row["package"], str(row["slot"]), row["version"] or "(broken)", row["path"]])
    _print_table(table)
    return 0


def cmd_search(args: argparse.Namespace) -> int:
    cfg = _runtime_config(args)
    registry = Registry.load(cfg.registry_file)
    found = registry.search(args.pattern)
    if args.json:
        print(json.dumps([asdict(p) for p in found], indent=2, sort_keys=True))
        return 0
    if not found:
        print(f"No packages match {args.pattern!r}.")
        return 0
    table = [["ID", "NAME", "URL"]]
    for package in found:
        table.append([package.id, package.name, package.url])
    _print_table(table)
    return 0


def cmd_cache(args: argparse.Namespace) -> int:
    cfg = _runtime_config(args)
    cache = AssetCache(cfg.cache_path)

    if args.subcmd == "list":
        entries = cache.entries()
        if args.json:
            print(json.dumps([asdict(e) for e in entries], indent=2, sort_keys=True))
            return 0
        if not entries:
            print("Cache is empty.")
            return 0
        table = [["PACKAGE", "VERSION", "ASSET", "CACHED_AT"]]
        for e in entries:
            table.append([e.package_id, e.version, e.source_asset_name, e.cached_at or ""])
        _print_table(table)
        return 0

    if args.subcmd == "prune":
        keep = args.keep if args.keep is not None else cfg.cache_keep
        library = Library(cfg.library_path)
        removed = 0
        for package_id in sorted({e.package_id for e in cache.entries()}):
            model = library.get(package_id)
            installed = [m.version for m in model.slots.values() if m.version] if model else []
            removed += len(cache.prune(package_id, keep=keep, protect=installed))
        print(f"Pruned {removed} cached asset(s).")
        return 0

    if args.subcmd == "clear":
        print(f"Removed {cache.clear()} cached asset(s).")
        return 0

    raise AssertionError("unreachable")


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = load_config()
        d = asdict(cfg)
        d["token"] = redact_token(cfg.token)
        print(json.dumps(d, indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        updates = {
            "api_url": args.api_url,
            "token": args.token,
            "timeout_s": args.timeout_s,
            "retries": args.retries,
            "backoff_s": args.backoff_s,
            "cache_keep": args.cache_keep,
            "data_dir": args.data_dir,
            "registry_path": args.registry_path,
        }
        new_cfg = replace(cfg, **{k: v for k, v in updates.items() if v is not None})
        path = save_config(new_cfg)
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def _setup_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _setup_logging(args.verbose)
    try:
        if args.cmd in ("install", "i"):
            return cmd_install(args)
        if args.cmd in ("update", "up"):
            return cmd_update(args)
        if args.cmd in ("uninstall", "remove", "rm"):
            return cmd_uninstall(args)
        if args.cmd in ("list", "ls"):
            return cmd_list(args)
        if args.cmd == "search":
            return cmd_search(args)
        if args.cmd == "cache":
            return cmd_cache(args)
        if args.cmd == "config":
            return cmd_config(args)
        raise AssertionError("unreachable")
    except RelpmError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("error: interrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
