import io
import json
import os
import tempfile
import unittest
import zipfile
from pathlib import Path
from unittest.mock import patch

from relpm.cli import _selector, _split_name_and_version, build_parser, main
from relpm.errors import RelpmError
from relpm.releases import Release, ReleaseAsset


class _FakeGitHubClient:
    releases = {"acme/foo": ["1.0.0", "1.1.0"]}
    last_kwargs: dict = {}

    def __init__(self, **kwargs) -> None:
        type(self).last_kwargs = kwargs

    async def __aenter__(self) -> "_FakeGitHubClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None

    async def list_releases(self, repo: str) -> list[Release]:
        name = repo.split("/")[1]
        return [
            Release(
                tag=v,
                assets=(ReleaseAsset(f"{name}-{v}-linux-x86_64.zip", f"https://dl.example.invalid/{v}/{name}.zip"),),
            )
            for v in self.releases.get(repo, [])
        ]

    async def download(self, url: str, dest: Path) -> None:
        with zipfile.ZipFile(dest, "w") as zf:
            zf.writestr("VERSION", url.split("/")[-2])


class TestParser(unittest.TestCase):
    def test_selector_flags(self) -> None:
        args = build_parser().parse_args(["rm", "foo", "-g", "--path", "/tmp/x"])
        selector = _selector(args)
        self.assertTrue(selector.global_)
        self.assertEqual(selector.path, "/tmp/x")
        self.assertIsNone(selector.slot)

        args = build_parser().parse_args(["up", "foo", "--slot", "2", "--version", "1.0.0"])
        self.assertEqual(_selector(args).slot, 2)
        self.assertEqual(args.requested_version, "1.0.0")

    def test_name_at_version_shorthand(self) -> None:
        self.assertEqual(_split_name_and_version("foo@1.2.0", None), ("foo", "1.2.0"))
        self.assertEqual(_split_name_and_version("foo", "1.2.0"), ("foo", "1.2.0"))
        self.assertEqual(_split_name_and_version("foo@", None), ("foo@", None))
        with self.assertRaises(RelpmError):
            _split_name_and_version("foo@1.2.0", "1.3.0")


class TestMain(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name).resolve()
        self.data_dir = self.root / "data"
        self.registry = self.root / "registry.json"
        self.registry.write_text(
            json.dumps({"packages": [{"id": "foo", "name": "Foo", "url": "acme/foo"}]}),
            encoding="utf-8",
        )
        env = {k: v for k, v in os.environ.items() if not k.startswith("RELPM_") and k != "GITHUB_TOKEN"}
        env["RELPM_CONFIG_PATH"] = str(self.root / "config.json")
        self._env = patch.dict(os.environ, env, clear=True)
        self._env.start()
        self._platform = patch("relpm.releases.current_platform", return_value=("linux", "x86_64"))
        self._platform.start()

    def tearDown(self) -> None:
        self._platform.stop()
        self._env.stop()
        self._td.cleanup()

    def _run(self, *argv: str) -> tuple[int, str, str]:
        with (
            patch("relpm.cli.GitHubClient", _FakeGitHubClient),
            patch("sys.stdout", new=io.StringIO()) as stdout,
            patch("sys.stderr", new=io.StringIO()) as stderr,
        ):
            rc = main(list(argv))
        return rc, stdout.getvalue(), stderr.getvalue()

    def _common(self) -> list[str]:
        return ["--data-dir", str(self.data_dir), "--registry", str(self.registry)]

    def test_conflicting_selectors_fail_without_side_effects(self) -> None:
        rc, out, err = self._run("uninstall", "foo", "--global", "--path", str(self.root), *self._common())
        self.assertEqual(rc, 1)
        self.assertEqual(out, "")
        self.assertIn("error:", err)
        self.assertIn("--global", err)
        self.assertFalse(self.data_dir.exists())

    def test_install_list_uninstall(self) -> None:
        target = self.root / "game"
        rc, out, _ = self._run("install", "foo@1.0.0", "--path", str(target), *self._common())
        self.assertEqual(rc, 0)
        self.assertIn("Installed 1.0.0", out)
        self.assertEqual((target / "VERSION").read_text(encoding="utf-8"), "1.0.0")

        rc, out, _ = self._run("list", *self._common())
        self.assertEqual(rc, 0)
        self.assertIn("PACKAGE", out)
        self.assertIn(str(target), out)

        rc, out, _ = self._run("ls", "--json", *self._common())
        rows = json.loads(out)
        self.assertEqual(rows, [{"package": "foo", "slot": 0, "version": "1.0.0", "path": str(target)}])

        rc, out, _ = self._run("update", "foo", "--slot", "0", "--json", *self._common())
        self.assertEqual(rc, 0)
        self.assertEqual(json.loads(out)["version"], "1.1.0")

        rc, _, _ = self._run("rm", "foo", "-p", str(target), *self._common())
        self.assertEqual(rc, 0)
        self.assertFalse(target.exists())

        rc, _, err = self._run("rm", "foo", "-p", str(target), *self._common())
        self.assertEqual(rc, 1)
        self.assertIn("not installed", err.lower())

    def test_list_empty_and_search(self) -> None:
        rc, out, _ = self._run("list", *self._common())
        self.assertEqual((rc, out.strip()), (0, "No packages installed."))

        rc, out, _ = self._run("search", "f*", "--json", *self._common())
        self.assertEqual([p["id"] for p in json.loads(out)], ["foo"])

        rc, out, _ = self._run("search", "zzz", *self._common())
        self.assertIn("No packages match", out)

    def test_cache_commands(self) -> None:
        self._run("install", "foo", "--global", *self._common())

        rc, out, _ = self._run("cache", "list", "--json", *self._common())
        self.assertEqual([e["version"] for e in json.loads(out)], ["1.1.0"])

        rc, out, _ = self._run("cache", "clear", *self._common())
        self.assertEqual((rc, out.strip()), (0, "Removed 1 cached asset(s)."))

    def test_config_set_and_show_redacts_token(self) -> None:
        rc, out, _ = self._run("config", "set", "--token", "ghp_abcdefghijklmnop", "--cache-keep", "5")
        self.assertEqual(rc, 0)
        self.assertIn(str(self.root / "config.json"), out)

        rc, out, _ = self._run("config", "show")
        shown = json.loads(out)
        self.assertEqual(shown["cache_keep"], 5)
        self.assertEqual(shown["token"], "ghp_ab...mnop")

        self._run("install", "foo", "--global", *self._common())
        self.assertEqual(_FakeGitHubClient.last_kwargs["token"], "ghp_abcdefghijklmnop")

    def test_cli_token_overrides_environment(self) -> None:
        os.environ["GITHUB_TOKEN"] = "from-env"
        self._run("install", "foo", "--global", "--token", "from-cli", *self._common())
        self.assertEqual(_FakeGitHubClient.last_kwargs["token"], "from-cli")

    def test_bad_config_file(self) -> None:
        (self.root / "config.json").write_text("{broken", encoding="utf-8")
        rc, _, err = self._run("list", *self._common())
        self.assertEqual(rc, 1)
        self.assertIn("Could not read config file", err)

    def test_os_errors_are_reported_not_raised(self) -> None:
        with patch("relpm.cli.cmd_list", side_effect=PermissionError(13, "Permission denied", str(self.data_dir))):
            rc, out, err = self._run("list", *self._common())
        self.assertEqual(rc, 1)
        self.assertEqual(out, "")
        self.assertIn("error:", err)
        self.assertIn("Permission denied", err)


if __name__ == "__main__":
    unittest.main()
