import asyncio
import json
import tempfile
import unittest
from pathlib import Path

from relpm.cache import AssetCache
from relpm.errors import DownloadFailureError


class CountingFetch:
    def __init__(self, payload: bytes = b"asset-bytes", delay: float = 0.0) -> None:
        self.payload = payload
        self.delay = delay
        self.calls = 0

    async def __call__(self, dest: Path) -> None:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        dest.write_bytes(self.payload)


class TestAssetCache(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name) / "cache"
        self.cache = AssetCache(self.root)

    def tearDown(self) -> None:
        self._td.cleanup()

    def _leftovers(self) -> list[Path]:
        return [p for p in self.root.rglob("*.part")]

    async def test_ensure_fetches_once_and_returns_same_path(self) -> None:
        fetch = CountingFetch()
        first = await self.cache.ensure("foo", "1.0.0", fetch, asset_name="foo-linux.zip")
        second = await self.cache.ensure("foo", "1.0.0", fetch, asset_name="foo-linux.zip")

        self.assertEqual(fetch.calls, 1)
        self.assertEqual(first, second)
        self.assertEqual(first.read_bytes(), b"asset-bytes")
        self.assertTrue(self.cache.has("foo", "1.0.0"))
        self.assertFalse(self.cache.has("foo", "1.1.0"))

    async def test_concurrent_ensure_for_same_key_downloads_once(self) -> None:
        fetch = CountingFetch(delay=0.01)
        paths = await asyncio.gather(
            *(self.cache.ensure("foo", "1.0.0", fetch, asset_name="foo.zip") for _ in range(5))
        )
        self.assertEqual(fetch.calls, 1)
        self.assertEqual(len(set(paths)), 1)
        self.assertEqual(len(self.cache._locks), 0)

    async def test_different_keys_download_independently(self) -> None:
        fetch = CountingFetch(delay=0.01)
        a, b = await asyncio.gather(
            self.cache.ensure("foo", "1.0.0", fetch, asset_name="foo.zip"),
            self.cache.ensure("bar", "1.0.0", fetch, asset_name="bar.zip"),
        )
        self.assertEqual(fetch.calls, 2)
        self.assertNotEqual(a, b)
        self.assertEqual(len(self.cache.entries()), 2)

    async def test_manifest_records_source(self) -> None:
        await self.cache.ensure(
            "foo",
            "1.0.0",
            CountingFetch(),
            asset_name="foo-linux.zip",
            source_url="https://example.invalid/foo-linux.zip",
        )
        raw = json.loads((self.root / "manifest.json").read_text(encoding="utf-8"))
        entry = raw["entries"]["foo@1.0.0"]
        self.assertEqual(entry["source_asset_name"], "foo-linux.zip")
        self.assertEqual(entry["source_url"], "https://example.invalid/foo-linux.zip")
        self.assertTrue(entry["cached_asset_path"].endswith("foo-linux.zip"))

    async def test_failed_fetch_leaves_no_entry_or_partial_file(self) -> None:
        async def failing(dest: Path) -> None:
            dest.write_bytes(b"partial")
            raise DownloadFailureError("connection reset")

        with self.assertRaises(DownloadFailureError):
            await self.cache.ensure("foo", "1.0.0", failing, asset_name="foo.zip")

        self.assertFalse(self.cache.has("foo", "1.0.0"))
        self.assertEqual(self._leftovers(), [])

        fetch = CountingFetch()
        await self.cache.ensure("foo", "1.0.0", fetch, asset_name="foo.zip")
        self.assertEqual(fetch.calls, 1)

    async def test_oserror_from_fetch_becomes_download_failure(self) -> None:
        async def failing(dest: Path) -> None:
            raise PermissionError("read-only")

        with self.assertRaises(DownloadFailureError):
            await self.cache.ensure("foo", "1.0.0", failing, asset_name="foo.zip")

    async def test_unwritable_manifest_becomes_download_failure(self) -> None:
        self.cache.lock_path.parent.mkdir(parents=True, exist_ok=True)
        self.cache.lock_path.mkdir()

        with self.assertRaises(DownloadFailureError) as ctx:
            await self.cache.ensure("foo", "1.0.0", CountingFetch(), asset_name="foo.zip")

        self.assertIn("cache manifest", str(ctx.exception))
        self.assertEqual(self.cache.entries(), [])
        self.assertEqual(self._leftovers(), [])

    async def test_cancelled_fetch_leaves_nothing_behind(self) -> None:
        started = asyncio.Event()

        async def slow(dest: Path) -> None:
            dest.write_bytes(b"half")
            started.set()
            await asyncio.sleep(3600)

        task = asyncio.create_task(self.cache.ensure("foo", "1.0.0", slow, asset_name="foo.zip"))
        await started.wait()
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

        self.assertFalse(self.cache.has("foo", "1.0.0"))
        self.assertEqual(self._leftovers(), [])
        self.assertEqual(self.cache.entries(), [])

    async def test_entry_with_missing_file_is_a_miss(self) -> None:
        fetch = CountingFetch()
        path = await self.cache.ensure("foo", "1.0.0", fetch, asset_name="foo.zip")
        path.unlink()

        self.assertFalse(self.cache.has("foo", "1.0.0"))
        again = await self.cache.ensure("foo", "1.0.0", fetch, asset_name="foo.zip")
        self.assertEqual(fetch.calls, 2)
        self.assertTrue(again.exists())

    async def test_prune_keeps_newest_and_protected_versions(self) -> None:
        for version in ("1.0.0", "1.2.0", "1.10.0", "2.0.0"):
            await self.cache.ensure("foo", version, CountingFetch(), asset_name="foo.zip")
        await self.cache.ensure("bar", "0.1.0", CountingFetch(), asset_name="bar.zip")

        removed = self.cache.prune("foo", keep=2, protect=["1.0.0"])

        self.assertEqual(sorted(e.version for e in removed), ["1.2.0"])
        self.assertEqual(sorted(e.version for e in self.cache.entries("foo")), ["1.0.0", "1.10.0", "2.0.0"])
        self.assertTrue(self.cache.has("bar", "0.1.0"))
        self.assertFalse((self.root / "foo" / "1.2.0").exists())

    async def test_remove_and_clear(self) -> None:
        await self.cache.ensure("foo", "1.0.0", CountingFetch(), asset_name="foo.zip")
        await self.cache.ensure("foo", "1.1.0", CountingFetch(), asset_name="foo.zip")

        self.assertTrue(self.cache.remove("foo", "1.0.0"))
        self.assertFalse(self.cache.remove("foo", "1.0.0"))
        self.assertEqual(self.cache.clear(), 1)
        self.assertEqual(self.cache.entries(), [])


if __name__ == "__main__":
    unittest.main()
