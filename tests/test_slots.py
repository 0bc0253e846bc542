import itertools
import tempfile
import unittest
from pathlib import Path

from relpm.errors import (
    ConflictingSelectorError,
    NotInstalledAtPathError,
    NotInstalledError,
    NotInstalledGloballyError,
    NotInstalledHereError,
    PathNotFoundError,
    SlotNotFoundError,
)
from relpm.library import PackageModel, SlotManifest
from relpm.slots import Selector, resolve_slot


class TestResolveSlot(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name).resolve()
        self.default_dir = self.root / "packages" / "foo"
        self.local_dir = self.root / "game"
        self.other_dir = self.root / "other"
        for d in (self.default_dir, self.local_dir, self.other_dir):
            d.mkdir(parents=True)
        self.model = PackageModel(
            key="foo",
            slots={
                0: SlotManifest(full_path=str(self.default_dir), version="1.0.0"),
                2: SlotManifest(full_path=str(self.local_dir), version="1.1.0"),
            },
        )

    def tearDown(self) -> None:
        self._td.cleanup()

    def _resolve(self, selector: Selector, model: PackageModel | None = None, *, cwd: Path | None = None) -> int:
        idx, manifest = resolve_slot(
            self.model if model is None else model,
            selector,
            package="foo",
            default_dir=self.default_dir,
            cwd=cwd or self.root,
        )
        self.assertIs(manifest, (self.model if model is None else model).slots[idx])
        return idx

    def test_every_combination_of_two_or_more_selectors_conflicts(self) -> None:
        parts = {"global_": True, "path": str(self.local_dir), "slot": 0}
        for n in (2, 3):
            for combo in itertools.combinations(parts, n):
                selector = Selector(**{k: parts[k] for k in combo})
                with self.subTest(combo=combo):
                    with self.assertRaises(ConflictingSelectorError) as ctx:
                        self._resolve(selector)
                    self.assertEqual(len(ctx.exception.selectors), n)

    def test_conflict_message_names_both_selectors(self) -> None:
        with self.assertRaises(ConflictingSelectorError) as ctx:
            self._resolve(Selector(global_=True, path=str(self.local_dir)))
        self.assertIn("--global", str(ctx.exception))
        self.assertIn("--path", str(ctx.exception))

    def test_conflict_is_reported_even_without_a_library_entry(self) -> None:
        empty = PackageModel(key="foo")
        with self.assertRaises(ConflictingSelectorError):
            resolve_slot(None, Selector(path="/x", slot=1), package="foo", default_dir=self.default_dir, cwd=self.root)
        with self.assertRaises(ConflictingSelectorError):
            self._resolve(Selector(path="/x", slot=1), empty)

    def test_global_resolves_default_dir(self) -> None:
        self.assertEqual(self._resolve(Selector(global_=True)), 0)

    def test_global_not_installed(self) -> None:
        model = PackageModel(key="foo", slots={2: self.model.slots[2]})
        with self.assertRaises(NotInstalledGloballyError):
            self._resolve(Selector(global_=True), model)

    def test_path_resolves_matching_slot(self) -> None:
        self.assertEqual(self._resolve(Selector(path=str(self.local_dir / "sub" / ".."))), 2)

    def test_path_must_exist(self) -> None:
        with self.assertRaises(PathNotFoundError):
            self._resolve(Selector(path=str(self.root / "missing")))

    def test_path_exists_but_not_installed_there(self) -> None:
        with self.assertRaises(NotInstalledAtPathError):
            self._resolve(Selector(path=str(self.other_dir)))

    def test_recorded_path_resolves_even_if_directory_vanished(self) -> None:
        self.local_dir.rmdir()
        self.assertEqual(self._resolve(Selector(path=str(self.local_dir))), 2)

    def test_slot_must_exist(self) -> None:
        self.assertEqual(self._resolve(Selector(slot=2)), 2)
        with self.assertRaises(SlotNotFoundError):
            self._resolve(Selector(slot=1))

    def test_implicit_uses_current_directory(self) -> None:
        self.assertEqual(self._resolve(Selector(), cwd=self.local_dir), 2)
        with self.assertRaises(NotInstalledHereError):
            self._resolve(Selector(), cwd=self.other_dir)

    def test_empty_library_fails_with_selector_specific_not_installed_errors(self) -> None:
        cases = [
            (Selector(global_=True), NotInstalledGloballyError),
            (Selector(path=str(self.other_dir)), NotInstalledAtPathError),
            (Selector(path=str(self.root / "missing")), NotInstalledAtPathError),
            (Selector(slot=0), SlotNotFoundError),
            (Selector(), NotInstalledHereError),
        ]
        for selector, expected in cases:
            with self.subTest(selector=selector):
                with self.assertRaises(expected) as ctx:
                    resolve_slot(None, selector, package="foo", default_dir=self.default_dir, cwd=self.root)
                self.assertIsInstance(ctx.exception, NotInstalledError)


if __name__ == "__main__":
    unittest.main()
