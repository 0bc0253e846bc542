import unittest

from relpm.versions import compare_versions, is_newer, sort_newest_first


class TestCompareVersions(unittest.TestCase):
    def test_numeric_components_compare_numerically(self) -> None:
        self.assertEqual(compare_versions("10", "2"), 1)
        self.assertEqual(compare_versions("1.10.0", "1.9.9"), 1)
        self.assertEqual(compare_versions("1.2", "1.2.0"), 0)

    def test_leading_v_is_ignored(self) -> None:
        self.assertEqual(compare_versions("v1.2.0", "1.2.0"), 0)
        self.assertEqual(compare_versions("V2.0.0", "v1.9.0"), 1)

    def test_prerelease_sorts_below_release(self) -> None:
        self.assertEqual(compare_versions("1.0.0-rc.1", "1.0.0"), -1)
        self.assertEqual(compare_versions("1.0.0-rc.2", "1.0.0-rc.10"), -1)
        self.assertEqual(compare_versions("1.0.0-alpha", "1.0.0-beta"), -1)

    def test_build_metadata_is_ignored(self) -> None:
        self.assertEqual(compare_versions("1.0.0+build.5", "1.0.0"), 0)

    def test_unparseable_tags_fall_back_to_string_order(self) -> None:
        self.assertEqual(compare_versions("nightly-b", "nightly-a"), 1)
        self.assertEqual(compare_versions("latest", "latest"), 0)

    def test_is_newer_treats_missing_installed_version_as_outdated(self) -> None:
        self.assertTrue(is_newer("1.0.0", None))
        self.assertTrue(is_newer("1.2.0", "1.1.0"))
        self.assertFalse(is_newer("1.1.0", "1.1.0"))
        self.assertFalse(is_newer("1.0.0", "1.1.0"))

    def test_sort_newest_first_keeps_published_order_for_ties(self) -> None:
        items = [("a", "1.0"), ("b", "2.0"), ("c", "v2.0.0"), ("d", "1.5")]
        ordered = sort_newest_first(items, key=lambda x: x[1])
        self.assertEqual([x[0] for x in ordered], ["b", "c", "d", "a"])


if __name__ == "__main__":
    unittest.main()
