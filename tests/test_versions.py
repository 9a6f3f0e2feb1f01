import unittest

from wharf.client import WharfError
from wharf.versions import Version, compare_versions, exact_version, version_satisfies


class TestVersionSpec(unittest.TestCase):
    def test_version_satisfies_common_specifiers(self) -> None:
        self.assertTrue(version_satisfies("1.2.3", "1.2.3"))
        self.assertTrue(version_satisfies("1.2.3", ">=1.0.0 <2.0.0"))
        self.assertTrue(version_satisfies("1.2.3", "^1.1.0"))
        self.assertTrue(version_satisfies("1.2.3", "~1.2.0"))
        self.assertTrue(version_satisfies("3.1.4", "latest"))
        self.assertFalse(version_satisfies("2.0.0", "<2.0.0"))
        self.assertFalse(version_satisfies("1.2.3", "^2.0.0"))

    def test_invalid_specifier_is_an_error(self) -> None:
        with self.assertRaises(WharfError):
            version_satisfies("1.0.0", ">=!!")

    def test_exact_version(self) -> None:
        self.assertEqual(exact_version("==1.4.0"), Version(1, 4, 0))
        self.assertIsNone(exact_version(">=1.0.0 <2.0.0"))


class TestVersionOrdering(unittest.TestCase):
    def test_prerelease_sorts_before_release(self) -> None:
        self.assertLess(Version.parse("1.0.0-beta.2"), Version.parse("1.0.0"))
        self.assertLess(Version.parse("1.0.0-beta.2"), Version.parse("1.0.0-beta.10"))
        self.assertEqual(compare_versions("1.0", "1.0.0"), 0)

    def test_build_metadata_is_ignored_for_equality(self) -> None:
        self.assertEqual(Version.parse("1.0.0+abc"), Version.parse("1.0.0+def"))
        self.assertEqual(str(Version.parse("v2.1.0+abc")), "2.1.0+abc")

    def test_from_tag_skips_non_versions(self) -> None:
        self.assertEqual(Version.from_tag("v1.2.3"), Version(1, 2, 3))
        self.assertIsNone(Version.from_tag("release-candidate"))


if __name__ == "__main__":
    unittest.main()
