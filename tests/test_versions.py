import pytest

import foreman


@pytest.mark.parametrize("version, expected", [
    ("1.21", True),
    ("1.21.1", True),
    ("1.21.1-pre1", False),
    ("24w14a", False),
    ("1.21-rc1", False),
    ("", False),
    (None, False),
])
def test_version_isstable(version, expected):
    assert foreman.version_isstable(version) is expected


def test_version_latest_skips_prereleases():
    candidates = ["1.20.4", "1.21", "1.21.1", "1.21.2-pre1", "24w33a", "1.9.4"]
    assert foreman.version_latest(candidates) == "1.21.1"


def test_version_latest_sorts_numerically():
    assert foreman.version_latest(["1.9", "1.10", "1.2.5"]) == "1.10"


def test_version_latest_no_stable():
    assert foreman.version_latest(["24w14a", "1.21-rc1"]) is None
    assert foreman.version_latest([]) is None


def test_version_new():
    assert foreman.version_new("1.21") == foreman.Version(1, 21, 0)
    assert str(foreman.version_new("1.20.4")) == "1.20.4"
    with pytest.raises(ValueError):
        foreman.version_new("1.21-pre1")


def test_build_new_defaults_to_latest():
    bd = foreman.build_new("Paper")
    assert bd.flavor is foreman.Flavor.Paper
    assert bd.version == foreman.LATEST
    assert bd.build == foreman.LATEST


def test_build_new_unknown_flavor():
    with pytest.raises(foreman.UnsupportedFlavor, match="quake"):
        foreman.build_new("quake", "1.0")
