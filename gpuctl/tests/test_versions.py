import pytest

from gpuctl.modules.cluster.errors import PrerequisiteError
from gpuctl.modules.cluster.installer.versions import VersionResolver, parse_driver_version
from gpuctl.modules.cluster.models import VersionCompatibilityEntry


def test_parse_driver_version_keeps_major_and_minor():
    assert parse_driver_version("535.104.05") == (535, 104)
    assert parse_driver_version(" 550.54 ") == (550, 54)
    assert parse_driver_version("470") == (470, 0)


@pytest.mark.parametrize("version", [None, "", "   ", "abc", "535.x.1", "v535.104"])
def test_parse_driver_version_rejects_garbage(version):
    with pytest.raises(PrerequisiteError):
        parse_driver_version(version)


@pytest.mark.parametrize("driver, package", [
    ("535.104.05", "cuda-toolkit-12-2"),
    ("535.54", "cuda-toolkit-12-2"),
    ("535.53", "cuda-toolkit-12-1"),
    ("550.54.15", "cuda-toolkit-12-4"),
    ("570.26", "cuda-toolkit-12-8"),
    ("580.65.06", "cuda-toolkit-13-0"),
    ("595.01", "cuda-toolkit-13-1"),
    ("418.39", "cuda-toolkit-10-1"),
])
def test_resolve_picks_newest_satisfied_toolkit(driver, package):
    resolution = VersionResolver().resolve(driver)
    assert resolution.package == package
    assert not resolution.degraded


def test_minor_version_is_compared_numerically():
    # 525.105 is newer than 525.60 even though "105" < "60" as text
    assert VersionResolver().resolve("525.105.17").package == "cuda-toolkit-12-0"


def test_old_driver_falls_back_to_oldest_toolkit():
    resolution = VersionResolver().resolve("390.12")
    assert resolution.degraded
    assert resolution.package == "cuda-toolkit-10-0"


def test_custom_table_is_sorted_newest_first():
    resolver = VersionResolver([
        VersionCompatibilityEntry("450.51", "old"),
        VersionCompatibilityEntry("520.61", "new"),
    ])
    assert resolver("530.00").package == "new"
    assert resolver("500.10").package == "old"


def test_empty_table_is_rejected():
    with pytest.raises(ValueError):
        VersionResolver([])
