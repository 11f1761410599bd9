"""
Unit tests for the rebuild decision.

Tests timestamp formatting/parsing and should_rebuild for every branch,
including sub-second Dockerfile changes and persistence through ConfigStore.
"""

import os

import pytest

from kubedev.exceptions import ConfigurationError
from kubedev.project_config import BuildConfig, ConfigStore, ImageConfig
from kubedev.services.build.decision import (
    ZERO_TIMESTAMP,
    format_timestamp,
    parse_timestamp,
    should_rebuild,
)

MTIME_NS = 1_700_000_000_123_456_789


def image(latest_timestamp=None):
    return ImageConfig(name="team/app", build=BuildConfig(latest_timestamp=latest_timestamp))


@pytest.fixture
def dockerfile(tmp_path):
    path = tmp_path / "Dockerfile"
    path.write_text("FROM alpine\n")
    os.utime(path, ns=(MTIME_NS, MTIME_NS))
    return str(path)


@pytest.mark.unit
class TestTimestamps:

    def test_format_has_nanoseconds_and_utc(self):
        assert format_timestamp(MTIME_NS) == "2023-11-14T22:13:20.123456789Z"

    def test_format_pads_fraction(self):
        assert format_timestamp(1_000_000_005) == "1970-01-01T00:00:01.000000005Z"

    def test_parse_is_exact(self):
        assert parse_timestamp("2023-11-14T22:13:20.123456789Z") == MTIME_NS

    def test_parse_short_fraction_and_offset(self):
        assert parse_timestamp("2023-11-14T23:13:20.5+01:00") == 1_700_000_000_500_000_000

    def test_parse_without_fraction(self):
        assert parse_timestamp("1970-01-01T00:00:10Z") == 10_000_000_000

    def test_parse_invalid(self):
        with pytest.raises(ValueError):
            parse_timestamp("yesterday")


@pytest.mark.unit
class TestShouldRebuild:

    def test_never_built(self, dockerfile):
        img = image()

        assert should_rebuild(img, dockerfile, False) is True
        assert img.build.latest_timestamp == format_timestamp(MTIME_NS)

    def test_unchanged_dockerfile(self, dockerfile):
        img = image(format_timestamp(MTIME_NS))

        assert should_rebuild(img, dockerfile, False) is False
        assert img.build.latest_timestamp == format_timestamp(MTIME_NS)

    def test_explicit_flag_forces_rebuild(self, dockerfile):
        img = image(format_timestamp(MTIME_NS))
        assert should_rebuild(img, dockerfile, True) is True

    def test_sub_second_change_triggers_rebuild(self, dockerfile):
        img = image(format_timestamp(MTIME_NS))
        os.utime(dockerfile, ns=(MTIME_NS + 1, MTIME_NS + 1))

        assert should_rebuild(img, dockerfile, False) is True
        assert img.build.latest_timestamp == format_timestamp(MTIME_NS + 1)

    def test_missing_dockerfile_without_history(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Dockerfile missing"):
            should_rebuild(image(), str(tmp_path / "Dockerfile"), False)

    def test_missing_dockerfile_with_history(self, tmp_path):
        img = image(format_timestamp(MTIME_NS))

        assert should_rebuild(img, str(tmp_path / "Dockerfile"), True) is False
        assert img.build.latest_timestamp == ZERO_TIMESTAMP

    def test_unreadable_timestamp_rebuilds(self, dockerfile):
        img = image("not a timestamp")

        assert should_rebuild(img, dockerfile, False) is True
        assert img.build.latest_timestamp == format_timestamp(MTIME_NS)

    def test_timestamp_survives_save_and_load(self, dockerfile, project_dir):
        store = ConfigStore(str(project_dir / ".devspace" / "config.yaml"))
        img = store.load().images["default"]
        should_rebuild(img, dockerfile, False)
        store.save()

        reloaded = ConfigStore(store.path).load().images["default"]

        assert reloaded.build.latest_timestamp == format_timestamp(MTIME_NS)
        assert should_rebuild(reloaded, dockerfile, False) is False
