"""Tests for builds/matcher.py module.

Tests filename matching against criteria, asset name parsing and the
release view.
"""

import pytest

from conflux_builder.builds.matcher import (
    describe_release,
    find_matching_artifact,
    format_bytes,
    matches,
    parse_artifact_name,
)
from conflux_builder.criteria.schema import BuildCriteria
from conflux_builder.types import ExternalArtifact, Release

LINUX_ASSET = "conflux-builder-v1.0.0-linux-x86_64-glibc2.31.tar.gz"
MACOS_ASSET = "conflux-builder-v1.1.0-darwin-aarch64-portable-dynamic-openssl.tar.gz"


def _artifact(name: str) -> ExternalArtifact:
    return ExternalArtifact(
        name=name, download_url=f"https://example.com/{name}", size_bytes=1024
    )


@pytest.fixture
def linux_criteria() -> BuildCriteria:
    return BuildCriteria(
        version_tag="v1.0.0",
        os="linux",
        arch="x86_64",
        glibc_version="2.31",
        static_openssl=True,
        compatibility_mode=False,
    )


class TestMatches:
    """Tests for matches()."""

    def test_linux_asset_matches(self, linux_criteria: BuildCriteria) -> None:
        """A linux asset with the right glibc matches."""
        assert matches(LINUX_ASSET, linux_criteria) is True

    def test_wrong_os_does_not_match(self) -> None:
        """The same asset does not satisfy windows criteria."""
        criteria = BuildCriteria(
            version_tag="v1.0.0",
            os="windows",
            arch="x86_64",
            glibc_version="2.31",
        )
        assert matches(LINUX_ASSET, criteria) is False

    def test_macos_portable_dynamic_matches(self) -> None:
        """macOS uses the darwin token; portable and dynamic flags line up."""
        criteria = BuildCriteria(
            version_tag="v1.1.0",
            os="macos",
            arch="aarch64",
            static_openssl=False,
            compatibility_mode=True,
        )
        assert matches(MACOS_ASSET, criteria) is True

    def test_attestation_rejected(self, linux_criteria: BuildCriteria) -> None:
        """Attestation files never match by default."""
        name = LINUX_ASSET + ".attestation.json"
        assert matches(name, linux_criteria) is False
        assert matches(name, linux_criteria, skip_attestation=False) is True

    def test_wrong_glibc(self, linux_criteria: BuildCriteria) -> None:
        """glibc version must appear for linux."""
        name = "conflux-builder-v1.0.0-linux-x86_64-glibc2.39.tar.gz"
        assert matches(name, linux_criteria) is False

    def test_wrong_arch(self, linux_criteria: BuildCriteria) -> None:
        """The arch token must appear."""
        name = "conflux-builder-v1.0.0-linux-aarch64-glibc2.31.tar.gz"
        assert matches(name, linux_criteria) is False

    def test_wrong_version(self, linux_criteria: BuildCriteria) -> None:
        """The version tag must appear."""
        name = "conflux-builder-v1.0.1-linux-x86_64-glibc2.31.tar.gz"
        assert matches(name, linux_criteria) is False

    def test_portable_must_be_requested(self, linux_criteria: BuildCriteria) -> None:
        """A portable asset does not satisfy a non-portable request."""
        name = "conflux-builder-v1.0.0-linux-x86_64-glibc2.31-portable.tar.gz"
        assert matches(name, linux_criteria) is False

    def test_requested_portable_needs_portable_asset(self) -> None:
        """A portable request is not satisfied by a regular asset."""
        criteria = BuildCriteria(
            version_tag="v1.0.0",
            os="linux",
            arch="x86_64",
            glibc_version="2.31",
            compatibility_mode=True,
        )
        assert matches(LINUX_ASSET, criteria) is False

    def test_dynamic_openssl_must_match(self, linux_criteria: BuildCriteria) -> None:
        """Dynamic OpenSSL assets only satisfy dynamic requests."""
        name = "conflux-builder-v1.0.0-linux-x86_64-glibc2.31-dynamic-openssl.tar.gz"
        assert matches(name, linux_criteria) is False

    def test_missing_required_field(self) -> None:
        """Empty required fields never match."""
        criteria = BuildCriteria(version_tag="", os="linux", arch="x86_64")
        assert matches(LINUX_ASSET, criteria) is False

    def test_windows_ignores_glibc(self) -> None:
        """glibc is only checked for linux."""
        criteria = BuildCriteria(version_tag="v1.0.0", os="windows", arch="x86_64")
        assert matches("conflux-builder-v1.0.0-windows-x86_64.zip", criteria) is True


class TestFindMatchingArtifact:
    """Tests for find_matching_artifact()."""

    def test_first_match_wins(self, linux_criteria: BuildCriteria) -> None:
        """The first matching asset in release order is returned."""
        artifacts = [
            _artifact(LINUX_ASSET + ".attestation.json"),
            _artifact("conflux-builder-v1.0.0-windows-x86_64.zip"),
            _artifact(LINUX_ASSET),
            _artifact(LINUX_ASSET.replace(".tar.gz", ".zip")),
        ]
        found = find_matching_artifact(artifacts, linux_criteria)

        assert found is not None
        assert found.name == LINUX_ASSET

    def test_no_match(self, linux_criteria: BuildCriteria) -> None:
        """None when nothing matches."""
        assert find_matching_artifact([_artifact(MACOS_ASSET)], linux_criteria) is None
        assert find_matching_artifact([], linux_criteria) is None


class TestParseArtifactName:
    """Tests for parse_artifact_name()."""

    def test_linux(self) -> None:
        parsed = parse_artifact_name(LINUX_ASSET)
        assert parsed.os == "Linux"
        assert parsed.arch == "x86_64"
        assert parsed.is_portable is False
        assert parsed.is_attestation is False

    def test_macos_portable(self) -> None:
        parsed = parse_artifact_name(MACOS_ASSET)
        assert parsed.os == "macOS"
        assert parsed.arch == "aarch64"
        assert parsed.is_portable is True

    def test_unknown(self) -> None:
        parsed = parse_artifact_name("checksums.txt")
        assert parsed.os is None
        assert parsed.arch is None


class TestFormatBytes:
    """Tests for format_bytes()."""

    @pytest.mark.parametrize(
        "size,expected",
        [
            (0, "0 Bytes"),
            (512, "512 Bytes"),
            (1024, "1 KB"),
            (1536, "1.5 KB"),
            (1240, "1.21 KB"),
            (52_428_800, "50 MB"),
            (3 * 1024**3, "3 GB"),
        ],
    )
    def test_format(self, size: int, expected: str) -> None:
        """Sizes use binary units and drop trailing zeros."""
        assert format_bytes(size) == expected


class TestDescribeRelease:
    """Tests for describe_release()."""

    def test_assets_annotated(self) -> None:
        """Assets carry parsed attributes and human sizes."""
        release = Release(
            id=7,
            tag_name="v1.0.0-abc1234",
            name="v1.0.0",
            assets=[_artifact(LINUX_ASSET), _artifact(LINUX_ASSET + ".attestation")],
        )
        data = describe_release(release)

        assert data["tag_name"] == "v1.0.0-abc1234"
        assert len(data["assets"]) == 2
        first = data["assets"][0]
        assert first["os"] == "Linux"
        assert first["size"] == "1 KB"
        assert first["is_attestation"] is False
        assert data["assets"][1]["is_attestation"] is True
