"""
Tests for pack value types: digests, locators and index entries.
"""
import hashlib
from pathlib import Path

import pytest

from packhost.errors import PackIndexError
from packhost.packs.models import PackDigest, PackLocator, build_entry


class TestPackDigest:
    """Tests for PackDigest parsing and matching."""

    def test_parse_normalizes_case(self):
        digest = PackDigest.parse("SHA256:ABCDEF")
        assert digest.algorithm == "sha256"
        assert digest.value == "abcdef"
        assert str(digest) == "sha256:abcdef"

    def test_parse_rejects_unknown_algorithm(self):
        with pytest.raises(ValueError, match="Unsupported"):
            PackDigest.parse("md5:abcd")

    def test_parse_rejects_non_hex(self):
        with pytest.raises(ValueError, match="not hex"):
            PackDigest.parse("sha256:zzzz")

    def test_parse_requires_separator(self):
        with pytest.raises(ValueError):
            PackDigest.parse("abcdef")

    def test_of_and_matches(self):
        data = b"pack bytes"
        digest = PackDigest.of(data)
        assert digest.value == hashlib.sha256(data).hexdigest()
        assert digest.matches(data)
        assert not digest.matches(b"other bytes")

    def test_sha512(self):
        digest = PackDigest.of(b"x", "sha512")
        assert digest.algorithm == "sha512"
        assert digest.matches(b"x")

    def test_looks_like(self):
        assert PackDigest.looks_like("sha256:00ff")
        assert not PackDigest.looks_like("1.0.0")
        assert not PackDigest.looks_like(None)

    def test_short(self):
        digest = PackDigest.of(b"x")
        assert digest.short == f"sha256:{digest.value[:12]}"


class TestPackLocator:
    """Tests for locator URI parsing."""

    def test_bare_relative_path_anchors_to_base(self):
        locator = PackLocator.parse("packs/demo.json", base_dir=Path("/srv/index"))
        assert locator.scheme == "fs"
        assert locator.address == str(Path("/srv/index/packs/demo.json"))

    def test_absolute_path_ignores_base(self):
        locator = PackLocator.parse("/opt/packs/demo.json", base_dir=Path("/srv"))
        assert locator.address == "/opt/packs/demo.json"

    def test_file_scheme(self):
        locator = PackLocator.parse("file:///opt/packs/demo.json")
        assert locator.scheme == "file"
        assert locator.address == "/opt/packs/demo.json"

    def test_https_keeps_full_url(self):
        locator = PackLocator.parse("https://packs.example.com/demo.json")
        assert locator.scheme == "https"
        assert locator.address == "https://packs.example.com/demo.json"

    def test_object_store(self):
        locator = PackLocator.parse("s3://bucket/packs/demo.json")
        assert locator.scheme == "s3"
        assert locator.address == "bucket/packs/demo.json"
        assert str(locator) == "s3://bucket/packs/demo.json"

    def test_compound_scheme(self):
        locator = PackLocator.parse("s3+https://minio.local/bucket/demo.json")
        assert locator.scheme == "s3"
        assert locator.address == "https://minio.local/bucket/demo.json"

    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            PackLocator.parse("  ")


class TestBuildEntry:
    """Tests for index entry construction."""

    def test_digest_takes_precedence(self):
        digest = str(PackDigest.of(b"a"))
        entry = build_entry(name="demo", version="1.0.0", digest=digest, locator="demo.json")
        assert str(entry.digest) == digest
        assert str(entry.reference) == "demo@1.0.0"

    def test_digest_shaped_version_is_used(self):
        digest = str(PackDigest.of(b"a"))
        entry = build_entry(name="demo", version=digest, locator="demo.json")
        assert str(entry.digest) == digest

    def test_missing_digest_rejected(self):
        with pytest.raises(PackIndexError, match="neither a digest"):
            build_entry(name="demo", version="1.0.0", locator="demo.json", tenant="acme")

    def test_bad_digest_rejected_with_tenant(self):
        with pytest.raises(PackIndexError) as exc_info:
            build_entry(name="demo", digest="sha256:nothex", locator="demo.json", tenant="acme")
        assert exc_info.value.tenant == "acme"
        assert str(exc_info.value).startswith("[acme]")

    def test_blank_signature_is_none(self):
        entry = build_entry(name="demo", digest=str(PackDigest.of(b"a")), locator="x", signature="")
        assert entry.signature is None
