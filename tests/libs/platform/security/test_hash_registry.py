"""Tests for the CSP known-hash registry."""

import json
from pathlib import Path

import pytest

from libs.platform.security.exceptions import ConfigError
from libs.platform.security.hash_registry import (
    HashRegistry,
    KnownHash,
    compute_digest,
)

PROJECT_ROOT = Path(__file__).resolve().parents[4]

# Digests computed independently (sha256 | base64)
DISPLAY_NONE_DIGEST = "biLFinpqYMtWHmXfkA1BPeCY0/fNt46SAZ+BBk5YUog="
POSITION_RELATIVE_DIGEST = "T6AAKdWxO6p6GZVyzGAJDSLhOoPuuoZ6LlqMX153CvM="


def _write_manifest(path: Path, entries: list[dict], version: int = 1) -> Path:
    path.write_text(
        json.dumps({"version": version, "algorithm": "sha256", "entries": entries}),
        encoding="utf-8",
    )
    return path


class TestComputeDigest:
    def test_known_values(self) -> None:
        assert compute_digest("display: none;") == DISPLAY_NONE_DIGEST
        assert compute_digest("position: relative;") == POSITION_RELATIVE_DIGEST

    def test_deterministic(self) -> None:
        assert compute_digest("opacity: 0;") == compute_digest("opacity: 0;")

    def test_outer_whitespace_is_normalized(self) -> None:
        assert compute_digest("\n  display: none;\t ") == DISPLAY_NONE_DIGEST

    def test_inner_whitespace_is_significant(self) -> None:
        assert compute_digest("display:none;") != DISPLAY_NONE_DIGEST

    def test_injected_digest_function(self) -> None:
        assert compute_digest("anything", digest_fn=lambda data: b"\x00" * 32) == "A" * 43 + "="


class TestHashRegistry:
    def test_lookup_by_content(self, registry: HashRegistry) -> None:
        entry = registry.lookup("  display: none;  ")

        assert entry is not None
        assert entry.name == "hidden"
        assert entry.digest == DISPLAY_NONE_DIGEST

    def test_lookup_unknown_content(self, registry: HashRegistry) -> None:
        assert registry.lookup("color: red;") is None

    def test_lookup_digest(self, registry: HashRegistry) -> None:
        entry = registry.lookup_digest(DISPLAY_NONE_DIGEST)

        assert entry is not None
        assert entry.name == "hidden"

    def test_sources_for_directive(self, registry: HashRegistry) -> None:
        assert registry.sources_for("style-src") == (f"'sha256-{DISPLAY_NONE_DIGEST}'",)
        assert len(registry.sources_for("script-src")) == 1
        assert registry.sources_for("img-src") == ()

    def test_stale_digest_rejected(self) -> None:
        stale = KnownHash(
            name="hidden",
            directive="style-src",
            content="display: block;",
            digest=DISPLAY_NONE_DIGEST,
        )

        with pytest.raises(ConfigError, match="stale"):
            HashRegistry([stale])

    def test_duplicate_names_rejected(self) -> None:
        entry = KnownHash(
            name="hidden",
            directive="style-src",
            content="display: none;",
            digest=DISPLAY_NONE_DIGEST,
        )

        with pytest.raises(ConfigError, match="Duplicate"):
            HashRegistry([entry, entry])

    def test_entries_are_immutable(self, registry: HashRegistry) -> None:
        assert isinstance(registry.entries, tuple)
        with pytest.raises(AttributeError):
            registry.entries[0].digest = "x"  # type: ignore[misc]

    def test_registry_digest_function_used_for_ad_hoc_content(self) -> None:
        registry = HashRegistry(digest_fn=lambda data: b"\xff" * 32)

        assert registry.compute_digest("x") == "/" * 42 + "8="


class TestFromManifest:
    def test_loads_valid_manifest(self, tmp_path: Path) -> None:
        path = _write_manifest(
            tmp_path / "hashes.json",
            [
                {
                    "name": "hidden",
                    "directive": "style-src",
                    "content": "display: none;",
                    "digest": DISPLAY_NONE_DIGEST,
                }
            ],
        )

        registry = HashRegistry.from_manifest(path)

        assert len(registry) == 1
        assert registry.lookup("display: none;") is not None

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="not found"):
            HashRegistry.from_manifest(tmp_path / "missing.json")

    def test_invalid_json(self, tmp_path: Path) -> None:
        path = tmp_path / "hashes.json"
        path.write_text("{not json", encoding="utf-8")

        with pytest.raises(ConfigError, match="not valid JSON"):
            HashRegistry.from_manifest(path)

    def test_unknown_directive_fails_validation(self, tmp_path: Path) -> None:
        path = _write_manifest(
            tmp_path / "hashes.json",
            [
                {
                    "name": "hidden",
                    "directive": "img-src",
                    "content": "display: none;",
                    "digest": DISPLAY_NONE_DIGEST,
                }
            ],
        )

        with pytest.raises(ConfigError, match="failed validation"):
            HashRegistry.from_manifest(path)

    def test_unsupported_version(self, tmp_path: Path) -> None:
        path = _write_manifest(tmp_path / "hashes.json", [], version=2)

        with pytest.raises(ConfigError, match="version"):
            HashRegistry.from_manifest(path)

    def test_stale_manifest_entry(self, tmp_path: Path) -> None:
        path = _write_manifest(
            tmp_path / "hashes.json",
            [
                {
                    "name": "hidden",
                    "directive": "style-src",
                    "content": "display: block;",
                    "digest": DISPLAY_NONE_DIGEST,
                }
            ],
        )

        with pytest.raises(ConfigError, match="stale"):
            HashRegistry.from_manifest(path)

    def test_shipped_manifest_is_consistent(self) -> None:
        registry = HashRegistry.from_manifest(PROJECT_ROOT / "config" / "csp_hashes.json")

        assert registry.lookup("display: none;") is not None
        assert registry.sources_for("script-src")
