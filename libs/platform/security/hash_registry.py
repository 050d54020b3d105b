"""Registry of known inline content and its CSP SHA-256 digests.

The registry is loaded once at startup from a versioned build artifact
(``config/csp_hashes.json``, produced by ``scripts/generate_csp_hashes.py``)
and is read-only afterwards, so any number of concurrent requests can share
it.

Normalization rule (applied identically at registration and at match time):
strip leading and trailing whitespace, nothing else. The digest is the
standard-base64 SHA-256 of the UTF-8 encoding of the normalized content, the
same value browsers compute for ``'sha256-...'`` sources.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from libs.platform.security.exceptions import ConfigError

logger = logging.getLogger(__name__)

MANIFEST_VERSION = 1

HashDirective = Literal["script-src", "style-src"]
DigestFunction = Callable[[bytes], bytes]


def normalize_content(content: str) -> str:
    """Apply the single documented normalization step (outer whitespace trim)."""
    return content.strip()


def compute_digest(content: str, digest_fn: DigestFunction | None = None) -> str:
    """Compute the base64 SHA-256 digest of normalized content.

    Args:
        content: Inline script/style body
        digest_fn: Optional raw digest function (bytes -> bytes); defaults to SHA-256

    Returns:
        Standard base64 digest (with padding), without the ``sha256-`` prefix

    Example:
        >>> compute_digest("  display: none;  ") == compute_digest("display: none;")
        True
    """
    data = normalize_content(content).encode("utf-8")
    raw = digest_fn(data) if digest_fn else hashlib.sha256(data).digest()
    return base64.b64encode(raw).decode("ascii")


def format_source(digest: str) -> str:
    """Render a digest as a CSP source token."""
    return f"'sha256-{digest}'"


@dataclass(frozen=True)
class KnownHash:
    """An immutable (content, digest) pair allowed by the policy."""

    name: str
    directive: HashDirective
    content: str
    digest: str

    @property
    def source(self) -> str:
        return format_source(self.digest)


class HashManifestEntry(BaseModel):
    """One entry of the generated hash artifact."""

    name: str = Field(..., min_length=1)
    directive: HashDirective
    content: str = Field(..., min_length=1)
    digest: str = Field(..., pattern=r"^[A-Za-z0-9+/]+={0,2}$")

    model_config = ConfigDict(extra="forbid", frozen=True)


class HashManifest(BaseModel):
    """Versioned hash artifact, validated at load time."""

    version: int
    algorithm: Literal["sha256"] = "sha256"
    entries: list[HashManifestEntry] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class HashRegistry:
    """Read-only lookup table of known inline content hashes.

    Args:
        entries: Known hashes; every digest is re-verified against its content
        digest_fn: Raw digest function used by ``compute_digest`` (injectable)

    Raises:
        ConfigError: If a stored digest does not match its content, or two
            entries share the same name

    Example:
        >>> registry = HashRegistry.from_contents({"hidden": ("style-src", "display: none;")})
        >>> registry.lookup("display: none;").name
        'hidden'
    """

    def __init__(
        self,
        entries: Iterable[KnownHash] = (),
        digest_fn: DigestFunction | None = None,
    ) -> None:
        self._digest_fn = digest_fn
        by_content: dict[str, KnownHash] = {}
        by_digest: dict[str, KnownHash] = {}
        names: set[str] = set()

        for entry in entries:
            expected = self.compute_digest(entry.content)
            if expected != entry.digest:
                raise ConfigError(
                    f"Hash registry entry '{entry.name}' is stale: stored digest does not "
                    "match its content (regenerate with scripts/generate_csp_hashes.py)"
                )
            if entry.name in names:
                raise ConfigError(f"Duplicate hash registry entry name '{entry.name}'")
            names.add(entry.name)
            by_content.setdefault(normalize_content(entry.content), entry)
            by_digest.setdefault(entry.digest, entry)

        self._entries: tuple[KnownHash, ...] = tuple(by_content.values())
        self._by_content = MappingProxyType(by_content)
        self._by_digest = MappingProxyType(by_digest)

    @classmethod
    def from_contents(
        cls,
        contents: dict[str, tuple[HashDirective, str]],
        digest_fn: DigestFunction | None = None,
    ) -> HashRegistry:
        """Build a registry from ``{name: (directive, content)}``, computing digests."""
        entries = [
            KnownHash(
                name=name,
                directive=directive,
                content=content,
                digest=compute_digest(content, digest_fn),
            )
            for name, (directive, content) in contents.items()
        ]
        return cls(entries, digest_fn=digest_fn)

    @classmethod
    def from_manifest(cls, path: str | Path) -> HashRegistry:
        """Load and validate the generated hash artifact.

        Raises:
            ConfigError: If the file is missing, unparseable, has an
                unsupported version, or contains a stale digest
        """
        manifest_path = Path(path)
        try:
            raw = json.loads(manifest_path.read_text(encoding="utf-8"))
            manifest = HashManifest.model_validate(raw)
        except FileNotFoundError as e:
            raise ConfigError(f"CSP hash manifest not found: {manifest_path}") from e
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ConfigError(f"CSP hash manifest is not valid JSON: {manifest_path}") from e
        except ValidationError as e:
            raise ConfigError(
                f"CSP hash manifest failed validation ({e.error_count()} errors): {manifest_path}"
            ) from e

        if manifest.version != MANIFEST_VERSION:
            raise ConfigError(
                f"Unsupported CSP hash manifest version {manifest.version} "
                f"(expected {MANIFEST_VERSION})"
            )

        registry = cls(
            KnownHash(
                name=entry.name,
                directive=entry.directive,
                content=entry.content,
                digest=entry.digest,
            )
            for entry in manifest.entries
        )
        logger.info(
            "CSP hash registry loaded",
            extra={"path": str(manifest_path), "entries": len(registry)},
        )
        return registry

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> tuple[KnownHash, ...]:
        return self._entries

    def compute_digest(self, content: str) -> str:
        """Digest ad hoc content with this registry's digest function."""
        return compute_digest(content, self._digest_fn)

    def lookup(self, content: str) -> KnownHash | None:
        """Return the known entry for ``content`` (after normalization), if any."""
        return self._by_content.get(normalize_content(content))

    def lookup_digest(self, digest: str) -> KnownHash | None:
        """Return the known entry with this digest, if any."""
        return self._by_digest.get(digest)

    def sources_for(self, directive: str) -> tuple[str, ...]:
        """CSP source tokens for every entry registered under ``directive``."""
        return tuple(entry.source for entry in self._entries if entry.directive == directive)


__all__ = [
    "MANIFEST_VERSION",
    "DigestFunction",
    "HashDirective",
    "HashManifest",
    "HashManifestEntry",
    "HashRegistry",
    "KnownHash",
    "compute_digest",
    "format_source",
    "normalize_content",
]
