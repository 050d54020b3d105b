#!/usr/bin/env python3
"""
Generate the CSP hash manifest from reviewed inline sources.

Reads ``config/csp_inline_sources.json`` (hand-maintained, code-reviewed list
of inline script/style snippets) and writes ``config/csp_hashes.json``, the
versioned artifact the gateway loads at startup. Source files are never
rewritten.

Usage:
    python scripts/generate_csp_hashes.py              # regenerate the manifest
    python scripts/generate_csp_hashes.py --check      # CI: fail if manifest is stale
    python scripts/generate_csp_hashes.py --content "display: none;"
    python scripts/generate_csp_hashes.py --from-violation "<browser console error>"
    python scripts/generate_csp_hashes.py --file snippet.css
    python scripts/generate_csp_hashes.py --scan apps/web_gateway/templates

Exit codes:
    0 success, 1 stale/missing manifest, no hash found or unreviewed inline
    blocks found, 2 invalid sources or unreadable input
"""

from __future__ import annotations

import argparse
import json
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from libs.platform.security.exceptions import ConfigError
from libs.platform.security.hash_registry import (
    MANIFEST_VERSION,
    HashDirective,
    HashManifest,
    HashRegistry,
    KnownHash,
    compute_digest,
    normalize_content,
)

PROJECT_ROOT = Path(__file__).resolve().parent.parent
SOURCES_PATH = PROJECT_ROOT / "config" / "csp_inline_sources.json"
MANIFEST_PATH = PROJECT_ROOT / "config" / "csp_hashes.json"

# Chrome/Firefox console messages quote the expected source: ('sha256-...')
VIOLATION_HASH_PATTERN = re.compile(r"'?sha256-([A-Za-z0-9+/]{43}=)'?")

INLINE_BLOCK_PATTERN = re.compile(
    r"<(?P<tag>script|style)\b(?P<attrs>[^>]*)>(?P<body>.*?)</(?P=tag)\s*>",
    re.IGNORECASE | re.DOTALL,
)
NONCE_ATTR_PATTERN = re.compile(r"\bnonce\s*=", re.IGNORECASE)
SRC_ATTR_PATTERN = re.compile(r"\bsrc\s*=", re.IGNORECASE)
# A body that is one template expression is rendered from the hash registry
TEMPLATE_EXPRESSION_PATTERN = re.compile(r"\{\{[^{}]*\}\}")
TAG_DIRECTIVES: dict[str, HashDirective] = {"script": "script-src", "style": "style-src"}


class InlineSource(BaseModel):
    """One reviewed inline snippet."""

    name: str = Field(..., min_length=1)
    directive: HashDirective
    content: str = Field(..., min_length=1)

    model_config = ConfigDict(extra="forbid")


class InlineSources(BaseModel):
    """The reviewed source list."""

    version: int = MANIFEST_VERSION
    sources: list[InlineSource] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


def load_sources(path: Path) -> InlineSources:
    """Load and validate the reviewed sources file.

    Raises:
        ConfigError: If the file is missing, not JSON, or fails validation
    """
    try:
        return InlineSources.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except FileNotFoundError as e:
        raise ConfigError(f"Inline sources file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Inline sources file is not valid JSON: {path}") from e
    except ValidationError as e:
        raise ConfigError(f"Inline sources failed validation ({e.error_count()} errors)") from e


def build_manifest(sources: InlineSources) -> dict[str, Any]:
    """Compute digests and return the manifest document.

    The result is re-validated through HashManifest and HashRegistry, so a
    duplicate name fails here rather than at service startup.
    """
    document = {
        "version": MANIFEST_VERSION,
        "algorithm": "sha256",
        "entries": [
            {
                "name": source.name,
                "directive": source.directive,
                "content": source.content,
                "digest": compute_digest(source.content),
            }
            for source in sources.sources
        ],
    }
    manifest = HashManifest.model_validate(document)
    HashRegistry(
        KnownHash(name=e.name, directive=e.directive, content=e.content, digest=e.digest)
        for e in manifest.entries
    )
    return document


def render_manifest(document: dict[str, Any]) -> str:
    return json.dumps(document, indent=2) + "\n"


def manifest_is_current(document: dict[str, Any], manifest_path: Path) -> bool:
    """True if the manifest on disk matches ``document`` (formatting ignored)."""
    try:
        existing = json.loads(manifest_path.read_text(encoding="utf-8"))
    except (FileNotFoundError, json.JSONDecodeError):
        return False
    return bool(existing == document)


def extract_violation_hash(message: str) -> str | None:
    """Pull the suggested ``sha256-...`` source out of a browser CSP error."""
    match = VIOLATION_HASH_PATTERN.search(message)
    return f"sha256-{match.group(1)}" if match else None


@dataclass(frozen=True)
class UnreviewedBlock:
    """An inline block the CSP would refuse: no nonce and no reviewed hash."""

    path: Path
    line: int
    directive: HashDirective
    content: str

    @property
    def source(self) -> str:
        return f"'sha256-{compute_digest(self.content)}'"


def find_unreviewed_blocks(root: Path, sources: InlineSources) -> list[UnreviewedBlock]:
    """Scan ``*.html`` files under ``root`` for inline blocks missing from ``sources``.

    Blocks carrying a ``nonce`` attribute, external scripts (``src=``) and
    bodies that are a single template expression are skipped. Style
    attributes are out of scope: hashing them needs ``'unsafe-hashes'``.
    """
    reviewed = {(s.directive, normalize_content(s.content)) for s in sources.sources}
    found: list[UnreviewedBlock] = []
    for path in sorted(root.rglob("*.html")):
        text = path.read_text(encoding="utf-8")
        for match in INLINE_BLOCK_PATTERN.finditer(text):
            attrs, body = match.group("attrs"), match.group("body")
            content = normalize_content(body)
            if not content or NONCE_ATTR_PATTERN.search(attrs) or SRC_ATTR_PATTERN.search(attrs):
                continue
            if TEMPLATE_EXPRESSION_PATTERN.fullmatch(content):
                continue
            directive = TAG_DIRECTIVES[match.group("tag").lower()]
            if (directive, content) in reviewed:
                continue
            line = text.count("\n", 0, match.start()) + 1
            found.append(UnreviewedBlock(path, line, directive, content))
    return found


def report_unreviewed_blocks(root: Path, sources: InlineSources) -> int:
    if not root.is_dir():
        print(f"ERROR: {root} is not a directory", file=sys.stderr)
        return 2
    try:
        found = find_unreviewed_blocks(root, sources)
    except (OSError, UnicodeDecodeError) as e:
        print(f"ERROR: Cannot scan {root}: {e}", file=sys.stderr)
        return 2
    for block in found:
        print(f"{block.path}:{block.line}: {block.directive} {block.source}")
        print(f"    {block.content[:120]!r}")
    if found:
        print(
            f"ERROR: {len(found)} inline block(s) have no nonce and no reviewed hash; "
            "add them to config/csp_inline_sources.json or render them with the nonce.",
            file=sys.stderr,
        )
        return 1
    print(f"OK: no unreviewed inline blocks under {root}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point. Returns exit code."""

    parser = argparse.ArgumentParser(description="Generate the CSP inline hash manifest")
    parser.add_argument("--sources", type=Path, default=SOURCES_PATH, help="Reviewed sources file")
    parser.add_argument("--output", type=Path, default=MANIFEST_PATH, help="Manifest to write")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--check", action="store_true", help="Fail if the manifest is stale")
    mode.add_argument("--content", help="Print the CSP source for one snippet and exit")
    mode.add_argument(
        "--from-violation",
        dest="violation",
        help="Extract the suggested hash from a browser console CSP error",
    )
    mode.add_argument("--file", type=Path, help="Print the CSP source for a file's content")
    mode.add_argument(
        "--scan",
        type=Path,
        metavar="DIR",
        help="Fail if templates under DIR hold inline blocks with no nonce or reviewed hash",
    )
    args = parser.parse_args(argv)

    if args.content is not None:
        print(f"'sha256-{compute_digest(args.content)}'")
        return 0

    if args.file is not None:
        try:
            content = args.file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            print(f"ERROR: Cannot read {args.file}: {e}", file=sys.stderr)
            return 2
        print(f"'sha256-{compute_digest(content)}'")
        return 0

    if args.violation is not None:
        suggested = extract_violation_hash(args.violation)
        if suggested is None:
            print("ERROR: No sha256 hash found in the violation message", file=sys.stderr)
            return 1
        print(f"'{suggested}'")
        print(
            "Add the matching snippet to config/csp_inline_sources.json after review, "
            "then regenerate the manifest.",
            file=sys.stderr,
        )
        return 0

    try:
        sources = load_sources(args.sources)
        document = build_manifest(sources)
    except (ConfigError, ValidationError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    if args.scan is not None:
        return report_unreviewed_blocks(args.scan, sources)

    if args.check:
        if manifest_is_current(document, args.output):
            print(f"OK: {args.output} is up to date ({len(document['entries'])} entries)")
            return 0
        print(
            f"ERROR: {args.output} is stale; run scripts/generate_csp_hashes.py",
            file=sys.stderr,
        )
        return 1

    args.output.write_text(render_manifest(document), encoding="utf-8")
    print(f"Wrote {len(document['entries'])} entries to {args.output}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
