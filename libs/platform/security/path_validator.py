"""Resource path validation for the image proxy.

Canonicalizes and rejects unsafe ``path`` query parameters before they reach
network code. Rules are applied in a fixed order and the first match wins:

1. empty / longer than ``max_length``
2. forbidden substrings: ``..``, ``//``, NUL, ``://``, ``< > " | * ?``,
   control characters
3. full match against ``[a-zA-Z0-9._/-]+``
4. lexical containment under ``base_path`` (catches anything rule 3 missed)
5. optional extension allowlist

``validate`` is total: it always returns a PathDecision and never raises, so
a caller cannot mistake an exception for "valid". Callers that prefer an
exception call ``PathDecision.raise_for_reject()``, which raises PathRejected.
"""

from __future__ import annotations

import logging
import posixpath
import re
from collections.abc import Iterable
from dataclasses import dataclass

from libs.platform.security.exceptions import PathRejected, PathRejectReason

logger = logging.getLogger(__name__)

DEFAULT_MAX_LENGTH = 255
ALLOWED_PATTERN = re.compile(r"[a-zA-Z0-9._/-]+")
FORBIDDEN_CHARACTERS = frozenset('<>"|*?')


@dataclass(frozen=True)
class PathDecision:
    """Result of validating a caller-supplied resource path."""

    is_valid: bool
    sanitized_path: str = ""
    reject_reason: PathRejectReason | None = None

    @classmethod
    def accept(cls, sanitized_path: str) -> PathDecision:
        return cls(is_valid=True, sanitized_path=sanitized_path)

    @classmethod
    def reject(cls, reason: PathRejectReason) -> PathDecision:
        return cls(is_valid=False, reject_reason=reason)

    def raise_for_reject(self) -> str:
        """Return the sanitized path, or raise PathRejected carrying the reason.

        Raises:
            PathRejected: If the path was rejected
        """
        if not self.is_valid:
            raise PathRejected(self.reject_reason or PathRejectReason.PATTERN_MISMATCH)
        return self.sanitized_path


class PathValidator:
    """Validate relative resource paths.

    Args:
        base_path: Lexical root the path must stay under once joined
        max_length: Maximum accepted raw length
        allowed_extensions: Optional lowercase extensions (e.g. ``.jpg``);
            ``None`` disables the extension check

    Example:
        >>> PathValidator().validate("uploads/blog/photo-123.jpg").sanitized_path
        'uploads/blog/photo-123.jpg'
        >>> PathValidator().validate("../../etc/passwd").is_valid
        False
    """

    def __init__(
        self,
        base_path: str = "/srv/uploads",
        max_length: int = DEFAULT_MAX_LENGTH,
        allowed_extensions: Iterable[str] | None = None,
    ) -> None:
        self.base_path = posixpath.normpath("/" + base_path.strip("/"))
        self.max_length = max_length
        self.allowed_extensions = (
            frozenset(ext.lower() for ext in allowed_extensions)
            if allowed_extensions is not None
            else None
        )

    def validate(self, raw_path: object) -> PathDecision:
        """Validate ``raw_path``; never raises."""
        try:
            return self._validate(raw_path)
        except Exception:
            # Unreachable for str input; keep the contract total regardless.
            logger.exception("Path validation failed unexpectedly")
            return PathDecision.reject(PathRejectReason.PATTERN_MISMATCH)

    def _validate(self, raw_path: object) -> PathDecision:
        if not isinstance(raw_path, str) or not raw_path:
            return PathDecision.reject(PathRejectReason.EMPTY)

        if len(raw_path) > self.max_length:
            return PathDecision.reject(PathRejectReason.TOO_LONG)

        reason = self._forbidden_substring(raw_path)
        if reason is not None:
            return PathDecision.reject(reason)

        if not ALLOWED_PATTERN.fullmatch(raw_path):
            return PathDecision.reject(PathRejectReason.PATTERN_MISMATCH)

        relative = raw_path[1:] if raw_path.startswith("/") else raw_path
        if not relative:
            return PathDecision.reject(PathRejectReason.EMPTY)

        joined = posixpath.normpath(posixpath.join(self.base_path, relative))
        if not joined.startswith(self.base_path + "/"):
            return PathDecision.reject(PathRejectReason.OUTSIDE_BASE)
        sanitized = joined[len(self.base_path) + 1 :]

        if self.allowed_extensions is not None:
            extension = posixpath.splitext(sanitized)[1].lower()
            if extension not in self.allowed_extensions:
                return PathDecision.reject(PathRejectReason.EXTENSION_NOT_ALLOWED)

        return PathDecision.accept(sanitized)

    @staticmethod
    def _forbidden_substring(raw_path: str) -> PathRejectReason | None:
        if ".." in raw_path:
            return PathRejectReason.TRAVERSAL
        if "\x00" in raw_path:
            return PathRejectReason.NULL_BYTE
        if "://" in raw_path:
            return PathRejectReason.SCHEME
        if "//" in raw_path:
            return PathRejectReason.DOUBLE_SLASH
        for char in raw_path:
            if char in FORBIDDEN_CHARACTERS or ord(char) < 0x20 or ord(char) == 0x7F:
                return PathRejectReason.FORBIDDEN_CHARACTER
        return None


__all__ = ["DEFAULT_MAX_LENGTH", "PathDecision", "PathValidator"]
