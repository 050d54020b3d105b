"""Per-response CSP nonce generation.

A nonce authorizes inline content for exactly one response. It is drawn from
a cryptographically secure random source, encoded as URL-safe base64 and
never persisted.

The default length is 18 bytes (144 bits): a multiple of three, so the
encoding carries no '=' padding and there is exactly one textual form per
nonce.
"""

from __future__ import annotations

import base64
import secrets
from collections.abc import Callable

from libs.platform.security.exceptions import ConfigError, NonceGenerationError

MIN_NONCE_BYTES = 16
DEFAULT_NONCE_BYTES = 18

RandomSource = Callable[[int], bytes]


class NonceGenerator:
    """Generate fresh, unguessable nonces.

    Args:
        random_source: Callable returning ``n`` random bytes. Defaults to
            ``secrets.token_bytes``; tests inject deterministic fakes.
        num_bytes: Entropy per nonce (at least 16 bytes)

    Raises:
        ConfigError: If ``num_bytes`` is below the 128-bit minimum

    Example:
        >>> gen = NonceGenerator()
        >>> len(gen.generate())
        24
    """

    def __init__(
        self,
        random_source: RandomSource = secrets.token_bytes,
        num_bytes: int = DEFAULT_NONCE_BYTES,
    ) -> None:
        if num_bytes < MIN_NONCE_BYTES:
            raise ConfigError(
                f"Nonce length {num_bytes} bytes is below the {MIN_NONCE_BYTES}-byte minimum"
            )
        self._random_source = random_source
        self._num_bytes = num_bytes

    @property
    def num_bytes(self) -> int:
        return self._num_bytes

    def generate(self) -> str:
        """Return a new URL-safe base64 nonce (no padding).

        Raises:
            NonceGenerationError: If the random source fails or returns fewer
                bytes than requested. Callers must abort the response.
        """
        try:
            raw = self._random_source(self._num_bytes)
        except Exception as e:
            raise NonceGenerationError(f"Random source failed: {type(e).__name__}") from e

        if not isinstance(raw, bytes | bytearray):
            raise NonceGenerationError("Random source returned non-bytes")
        if len(raw) != self._num_bytes:
            raise NonceGenerationError(
                f"Random source returned {len(raw)} instead of {self._num_bytes} bytes"
            )

        return base64.urlsafe_b64encode(bytes(raw)).decode("ascii").rstrip("=")


__all__ = ["DEFAULT_NONCE_BYTES", "MIN_NONCE_BYTES", "NonceGenerator", "RandomSource"]
