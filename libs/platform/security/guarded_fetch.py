"""SSRF-guarded outbound HTTP fetcher.

Every outbound request made on behalf of a browser goes through
GuardedFetcher.fetch(), which enforces, in order:

1. Policy sanity: relaxed policies (redirects, empty allowlist, localhost,
   private networks) are refused outright under the production profile.
2. URL shape: http/https only, a host, no embedded credentials.
3. Host allowlist: exact match or dot-suffix subdomain of an allowed domain.
   Non-allowlisted names are rejected before any DNS lookup.
4. Address containment: every resolved address must be globally routable
   (no loopback, RFC 1918, link-local, CGNAT, multicast, reserved). The
   connection is then pinned to a validated address, so a second DNS answer
   cannot steer the socket elsewhere.
5. Transport limits: redirects are never followed implicitly; each hop
   counts against ``max_redirects`` and is re-validated from step 2. The
   whole exchange is bounded by ``timeout_ms`` and the client is closed on
   cancellation so sockets are not leaked. Bodies are capped at
   ``max_response_bytes``.

Containment failures raise ProtectionBlocked; ordinary network failures
raise UpstreamError.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field

import httpcore
import httpx
from prometheus_client import Counter

from libs.platform.security.csp_policy import PROFILES, Profile
from libs.platform.security.exceptions import (
    BlockReason,
    ConfigError,
    ProtectionBlocked,
    UpstreamError,
    UpstreamFailure,
)

logger = logging.getLogger(__name__)

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
Resolver = Callable[[str, int], Awaitable[list[str]]]

ALLOWED_SCHEMES = frozenset({"http", "https"})
DEFAULT_TIMEOUT_MS = 5000
DEFAULT_MAX_RESPONSE_BYTES = 10 * 1024 * 1024
DEFAULT_LOCALHOST_PORTS = frozenset({3000, 4200})

ssrf_blocked_requests_total = Counter(
    "ssrf_blocked_requests_total", "Outbound requests blocked by SSRF containment", ["reason"]
)
guarded_fetch_requests_total = Counter(
    "guarded_fetch_requests_total", "Outbound guarded fetch attempts", ["outcome"]
)


async def resolve_host(host: str, port: int) -> list[str]:
    """Resolve ``host`` to the set of addresses the OS would connect to."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return sorted({str(info[4][0]) for info in infos})


def _parse_ip(value: str) -> IPAddress | None:
    try:
        address = ipaddress.ip_address(value)
    except ValueError:
        return None
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        return address.ipv4_mapped
    return address


def is_restricted_address(address: IPAddress) -> bool:
    """True for any address that is not publicly routable unicast."""
    return not address.is_global or address.is_multicast


def host_matches_allowlist(host: str, allowed_domains: Iterable[str]) -> bool:
    """Exact match or verified subdomain (``a.example.com`` under ``example.com``)."""
    host = host.lower().rstrip(".")
    return any(host == domain or host.endswith("." + domain) for domain in allowed_domains)


@dataclass(frozen=True)
class FetchPolicy:
    """Per-call containment settings.

    The defaults are the restrictive baseline: zero redirects, a mandatory
    domain allowlist, no localhost, no private networks. Relaxing any of
    these requires ``override_reason``; the reason is written to the audit
    log on every relaxed fetch. Even with ``allow_localhost`` set, loopback
    is only reachable on ``allowed_localhost_ports``.
    """

    allowed_domains: frozenset[str] = field(default_factory=frozenset)
    allow_localhost: bool = False
    allowed_localhost_ports: frozenset[int] = DEFAULT_LOCALHOST_PORTS
    allow_private_networks: bool = False
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_redirects: int = 0
    max_response_bytes: int = DEFAULT_MAX_RESPONSE_BYTES
    override_reason: str | None = None

    def __post_init__(self) -> None:
        normalized = frozenset(
            domain.strip().lower().rstrip(".") for domain in self.allowed_domains if domain.strip()
        )
        object.__setattr__(self, "allowed_domains", normalized)

        if self.timeout_ms <= 0:
            raise ConfigError("FetchPolicy.timeout_ms must be positive")
        if self.max_redirects < 0:
            raise ConfigError("FetchPolicy.max_redirects must not be negative")
        if self.max_response_bytes <= 0:
            raise ConfigError("FetchPolicy.max_response_bytes must be positive")
        if any(not 0 < port < 65536 for port in self.allowed_localhost_ports):
            raise ConfigError("FetchPolicy.allowed_localhost_ports must be valid TCP ports")
        if self.is_relaxed and not (self.override_reason and self.override_reason.strip()):
            raise ConfigError(
                "Relaxed FetchPolicy (redirects, empty allowlist, localhost or private "
                "networks) requires an explicit override_reason"
            )

    @property
    def is_relaxed(self) -> bool:
        return (
            self.max_redirects > 0
            or not self.allowed_domains
            or self.allow_localhost
            or self.allow_private_networks
        )

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000


@dataclass(frozen=True)
class FetchedResponse:
    """A fully read, size-capped upstream response."""

    url: str
    status_code: int
    headers: Mapping[str, str]
    content: bytes

    @property
    def content_type(self) -> str | None:
        return self.headers.get("content-type")


def _pin_key(raw_host: bytes | str) -> str:
    host = raw_host.decode("ascii") if isinstance(raw_host, bytes) else raw_host
    return host.lower().rstrip(".")


class PinnedNetworkBackend(httpcore.AsyncNetworkBackend):
    """Dial the address validated for a host instead of resolving it again.

    Args:
        pins: Live ``host -> address`` map filled by the fetcher per hop
        backend: Backend that opens the real socket (default: anyio)
    """

    def __init__(
        self,
        pins: Mapping[str, str],
        backend: httpcore.AsyncNetworkBackend | None = None,
    ) -> None:
        self._pins = pins
        self._backend = backend or httpcore.AnyIOBackend()

    async def connect_tcp(
        self,
        host: str,
        port: int,
        timeout: float | None = None,
        local_address: str | None = None,
        socket_options: Iterable[httpcore.SOCKET_OPTION] | None = None,
    ) -> httpcore.AsyncNetworkStream:
        address = self._pins.get(_pin_key(host))
        if address is None:
            raise httpcore.ConnectError(f"No validated address for {host}")
        return await self._backend.connect_tcp(
            address,
            port,
            timeout=timeout,
            local_address=local_address,
            socket_options=socket_options,
        )

    async def connect_unix_socket(
        self,
        path: str,
        timeout: float | None = None,
        socket_options: Iterable[httpcore.SOCKET_OPTION] | None = None,
    ) -> httpcore.AsyncNetworkStream:
        raise httpcore.ConnectError("Unix sockets are not reachable through the guarded fetcher")

    async def sleep(self, seconds: float) -> None:
        await self._backend.sleep(seconds)


class PinnedTransport(httpx.AsyncHTTPTransport):
    """httpx transport whose connections go through PinnedNetworkBackend.

    TLS still verifies the certificate against the URL host name; only the
    socket destination is pinned.
    """

    def __init__(
        self,
        pins: Mapping[str, str],
        backend: httpcore.AsyncNetworkBackend | None = None,
    ) -> None:
        super().__init__(trust_env=False)
        # httpx has no network backend option; replace the pool it built
        self._pool = httpcore.AsyncConnectionPool(
            ssl_context=httpx.create_ssl_context(),
            network_backend=PinnedNetworkBackend(pins, backend),
        )


class GuardedFetcher:
    """Outbound HTTP with SSRF containment.

    Args:
        profile: Deployment profile, fixed at startup. Relaxed policies are
            refused under "production".
        resolver: Async ``(host, port) -> [address, ...]``; defaults to the
            system resolver. Tests inject a fake.
        network_backend: Socket layer under the pinned transport (default:
            anyio). Tests inject an httpcore mock backend.
    """

    def __init__(
        self,
        profile: Profile,
        resolver: Resolver | None = None,
        network_backend: httpcore.AsyncNetworkBackend | None = None,
    ) -> None:
        if profile not in PROFILES:
            raise ConfigError(f"Unknown profile: {profile!r}")
        self.profile = profile
        self._resolver = resolver or resolve_host
        self._network_backend = network_backend

    async def fetch(
        self,
        url: str,
        policy: FetchPolicy,
        headers: Mapping[str, str] | None = None,
    ) -> FetchedResponse:
        """GET ``url`` under ``policy``.

        Raises:
            ProtectionBlocked: A containment rule fired (reason attached)
            UpstreamError: Timeout, DNS/transport failure, non-2xx, oversize body
        """
        try:
            self._check_policy(policy)
            response = await asyncio.wait_for(
                self._fetch(url, policy, dict(headers or {})),
                timeout=policy.timeout_seconds,
            )
        except ProtectionBlocked as e:
            ssrf_blocked_requests_total.labels(reason=e.reason.value).inc()
            guarded_fetch_requests_total.labels(outcome="blocked").inc()
            logger.warning(
                "Outbound request blocked by SSRF protection",
                extra={"reason": e.reason.value, "host": e.host, "profile": self.profile},
            )
            raise
        except TimeoutError as e:
            guarded_fetch_requests_total.labels(outcome="timeout").inc()
            logger.warning(
                "Outbound request timed out",
                extra={"timeout_ms": policy.timeout_ms},
            )
            raise UpstreamError(UpstreamFailure.TIMEOUT) from e
        except UpstreamError as e:
            guarded_fetch_requests_total.labels(outcome="upstream_error").inc()
            logger.info(
                "Outbound request failed",
                extra={"failure": e.failure.value, "status_code": e.status_code},
            )
            raise

        guarded_fetch_requests_total.labels(outcome="success").inc()
        return response

    def _check_policy(self, policy: FetchPolicy) -> None:
        if not policy.is_relaxed:
            return
        if self.profile == "production":
            raise ProtectionBlocked(
                BlockReason.POLICY_OVERRIDE_DENIED,
                "Relaxed fetch policy refused under production profile",
            )
        logger.warning(
            "AUDIT: relaxed fetch policy in use",
            extra={
                "override_reason": policy.override_reason,
                "max_redirects": policy.max_redirects,
                "allow_localhost": policy.allow_localhost,
                "allow_private_networks": policy.allow_private_networks,
                "allowlist_size": len(policy.allowed_domains),
            },
        )

    async def _fetch(
        self,
        url: str,
        policy: FetchPolicy,
        headers: dict[str, str],
    ) -> FetchedResponse:
        try:
            current = httpx.URL(url)
        except (httpx.InvalidURL, TypeError) as e:
            raise ProtectionBlocked(BlockReason.INVALID_URL) from e

        # host -> validated address; the transport dials only these
        pins: dict[str, str] = {}
        redirects = 0
        async with httpx.AsyncClient(
            transport=PinnedTransport(pins, self._network_backend),
            follow_redirects=False,
            timeout=httpx.Timeout(policy.timeout_seconds),
            trust_env=False,
        ) as client:
            while True:
                pins[_pin_key(current.raw_host)] = await self._validate_target(current, policy)
                try:
                    async with client.stream("GET", current, headers=headers) as response:
                        if 300 <= response.status_code < 400 and response.status_code != 304:
                            location = response.headers.get("location")
                            if redirects >= policy.max_redirects or not location:
                                raise ProtectionBlocked(
                                    BlockReason.REDIRECT_DENIED, host=current.host
                                )
                            target = current.join(location)
                            if target.host != current.host:
                                headers.pop("Authorization", None)
                                headers.pop("authorization", None)
                            redirects += 1
                            current = target
                            continue

                        if not response.is_success:
                            raise UpstreamError(
                                UpstreamFailure.STATUS,
                                f"Upstream returned HTTP {response.status_code}",
                                status_code=response.status_code,
                            )

                        content = await self._read_capped(response, policy.max_response_bytes)
                        return FetchedResponse(
                            url=str(current),
                            status_code=response.status_code,
                            headers={k.lower(): v for k, v in response.headers.items()},
                            content=content,
                        )
                except httpx.TimeoutException as e:
                    raise UpstreamError(UpstreamFailure.TIMEOUT) from e
                except httpx.HTTPError as e:
                    raise UpstreamError(
                        UpstreamFailure.TRANSPORT, f"Transport error: {type(e).__name__}"
                    ) from e

    async def _validate_target(self, url: httpx.URL, policy: FetchPolicy) -> str:
        """Run containment checks for one hop and return the address to dial."""
        if url.scheme not in ALLOWED_SCHEMES:
            raise ProtectionBlocked(BlockReason.SCHEME_NOT_ALLOWED, host=url.host or None)
        host = url.host.lower().rstrip(".") if url.host else ""
        if not host or url.userinfo:
            raise ProtectionBlocked(BlockReason.INVALID_URL, host=host or None)
        port = url.port or (443 if url.scheme == "https" else 80)

        literal = _parse_ip(host)
        if literal is not None:
            self._check_address(literal, host, port, policy)
            # A restricted literal that got this far was exempted by the policy
            if not (is_restricted_address(literal) or host in policy.allowed_domains):
                raise ProtectionBlocked(BlockReason.HOST_NOT_ALLOWLISTED, host=host)
            return str(literal)

        is_local_name = policy.allow_localhost and host == "localhost"
        if not (is_local_name or host_matches_allowlist(host, policy.allowed_domains)):
            raise ProtectionBlocked(BlockReason.HOST_NOT_ALLOWLISTED, host=host)

        try:
            addresses = await self._resolver(host, port)
        except (OSError, UnicodeError) as e:
            raise UpstreamError(UpstreamFailure.DNS, f"Resolution failed for {host}") from e
        if not addresses:
            raise UpstreamError(UpstreamFailure.DNS, f"No addresses for {host}")

        validated: list[IPAddress] = []
        for raw in addresses:
            address = _parse_ip(raw.split("%", 1)[0])
            if address is None:
                raise UpstreamError(UpstreamFailure.DNS, f"Unparseable address for {host}")
            self._check_address(address, host, port, policy)
            validated.append(address)
        return str(validated[0])

    @staticmethod
    def _check_address(address: IPAddress, host: str, port: int, policy: FetchPolicy) -> None:
        if not is_restricted_address(address):
            return
        # 0.0.0.0 and :: reach local services just like loopback
        if address.is_loopback or address.is_unspecified:
            if not policy.allow_localhost:
                raise ProtectionBlocked(BlockReason.PRIVATE_IP, host=host)
            if port not in policy.allowed_localhost_ports:
                raise ProtectionBlocked(
                    BlockReason.PRIVATE_IP, f"Localhost port {port} is not allowed", host=host
                )
            return
        if not policy.allow_private_networks:
            raise ProtectionBlocked(BlockReason.PRIVATE_IP, host=host)

    @staticmethod
    async def _read_capped(response: httpx.Response, limit: int) -> bytes:
        declared = response.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > limit:
            raise UpstreamError(UpstreamFailure.RESPONSE_TOO_LARGE)

        body = bytearray()
        async for chunk in response.aiter_bytes():
            body.extend(chunk)
            if len(body) > limit:
                raise UpstreamError(UpstreamFailure.RESPONSE_TOO_LARGE)
        return bytes(body)


__all__ = [
    "DEFAULT_LOCALHOST_PORTS",
    "DEFAULT_MAX_RESPONSE_BYTES",
    "DEFAULT_TIMEOUT_MS",
    "FetchPolicy",
    "FetchedResponse",
    "GuardedFetcher",
    "PinnedNetworkBackend",
    "PinnedTransport",
    "Resolver",
    "host_matches_allowlist",
    "is_restricted_address",
    "resolve_host",
]
