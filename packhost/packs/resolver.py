"""
Locator Resolver.

Fetches raw artifact bytes given a PackLocator. One resolver per scheme
family, all behind the same ``fetch(address) -> bytes`` capability, so
the reconciler never branches on where a pack lives.

Schemes:
    fs, file           FilesystemResolver (read off the event loop)
    http, https        HttpResolver (httpx)
    s3, gcs, azblob    ObjectStoreResolver (maps to an HTTPS object URL)
    oci                OciResolver (registry blob over HTTPS)

Error mapping:
    - missing file, 404, 410            -> PackNotFoundError (not retried)
    - 429, 5xx, network errors          -> PackUnreachableError (retried)
    - httpx timeouts, overall deadline  -> ResolutionTimeoutError (retried)
    - other 4xx, local I/O errors       -> PackUnreachableError (not retried)

Usage:
    registry = build_resolver_registry(fetch_timeout=30.0)
    data = await registry.resolve(PackLocator.parse("https://packs.example/demo.json"))
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

import httpx

from packhost.errors import (
    PackNotFoundError,
    PackUnreachableError,
    ResolutionError,
    ResolutionTimeoutError,
    UnsupportedSchemeError,
)
from packhost.packs.models import (
    FILESYSTEM_SCHEMES,
    HTTP_SCHEMES,
    PackLocator,
)
from packhost.packs.retry import ExponentialBackoff, RetryPolicy, with_retry

logger = logging.getLogger(__name__)

DEFAULT_S3_ENDPOINT = "https://s3.amazonaws.com"
GCS_ENDPOINT = "https://storage.googleapis.com"


@runtime_checkable
class LocatorResolver(Protocol):
    """Capability interface: fetch bytes for an address of a known scheme."""

    @property
    def schemes(self) -> tuple[str, ...]:
        """Scheme tags this resolver serves."""
        ...

    async def fetch(self, address: str) -> bytes:
        """Fetch raw bytes or raise a ResolutionError."""
        ...


# =============================================================================
# Filesystem
# =============================================================================


class FilesystemResolver:
    """Reads packs from local disk."""

    @property
    def schemes(self) -> tuple[str, ...]:
        return FILESYSTEM_SCHEMES

    async def fetch(self, address: str) -> bytes:
        path = Path(address)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as e:
            raise PackNotFoundError(f"No pack at {path}", locator=address) from e
        except OSError as e:
            raise PackUnreachableError(
                f"Cannot read {path}: {e}", locator=address, retryable=False
            ) from e


# =============================================================================
# HTTP(S)
# =============================================================================


class HttpResolver:
    """
    Downloads packs over HTTP(S).

    The client is created lazily and reused across fetches; pass one in
    to share a connection pool or to inject a mock transport.
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.timeout = timeout
        self.headers = headers or {}
        self._client = client
        self._owns_client = client is None

    @property
    def schemes(self) -> tuple[str, ...]:
        return HTTP_SCHEMES

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Accept": "application/octet-stream, application/json", **self.headers},
                follow_redirects=True,
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def fetch(self, address: str) -> bytes:
        client = self._get_client()
        try:
            response = await client.get(address)
        except httpx.TimeoutException as e:
            raise ResolutionTimeoutError(f"Timed out fetching {address}", locator=address) from e
        except httpx.TransportError as e:
            raise PackUnreachableError(
                f"Network error fetching {address}: {e}", locator=address, retryable=True
            ) from e

        self._check_response(response, address)
        return response.content

    @staticmethod
    def _check_response(response: httpx.Response, address: str) -> None:
        status = response.status_code
        if response.is_success:
            return
        if status in (404, 410):
            raise PackNotFoundError(f"No pack at {address} (status={status})", locator=address)
        if status == 429 or status >= 500:
            raise PackUnreachableError(
                f"Backend unavailable for {address} (status={status})",
                locator=address,
                retryable=True,
            )
        raise PackUnreachableError(
            f"Fetch of {address} rejected (status={status})",
            locator=address,
            retryable=False,
        )


# =============================================================================
# Object store
# =============================================================================


class ObjectStoreResolver:
    """
    Resolves ``s3://``, ``gcs://`` and ``azblob://`` locators.

    ``bucket/key`` addresses are mapped onto the provider's HTTPS object
    URL and downloaded through the HTTP resolver, so public or pre-signed
    objects work without provider SDKs. An address that is already a URL
    (from a compound ``s3+https://`` locator) is fetched as-is.
    """

    def __init__(
        self,
        scheme: str,
        http: HttpResolver,
        *,
        endpoint: str | None = None,
        account: str | None = None,
    ):
        if scheme not in ("s3", "gcs", "azblob"):
            raise ValueError(f"Unknown object store scheme '{scheme}'")
        if scheme == "azblob" and not account and not endpoint:
            logger.warning("[resolver] azblob resolver has no account; only URL addresses work")
        self.scheme = scheme
        self.http = http
        self.endpoint = endpoint
        self.account = account

    @property
    def schemes(self) -> tuple[str, ...]:
        return (self.scheme,)

    def url_for(self, address: str) -> str:
        if address.startswith(("http://", "https://")):
            return address

        path = address.lstrip("/")
        if self.scheme == "s3":
            base = self.endpoint or DEFAULT_S3_ENDPOINT
        elif self.scheme == "gcs":
            base = self.endpoint or GCS_ENDPOINT
        else:
            base = self.endpoint or f"https://{self.account}.blob.core.windows.net"
        return f"{base.rstrip('/')}/{path}"

    async def fetch(self, address: str) -> bytes:
        return await self.http.fetch(self.url_for(address))


class OciResolver:
    """
    Resolves ``oci://registry/path`` locators.

    The registry is reached over HTTPS and the path fetched as a plain
    blob URL; no manifest or token negotiation is done. URL addresses
    from ``oci+https://`` locators pass through unchanged.
    """

    def __init__(self, http: HttpResolver):
        self.http = http

    @property
    def schemes(self) -> tuple[str, ...]:
        return ("oci",)

    def url_for(self, address: str) -> str:
        if address.startswith(("http://", "https://")):
            return address
        return f"https://{address.lstrip('/')}"

    async def fetch(self, address: str) -> bytes:
        return await self.http.fetch(self.url_for(address))


# =============================================================================
# Registry
# =============================================================================


class ResolverRegistry:
    """
    Scheme tag to resolver, with retry and an overall deadline.

    ``resolve`` is what the reconciler and index source call. Retries
    apply only to retryable failures; the deadline covers all attempts.
    """

    def __init__(
        self,
        resolvers: list[LocatorResolver] | None = None,
        *,
        policy: RetryPolicy | None = None,
        timeout: float | None = 30.0,
    ):
        self._resolvers: dict[str, LocatorResolver] = {}
        self.policy = policy or RetryPolicy(max_attempts=3, backoff=ExponentialBackoff())
        self.timeout = timeout
        for resolver in resolvers or []:
            self.register(resolver)

    def register(self, resolver: LocatorResolver) -> None:
        for scheme in resolver.schemes:
            if scheme in self._resolvers:
                logger.warning(f"[resolver] Overwriting resolver for scheme '{scheme}'")
            self._resolvers[scheme] = resolver

    def get(self, scheme: str) -> LocatorResolver:
        resolver = self._resolvers.get(scheme.lower())
        if resolver is None:
            raise UnsupportedSchemeError(scheme)
        return resolver

    @property
    def schemes(self) -> list[str]:
        return sorted(self._resolvers)

    async def resolve(self, locator: PackLocator) -> bytes:
        try:
            resolver = self.get(locator.scheme)
        except UnsupportedSchemeError as e:
            e.locator = str(locator)
            raise

        async def attempt() -> bytes:
            return await resolver.fetch(locator.address)

        try:
            result = await asyncio.wait_for(
                with_retry(attempt, self.policy, f"[resolver] fetch {locator}"),
                timeout=self.timeout,
            )
        except TimeoutError as e:
            raise ResolutionTimeoutError(
                f"Fetching {locator} exceeded {self.timeout}s", locator=str(locator)
            ) from e

        if result.success:
            logger.debug(
                f"[resolver] Fetched {locator} ({len(result.result)} bytes, "
                f"attempts={result.attempts})"
            )
            return result.result

        error = result.final_error
        if isinstance(error, ResolutionError):
            raise error
        raise PackUnreachableError(
            f"Unexpected error fetching {locator}: {error}", locator=str(locator)
        ) from error

    async def close(self) -> None:
        closed: set[int] = set()
        for resolver in self._resolvers.values():
            close = getattr(resolver, "close", None)
            if close is not None and id(resolver) not in closed:
                closed.add(id(resolver))
                await close()


def build_resolver_registry(
    *,
    fetch_timeout: float = 30.0,
    max_attempts: int = 3,
    s3_endpoint: str | None = None,
    azblob_account: str | None = None,
    http_client: httpx.AsyncClient | None = None,
    backoff: ExponentialBackoff | None = None,
) -> ResolverRegistry:
    """Registry with every built-in scheme wired up."""
    http = HttpResolver(timeout=fetch_timeout, client=http_client)
    return ResolverRegistry(
        [
            FilesystemResolver(),
            http,
            ObjectStoreResolver("s3", http, endpoint=s3_endpoint),
            ObjectStoreResolver("gcs", http),
            ObjectStoreResolver("azblob", http, account=azblob_account),
            OciResolver(http),
        ],
        policy=RetryPolicy(
            max_attempts=max_attempts,
            backoff=backoff or ExponentialBackoff(base=0.5, max_delay=5.0),
        ),
        timeout=fetch_timeout,
    )
