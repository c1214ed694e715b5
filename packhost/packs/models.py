"""
Pack data model.

Value types describing where a pack lives, what it must hash to and
which tenant runs it. Everything here is immutable; the index is
re-parsed on every reconciliation tick rather than edited in place.

Locator grammar:
    /abs/path/pack.json            filesystem
    packs/demo.json                filesystem, relative to the index dir
    file:///abs/path/pack.json     filesystem
    https://host/pack.json         HTTP(S)
    s3://bucket/key                object store (also gcs://, azblob://)
    s3+https://host/bucket/key     object store addressed by explicit URL
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from packhost.errors import PackIndexError

SUPPORTED_ALGORITHMS = ("sha256", "sha512")
DEFAULT_ALGORITHM = "sha256"

FILESYSTEM_SCHEMES = ("fs", "file")
HTTP_SCHEMES = ("http", "https")
OBJECT_STORE_SCHEMES = ("s3", "gcs", "azblob")


def _utc_now() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Digest
# =============================================================================


@dataclass(frozen=True, slots=True)
class PackDigest:
    """
    Content digest in ``algorithm:value`` form.

    The algorithm is lowercased and the hex value normalized to lower
    case on parse, so equality is case-insensitive on the value.
    """

    algorithm: str
    value: str

    @classmethod
    def parse(cls, text: str) -> PackDigest:
        if not isinstance(text, str) or ":" not in text:
            raise ValueError(f"Digest must be 'algorithm:value', got {text!r}")
        algorithm, _, value = text.strip().partition(":")
        algorithm = algorithm.strip().lower()
        value = value.strip().lower()
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported digest algorithm '{algorithm}'")
        if not value:
            raise ValueError("Digest value is empty")
        try:
            bytes.fromhex(value)
        except ValueError as e:
            raise ValueError(f"Digest value is not hex: {value!r}") from e
        return cls(algorithm=algorithm, value=value)

    @classmethod
    def of(cls, data: bytes, algorithm: str = DEFAULT_ALGORITHM) -> PackDigest:
        """Compute the digest of ``data``."""
        algorithm = algorithm.lower()
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported digest algorithm '{algorithm}'")
        return cls(algorithm=algorithm, value=hashlib.new(algorithm, data).hexdigest())

    @staticmethod
    def looks_like(text: str | None) -> bool:
        """True when ``text`` parses as a digest."""
        if not text:
            return False
        try:
            PackDigest.parse(text)
        except ValueError:
            return False
        return True

    def matches(self, data: bytes) -> bool:
        actual = hashlib.new(self.algorithm, data).hexdigest()
        return hmac.compare_digest(actual, self.value)

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.value}"

    @property
    def short(self) -> str:
        return f"{self.algorithm}:{self.value[:12]}"


# =============================================================================
# Locator
# =============================================================================


@dataclass(frozen=True, slots=True)
class PackLocator:
    """
    Physical retrieval address.

    ``scheme`` selects the resolver; ``address`` is what that resolver
    receives (a filesystem path, a full URL, or ``bucket/key``).
    """

    scheme: str
    address: str
    uri: str = field(default="", compare=False)

    @classmethod
    def parse(cls, uri: str, base_dir: Path | None = None) -> PackLocator:
        if not uri or not uri.strip():
            raise ValueError("Locator is empty")
        uri = uri.strip()

        if "://" not in uri:
            return cls("fs", str(_anchor(Path(uri), base_dir)), uri)

        scheme, _, rest = uri.partition("://")
        scheme = scheme.lower()

        if "+" in scheme:
            logical, _, actual = scheme.partition("+")
            return cls(logical, f"{actual}://{rest}", uri)
        if scheme in FILESYSTEM_SCHEMES:
            return cls(scheme, str(_anchor(Path(rest), base_dir)), uri)
        if scheme in HTTP_SCHEMES:
            return cls(scheme, uri, uri)
        return cls(scheme, rest, uri)

    def __str__(self) -> str:
        return self.uri or f"{self.scheme}://{self.address}"


def _anchor(path: Path, base_dir: Path | None) -> Path:
    if path.is_absolute() or base_dir is None:
        return path
    return base_dir / path


# =============================================================================
# References and index entries
# =============================================================================


@dataclass(frozen=True, slots=True)
class PackReference:
    """Logical identity of a pack: name plus version."""

    name: str
    version: str

    def __str__(self) -> str:
        return f"{self.name}@{self.version}"


@dataclass(frozen=True, slots=True)
class PackEntry:
    """A pack reference bound to its locator, digest and optional signature."""

    reference: PackReference
    locator: PackLocator
    digest: PackDigest
    signature: str | None = None


@dataclass(frozen=True, slots=True)
class TenantIndexEntry:
    """Desired state for one tenant. Overlay order is override precedence."""

    tenant_id: str
    main: PackEntry
    overlays: tuple[PackEntry, ...] = ()

    @property
    def entries(self) -> tuple[PackEntry, ...]:
        return (self.main, *self.overlays)

    @property
    def digest_set(self) -> tuple[str, ...]:
        return tuple(str(entry.digest) for entry in self.entries)


@dataclass(frozen=True, slots=True)
class PackIndex:
    """Parsed index document: tenant id to desired state."""

    tenants: dict[str, TenantIndexEntry] = field(default_factory=dict)
    loaded_at: datetime = field(default_factory=_utc_now)

    def get(self, tenant_id: str) -> TenantIndexEntry | None:
        return self.tenants.get(tenant_id)

    def __contains__(self, tenant_id: object) -> bool:
        return tenant_id in self.tenants

    def __len__(self) -> int:
        return len(self.tenants)


@dataclass(frozen=True, slots=True)
class VerifiedArtifact:
    """Artifact bytes that hashed to ``digest``. Never mutated once built."""

    digest: PackDigest
    data: bytes
    verified_at: datetime = field(default_factory=_utc_now)

    @property
    def size(self) -> int:
        return len(self.data)


def build_entry(
    *,
    name: str,
    locator: str,
    version: str | None = None,
    digest: str | None = None,
    signature: str | None = None,
    base_dir: Path | None = None,
    tenant: str | None = None,
) -> PackEntry:
    """
    Build a PackEntry from index fields.

    A missing digest falls back to a digest-shaped version. An entry
    with neither is rejected.
    """
    if digest:
        digest_text = digest
    elif PackDigest.looks_like(version):
        digest_text = version
    else:
        raise PackIndexError(
            f"Pack '{name}' declares neither a digest nor a digest-shaped version",
            tenant=tenant,
        )

    try:
        parsed_digest = PackDigest.parse(digest_text)
        parsed_locator = PackLocator.parse(locator, base_dir=base_dir)
    except ValueError as e:
        raise PackIndexError(f"Pack '{name}': {e}", tenant=tenant) from e

    return PackEntry(
        reference=PackReference(name=name, version=version or str(parsed_digest)),
        locator=parsed_locator,
        digest=parsed_digest,
        signature=signature or None,
    )
