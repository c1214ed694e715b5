"""
Pack lifecycle leaves: where packs live, what they hash to, and a
shared digest-keyed cache of verified bytes.
"""

from .cache import ArtifactCache, CacheStats
from .index import PackIndexSource, parse_index
from .models import (
    PackDigest,
    PackEntry,
    PackIndex,
    PackLocator,
    PackReference,
    TenantIndexEntry,
    VerifiedArtifact,
    build_entry,
)
from .resolver import (
    FilesystemResolver,
    HttpResolver,
    LocatorResolver,
    ObjectStoreResolver,
    OciResolver,
    ResolverRegistry,
    build_resolver_registry,
)
from .retry import IMMEDIATE, ExponentialBackoff, RetryPolicy, RetryResult, with_retry
from .verify import IntegrityVerifier, SignaturePolicy, VerificationReport, parse_public_key

__all__ = [
    # Models
    "PackDigest",
    "PackEntry",
    "PackIndex",
    "PackLocator",
    "PackReference",
    "TenantIndexEntry",
    "VerifiedArtifact",
    "build_entry",
    # Index
    "PackIndexSource",
    "parse_index",
    # Resolution
    "FilesystemResolver",
    "HttpResolver",
    "LocatorResolver",
    "ObjectStoreResolver",
    "OciResolver",
    "ResolverRegistry",
    "build_resolver_registry",
    "ExponentialBackoff",
    "IMMEDIATE",
    "RetryPolicy",
    "RetryResult",
    "with_retry",
    # Verification
    "IntegrityVerifier",
    "SignaturePolicy",
    "VerificationReport",
    "parse_public_key",
    # Cache
    "ArtifactCache",
    "CacheStats",
]
