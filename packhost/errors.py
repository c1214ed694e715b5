"""
Error taxonomy for packhost.

Every failure the host can report derives from PackHostError. The
families map onto how failures are contained:

- ResolutionError: fetching bytes failed (retried, then per-tenant)
- VerificationError: bytes do not match their declared digest/signature
- CompositionError: a verified artifact could not be turned into a runtime
- FlowError: resuming or executing a conversation failed (per-request)

Pack lifecycle errors never escape the reconciler; flow errors are
reported to the caller that delivered the triggering event.
"""

from __future__ import annotations


class PackHostError(Exception):
    """Base exception for all packhost errors."""

    def __init__(
        self,
        message: str,
        *,
        tenant: str | None = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.tenant = tenant
        self.retryable = retryable

    def __str__(self) -> str:
        if self.tenant:
            return f"[{self.tenant}] {self.args[0]}"
        return str(self.args[0])


# =============================================================================
# Resolution
# =============================================================================


class ResolutionError(PackHostError):
    """Raised when artifact bytes could not be retrieved."""

    def __init__(
        self,
        message: str,
        *,
        locator: str | None = None,
        tenant: str | None = None,
        retryable: bool = False,
    ):
        super().__init__(message, tenant=tenant, retryable=retryable)
        self.locator = locator


class PackNotFoundError(ResolutionError):
    """Raised when the locator points at nothing (404, missing file)."""

    def __init__(self, message: str, *, locator: str | None = None, **kwargs):
        super().__init__(message, locator=locator, retryable=False, **kwargs)


class PackUnreachableError(ResolutionError):
    """Raised when the backend could not be reached or answered with an error."""


class ResolutionTimeoutError(ResolutionError):
    """Raised when a fetch exceeded its deadline."""

    def __init__(self, message: str, *, locator: str | None = None, **kwargs):
        super().__init__(message, locator=locator, retryable=True, **kwargs)


class UnsupportedSchemeError(ResolutionError):
    """Raised when no resolver is registered for a locator scheme."""

    def __init__(self, scheme: str, *, locator: str | None = None):
        super().__init__(
            f"No resolver registered for scheme '{scheme}'",
            locator=locator,
            retryable=False,
        )
        self.scheme = scheme


# =============================================================================
# Verification
# =============================================================================


class VerificationError(PackHostError):
    """Raised when an artifact fails integrity verification."""

    def __init__(self, message: str, *, digest: str | None = None, tenant: str | None = None):
        super().__init__(message, tenant=tenant, retryable=False)
        self.digest = digest


class DigestMismatchError(VerificationError):
    """Raised when the content hash differs from the declared digest."""

    def __init__(self, expected: str, actual: str, *, tenant: str | None = None):
        super().__init__(
            f"Digest mismatch: expected {expected}, found {actual}",
            digest=expected,
            tenant=tenant,
        )
        self.expected = expected
        self.actual = actual


class SignatureInvalidError(VerificationError):
    """Raised when a signature does not verify against the trust key."""


class SignatureRequiredError(VerificationError):
    """Raised when strict verification is active and no signature was supplied."""


# =============================================================================
# Index / Composition / Registry
# =============================================================================


class PackIndexError(PackHostError):
    """Raised when the pack index document is malformed."""


class CompositionError(PackHostError):
    """Raised when artifacts cannot be composed into a tenant runtime."""


class MalformedArtifactError(CompositionError):
    """Raised when an artifact cannot be parsed into a pack manifest."""

    def __init__(self, message: str, *, digest: str | None = None, tenant: str | None = None):
        super().__init__(message, tenant=tenant)
        self.digest = digest


class DuplicateFlowConflict(CompositionError):
    """Raised when one artifact defines the same flow identifier twice."""

    def __init__(self, flow_id: str, *, pack_id: str = "", tenant: str | None = None):
        super().__init__(
            f"Flow '{flow_id}' is defined more than once in pack '{pack_id}'",
            tenant=tenant,
        )
        self.flow_id = flow_id
        self.pack_id = pack_id


class RegistrySwapError(PackHostError):
    """Raised when a registry swap violates its invariants (programming error)."""


class TenantNotFoundError(PackHostError):
    """Raised when no live runtime exists for a tenant."""

    def __init__(self, tenant: str):
        super().__init__(f"No live runtime for tenant '{tenant}'", tenant=tenant)


# =============================================================================
# Flows
# =============================================================================


class FlowError(PackHostError):
    """Base class for conversation-level failures."""

    def __init__(
        self,
        message: str,
        *,
        flow_id: str | None = None,
        session_key: str | None = None,
        tenant: str | None = None,
    ):
        super().__init__(message, tenant=tenant)
        self.flow_id = flow_id
        self.session_key = session_key


class FlowNotFoundError(FlowError):
    """Raised when no flow can be selected for a fresh conversation."""


class ResumeError(FlowError):
    """Raised when a snapshot references a flow absent from the live runtime."""


class ExecutionFault(FlowError):
    """Raised when the execution engine reports an unrecoverable failure."""


__all__ = [
    "CompositionError",
    "DigestMismatchError",
    "DuplicateFlowConflict",
    "ExecutionFault",
    "FlowError",
    "FlowNotFoundError",
    "MalformedArtifactError",
    "PackHostError",
    "PackIndexError",
    "PackNotFoundError",
    "PackUnreachableError",
    "RegistrySwapError",
    "ResolutionError",
    "ResolutionTimeoutError",
    "ResumeError",
    "SignatureInvalidError",
    "SignatureRequiredError",
    "TenantNotFoundError",
    "UnsupportedSchemeError",
    "VerificationError",
]
