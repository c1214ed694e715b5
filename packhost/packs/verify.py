"""
Integrity Verifier.

Checks fetched bytes against their declared digest and, when the policy
is strict, an Ed25519 signature over the canonical digest string
(``sha256:<hex>`` encoded as UTF-8).

Policy:
    auto      strict when a trust key is configured, digest-only otherwise
    strict    always check signatures; requires a trust key
    disabled  digest-only, even when a trust key is configured

Verification is pure: no I/O, no caching, no logging of success. A
failed verification can be retried against a fresh fetch.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from enum import Enum

from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey

from packhost.errors import (
    DigestMismatchError,
    SignatureInvalidError,
    SignatureRequiredError,
)
from packhost.packs.models import PackDigest

KEY_PREFIX = "ed25519:"


class SignaturePolicy(str, Enum):
    AUTO = "auto"
    STRICT = "strict"
    DISABLED = "disabled"


@dataclass(frozen=True, slots=True)
class VerificationReport:
    digest: PackDigest
    signature_checked: bool


def _b64decode(text: str) -> bytes:
    """Decode standard or URL-safe base64, padded or not."""
    text = text.strip()
    padded = text + "=" * (-len(text) % 4)
    if "-" in text or "_" in text:
        return base64.urlsafe_b64decode(padded)
    return base64.b64decode(padded, validate=True)


def parse_public_key(text: str) -> VerifyKey:
    """Parse an ``ed25519:<base64>`` trust key."""
    raw = text.strip()
    if raw.lower().startswith(KEY_PREFIX):
        raw = raw[len(KEY_PREFIX):]
    elif ":" in raw:
        raise ValueError(f"Unsupported key algorithm '{raw.split(':', 1)[0]}'")
    try:
        key_bytes = _b64decode(raw)
    except (binascii.Error, ValueError) as e:
        raise ValueError("Trust key is not valid base64") from e
    if len(key_bytes) != 32:
        raise ValueError(f"Ed25519 key must be 32 bytes, got {len(key_bytes)}")
    return VerifyKey(key_bytes)


class IntegrityVerifier:
    """
    Digest + signature verification for pack artifacts.

    Raises ValueError at construction when the policy is strict but no
    trust key is configured, so misconfiguration fails at startup rather
    than on the first reconciliation.
    """

    def __init__(
        self,
        public_key: str | None = None,
        policy: SignaturePolicy | str = SignaturePolicy.AUTO,
    ):
        self.policy = SignaturePolicy(policy)
        self._key = parse_public_key(public_key) if public_key else None
        if self.policy is SignaturePolicy.STRICT and self._key is None:
            raise ValueError("Strict signature policy requires a trust key")

    @property
    def strict(self) -> bool:
        if self.policy is SignaturePolicy.DISABLED:
            return False
        return self._key is not None

    def verify(
        self,
        data: bytes,
        expected: PackDigest,
        signature: str | None = None,
        *,
        tenant: str | None = None,
    ) -> VerificationReport:
        actual = PackDigest.of(data, expected.algorithm)
        if actual != expected:
            raise DigestMismatchError(str(expected), str(actual), tenant=tenant)

        if not self.strict:
            return VerificationReport(digest=expected, signature_checked=False)

        if not signature:
            raise SignatureRequiredError(
                f"Pack {expected.short} has no signature and verification is strict",
                digest=str(expected),
                tenant=tenant,
            )

        try:
            signature_bytes = _b64decode(signature)
        except (binascii.Error, ValueError) as e:
            raise SignatureInvalidError(
                f"Signature for {expected.short} is not valid base64",
                digest=str(expected),
                tenant=tenant,
            ) from e

        try:
            self._key.verify(str(expected).encode("utf-8"), signature_bytes)
        except (BadSignatureError, ValueError) as e:
            raise SignatureInvalidError(
                f"Signature for {expected.short} does not match the trust key",
                digest=str(expected),
                tenant=tenant,
            ) from e

        return VerificationReport(digest=expected, signature_checked=True)
