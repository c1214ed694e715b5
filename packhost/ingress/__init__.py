"""
Inbound side of the host: the canonical envelope adapters emit, the
session key derived from it and the dedup ledger that filters retries.
"""

from .dedup import DedupLedger, DedupRecord, Verdict
from .envelope import Attachment, Button, CanonicalIngressEnvelope, ProviderIds, SessionInfo
from .session_key import ANCHOR_PRECEDENCE, conversation_anchor, derive, session_key

__all__ = [
    "DedupLedger",
    "DedupRecord",
    "Verdict",
    "Attachment",
    "Button",
    "CanonicalIngressEnvelope",
    "ProviderIds",
    "SessionInfo",
    "ANCHOR_PRECEDENCE",
    "conversation_anchor",
    "derive",
    "session_key",
]
