"""
Session Key Deriver.

    session key = tenant:provider:anchor:user

The anchor is the first present id in the provider's precedence list.
When none is present the user id stands in, and failing that the
literal ``conversation``. A missing user is the literal ``user``.
Blank ids count as missing. Provider names match case-insensitively.

Precedence:
    slack      thread -> channel -> conversation
    teams      conversation -> thread -> channel
    webex      thread -> conversation -> channel
    telegram   thread -> conversation -> channel
    whatsapp   conversation -> channel -> thread
    webchat    conversation -> thread -> channel
    webhook    conversation -> thread -> channel
    (other)    thread -> conversation -> channel

Slack threads live inside a channel, so a threaded reply anchors on the
thread and a top-level message on the channel. Teams and webchat hand
out a conversation id that already scopes replies, so it leads.

The key is built only from ``tenant``, ``provider`` and ``provider_ids``;
the adapter's ``session.key`` is advisory and ignored.

Each part is escaped with :func:`escape_part` (``%`` then ``:`` are
percent-encoded), so ids that contain colons, like Teams' ``19:...``
conversation ids, cannot make two sessions share a key.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from packhost.ingress.envelope import CanonicalIngressEnvelope, ProviderIds

THREAD = "thread_id"
CONVERSATION = "conversation_id"
CHANNEL = "channel_id"

DEFAULT_PRECEDENCE: tuple[str, ...] = (THREAD, CONVERSATION, CHANNEL)

ANCHOR_PRECEDENCE = MappingProxyType(
    {
        "slack": (THREAD, CHANNEL, CONVERSATION),
        "teams": (CONVERSATION, THREAD, CHANNEL),
        "webex": (THREAD, CONVERSATION, CHANNEL),
        "telegram": (THREAD, CONVERSATION, CHANNEL),
        "whatsapp": (CONVERSATION, CHANNEL, THREAD),
        "webchat": (CONVERSATION, THREAD, CHANNEL),
        "webhook": (CONVERSATION, THREAD, CHANNEL),
    }
)

MISSING_USER = "user"
MISSING_ANCHOR = "conversation"


def _present(value: str | None) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def escape_part(value: str) -> str:
    return value.replace("%", "%25").replace(":", "%3A")


def precedence_for(provider: str) -> tuple[str, ...]:
    return ANCHOR_PRECEDENCE.get(provider.strip().lower(), DEFAULT_PRECEDENCE)


def conversation_anchor(provider: str, ids: ProviderIds) -> str | None:
    for name in precedence_for(provider):
        value = _present(getattr(ids, name, None))
        if value is not None:
            return value
    return None


def session_key(tenant: str, provider: str, ids: ProviderIds) -> str:
    user = _present(ids.user_id)
    anchor = conversation_anchor(provider, ids) or user or MISSING_ANCHOR
    parts = (tenant, provider.strip().lower(), anchor, user or MISSING_USER)
    return ":".join(escape_part(part) for part in parts)


def derive(envelope: CanonicalIngressEnvelope) -> str:
    """Session key for an envelope. Never raises on missing optional ids."""
    return session_key(envelope.tenant, envelope.provider, envelope.provider_ids)
