"""
Canonical ingress envelope.

The provider-agnostic shape every adapter emits. The core only reads it.

Example:
    {
      "tenant": "demo",
      "provider": "telegram",
      "provider_ids": {"conversation_id": "42", "user_id": "1", "event_id": "upd-981"},
      "session": {"key": "demo:telegram:42:1", "scopes": ["chat"]},
      "timestamp": "2025-01-01T12:00:00Z",
      "text": "/start",
      "metadata": {"flow_id": "greet"}
    }
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _utc_now() -> datetime:
    return datetime.now(UTC)


class ProviderIds(BaseModel):
    """Identifiers the provider attached to the event. All optional."""

    model_config = ConfigDict(frozen=True, extra="allow")

    team_id: str | None = None
    workspace_id: str | None = None
    conversation_id: str | None = None
    thread_id: str | None = None
    channel_id: str | None = None
    user_id: str | None = None
    message_id: str | None = None
    event_id: str | None = None


class SessionInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str | None = Field(default=None, description="Adapter-suggested session key")
    scopes: list[str] = Field(default_factory=list)


class Attachment(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    attachment_type: str = Field(default="file", alias="type")
    name: str | None = None
    mime: str | None = None
    size: int = 0
    url: str | None = None
    data_inline_b64: str | None = None


class Button(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    payload: str = ""


class CanonicalIngressEnvelope(BaseModel):
    """Normalized inbound event."""

    model_config = ConfigDict(frozen=True)

    tenant: str = Field(..., min_length=1, description="Tenant identifier")
    provider: str = Field(..., min_length=1, description="Provider name, e.g. telegram")
    provider_ids: ProviderIds = Field(default_factory=ProviderIds)
    session: SessionInfo = Field(default_factory=SessionInfo)
    timestamp: datetime = Field(default_factory=_utc_now)
    locale: str | None = None
    text: str | None = None
    attachments: list[Attachment] = Field(default_factory=list)
    buttons: list[Button] = Field(default_factory=list)
    entities: dict[str, Any] = Field(default_factory=lambda: {"mentions": [], "urls": []})
    metadata: dict[str, Any] = Field(default_factory=dict)
    channel_data: dict[str, Any] = Field(default_factory=dict)
    raw: Any = None

    @property
    def event_id(self) -> str | None:
        return self.provider_ids.event_id
