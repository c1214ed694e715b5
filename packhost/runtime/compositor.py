"""
Tenant Runtime Compositor.

Turns a verified main artifact plus its overlays into one immutable
TenantRuntime.

Artifact format:
    A UTF-8 JSON (or YAML) manifest, or a zip archive with
    ``manifest.json`` at its root:

        {
          "pack_id": "demo",
          "version": "1.0.0",
          "flows": {"greet": {"steps": [...]}}      # or a list with "id"
          "routes": [{"flow": "greet", "command": "/start"}],
          "default_flow": "greet"
        }

Composition rules:
    - main first, then overlays in declared order
    - an overlay flow replaces the whole definition with the same id
    - flows the overlay does not mention pass through unchanged
    - overlay routes are consulted before main routes, later overlays first
    - the last artifact that declares ``default_flow`` wins
    - the same flow id twice inside ONE artifact is a conflict

Deterministic: the same artifacts in the same order give the same
fingerprint.
"""

from __future__ import annotations

import hashlib
import io
import json
import logging
import zipfile
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from packhost.errors import CompositionError, DuplicateFlowConflict, MalformedArtifactError

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from packhost.ingress.envelope import CanonicalIngressEnvelope
    from packhost.packs.models import VerifiedArtifact

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"


# =============================================================================
# Manifest schema
# =============================================================================


class RouteRule(BaseModel):
    """Route an envelope to a flow by provider and/or leading command."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    flow: str = Field(..., min_length=1)
    provider: str | None = None
    command: str | None = None

    def matches(self, envelope: CanonicalIngressEnvelope) -> bool:
        if self.provider and self.provider.lower() != envelope.provider.lower():
            return False
        if self.command:
            words = (envelope.text or "").split()
            if not words or words[0].lower() != self.command.lower():
                return False
        return True


class PackManifest(BaseModel):
    """Parsed contents of one artifact."""

    model_config = ConfigDict(extra="ignore")

    pack_id: str = Field(..., min_length=1)
    version: str = Field(default="0.0.0")
    flows: dict[str, dict[str, Any]] = Field(default_factory=dict)
    routes: list[RouteRule] = Field(default_factory=list)
    default_flow: str | None = None


# =============================================================================
# Runtime
# =============================================================================


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class TenantRuntime:
    """
    Immutable composed snapshot for one tenant.

    Readers hold a plain reference; the registry replaces the reference,
    never the contents.
    """

    tenant_id: str
    flows: Mapping[str, Mapping[str, Any]]
    routes: tuple[RouteRule, ...]
    default_flow: str | None
    main_digest: str
    overlay_digests: tuple[str, ...] = ()
    pack_ids: tuple[str, ...] = ()
    versions: tuple[str, ...] = ()
    fingerprint: str = ""
    created_at: datetime = field(default_factory=_utc_now)

    @property
    def digest_set(self) -> tuple[str, ...]:
        return (self.main_digest, *self.overlay_digests)

    @property
    def pack_id(self) -> str:
        return self.pack_ids[0] if self.pack_ids else ""

    @property
    def version(self) -> str:
        return self.versions[0] if self.versions else ""

    def get_flow(self, flow_id: str) -> Mapping[str, Any] | None:
        return self.flows.get(flow_id)

    def has_flow(self, flow_id: str) -> bool:
        return flow_id in self.flows

    def select_flow(self, envelope: CanonicalIngressEnvelope) -> str | None:
        """Routing table first, then the default flow."""
        for rule in self.routes:
            if rule.matches(envelope) and rule.flow in self.flows:
                return rule.flow
        if self.default_flow and self.default_flow in self.flows:
            return self.default_flow
        return None


# =============================================================================
# Compositor
# =============================================================================


class _JsonObject(dict):
    """JSON object that remembers keys it saw more than once."""

    duplicates: list[str]

    @classmethod
    def from_pairs(cls, pairs: list[tuple[str, Any]]) -> _JsonObject:
        obj = cls()
        obj.duplicates = []
        for key, value in pairs:
            if key in obj:
                obj.duplicates.append(key)
            obj[key] = value
        return obj


def _freeze(value: Any) -> Any:
    if isinstance(value, dict):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


class PackCompositor:
    """Parses artifacts and composes tenant runtimes."""

    def parse(self, artifact: VerifiedArtifact) -> PackManifest:
        digest = str(artifact.digest)
        document = self._decode(artifact.data, digest)
        if not isinstance(document, dict):
            raise MalformedArtifactError("Manifest must be an object", digest=digest)

        raw_flows = document.get("flows", {})
        document = {**document, "flows": self._collect_flows(raw_flows, document, digest)}

        try:
            manifest = PackManifest.model_validate(document)
        except ValidationError as e:
            raise MalformedArtifactError(f"Invalid manifest: {e}", digest=digest) from e

        return manifest

    def compose(
        self,
        tenant_id: str,
        main: VerifiedArtifact,
        overlays: Sequence[VerifiedArtifact] = (),
    ) -> TenantRuntime:
        try:
            manifests = [self.parse(main), *(self.parse(o) for o in overlays)]
        except CompositionError as e:
            e.tenant = tenant_id
            raise

        flows: dict[str, dict[str, Any]] = {}
        default_flow: str | None = None
        for manifest in manifests:
            for flow_id, definition in manifest.flows.items():
                flows[flow_id] = {**definition, "id": flow_id}
            if manifest.default_flow:
                default_flow = manifest.default_flow

        routes: list[RouteRule] = []
        for manifest in reversed(manifests):
            routes.extend(manifest.routes)

        runtime = TenantRuntime(
            tenant_id=tenant_id,
            flows=_freeze(flows),
            routes=tuple(routes),
            default_flow=default_flow,
            main_digest=str(main.digest),
            overlay_digests=tuple(str(o.digest) for o in overlays),
            pack_ids=tuple(m.pack_id for m in manifests),
            versions=tuple(m.version for m in manifests),
            fingerprint=self._fingerprint(flows, routes, default_flow),
        )
        logger.info(
            f"[compositor] Composed {tenant_id}: {len(flows)} flows from "
            f"{len(manifests)} artifacts (fingerprint {runtime.fingerprint[:12]})"
        )
        return runtime

    # -------------------------------------------------------------------------

    @staticmethod
    def _decode(data: bytes, digest: str) -> Any:
        if data[:4] == b"PK\x03\x04":
            try:
                with zipfile.ZipFile(io.BytesIO(data)) as archive:
                    data = archive.read(MANIFEST_NAME)
            except KeyError as e:
                raise MalformedArtifactError(
                    f"Archive has no {MANIFEST_NAME}", digest=digest
                ) from e
            except zipfile.BadZipFile as e:
                raise MalformedArtifactError(f"Corrupt archive: {e}", digest=digest) from e

        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedArtifactError("Manifest is not UTF-8", digest=digest) from e

        try:
            if text.lstrip().startswith("{"):
                return json.loads(text, object_pairs_hook=_JsonObject.from_pairs)
            return yaml.safe_load(text)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise MalformedArtifactError(f"Manifest does not parse: {e}", digest=digest) from e

    @staticmethod
    def _collect_flows(raw: Any, document: dict[str, Any], digest: str) -> dict[str, Any]:
        pack_id = str(document.get("pack_id", ""))
        if isinstance(raw, dict):
            if isinstance(raw, _JsonObject) and raw.duplicates:
                raise DuplicateFlowConflict(raw.duplicates[0], pack_id=pack_id)
            flows = {}
            for flow_id, definition in raw.items():
                if not isinstance(definition, dict):
                    raise MalformedArtifactError(
                        f"Flow '{flow_id}' must be an object", digest=digest
                    )
                declared = definition.get("id")
                if declared is not None and str(declared) != str(flow_id):
                    raise MalformedArtifactError(
                        f"Flow key '{flow_id}' disagrees with its id '{declared}'", digest=digest
                    )
                flows[str(flow_id)] = definition
            return flows

        if isinstance(raw, list):
            flows = {}
            for definition in raw:
                if not isinstance(definition, dict) or not definition.get("id"):
                    raise MalformedArtifactError(
                        "Every flow in a list must be an object with an 'id'", digest=digest
                    )
                flow_id = str(definition["id"])
                if flow_id in flows:
                    raise DuplicateFlowConflict(flow_id, pack_id=pack_id)
                flows[flow_id] = definition
            return flows

        raise MalformedArtifactError("'flows' must be a mapping or a list", digest=digest)

    @staticmethod
    def _fingerprint(
        flows: dict[str, dict[str, Any]],
        routes: list[RouteRule],
        default_flow: str | None,
    ) -> str:
        canonical = json.dumps(
            {
                "flows": flows,
                "routes": [r.model_dump() for r in routes],
                "default_flow": default_flow,
            },
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
