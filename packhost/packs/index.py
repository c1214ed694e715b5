"""
Pack Index.

The declarative desired state consumed by the reconciler: for each
tenant, one main pack plus an ordered list of overlays. The document
is JSON or YAML and is re-read from its source on every tick.

Document shape:
    {
      "demo": {
        "main_pack": {"name": "demo", "version": "1.0.0",
                      "digest": "sha256:...", "locator": "packs/demo.json"},
        "overlays": [
          {"name": "demo-fr", "digest": "sha256:...",
           "locator": "s3://packs/demo-fr.json", "signature": "..."}
        ]
      }
    }

Relative filesystem locators resolve against the index's own directory
when the index was loaded from the filesystem.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from packhost.errors import PackIndexError, ResolutionError
from packhost.packs.models import (
    FILESYSTEM_SCHEMES,
    PackIndex,
    PackLocator,
    TenantIndexEntry,
    build_entry,
)
from packhost.packs.resolver import ResolverRegistry

logger = logging.getLogger(__name__)


# =============================================================================
# Document schema
# =============================================================================


class PackEntryDocument(BaseModel):
    """One pack entry as written in the index."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1, description="Logical pack name")
    version: str | None = Field(default=None, description="Version or digest-shaped version")
    digest: str | None = Field(default=None, description="algorithm:hex content digest")
    locator: str = Field(..., min_length=1, description="Where the artifact bytes live")
    signature: str | None = Field(default=None, description="Base64 Ed25519 signature")


class TenantDocument(BaseModel):
    """Desired state for one tenant as written in the index."""

    model_config = ConfigDict(extra="ignore")

    main_pack: PackEntryDocument
    overlays: list[PackEntryDocument] = Field(default_factory=list)


# =============================================================================
# Parsing
# =============================================================================


def decode_document(data: bytes | str) -> Any:
    """Decode a JSON or YAML document."""
    text = data.decode("utf-8") if isinstance(data, bytes) else data
    stripped = text.lstrip()
    try:
        if stripped.startswith(("{", "[")):
            return json.loads(text)
        return yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise PackIndexError(f"Index document is not valid JSON or YAML: {e}") from e


def parse_index(data: bytes | str, base_dir: Path | None = None) -> PackIndex:
    """
    Parse an index document into a PackIndex.

    Raises:
        PackIndexError: malformed document, missing digests, bad locators
    """
    try:
        document = decode_document(data)
    except UnicodeDecodeError as e:
        raise PackIndexError("Index document is not UTF-8") from e

    if document is None:
        document = {}
    if not isinstance(document, dict):
        raise PackIndexError("Index document must be a mapping of tenant id to packs")

    tenants: dict[str, TenantIndexEntry] = {}
    for tenant_id, raw in document.items():
        tenant_id = str(tenant_id).strip()
        if not tenant_id:
            raise PackIndexError("Index contains an empty tenant id")
        try:
            parsed = TenantDocument.model_validate(raw)
        except ValidationError as e:
            raise PackIndexError(f"Invalid index entry: {e}", tenant=tenant_id) from e

        main = build_entry(**parsed.main_pack.model_dump(), base_dir=base_dir, tenant=tenant_id)
        overlays = tuple(
            build_entry(**overlay.model_dump(), base_dir=base_dir, tenant=tenant_id)
            for overlay in parsed.overlays
        )
        tenants[tenant_id] = TenantIndexEntry(tenant_id=tenant_id, main=main, overlays=overlays)

    return PackIndex(tenants=tenants)


# =============================================================================
# Source
# =============================================================================


class PackIndexSource:
    """
    Loads the index from a locator on every call.

    The index itself is not digest-pinned; it is the thing that pins
    everything else.
    """

    def __init__(self, location: str, resolvers: ResolverRegistry):
        self.location = location
        self.locator = PackLocator.parse(location)
        self.resolvers = resolvers

    @property
    def base_dir(self) -> Path | None:
        if self.locator.scheme in FILESYSTEM_SCHEMES:
            return Path(self.locator.address).parent
        return None

    async def load(self) -> PackIndex:
        try:
            data = await self.resolvers.resolve(self.locator)
        except ResolutionError as e:
            raise PackIndexError(f"Cannot load index from {self.location}: {e}") from e

        index = parse_index(data, base_dir=self.base_dir)
        logger.debug(f"[index] Loaded {len(index)} tenants from {self.location}")
        return index
