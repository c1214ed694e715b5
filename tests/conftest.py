"""
Pytest configuration and fixtures for packhost tests.
"""

import base64
import json
import sys
from pathlib import Path

import pytest

# Add the repository root to path for imports
# This allows `from packhost.packs import ...` to work
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from nacl.signing import SigningKey  # noqa: E402

from packhost.config import AppSettings  # noqa: E402
from packhost.host import PackHost  # noqa: E402
from packhost.ingress.envelope import CanonicalIngressEnvelope  # noqa: E402
from packhost.observability import reset_metrics  # noqa: E402
from packhost.packs.models import PackDigest, VerifiedArtifact  # noqa: E402


GREET_FLOW = {"steps": [{"reply": "Hello!"}, {"complete": "hi"}]}

APPROVE_FLOW = {
    "steps": [
        {"reply": "Approve the request?"},
        {"await_input": {"reason": "approval", "store": "answer"}},
        {"complete": "approved"},
    ]
}


def manifest_bytes(
    pack_id: str,
    flows: dict,
    *,
    version: str = "1.0.0",
    routes: list | None = None,
    default_flow: str | None = None,
) -> bytes:
    document = {"pack_id": pack_id, "version": version, "flows": flows}
    if routes:
        document["routes"] = routes
    if default_flow:
        document["default_flow"] = default_flow
    return json.dumps(document, sort_keys=True).encode("utf-8")


def artifact_of(data: bytes) -> VerifiedArtifact:
    return VerifiedArtifact(digest=PackDigest.of(data), data=data)


class PackTree:
    """Pack files plus a JSON index on disk, laid out the way the host reads them."""

    def __init__(self, root: Path):
        self.root = root
        self.packs_dir = root / "packs"
        self.packs_dir.mkdir(parents=True, exist_ok=True)
        self.index_path = root / "index.json"
        self.tenants: dict = {}
        self.write_index()

    def write_pack(self, name: str, data: bytes, **extra) -> dict:
        path = self.packs_dir / f"{name}.json"
        path.write_bytes(data)
        return {
            "name": name,
            "digest": str(PackDigest.of(data)),
            "locator": f"packs/{name}.json",
            **extra,
        }

    def set_tenant(self, tenant: str, main: dict, overlays: list | None = None) -> None:
        self.tenants[tenant] = {"main_pack": main, "overlays": list(overlays or [])}
        self.write_index()

    def drop_tenant(self, tenant: str) -> None:
        self.tenants.pop(tenant, None)
        self.write_index()

    def write_index(self) -> None:
        self.index_path.write_text(json.dumps(self.tenants, indent=2))


@pytest.fixture(autouse=True)
def clean_metrics():
    """Every test starts from zeroed process metrics."""
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def greet_manifest():
    return manifest_bytes("demo", {"greet": GREET_FLOW}, default_flow="greet")


@pytest.fixture
def approve_manifest():
    return manifest_bytes("demo", {"greet": GREET_FLOW, "approve": APPROVE_FLOW})


@pytest.fixture
def pack_tree(tmp_path):
    return PackTree(tmp_path / "registry")


@pytest.fixture
def demo_tree(pack_tree):
    """Tenant 'demo' on a main pack carrying 'greet' and 'approve'."""
    main = pack_tree.write_pack(
        "demo",
        manifest_bytes(
            "demo",
            {"greet": GREET_FLOW, "approve": APPROVE_FLOW},
            routes=[{"flow": "approve", "command": "/approve"}],
            default_flow="greet",
        ),
    )
    pack_tree.set_tenant("demo", main)
    return pack_tree


@pytest.fixture
def make_envelope():
    def _make(
        text: str | None = "hello",
        *,
        tenant: str = "demo",
        provider: str = "telegram",
        conversation_id: str | None = "42",
        user_id: str | None = "1",
        event_id: str | None = None,
        **metadata,
    ) -> CanonicalIngressEnvelope:
        return CanonicalIngressEnvelope(
            tenant=tenant,
            provider=provider,
            provider_ids={
                "conversation_id": conversation_id,
                "user_id": user_id,
                "event_id": event_id,
            },
            text=text,
            metadata=metadata,
        )

    return _make


@pytest.fixture
def make_host(tmp_path):
    def _make(tree: PackTree, **overrides) -> PackHost:
        settings = AppSettings(
            pack_index_url=str(tree.index_path),
            pack_cache_dir=str(tmp_path / "cache"),
            fetch_max_attempts=1,
            **overrides,
        )
        return PackHost.from_settings(settings)

    return _make


@pytest.fixture
def signing_key():
    return SigningKey.generate()


@pytest.fixture
def public_key_text(signing_key):
    return "ed25519:" + base64.b64encode(signing_key.verify_key.encode()).decode("ascii")


@pytest.fixture
def sign(signing_key):
    """Sign the canonical digest string of ``data``."""

    def _sign(data: bytes) -> str:
        message = str(PackDigest.of(data)).encode("utf-8")
        return base64.b64encode(signing_key.sign(message).signature).decode("ascii")

    return _sign


@pytest.fixture
def make_manifest():
    return manifest_bytes


@pytest.fixture
def make_artifact():
    return artifact_of


@pytest.fixture
def flows():
    """Canonical flow definitions used across tests."""
    return {"greet": GREET_FLOW, "approve": APPROVE_FLOW}
