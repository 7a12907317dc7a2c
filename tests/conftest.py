"""Shared fixtures: in-memory gateway database, local storage, portal harnesses."""

import io
import os

# Gateway settings must exist before any project module is imported
os.environ["GATEWAY_URL"] = "sqlite://"
os.environ["GATEWAY_KEY"] = "test-gateway-key"
for _name in ("R2_ACCOUNT_ID", "R2_ACCESS_KEY_ID", "R2_SECRET_ACCESS_KEY", "R2_BUCKET", "R2_PUBLIC_BASE_URL"):
    os.environ[_name] = ""

import pytest
from PIL import Image as PILImage
from fastapi.testclient import TestClient


def make_image_bytes(size=(320, 200), color=(40, 90, 160), fmt="JPEG") -> bytes:
    buf = io.BytesIO()
    PILImage.new("RGB", size, color).save(buf, format=fmt)
    return buf.getvalue()


async def no_sleep(_seconds):
    return None


# ---------------------------------------------------------------------------
# Backend fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def fresh_db():
    """Empty schema for every test."""
    from core.database import Base, engine, init_db
    init_db()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture(autouse=True)
def local_storage(tmp_path, monkeypatch):
    """Point the local storage fallback at a temp directory."""
    static = tmp_path / "static"
    monkeypatch.setattr("utils.storage.STATIC_DIR", str(static))
    return static


@pytest.fixture
def gateway():
    from core.gateway import BackendGateway, set_gateway
    gw = BackendGateway()
    set_gateway(gw)
    yield gw
    set_gateway(None)


@pytest.fixture
def make_user(gateway):
    def _make(email="client@example.com", password="secret123", name="Client User", role="user"):
        return gateway.sign_up(email, password, name=name, role=role)
    return _make


@pytest.fixture
def make_collection(gateway):
    def _make(title="Wedding", pin="5678", description=None):
        return gateway.insert_row("collections", {
            "title": title,
            "description": description,
            "pin_hash": gateway.hash_secret(pin),
        })
    return _make


@pytest.fixture
def make_image(gateway):
    """Stores real JPEG bytes so watermarking and signed links can read them back."""
    counter = {"n": 0}

    def _make(collection_id, title=None):
        counter["n"] += 1
        path = f"{collection_id}/photo-{counter['n']}.jpg"
        gateway.upload_object("images", path, make_image_bytes())
        return gateway.insert_row("images", {
            "collection_id": collection_id,
            "title": title or f"Photo {counter['n']}",
            "path": path,
            "url": gateway.get_public_url("images", path),
        })
    return _make


# ---------------------------------------------------------------------------
# Engine harness
# ---------------------------------------------------------------------------

class Recorder:
    """Collects everything the gate and the session holder emit."""

    def __init__(self):
        self.notes = []
        self.navigations = []
        self.downloads = []
        self.sleeps = []

    def notify(self, kind, message):
        self.notes.append((kind, message))

    def messages(self, kind=None):
        return [m for k, m in self.notes if kind is None or k == kind]

    async def sleep(self, seconds):
        self.sleeps.append(seconds)


@pytest.fixture
def harness(gateway):
    """Builds (gate, session, recorder) wired like a portal session."""
    from core.access_gate import AccessGate
    from core.session import SessionHolder

    built = []

    def _build(token=None, renderer=None):
        rec = Recorder()
        session = SessionHolder(gateway, rec.navigations.append)
        gate = AccessGate(
            gateway,
            session,
            notify=rec.notify,
            navigate=rec.navigations.append,
            trigger_download=rec.downloads.append,
            renderer=renderer,
            sleep=rec.sleep,
        )
        if token:
            session.initialize(token)
            gate.load_dashboard()
        built.append(session)
        return gate, session, rec

    yield _build
    for session in built:
        session.teardown()


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def registry(gateway):
    from core.portal import PortalRegistry, set_registry
    reg = PortalRegistry(gateway_factory=lambda: gateway, sleep=no_sleep)
    set_registry(reg)
    yield reg
    reg.clear()
    set_registry(None)


@pytest.fixture
def client(registry):
    from main import app
    with TestClient(app) as c:
        yield c


class PortalClient:
    """One browser: keeps its portal session id and bearer token between calls."""

    def __init__(self, client):
        self.client = client
        self.portal_id = None
        self.token = None

    def _headers(self):
        from core.portal import PORTAL_HEADER
        headers = {}
        if self.portal_id:
            headers[PORTAL_HEADER] = self.portal_id
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def request(self, method, url, **kwargs):
        from core.portal import PORTAL_HEADER
        r = self.client.request(method, url, headers=self._headers(), **kwargs)
        self.portal_id = r.headers.get(PORTAL_HEADER, self.portal_id)
        return r

    def get(self, url, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)

    def delete(self, url, **kwargs):
        return self.request("DELETE", url, **kwargs)

    def sign_in(self, email, password):
        r = self.post("/api/auth/signin", json={"email": email, "password": password})
        assert r.status_code == 200, r.text
        self.token = r.json()["access_token"]
        return r


@pytest.fixture
def browser(client):
    def _open():
        return PortalClient(client)
    return _open
