"""
Portal sessions: one in-memory context per browser session.

A context bundles the session holder, the access gate and everything the
client has to be told on its next response (toasts, navigation commands and
download triggers). Clients carry the id in the X-Portal-Session header;
an unknown or missing id starts a fresh context, the same as a page reload.
"""
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from core.access_gate import AccessGate, DownloadTrigger
from core.auth import get_token_from_request
from core.config import logger, PORTAL_IDLE_TTL_SEC, PORTAL_MAX_SESSIONS
from core.gateway import BackendGateway, get_gateway
from core.session import NavigateTo, SessionHolder, View

PORTAL_HEADER = "X-Portal-Session"


class DashboardTab(str, Enum):
    PROFILE = "profile"
    GALLERY = "gallery"
    PURCHASES = "purchases"
    HIRE = "hire"


class GalleryView(str, Enum):
    GALLERY = "gallery"
    COLLECTIONS = "collections"


@dataclass
class Notification:
    kind: str
    message: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def to_dict(self) -> dict:
        return {"id": self.id, "kind": self.kind, "message": self.message}


class PortalContext:
    def __init__(self, gateway: BackendGateway, portal_id: Optional[str] = None, **gate_options):
        self.id = portal_id or uuid.uuid4().hex
        self.gateway = gateway
        self.notifications: List[Notification] = []
        self.commands: List[dict] = []
        self.downloads: Dict[str, DownloadTrigger] = {}
        self.tab = DashboardTab.PROFILE
        self.gallery_view = GalleryView.GALLERY
        self.last_seen = time.time()
        self._lock = threading.Lock()

        self.session = SessionHolder(gateway, self.navigate)
        self.gate = AccessGate(
            gateway,
            self.session,
            notify=self.notify,
            navigate=self.navigate,
            trigger_download=self.trigger_download,
            **gate_options,
        )

    # ---------- sinks handed to the holder and the gate ----------

    def notify(self, kind: str, message: str) -> None:
        with self._lock:
            self.notifications.append(Notification(kind, message))

    def navigate(self, command: NavigateTo) -> None:
        if command.view == View.SIGN_IN:
            self.gate.forget_identity()
        with self._lock:
            self.commands.append(command.to_dict())

    def trigger_download(self, trigger: DownloadTrigger) -> None:
        with self._lock:
            if trigger.content is not None:
                self.downloads[trigger.id] = trigger
            self.commands.append({"type": "download", **trigger.to_dict()})

    def push(self, command: dict) -> None:
        with self._lock:
            self.commands.append(command)

    # ---------- request plumbing ----------

    def bind(self, access_token: Optional[str]) -> None:
        """Pick up a bearer token the session has not seen yet."""
        self.last_seen = time.time()
        if not access_token or access_token == self.session.access_token:
            return
        if self.session.initialize(access_token) is not None:
            self.gate.load_dashboard()

    def drain(self) -> dict:
        with self._lock:
            notes = [n.to_dict() for n in self.notifications]
            commands = list(self.commands)
            self.notifications.clear()
            self.commands.clear()
        return {"notifications": notes, "commands": commands}

    def take_download(self, trigger_id: str) -> Optional[DownloadTrigger]:
        with self._lock:
            return self.downloads.pop(trigger_id, None)

    def state(self) -> dict:
        return {
            "portal_id": self.id,
            "session": self.session.state(),
            "tab": self.tab.value,
            "gallery_view": self.gallery_view.value,
            "unlocked": sorted(self.gate.unlocked),
            "selected_collection": self.gate.selected_collection,
        }

    def teardown(self) -> None:
        self.session.teardown()
        with self._lock:
            self.downloads.clear()


class PortalRegistry:
    """Live portal sessions. Idle ones are swept whenever a new one is opened."""

    def __init__(
        self,
        gateway_factory=get_gateway,
        idle_ttl: int = PORTAL_IDLE_TTL_SEC,
        max_sessions: int = PORTAL_MAX_SESSIONS,
        **gate_options,
    ):
        self._gateway_factory = gateway_factory
        self._gate_options = gate_options
        self.idle_ttl = idle_ttl
        self.max_sessions = max_sessions
        self._contexts: Dict[str, PortalContext] = {}
        self._lock = threading.Lock()

    def create(self) -> PortalContext:
        self.sweep()
        ctx = PortalContext(self._gateway_factory(), **self._gate_options)
        with self._lock:
            self._contexts[ctx.id] = ctx
        logger.info(f"portal session created: {ctx.id}")
        return ctx

    def get(self, portal_id: Optional[str]) -> Optional[PortalContext]:
        if not portal_id:
            return None
        with self._lock:
            return self._contexts.get(portal_id)

    def find_by_token(self, access_token: Optional[str]) -> Optional[PortalContext]:
        """Most recently used session already bound to this bearer token."""
        if not access_token:
            return None
        with self._lock:
            bound = [c for c in self._contexts.values() if c.session.access_token == access_token]
        return max(bound, key=lambda c: c.last_seen, default=None)

    def get_or_create(self, portal_id: Optional[str], access_token: Optional[str] = None) -> PortalContext:
        ctx = self.get(portal_id)
        if ctx is None and not portal_id:
            # header-less API clients are keyed by their token instead
            ctx = self.find_by_token(access_token)
        return ctx or self.create()

    def sweep(self) -> int:
        """Drop sessions idle longer than idle_ttl, then the oldest ones beyond max_sessions."""
        cutoff = time.time() - self.idle_ttl
        with self._lock:
            by_age = sorted(self._contexts.values(), key=lambda c: c.last_seen)
            stale = [c.id for c in by_age if c.last_seen < cutoff]
            live = [c.id for c in by_age if c.last_seen >= cutoff]
            if self.max_sessions and len(live) >= self.max_sessions:
                stale += live[: len(live) - self.max_sessions + 1]
        for pid in stale:
            self.drop(pid)
        if stale:
            logger.info(f"portal sessions swept: {len(stale)}")
        return len(stale)

    def drop(self, portal_id: str) -> bool:
        with self._lock:
            ctx = self._contexts.pop(portal_id, None)
        if ctx is None:
            return False
        ctx.teardown()
        logger.info(f"portal session closed: {portal_id}")
        return True

    def clear(self) -> None:
        with self._lock:
            ids = list(self._contexts)
        for pid in ids:
            self.drop(pid)

    def __len__(self) -> int:
        with self._lock:
            return len(self._contexts)


_registry: Optional[PortalRegistry] = None


def get_registry() -> PortalRegistry:
    global _registry
    if _registry is None:
        _registry = PortalRegistry()
    return _registry


def set_registry(registry: Optional[PortalRegistry]) -> None:
    global _registry
    _registry = registry


def get_portal(request: Request) -> PortalContext:
    """FastAPI dependency: the caller's portal session with its bearer token bound."""
    token = get_token_from_request(request)
    ctx = get_registry().get_or_create(request.headers.get(PORTAL_HEADER), token)
    ctx.bind(token)
    return ctx


def portal_response(ctx: PortalContext, payload: Optional[dict] = None, status_code: int = 200) -> JSONResponse:
    body = dict(payload or {})
    body.update(ctx.drain())
    return JSONResponse(body, status_code=status_code, headers={PORTAL_HEADER: ctx.id})


def portal_error(ctx: PortalContext, message: str, status_code: int = 400) -> JSONResponse:
    return portal_response(ctx, {"error": message}, status_code=status_code)
