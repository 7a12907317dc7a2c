"""
Session/identity holder for one portal session.

Tracks {identity, role, loading}. On initialize it fetches the gateway
session, re-checks that the backing users row still exists and listens to
two signals: auth-state changes and deletion of that users row. Either
signal clears local state and emits NavigateTo(SIGN_IN). Handlers are
idempotent because the initial fetch and a change event may both try to set
the same identity.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from core.config import logger
from core.events import SIGNED_IN, SIGNED_OUT, AuthStateChanged, RowDeleted, Subscription
from core.gateway import BackendGateway, GatewayError, Identity


class View(str, Enum):
    HOME = "home"
    SIGN_IN = "sign_in"
    DASHBOARD = "dashboard"
    ADMIN_DASHBOARD = "admin_dashboard"


@dataclass(frozen=True)
class NavigateTo:
    view: View

    def to_dict(self) -> dict:
        return {"type": "navigate", "view": self.view.value}


class SessionHolder:
    def __init__(self, gateway: BackendGateway, navigate: Callable[[NavigateTo], None]):
        self.gateway = gateway
        self._navigate = navigate
        self.identity: Optional[Identity] = None
        self.role: Optional[str] = None
        self.loading = True
        self.access_token: Optional[str] = None
        self._auth_sub: Optional[Subscription] = None
        self._row_sub: Optional[Subscription] = None
        self._watched_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def state(self) -> dict:
        return {
            "identity": self.identity.to_dict() if self.identity else None,
            "role": self.role,
            "loading": self.loading,
        }

    def initialize(self, access_token: Optional[str]) -> Optional[Identity]:
        self.loading = True
        if self._auth_sub is None:
            self._auth_sub = self.gateway.on_auth_state_change(self._on_auth_change)
        try:
            identity = self.gateway.get_session(access_token) if access_token else None
            if identity is None:
                self._clear()
                return None
            row = self.gateway.get_row("users", identity.id)
            if row is None:
                # Account deleted while the token was still valid
                self.identity = identity
                self.access_token = access_token
                self._revoke()
                self.gateway.sign_out(access_token)
                return None
            self._apply(identity, row, access_token)
            return self.identity
        except GatewayError as ex:
            logger.warning(f"session initialize failed: {ex}")
            self._clear()
            return None
        finally:
            self.loading = False

    def sign_out(self) -> None:
        token = self.access_token
        if token:
            self.gateway.sign_out(token)
        # The SIGNED_OUT event normally revokes already; covers tokens the gateway rejects
        self._revoke()

    def teardown(self) -> None:
        for sub in (self._auth_sub, self._row_sub):
            if sub is not None:
                sub.unsubscribe()
        self._auth_sub = None
        self._row_sub = None
        self._watched_id = None

    # ---------- internals ----------

    def _apply(self, identity: Identity, row: Optional[dict], token: Optional[str]) -> None:
        role = (row or {}).get("role") or identity.role
        if row:
            identity = Identity(
                id=identity.id,
                email=row.get("email") or identity.email,
                name=row.get("name"),
                role=role,
                created_at=row.get("created_at"),
            )
        self.identity = identity
        self.role = role
        self.access_token = token
        if self._watched_id != identity.id:
            if self._row_sub is not None:
                self._row_sub.unsubscribe()
            self._row_sub = self.gateway.on_row_deleted("users", identity.id, self._on_identity_revoked)
            self._watched_id = identity.id

    def _clear(self) -> None:
        self.identity = None
        self.role = None
        self.access_token = None
        if self._row_sub is not None:
            self._row_sub.unsubscribe()
        self._row_sub = None
        self._watched_id = None

    def _revoke(self) -> None:
        if self.identity is None and self.access_token is None:
            return
        self._clear()
        self._navigate(NavigateTo(View.SIGN_IN))

    def _on_auth_change(self, ev: AuthStateChanged) -> None:
        if self.identity is None or ev.identity_id != self.identity.id:
            return
        if ev.event == SIGNED_OUT:
            logger.info(f"identity {ev.identity_id} signed out; clearing portal session")
            self._revoke()
        elif ev.event == SIGNED_IN:
            self.loading = False

    def _on_identity_revoked(self, ev: RowDeleted) -> None:
        logger.info(f"identity {ev.row_id} deleted; clearing portal session")
        self._revoke()
