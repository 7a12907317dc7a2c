"""
Backend gateway: authentication, row-level CRUD, object storage with
public/signed urls and realtime change notifications.

Everything the portal needs from the backend goes through BackendGateway, so
views and the access gate never touch SQLAlchemy sessions or storage
directly and tests can hand in their own instance. Failures surface as
GatewayError; callers decide how to report them.
"""
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from core.auth import hash_secret, check_secret, issue_access_token, decode_access_token
from core.config import logger
from core.database import SessionLocal, session_scope
from core.events import (
    AUTH_TOPIC, SIGNED_IN, SIGNED_OUT,
    AuthStateChanged, EventBus, IdentityRevoked, RowDeleted, Subscription,
    deletion_topic,
)
from models.gallery import Collection, Image
from models.purchase import PurchaseRequest
from models.site import DownloadPin, Message, Setting
from models.user import User
from utils import storage

IMAGES_BUCKET = "images"

TABLES = {
    "users": User,
    "collections": Collection,
    "images": Image,
    "purchase_requests": PurchaseRequest,
    "messages": Message,
    "download_pin": DownloadPin,
    "settings": Setting,
}


class GatewayError(Exception):
    pass


class AuthError(GatewayError):
    pass


@dataclass(frozen=True)
class Identity:
    id: str
    email: str
    name: Optional[str] = None
    role: str = "user"
    created_at: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "created_at": self.created_at,
        }


def _identity_from_user(user: User) -> Identity:
    return Identity(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role or "user",
        created_at=user.created_at.isoformat() if user.created_at else None,
    )


class BackendGateway:
    def __init__(self, session_factory=None, events: Optional[EventBus] = None):
        self._session_factory = session_factory or SessionLocal
        self.events = events or EventBus()
        # jti -> exp; expired tokens fail decoding anyway so their entries are pruned
        self._revoked_tokens: Dict[str, int] = {}

    # ---------- plumbing ----------

    @contextmanager
    def _db(self, action: str):
        try:
            with session_scope(self._session_factory) as db:
                yield db
        except GatewayError:
            raise
        except SQLAlchemyError as ex:
            logger.warning(f"gateway {action} failed: {ex}")
            raise GatewayError(f"{action} failed") from ex

    def _model(self, table: str):
        model = TABLES.get(table)
        if model is None:
            raise GatewayError(f"unknown table: {table}")
        return model

    @staticmethod
    def _columns(model) -> set:
        return {c.key for c in model.__table__.columns}

    # ---------- auth ----------

    def sign_up(self, email: str, password: str, name: Optional[str] = None, role: str = "user") -> Tuple[Identity, str]:
        em = (email or "").strip().lower()
        with self._db("sign_up") as db:
            if db.query(User).filter(User.email == em).first():
                raise AuthError("User already registered")
            user = User(email=em, name=name, role=role, password_hash=hash_secret(password))
            db.add(user)
            db.flush()
            identity = _identity_from_user(user)
        token = issue_access_token(identity.id, identity.email, identity.role)
        self.events.publish(AUTH_TOPIC, AuthStateChanged(SIGNED_IN, identity.id))
        return identity, token

    def sign_in(self, email: str, password: str) -> Tuple[Identity, str]:
        em = (email or "").strip().lower()
        with self._db("sign_in") as db:
            user = db.query(User).filter(User.email == em).first()
            if not user or not check_secret(password, user.password_hash):
                raise AuthError("Invalid login credentials")
            user.last_login_at = datetime.utcnow()
            identity = _identity_from_user(user)
        token = issue_access_token(identity.id, identity.email, identity.role)
        self.events.publish(AUTH_TOPIC, AuthStateChanged(SIGNED_IN, identity.id))
        return identity, token

    def sign_out(self, token: str) -> None:
        claims = decode_access_token(token)
        if not claims:
            return
        self._prune_revoked()
        self._revoked_tokens[claims.get("jti") or token] = int(claims.get("exp") or 0)
        self.events.publish(AUTH_TOPIC, AuthStateChanged(SIGNED_OUT, claims.get("sub")))

    def _prune_revoked(self) -> None:
        now = int(time.time())
        for key, exp in list(self._revoked_tokens.items()):
            if exp <= now:
                self._revoked_tokens.pop(key, None)

    def get_session(self, token: Optional[str]) -> Optional[Identity]:
        """Identity carried by the access token, without checking the users row."""
        claims = decode_access_token(token or "")
        if not claims:
            return None
        if (claims.get("jti") or token) in self._revoked_tokens:
            return None
        return Identity(
            id=claims.get("sub") or "",
            email=claims.get("email") or "",
            role=claims.get("role") or "user",
        )

    # ---------- realtime ----------

    def on_auth_state_change(self, callback: Callable[[AuthStateChanged], None]) -> Subscription:
        return self.events.subscribe(AUTH_TOPIC, callback)

    def on_row_deleted(self, table: str, match_id: str, callback: Callable[[RowDeleted], None]) -> Subscription:
        def _filtered(ev: RowDeleted):
            if ev.row_id == match_id:
                callback(ev)
        return self.events.subscribe(deletion_topic(table), _filtered)

    # ---------- rows ----------

    def query_table(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[dict]:
        """Equality filters; order_by is a column name, '-' prefix for descending."""
        model = self._model(table)
        cols = self._columns(model)
        with self._db(f"query {table}") as db:
            q = db.query(model)
            for key, value in (filters or {}).items():
                if key not in cols:
                    raise GatewayError(f"unknown column {table}.{key}")
                q = q.filter(getattr(model, key) == value)
            if order_by:
                name = order_by.lstrip("-")
                if name not in cols:
                    raise GatewayError(f"unknown column {table}.{name}")
                col = getattr(model, name)
                q = q.order_by(col.desc() if order_by.startswith("-") else col.asc())
            if limit:
                q = q.limit(int(limit))
            return [row.to_dict() for row in q.all()]

    def get_row(self, table: str, row_id: Any) -> Optional[dict]:
        model = self._model(table)
        with self._db(f"get {table}") as db:
            row = db.get(model, row_id)
            return row.to_dict() if row else None

    def insert_row(self, table: str, record: Dict[str, Any]) -> dict:
        model = self._model(table)
        unknown = set(record) - self._columns(model)
        if unknown:
            raise GatewayError(f"unknown columns for {table}: {sorted(unknown)}")
        with self._db(f"insert {table}") as db:
            row = model(**record)
            db.add(row)
            db.flush()
            return row.to_dict()

    def update_row(self, table: str, row_id: Any, patch: Dict[str, Any]) -> dict:
        model = self._model(table)
        unknown = set(patch) - self._columns(model)
        if unknown:
            raise GatewayError(f"unknown columns for {table}: {sorted(unknown)}")
        with self._db(f"update {table}") as db:
            row = db.get(model, row_id)
            if row is None:
                raise GatewayError(f"{table} row not found: {row_id}")
            for key, value in patch.items():
                setattr(row, key, value)
            db.flush()
            return row.to_dict()

    def delete_row(self, table: str, row_id: Any) -> bool:
        model = self._model(table)
        with self._db(f"delete {table}") as db:
            row = db.get(model, row_id)
            if row is None:
                return False
            db.delete(row)
        event_cls = IdentityRevoked if table == "users" else RowDeleted
        self.events.publish(deletion_topic(table), event_cls(table, str(row_id)))
        return True

    # ---------- secrets ----------

    def hash_secret(self, plain: str) -> str:
        return hash_secret(plain)

    def compare_secret(self, table: str, row_id: Any, candidate: str, column: str = "pin_hash") -> bool:
        """One-way comparison against a stored hash; the hash never leaves the gateway."""
        model = self._model(table)
        if column not in self._columns(model):
            raise GatewayError(f"unknown column {table}.{column}")
        with self._db(f"compare {table}.{column}") as db:
            row = db.get(model, row_id)
            if row is None:
                return False
            stored = getattr(row, column) or ""
        return check_secret(candidate, stored)

    # ---------- storage ----------

    def upload_object(self, bucket: str, path: str, data: bytes, content_type: str = "image/jpeg") -> str:
        try:
            storage.upload_bytes(f"{bucket}/{path}", data, content_type)
        except storage.StorageError as ex:
            raise GatewayError(str(ex)) from ex
        return path

    def read_object(self, bucket: str, path: str) -> Optional[bytes]:
        return storage.read_bytes_key(f"{bucket}/{path}")

    def remove_object(self, bucket: str, path: str) -> bool:
        return storage.delete_key(f"{bucket}/{path}")

    def get_public_url(self, bucket: str, path: str) -> str:
        try:
            return storage.get_public_url(f"{bucket}/{path}")
        except storage.StorageError as ex:
            raise GatewayError(str(ex)) from ex

    def get_signed_url(self, bucket: str, path: str, ttl_seconds: int) -> str:
        try:
            return storage.get_presigned_url(f"{bucket}/{path}", expires_in=ttl_seconds)
        except storage.StorageError as ex:
            raise GatewayError(str(ex)) from ex

    # ---------- singletons and joins ----------

    def get_download_pin(self) -> Optional[str]:
        row = self.get_row("download_pin", 1)
        return row["pin"] if row else None

    def set_download_pin(self, pin: str) -> dict:
        with self._db("set download_pin") as db:
            row = db.get(DownloadPin, 1)
            if row is None:
                row = DownloadPin(id=1, pin=pin)
                db.add(row)
            else:
                row.pin = pin
            db.flush()
            return row.to_dict()

    def set_setting(self, key: str, value: Any) -> dict:
        with self._db("set setting") as db:
            row = db.get(Setting, key)
            if row is None:
                row = Setting(key=key, value=value)
                db.add(row)
            else:
                row.value = value
            db.flush()
            return row.to_dict()

    def list_purchase_requests(self, user_id: Optional[str] = None) -> List[dict]:
        """Purchase requests newest first, joined with image, collection and user summaries."""
        with self._db("list purchase_requests") as db:
            q = (
                db.query(PurchaseRequest, Image, Collection, User)
                .outerjoin(Image, Image.id == PurchaseRequest.image_id)
                .outerjoin(Collection, Collection.id == Image.collection_id)
                .outerjoin(User, User.id == PurchaseRequest.user_id)
            )
            if user_id:
                q = q.filter(PurchaseRequest.user_id == user_id)
            rows = q.order_by(PurchaseRequest.created_at.desc()).all()
            return [_purchase_view(req, img, col, usr) for req, img, col, usr in rows]


def _purchase_view(req: PurchaseRequest, img: Optional[Image], col: Optional[Collection], usr: Optional[User]) -> dict:
    item = req.to_dict()
    item["image"] = {
        "title": img.title if img else None,
        "url": img.url if img else None,
        "collection_title": col.title if col else None,
    }
    item["user"] = {
        "name": usr.name if usr else None,
        "email": usr.email if usr else None,
    }
    return item


_gateway: Optional[BackendGateway] = None


def get_gateway() -> BackendGateway:
    """Process-wide gateway so realtime listeners share one channel."""
    global _gateway
    if _gateway is None:
        _gateway = BackendGateway()
    return _gateway


def set_gateway(gateway: Optional[BackendGateway]) -> None:
    global _gateway
    _gateway = gateway
