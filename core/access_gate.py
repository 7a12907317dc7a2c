"""
Access gate: mediates every gated read/download of collections and images
for one portal session.

Collections: LOCKED -> PROMPTING_PIN -> UNLOCKED. A verified collection id
stays in the unlocked set for the life of the portal session, so selecting it
again skips the PIN prompt. The PIN check is pessimistic: nothing is unlocked
until the gateway comparison has returned. Wrong PINs can be retried forever.

Images: watermark downloads are always allowed. Premium (original) downloads
need either an approved purchase request for the image or, to file such a
request, the global download PIN. Filing the request is optimistic: the
local list gets the pending entry before the gateway insert and keeps it if
the insert fails.

Known policy gaps kept on purpose: the global PIN is compared as plain text
against a cached copy; the unlocked set and the cached PIN never expire, so
an admin changing a PIN does not revoke sessions that already passed it.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple
import uuid

from core.config import logger, DEFAULT_DOWNLOAD_PIN, SIGNED_URL_TTL_SEC, BULK_DOWNLOAD_DELAY_MS, DOWNLOAD_FILENAME
from core.gateway import BackendGateway, IMAGES_BUCKET
from core.session import NavigateTo, SessionHolder, View
from models.purchase import STATUS_APPROVED, STATUS_PENDING
from utils.watermark import watermark_from_url


class CollectionState(str, Enum):
    LOCKED = "locked"
    PROMPTING_PIN = "prompting_pin"
    UNLOCKED = "unlocked"


class DownloadState(str, Enum):
    IDLE = "idle"
    WATERMARKING = "watermarking"
    PROMPTING_GLOBAL_PIN = "prompting_global_pin"
    REQUEST_SUBMITTED = "request_submitted"


class DownloadKind(str, Enum):
    WATERMARK = "watermark"
    PREMIUM = "premium"


class GateAction(str, Enum):
    PREMIUM_REQUEST = "premium_request"
    SIGNED_DOWNLOAD = "signed_download"
    COLLECTION_DOWNLOAD = "collection_download"


@dataclass
class DownloadTrigger:
    """One browser download. Either a url to follow or rendered content."""
    filename: str
    kind: str
    url: Optional[str] = None
    content: Optional[bytes] = None
    content_type: str = "image/jpeg"
    image_id: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "filename": self.filename,
            "kind": self.kind,
            "url": self.url,
            "image_id": self.image_id,
            "has_content": self.content is not None,
        }


Notify = Callable[[str, str], None]
Renderer = Callable[[str], Awaitable[Optional[bytes]]]


class AccessGate:
    def __init__(
        self,
        gateway: BackendGateway,
        session: SessionHolder,
        notify: Notify,
        navigate: Callable[[NavigateTo], None],
        trigger_download: Callable[[DownloadTrigger], None],
        renderer: Optional[Renderer] = None,
        bulk_delay_ms: int = BULK_DOWNLOAD_DELAY_MS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.session = session
        self._notify = notify
        self._navigate = navigate
        self._trigger = trigger_download
        self._render = renderer or watermark_from_url
        self.bulk_delay_ms = bulk_delay_ms
        self._sleep = sleep

        self.unlocked: Set[str] = set()
        self.pin_target: Optional[str] = None
        self.selected_collection: Optional[dict] = None
        self.images: List[dict] = []

        self.global_pin: Optional[str] = None
        self.purchase_requests: List[dict] = []
        self.download_kind = DownloadKind.WATERMARK
        self.gate_target: Optional[Tuple[GateAction, Optional[str]]] = None
        self._image_states: Dict[str, DownloadState] = {}
        self.loading = False

    # ---------- collections ----------

    def collection_state(self, collection_id: str) -> CollectionState:
        if self.pin_target == collection_id:
            return CollectionState.PROMPTING_PIN
        if collection_id in self.unlocked:
            return CollectionState.UNLOCKED
        return CollectionState.LOCKED

    def select_collection(self, collection_id: str) -> CollectionState:
        try:
            row = self.gateway.get_row("collections", collection_id)
        except Exception as ex:
            logger.warning(f"select_collection failed for {collection_id}: {ex}")
            self._notify("error", "Failed to load collection")
            return self.collection_state(collection_id)
        if row is None:
            self._notify("error", "Collection not found")
            return CollectionState.LOCKED

        if collection_id in self.unlocked:
            self.pin_target = None
            self._open_collection(row)
            return CollectionState.UNLOCKED
        self.pin_target = collection_id
        return CollectionState.PROMPTING_PIN

    def verify_collection_pin(self, collection_id: str, candidate: str) -> bool:
        """Gateway one-way comparison. Fails closed: any error is a mismatch."""
        ok = self._compare_collection_pin(collection_id, candidate)
        if ok is None:
            self._notify("error", "Failed to verify PIN")
            return False
        return ok

    def _compare_collection_pin(self, collection_id: str, candidate: str) -> Optional[bool]:
        try:
            return bool(self.gateway.compare_secret("collections", collection_id, candidate))
        except Exception as ex:
            logger.warning(f"collection PIN verification failed for {collection_id}: {ex}")
            return None

    def submit_collection_pin(self, candidate: str) -> bool:
        target = self.pin_target
        if target is None:
            self._notify("error", "Select a collection first")
            return False
        pin = candidate or ""
        if not pin.strip():
            self._notify("error", "Please enter the collection PIN")
            return False

        self.loading = True
        try:
            ok = self._compare_collection_pin(target, pin)
        finally:
            self.loading = False

        if ok is None:
            self._notify("error", "Failed to verify PIN")
            return False
        if not ok:
            self._notify("error", "Invalid PIN. Please try again.")
            return False

        self.unlocked.add(target)
        self.pin_target = None
        try:
            row = self.gateway.get_row("collections", target)
        except Exception as ex:
            logger.warning(f"collection reload failed for {target}: {ex}")
            row = None
        self._open_collection(row or {"id": target})
        self._notify("success", "Collection unlocked")
        return True

    def cancel_pin_prompt(self) -> None:
        self.pin_target = None

    def leave_collection(self) -> None:
        self.selected_collection = None
        self.images = []
        self.gate_target = None
        self._image_states.clear()

    def _open_collection(self, row: dict) -> None:
        self.selected_collection = row
        self._image_states.clear()
        try:
            self.images = self.gateway.query_table(
                "images", {"collection_id": row["id"]}, order_by="-created_at"
            )
        except Exception as ex:
            logger.warning(f"fetching images for {row.get('id')} failed: {ex}")
            self.images = []
            self._notify("error", "Failed to load images")

    # ---------- dashboard data ----------

    def load_dashboard(self) -> None:
        """Fetch the global download PIN and the current user's purchase requests."""
        try:
            self.global_pin = self.gateway.get_download_pin() or DEFAULT_DOWNLOAD_PIN
        except Exception as ex:
            logger.warning(f"fetching download PIN failed: {ex}")
        self.refresh_purchase_requests()

    def refresh_purchase_requests(self) -> None:
        identity = self.session.identity
        if identity is None:
            self.purchase_requests = []
            return
        try:
            self.purchase_requests = self.gateway.list_purchase_requests(user_id=identity.id)
        except Exception as ex:
            logger.warning(f"fetching purchase requests failed: {ex}")
            self._notify("error", "Failed to load purchase requests")
            return
        for image_id, state in list(self._image_states.items()):
            if state == DownloadState.REQUEST_SUBMITTED and not self._has_pending_request(image_id):
                self._image_states[image_id] = DownloadState.IDLE

    def forget_identity(self) -> None:
        """Drop per-user data after sign-out. Unlocked collections stay with the browser session."""
        self.purchase_requests = []
        self.gate_target = None
        self._image_states.clear()

    def verify_global_pin(self, candidate: str) -> bool:
        # Plain equality against the cached value
        return self.global_pin is not None and candidate == self.global_pin

    def has_approved_request(self, image_id: str) -> bool:
        return any(
            r.get("image_id") == image_id and r.get("status") == STATUS_APPROVED
            for r in self.purchase_requests
        )

    def _has_pending_request(self, image_id: str) -> bool:
        return any(
            r.get("image_id") == image_id and r.get("status") == STATUS_PENDING
            for r in self.purchase_requests
        )

    def download_state(self, image_id: str) -> DownloadState:
        return self._image_states.get(image_id, DownloadState.IDLE)

    def image_controls(self, image_id: str) -> dict:
        approved = self.has_approved_request(image_id)
        return {
            "image_id": image_id,
            "state": self.download_state(image_id).value,
            "watermark_download": True,
            "premium": "download_premium" if approved else "request_premium",
            "pending": self._has_pending_request(image_id),
        }

    def select_download_kind(self, kind: str) -> DownloadKind:
        self.download_kind = DownloadKind(kind)
        return self.download_kind

    # ---------- premium flow ----------

    def _require_identity(self, message: str) -> bool:
        if self.session.identity is not None:
            return True
        self._notify("error", message)
        self._navigate(NavigateTo(View.SIGN_IN))
        return False

    def request_premium(self, image_id: str) -> DownloadState:
        if not self._require_identity("Please sign in first"):
            return DownloadState.IDLE
        if self.has_approved_request(image_id):
            self.download_premium(image_id)
            return self.download_state(image_id)
        self._arm(GateAction.PREMIUM_REQUEST, image_id)
        self._image_states[image_id] = DownloadState.PROMPTING_GLOBAL_PIN
        return DownloadState.PROMPTING_GLOBAL_PIN

    def request_signed_download(self, image_id: str) -> DownloadState:
        """Public gallery download: signed-in visitors pass the global PIN for a short-lived link."""
        if not self._require_identity("Please sign in to download images"):
            return DownloadState.IDLE
        self._arm(GateAction.SIGNED_DOWNLOAD, image_id)
        self._image_states[image_id] = DownloadState.PROMPTING_GLOBAL_PIN
        return DownloadState.PROMPTING_GLOBAL_PIN

    def request_collection_download(self) -> bool:
        if not self._require_identity("Please sign in to download images"):
            return False
        col = self.selected_collection
        if not col or col.get("id") not in self.unlocked:
            self._notify("error", "Unlock the collection first")
            return False
        self._arm(GateAction.COLLECTION_DOWNLOAD, col["id"])
        return True

    def _release_target(self) -> None:
        if self.gate_target is not None:
            action, target = self.gate_target
            if action != GateAction.COLLECTION_DOWNLOAD and target:
                self._image_states[target] = DownloadState.IDLE
        self.gate_target = None

    def _arm(self, action: GateAction, target: str) -> None:
        # one prompt at a time; an image whose prompt is replaced goes back to IDLE
        self._release_target()
        self.gate_target = (action, target)

    def cancel_global_pin_prompt(self) -> None:
        self._release_target()

    async def submit_global_pin(self, candidate: str) -> DownloadState:
        if self.gate_target is None:
            self._notify("error", "Nothing is waiting for a download PIN")
            return DownloadState.IDLE
        if not (candidate or "").strip():
            self._notify("error", "Please enter the download PIN")
            return DownloadState.PROMPTING_GLOBAL_PIN

        action, target = self.gate_target
        self.gate_target = None

        if not self.verify_global_pin(candidate):
            if action != GateAction.COLLECTION_DOWNLOAD and target:
                self._image_states[target] = DownloadState.IDLE
            self._notify("error", "Invalid PIN. Please try again.")
            return DownloadState.IDLE

        if action == GateAction.PREMIUM_REQUEST:
            self.request_premium_download(self.session.identity.id, target)
            self._image_states[target] = DownloadState.REQUEST_SUBMITTED
            return DownloadState.REQUEST_SUBMITTED

        if action == GateAction.SIGNED_DOWNLOAD:
            self._image_states[target] = DownloadState.IDLE
            image = self._find_image(target)
            if image is None:
                return DownloadState.IDLE
            link = self.create_time_limited_link(image["path"])
            if link:
                self._trigger(DownloadTrigger(filename=DOWNLOAD_FILENAME, kind="signed", url=link, image_id=target))
                self._notify("success", f"Download started! Link expires in {SIGNED_URL_TTL_SEC} seconds.")
            return DownloadState.IDLE

        await self.download_collection()
        return DownloadState.IDLE

    async def submit_collection_download_pin(self, candidate: str) -> Optional[int]:
        """Global PIN for the whole selected collection. Number of downloads triggered, None when refused."""
        target = self.gate_target
        if target is None or target[0] != GateAction.COLLECTION_DOWNLOAD:
            if not self.request_collection_download():
                return None
        if not self.verify_global_pin(candidate or ""):
            self.gate_target = None
            self._notify("error", "Invalid PIN. Please try again.")
            return None
        self.gate_target = None
        return await self.download_collection()

    def request_premium_download(self, user_id: str, image_id: str, details: Optional[dict] = None) -> dict:
        """Optimistic: the pending entry is prepended before the gateway insert and kept on failure."""
        image = next((i for i in self.images if i.get("id") == image_id), None)
        entry = {
            "id": None,
            "user_id": user_id,
            "image_id": image_id,
            "status": STATUS_PENDING,
            "details": details or {},
            "created_at": datetime.utcnow().isoformat(),
            "image": {"title": image.get("title"), "url": image.get("url")} if image else None,
        }
        self.purchase_requests.insert(0, entry)
        try:
            row = self.gateway.insert_row("purchase_requests", {
                "user_id": user_id,
                "image_id": image_id,
                "status": STATUS_PENDING,
                "details": details or {},
            })
            entry["id"] = row.get("id")
            entry["created_at"] = row.get("created_at") or entry["created_at"]
            self._notify("success", "Purchase request sent! The admin will get back to you within 24 hours.")
        except Exception as ex:
            logger.warning(f"purchase request insert failed for {image_id}: {ex}")
            self._notify("error", "Failed to send request")
        return entry

    def submit_print_request(self, image_id: str, details: dict) -> Optional[dict]:
        """Print purchase form; no PIN, the admin still has to approve it."""
        if not self._require_identity("Please sign in to make a purchase request"):
            return None
        if not (details or {}).get("size"):
            self._notify("error", "Please select a print size")
            return None
        return self.request_premium_download(self.session.identity.id, image_id, details)

    def download_premium(self, image_id: str) -> bool:
        if not self.has_approved_request(image_id):
            self._notify("error", "Premium download needs an approved request")
            return False
        image = self._find_image(image_id)
        if image is None:
            return False
        self.download_original(image)
        self._notify("success", "Download started")
        return True

    def download_original(self, image: dict) -> DownloadTrigger:
        trigger = DownloadTrigger(
            filename=_filename(image),
            kind="original",
            url=image.get("url"),
            image_id=image.get("id"),
        )
        self._trigger(trigger)
        return trigger

    # ---------- watermark ----------

    async def download_watermarked(self, image_id: str) -> DownloadState:
        image = self._find_image(image_id)
        if image is None:
            return DownloadState.IDLE
        self._image_states[image_id] = DownloadState.WATERMARKING
        try:
            data = await self._render(image.get("url") or "")
        except Exception as ex:
            logger.warning(f"watermark render failed for {image_id}: {ex}")
            data = None
        finally:
            self._image_states[image_id] = DownloadState.IDLE

        if data is None:
            # Availability over protection: hand out the unmodified original
            self.download_original(image)
            self._notify("warning", "Watermark could not be applied; downloaded the original image")
            return DownloadState.IDLE

        self._trigger(DownloadTrigger(
            filename=_filename(image, suffix="-watermarked.jpg"),
            kind="watermarked",
            content=data,
            image_id=image_id,
        ))
        self._notify("success", "Watermarked image downloaded")
        return DownloadState.IDLE

    # ---------- links and bulk ----------

    def create_time_limited_link(self, path: str, ttl_seconds: int = SIGNED_URL_TTL_SEC) -> Optional[str]:
        try:
            return self.gateway.get_signed_url(IMAGES_BUCKET, path, ttl_seconds)
        except Exception as ex:
            logger.warning(f"signed url failed for {path}: {ex}")
            self._notify("error", "Failed to download image")
            return None

    async def download_collection(self) -> int:
        images = list(self.images)
        if not images:
            self._notify("info", "This collection has no images")
            return 0
        delay = max(0, self.bulk_delay_ms) / 1000.0
        for idx, image in enumerate(images):
            if idx:
                await self._sleep(delay)
            self.download_original(image)
        self._notify("success", f"Downloaded {len(images)} images")
        return len(images)

    def _find_image(self, image_id: str) -> Optional[dict]:
        for image in self.images:
            if image.get("id") == image_id:
                return image
        try:
            image = self.gateway.get_row("images", image_id)
        except Exception as ex:
            logger.warning(f"image lookup failed for {image_id}: {ex}")
            self._notify("error", "Failed to load image")
            return None
        if image is None:
            self._notify("error", "Image not found")
        return image


def _filename(image: dict, suffix: Optional[str] = None) -> str:
    base = (image.get("title") or DOWNLOAD_FILENAME).strip() or DOWNLOAD_FILENAME
    safe = "".join(ch if ch.isalnum() or ch in "-_ " else "_" for ch in base).strip().replace(" ", "-")
    if suffix:
        return f"{safe}{suffix}"
    ext = (image.get("path") or "").rsplit(".", 1)
    return f"{safe}.{ext[1].lower()}" if len(ext) == 2 and ext[1] else f"{safe}.jpg"
