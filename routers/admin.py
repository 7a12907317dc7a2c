import os
import uuid
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, File, Form, UploadFile
from fastapi.responses import JSONResponse

from core.config import logger
from core.gateway import GatewayError, IMAGES_BUCKET
from core.portal import PortalContext, get_portal, portal_error, portal_response
from models.purchase import STATUS_APPROVED, STATUS_DENIED, STATUS_PENDING

router = APIRouter(prefix="/api/admin", tags=["admin"])

# Admins only ever move a request out of pending
DECISIONS = {STATUS_APPROVED, STATUS_DENIED}


def _require_admin(ctx: PortalContext) -> Optional[JSONResponse]:
    if ctx.session.identity is None:
        return portal_error(ctx, "Unauthorized", status_code=401)
    if not ctx.session.is_admin:
        ctx.notify("error", "Access denied: Admins only")
        return portal_error(ctx, "Forbidden", status_code=403)
    return None


@router.get("/stats")
async def admin_stats(ctx: PortalContext = Depends(get_portal)):
    denied = _require_admin(ctx)
    if denied:
        return denied
    try:
        requests = ctx.gateway.list_purchase_requests()
    except GatewayError as ex:
        logger.warning(f"admin stats failed: {ex}")
        ctx.notify("error", "Failed to load purchase requests")
        return portal_error(ctx, "Failed to load purchase requests", status_code=500)
    return portal_response(ctx, {
        "total_requests": len(requests),
        "pending_requests": sum(1 for r in requests if r["status"] == STATUS_PENDING),
        "approved_requests": sum(1 for r in requests if r["status"] == STATUS_APPROVED),
        "denied_requests": sum(1 for r in requests if r["status"] == STATUS_DENIED),
    })


@router.get("/purchase-requests")
async def admin_list_requests(ctx: PortalContext = Depends(get_portal)):
    denied = _require_admin(ctx)
    if denied:
        return denied
    try:
        requests = ctx.gateway.list_purchase_requests()
    except GatewayError as ex:
        logger.warning(f"admin list requests failed: {ex}")
        ctx.notify("error", "Failed to load purchase requests")
        return portal_error(ctx, "Failed to load purchase requests", status_code=500)
    return portal_response(ctx, {"purchase_requests": requests})


@router.post("/purchase-requests/{request_id}")
async def admin_update_request(request_id: str, status: str = Body(..., embed=True), ctx: PortalContext = Depends(get_portal)):
    denied = _require_admin(ctx)
    if denied:
        return denied
    st = (status or "").strip().lower()
    if st not in DECISIONS:
        return portal_error(ctx, "Status must be approved or denied")
    try:
        row = ctx.gateway.update_row("purchase_requests", request_id, {"status": st})
    except GatewayError as ex:
        logger.warning(f"update request {request_id} failed: {ex}")
        ctx.notify("error", "Failed to update request status")
        return portal_error(ctx, "Failed to update request status", status_code=404)
    ctx.notify("success", f"Request {st} successfully")
    return portal_response(ctx, {"request": row})


@router.post("/collections")
async def admin_create_collection(
    title: str = Body(..., embed=True),
    pin: str = Body(..., embed=True),
    description: Optional[str] = Body(None, embed=True),
    ctx: PortalContext = Depends(get_portal),
):
    denied = _require_admin(ctx)
    if denied:
        return denied
    if not (title or "").strip() or not (pin or "").strip():
        return portal_error(ctx, "Title and PIN are required")
    try:
        row = ctx.gateway.insert_row("collections", {
            "title": title.strip(),
            "description": (description or "").strip() or None,
            "pin_hash": ctx.gateway.hash_secret(pin.strip()),
        })
    except GatewayError as ex:
        logger.warning(f"create collection failed: {ex}")
        return portal_error(ctx, "Failed to create collection", status_code=500)
    ctx.notify("success", "Collection created")
    return portal_response(ctx, {"collection": row}, status_code=201)


@router.post("/collections/{collection_id}/pin")
async def admin_change_collection_pin(collection_id: str, pin: str = Body(..., embed=True), ctx: PortalContext = Depends(get_portal)):
    """New PIN for a collection. Sessions that already unlocked it keep access."""
    denied = _require_admin(ctx)
    if denied:
        return denied
    if not (pin or "").strip():
        return portal_error(ctx, "PIN is required")
    try:
        ctx.gateway.update_row("collections", collection_id, {"pin_hash": ctx.gateway.hash_secret(pin.strip())})
    except GatewayError as ex:
        logger.warning(f"change pin for {collection_id} failed: {ex}")
        return portal_error(ctx, "Collection not found", status_code=404)
    return portal_response(ctx, {"ok": True})


@router.post("/collections/{collection_id}/images")
async def admin_upload_image(
    collection_id: str,
    file: UploadFile = File(...),
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    ctx: PortalContext = Depends(get_portal),
):
    denied = _require_admin(ctx)
    if denied:
        return denied
    if not file.content_type or not file.content_type.startswith("image/"):
        return portal_error(ctx, "File must be an image")
    try:
        if ctx.gateway.get_row("collections", collection_id) is None:
            return portal_error(ctx, "Collection not found", status_code=404)
        content = await file.read()
        ext = os.path.splitext(file.filename or "")[1].lower() or ".jpg"
        path = f"{collection_id}/{uuid.uuid4().hex}{ext}"
        ctx.gateway.upload_object(IMAGES_BUCKET, path, content, content_type=file.content_type)
        row = ctx.gateway.insert_row("images", {
            "collection_id": collection_id,
            "title": (title or os.path.splitext(file.filename or "")[0] or "Untitled").strip(),
            "description": (description or "").strip() or None,
            "path": path,
            "url": ctx.gateway.get_public_url(IMAGES_BUCKET, path),
        })
    except GatewayError as ex:
        logger.warning(f"upload to {collection_id} failed: {ex}")
        return portal_error(ctx, "Failed to upload image", status_code=500)
    ctx.notify("success", "Image uploaded")
    return portal_response(ctx, {"image": row}, status_code=201)


@router.post("/download-pin")
async def admin_set_download_pin(pin: str = Body(..., embed=True), ctx: PortalContext = Depends(get_portal)):
    denied = _require_admin(ctx)
    if denied:
        return denied
    p = (pin or "").strip()
    if not p:
        return portal_error(ctx, "PIN is required")
    try:
        ctx.gateway.set_download_pin(p)
    except GatewayError as ex:
        logger.warning(f"set download pin failed: {ex}")
        return portal_error(ctx, "Failed to save PIN", status_code=500)
    ctx.notify("success", f"PIN {p} submitted")
    return portal_response(ctx, {"ok": True})


@router.get("/users")
async def admin_list_users(ctx: PortalContext = Depends(get_portal)):
    denied = _require_admin(ctx)
    if denied:
        return denied
    try:
        users = ctx.gateway.query_table("users", order_by="-created_at")
    except GatewayError as ex:
        logger.warning(f"list users failed: {ex}")
        return portal_error(ctx, "Failed to load users", status_code=500)
    return portal_response(ctx, {"users": users})


@router.delete("/users/{user_id}")
async def admin_delete_user(user_id: str, ctx: PortalContext = Depends(get_portal)):
    """Deleting the users row ends every live portal session bound to it."""
    denied = _require_admin(ctx)
    if denied:
        return denied
    if user_id == ctx.session.identity.id:
        return portal_error(ctx, "You cannot delete your own account")
    try:
        removed = ctx.gateway.delete_row("users", user_id)
    except GatewayError as ex:
        logger.warning(f"delete user {user_id} failed: {ex}")
        return portal_error(ctx, "Failed to delete user", status_code=500)
    if not removed:
        return portal_error(ctx, "User not found", status_code=404)
    ctx.notify("success", "User deleted")
    return portal_response(ctx, {"ok": True})


@router.get("/messages")
async def admin_list_messages(ctx: PortalContext = Depends(get_portal)):
    denied = _require_admin(ctx)
    if denied:
        return denied
    try:
        messages = ctx.gateway.query_table("messages", order_by="-created_at")
    except GatewayError as ex:
        logger.warning(f"list messages failed: {ex}")
        return portal_error(ctx, "Failed to load messages", status_code=500)
    return portal_response(ctx, {"messages": messages})


@router.post("/settings")
async def admin_save_setting(key: str = Body(..., embed=True), value: Any = Body(None, embed=True), ctx: PortalContext = Depends(get_portal)):
    denied = _require_admin(ctx)
    if denied:
        return denied
    k = (key or "").strip()
    if not k:
        return portal_error(ctx, "Key is required")
    try:
        row = ctx.gateway.set_setting(k, value)
    except GatewayError as ex:
        logger.warning(f"save setting {k} failed: {ex}")
        return portal_error(ctx, "Failed to save settings", status_code=500)
    ctx.notify("success", "Settings saved")
    return portal_response(ctx, {"setting": row})
