import mimetypes
import random

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse, Response

from core.access_gate import CollectionState
from core.config import logger, PUBLIC_PREVIEW_COUNT
from core.gateway import GatewayError
from core.portal import PortalContext, get_portal, portal_error, portal_response
from utils.storage import read_bytes_key, verify_local_signature

router = APIRouter(prefix="/api/gallery", tags=["gallery"])


@router.get("/collections")
async def list_collections(ctx: PortalContext = Depends(get_portal)):
    try:
        rows = ctx.gateway.query_table("collections", order_by="-created_at")
    except GatewayError as ex:
        logger.warning(f"list collections failed: {ex}")
        ctx.notify("error", "Failed to load collections")
        return portal_error(ctx, "Failed to load collections", status_code=500)
    items = [dict(row, state=ctx.gate.collection_state(row["id"]).value) for row in rows]
    return portal_response(ctx, {"collections": items})


@router.get("/preview")
async def public_preview(ctx: PortalContext = Depends(get_portal)):
    """Random selection of images for the public gallery page."""
    try:
        rows = ctx.gateway.query_table("images")
    except GatewayError as ex:
        logger.warning(f"preview images failed: {ex}")
        ctx.notify("error", "Failed to load preview images")
        return portal_error(ctx, "Failed to load preview images", status_code=500)
    random.shuffle(rows)
    return portal_response(ctx, {"images": rows[:PUBLIC_PREVIEW_COUNT]})


@router.post("/collections/{collection_id}/select")
async def select_collection(collection_id: str, ctx: PortalContext = Depends(get_portal)):
    state = ctx.gate.select_collection(collection_id)
    payload = {"collection_id": collection_id, "state": state.value}
    if state == CollectionState.UNLOCKED:
        payload["collection"] = ctx.gate.selected_collection
        payload["images"] = ctx.gate.images
    return portal_response(ctx, payload)


@router.post("/collections/pin")
async def submit_collection_pin(pin: str = Body("", embed=True), ctx: PortalContext = Depends(get_portal)):
    target = ctx.gate.pin_target
    ok = ctx.gate.submit_collection_pin(pin)
    if not ok:
        state = ctx.gate.collection_state(target).value if target else None
        return portal_response(ctx, {"ok": False, "collection_id": target, "state": state}, status_code=400)
    return portal_response(ctx, {
        "ok": True,
        "collection_id": target,
        "state": CollectionState.UNLOCKED.value,
        "collection": ctx.gate.selected_collection,
        "images": ctx.gate.images,
    })


@router.post("/collections/pin/cancel")
async def cancel_collection_pin(ctx: PortalContext = Depends(get_portal)):
    ctx.gate.cancel_pin_prompt()
    return portal_response(ctx, {"ok": True})


@router.post("/collections/leave")
async def leave_collection(ctx: PortalContext = Depends(get_portal)):
    ctx.gate.leave_collection()
    return portal_response(ctx, {"ok": True})


@router.get("/collections/current")
async def current_collection(ctx: PortalContext = Depends(get_portal)):
    col = ctx.gate.selected_collection
    if not col or col.get("id") not in ctx.gate.unlocked:
        return portal_error(ctx, "No unlocked collection selected", status_code=403)
    return portal_response(ctx, {"collection": col, "images": ctx.gate.images})


@router.post("/images/{image_id}/download")
async def request_signed_download(image_id: str, ctx: PortalContext = Depends(get_portal)):
    """Signed-in visitors are asked for the download PIN, then get a short-lived link."""
    state = ctx.gate.request_signed_download(image_id)
    status = 200 if ctx.session.identity is not None else 401
    return portal_response(ctx, {"image_id": image_id, "state": state.value}, status_code=status)


@router.post("/images/{image_id}/share")
async def share_image(image_id: str, ctx: PortalContext = Depends(get_portal)):
    try:
        image = ctx.gateway.get_row("images", image_id)
    except GatewayError as ex:
        logger.warning(f"share lookup failed for {image_id}: {ex}")
        return portal_error(ctx, "Failed to load image", status_code=500)
    if image is None:
        return portal_error(ctx, "Image not found", status_code=404)
    ctx.push({
        "type": "share",
        "title": image.get("title"),
        "text": image.get("description") or "",
        "url": image.get("url"),
    })
    ctx.notify("success", "Link copied to clipboard!")
    return portal_response(ctx, {"ok": True})


@router.get("/signed/{key:path}")
async def signed_object(key: str, expires: int = 0, sig: str = ""):
    """Serves objects for locally signed links when no bucket is configured."""
    if not verify_local_signature(key, expires, sig):
        return JSONResponse({"error": "Link expired or invalid"}, status_code=403)
    data = read_bytes_key(key)
    if data is None:
        return JSONResponse({"error": "Not found"}, status_code=404)
    ctype = mimetypes.guess_type(key)[0] or "application/octet-stream"
    filename = key.rsplit("/", 1)[-1]
    return Response(content=data, media_type=ctype, headers={"Content-Disposition": f'attachment; filename="{filename}"'})
