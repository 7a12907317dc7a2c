from typing import Optional

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from core.access_gate import DownloadState
from core.portal import PortalContext, get_portal, portal_error, portal_response

router = APIRouter(prefix="/api/downloads", tags=["downloads"])


class PrintRequestPayload(BaseModel):
    size: str = ""
    frame: Optional[str] = None
    notes: Optional[str] = None


@router.post("/kind")
async def select_kind(kind: str = Body(..., embed=True), ctx: PortalContext = Depends(get_portal)):
    try:
        selected = ctx.gate.select_download_kind(kind)
    except ValueError:
        return portal_error(ctx, "Invalid download type")
    return portal_response(ctx, {"kind": selected.value})


@router.post("/images/{image_id}/watermark")
async def download_watermarked(image_id: str, ctx: PortalContext = Depends(get_portal)):
    state = await ctx.gate.download_watermarked(image_id)
    return portal_response(ctx, {"image_id": image_id, "state": state.value})


@router.get("/files/{trigger_id}")
async def fetch_rendered(trigger_id: str, ctx: PortalContext = Depends(get_portal)):
    """Rendered bytes behind a download command; each can be fetched once."""
    trigger = ctx.take_download(trigger_id)
    if trigger is None or trigger.content is None:
        return JSONResponse({"error": "Download not found"}, status_code=404)
    return Response(
        content=trigger.content,
        media_type=trigger.content_type,
        headers={"Content-Disposition": f'attachment; filename="{trigger.filename}"'},
    )


@router.post("/images/{image_id}/premium")
async def request_premium(image_id: str, ctx: PortalContext = Depends(get_portal)):
    state = ctx.gate.request_premium(image_id)
    status = 200 if ctx.session.identity is not None else 401
    return portal_response(ctx, {"image_id": image_id, "state": state.value}, status_code=status)


@router.post("/pin")
async def submit_global_pin(pin: str = Body("", embed=True), ctx: PortalContext = Depends(get_portal)):
    target = ctx.gate.gate_target
    ok = target is not None and ctx.gate.verify_global_pin(pin)
    state = await ctx.gate.submit_global_pin(pin)
    payload = {
        "ok": ok,
        "state": state.value,
        "action": target[0].value if target else None,
        "target": target[1] if target else None,
        "purchase_requests": ctx.gate.purchase_requests,
    }
    return portal_response(ctx, payload, status_code=200 if ok else 400)


@router.post("/pin/cancel")
async def cancel_global_pin(ctx: PortalContext = Depends(get_portal)):
    ctx.gate.cancel_global_pin_prompt()
    return portal_response(ctx, {"ok": True})


@router.post("/images/{image_id}/original")
async def download_premium(image_id: str, ctx: PortalContext = Depends(get_portal)):
    if ctx.session.identity is None:
        return portal_error(ctx, "Unauthorized", status_code=401)
    if not ctx.gate.download_premium(image_id):
        return portal_response(ctx, {"ok": False}, status_code=403)
    return portal_response(ctx, {"ok": True})


@router.post("/images/{image_id}/purchase")
async def submit_print_request(image_id: str, payload: PrintRequestPayload, ctx: PortalContext = Depends(get_portal)):
    entry = ctx.gate.submit_print_request(image_id, payload.dict())
    if entry is None:
        status = 401 if ctx.session.identity is None else 400
        return portal_response(ctx, {"ok": False}, status_code=status)
    return portal_response(ctx, {"ok": True, "request": entry}, status_code=201)


@router.post("/collection")
async def request_collection_download(ctx: PortalContext = Depends(get_portal)):
    """Arm the global-PIN prompt for the whole selected collection."""
    if not ctx.gate.request_collection_download():
        status = 401 if ctx.session.identity is None else 403
        return portal_response(ctx, {"ok": False}, status_code=status)
    return portal_response(ctx, {"ok": True, "state": DownloadState.PROMPTING_GLOBAL_PIN.value})


@router.post("/collection/pin")
async def submit_collection_download_pin(pin: str = Body("", embed=True), ctx: PortalContext = Depends(get_portal)):
    count = await ctx.gate.submit_collection_download_pin(pin)
    if count is None:
        return portal_response(ctx, {"ok": False, "count": 0}, status_code=400)
    return portal_response(ctx, {"ok": True, "count": count})
