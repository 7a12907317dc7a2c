from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from core.config import logger
from core.gateway import GatewayError
from core.portal import PortalContext, get_portal, portal_error, portal_response
from core.session import NavigateTo, View

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


def _require_user(ctx: PortalContext) -> Optional[JSONResponse]:
    if ctx.session.identity is None:
        ctx.notify("error", "Session expired. Redirecting to home.")
        ctx.navigate(NavigateTo(View.HOME))
        return portal_error(ctx, "Unauthorized", status_code=401)
    if ctx.session.role and ctx.session.role != "user":
        ctx.notify("error", "Access denied.")
        ctx.navigate(NavigateTo(View.ADMIN_DASHBOARD if ctx.session.is_admin else View.HOME))
        return portal_error(ctx, "Forbidden", status_code=403)
    return None


@router.get("")
async def dashboard(ctx: PortalContext = Depends(get_portal)):
    denied = _require_user(ctx)
    if denied:
        return denied
    try:
        images = ctx.gateway.query_table("images", order_by="-created_at")
    except GatewayError as ex:
        logger.warning(f"dashboard images failed: {ex}")
        ctx.notify("error", "Failed to load images")
        images = []
    items = [dict(img, controls=ctx.gate.image_controls(img["id"])) for img in images]
    return portal_response(ctx, {
        "profile": ctx.session.identity.to_dict(),
        "tab": ctx.tab.value,
        "images": items,
        "purchase_requests": ctx.gate.purchase_requests,
    })


@router.get("/profile")
async def profile(ctx: PortalContext = Depends(get_portal)):
    denied = _require_user(ctx)
    if denied:
        return denied
    return portal_response(ctx, {"profile": ctx.session.identity.to_dict()})


@router.get("/purchases")
async def purchases(ctx: PortalContext = Depends(get_portal)):
    denied = _require_user(ctx)
    if denied:
        return denied
    return portal_response(ctx, {"purchase_requests": ctx.gate.purchase_requests})


@router.post("/refresh")
async def refresh(ctx: PortalContext = Depends(get_portal)):
    """Re-read purchase requests so approvals show up as direct premium downloads."""
    denied = _require_user(ctx)
    if denied:
        return denied
    ctx.gate.refresh_purchase_requests()
    return portal_response(ctx, {"purchase_requests": ctx.gate.purchase_requests})


@router.get("/images/{image_id}/controls")
async def image_controls(image_id: str, ctx: PortalContext = Depends(get_portal)):
    denied = _require_user(ctx)
    if denied:
        return denied
    return portal_response(ctx, ctx.gate.image_controls(image_id))
