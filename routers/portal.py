from fastapi import APIRouter, Body, Depends, Request

from core.portal import (
    PORTAL_HEADER, DashboardTab, GalleryView, PortalContext,
    get_portal, get_registry, portal_error, portal_response,
)

router = APIRouter(prefix="/api/portal", tags=["portal"])


@router.post("/session")
async def portal_open(ctx: PortalContext = Depends(get_portal)):
    """Open (or resume) a portal session. The id comes back in the X-Portal-Session header."""
    return portal_response(ctx, ctx.state())


@router.delete("/session")
async def portal_close(request: Request):
    pid = request.headers.get(PORTAL_HEADER)
    if not pid or not get_registry().drop(pid):
        return {"ok": False}
    return {"ok": True}


@router.get("/poll")
async def portal_poll(ctx: PortalContext = Depends(get_portal)):
    """Pending notifications and commands, e.g. a forced sign-out pushed by the backend."""
    return portal_response(ctx, ctx.state())


@router.post("/tab")
async def portal_set_tab(tab: str = Body(..., embed=True), ctx: PortalContext = Depends(get_portal)):
    try:
        ctx.tab = DashboardTab(tab)
    except ValueError:
        return portal_error(ctx, "Invalid tab")
    return portal_response(ctx, {"tab": ctx.tab.value})


@router.post("/gallery-view")
async def portal_set_gallery_view(view: str = Body(..., embed=True), ctx: PortalContext = Depends(get_portal)):
    try:
        ctx.gallery_view = GalleryView(view)
    except ValueError:
        return portal_error(ctx, "Invalid gallery view")
    if ctx.gallery_view == GalleryView.GALLERY:
        ctx.gate.leave_collection()
    return portal_response(ctx, {"gallery_view": ctx.gallery_view.value})
