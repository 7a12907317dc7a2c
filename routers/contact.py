from fastapi import APIRouter, Body, Depends

from core.config import logger
from core.gateway import GatewayError
from core.portal import PortalContext, get_portal, portal_error, portal_response
from utils.validation import validate_email, validate_required

router = APIRouter(prefix="/api/contact", tags=["contact"])


@router.post("")
async def submit_contact(
    name: str = Body("", embed=True),
    email: str = Body("", embed=True),
    message: str = Body("", embed=True),
    ctx: PortalContext = Depends(get_portal),
):
    ok, err = validate_required({"Name": name, "Email": email, "Message": message})
    if ok:
        ok, err = validate_email(email)
    if not ok:
        ctx.notify("error", err)
        return portal_error(ctx, err)
    try:
        ctx.gateway.insert_row("messages", {
            "name": name.strip(),
            "email": email.strip().lower(),
            "message": message.strip(),
        })
    except GatewayError as ex:
        logger.warning(f"contact message failed: {ex}")
        ctx.notify("error", "Failed to send message. Please try again.")
        return portal_error(ctx, "Failed to send message", status_code=500)
    ctx.notify("success", "Message sent successfully! I will get back to you soon.")
    return portal_response(ctx, {"ok": True}, status_code=201)
