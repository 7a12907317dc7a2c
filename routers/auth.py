from fastapi import APIRouter, Body, Depends

from core.config import logger, ADMIN_SETUP_KEY
from core.gateway import AuthError, GatewayError
from core.portal import PortalContext, get_portal, portal_error, portal_response
from core.session import NavigateTo, View
from utils.validation import validate_email, validate_signup_data

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _landing(role: str) -> View:
    return View.ADMIN_DASHBOARD if role == "admin" else View.DASHBOARD


@router.post("/signup")
async def auth_signup(
    name: str = Body("", embed=True),
    email: str = Body("", embed=True),
    password: str = Body("", embed=True),
    confirm_password: str = Body("", embed=True),
    admin_key: str = Body("", embed=True),
    ctx: PortalContext = Depends(get_portal),
):
    """
    Create an account and mirror it into the users table.
    Body: { name, email, password, confirm_password, admin_key? }
    The admin setup key, when it matches, creates an admin account that is
    signed in straight away; regular accounts are sent to the sign-in view.
    """
    ok, err = validate_signup_data(name, email, password, confirm_password)
    if not ok:
        ctx.notify("error", err)
        return portal_error(ctx, err)

    role = "admin" if admin_key and admin_key == ADMIN_SETUP_KEY else "user"
    try:
        identity, token = ctx.gateway.sign_up(email, password, name=name.strip(), role=role)
    except AuthError as ex:
        ctx.notify("error", str(ex))
        return portal_error(ctx, str(ex), status_code=409)
    except GatewayError as ex:
        logger.warning(f"signup failed for {email}: {ex}")
        ctx.notify("error", "Authentication failed")
        return portal_error(ctx, "Authentication failed", status_code=500)

    ctx.notify("success", f"Account created as {role}")
    payload = {"ok": True, "user": identity.to_dict()}
    if role == "admin":
        ctx.bind(token)
        payload["access_token"] = token
        ctx.navigate(NavigateTo(View.ADMIN_DASHBOARD))
    else:
        ctx.navigate(NavigateTo(View.SIGN_IN))
    return portal_response(ctx, payload, status_code=201)


@router.post("/signin")
async def auth_signin(
    email: str = Body("", embed=True),
    password: str = Body("", embed=True),
    ctx: PortalContext = Depends(get_portal),
):
    ok, err = validate_email(email)
    if not ok or not password:
        msg = err or "Password is required"
        ctx.notify("error", msg)
        return portal_error(ctx, msg)
    try:
        identity, token = ctx.gateway.sign_in(email, password)
    except AuthError as ex:
        ctx.notify("error", str(ex))
        return portal_error(ctx, str(ex), status_code=401)
    except GatewayError as ex:
        logger.warning(f"signin failed for {email}: {ex}")
        ctx.notify("error", "Authentication failed")
        return portal_error(ctx, "Authentication failed", status_code=500)

    ctx.bind(token)
    if ctx.session.identity is None:
        return portal_error(ctx, "Session expired", status_code=401)
    ctx.notify("success", "Signed in successfully!")
    ctx.navigate(NavigateTo(_landing(ctx.session.role)))
    return portal_response(ctx, {"ok": True, "access_token": token, "user": ctx.session.identity.to_dict()})


@router.post("/signout")
async def auth_signout(ctx: PortalContext = Depends(get_portal)):
    if ctx.session.identity is None:
        return portal_error(ctx, "Not signed in", status_code=401)
    try:
        ctx.session.sign_out()
    except GatewayError as ex:
        logger.warning(f"signout failed: {ex}")
        ctx.notify("error", "Failed to sign out")
        return portal_error(ctx, "Failed to sign out", status_code=500)
    ctx.notify("success", "Signed out successfully")
    return portal_response(ctx, {"ok": True})


@router.get("/session")
async def auth_session(ctx: PortalContext = Depends(get_portal)):
    return portal_response(ctx, ctx.session.state())
