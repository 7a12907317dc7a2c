from copy import deepcopy

from fastapi import APIRouter, Depends

from core.config import logger
from core.gateway import GatewayError
from core.portal import PortalContext, get_portal, portal_response

router = APIRouter(prefix="/api/site", tags=["site"])

# Served until an admin saves a settings row with the same key
DEFAULT_CONTENT = {
    "hero": [
        {"title": "CAPTURING", "subtitle": "MOMENTS"},
        {"title": "NATURE", "subtitle": "WONDERS"},
        {"title": "CITY", "subtitle": "LIGHTS"},
        {"title": "TIMELESS", "subtitle": "PORTRAITS"},
        {"title": "ELEGANT", "subtitle": "WEDDINGS"},
    ],
    "skills": [
        {"name": "Portrait Photography", "percent": 95},
        {"name": "Wedding Photography", "percent": 90},
        {"name": "Landscape Photography", "percent": 85},
        {"name": "Photo Editing", "percent": 92},
        {"name": "Creative Composition", "percent": 88},
    ],
    "stats": [
        {"label": "Years of Experience", "value": 10, "suffix": "+"},
        {"label": "Images Captured", "value": 500, "suffix": "+"},
        {"label": "Happy Clients", "value": 100, "suffix": "+"},
        {"label": "Awards Won", "value": 15, "suffix": "+"},
    ],
    "contact": {"email": "", "phone": "", "location": ""},
}


@router.get("")
async def site_content(ctx: PortalContext = Depends(get_portal)):
    content = deepcopy(DEFAULT_CONTENT)
    try:
        for row in ctx.gateway.query_table("settings"):
            content[row["key"]] = row["value"]
    except GatewayError as ex:
        logger.warning(f"site settings failed, serving defaults: {ex}")
    return portal_response(ctx, {"content": content})
