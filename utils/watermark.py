from typing import Optional, Tuple
import io
import math
import os
from urllib.parse import unquote

import httpx
from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError
from starlette.concurrency import run_in_threadpool

from core.config import logger, WATERMARK_TEXT, WATERMARK_CORNER_TEXT, WATERMARK_QUALITY
from utils.storage import read_bytes_key

# Font sizes scale with image width, never below these minimums (px)
PRIMARY_MIN_PX = 24
CORNER_MIN_PX = 14
DIAGONAL_MIN_PX = 18

PRIMARY_REL = 0.08
CORNER_REL = 0.02
DIAGONAL_REL = 0.035

# Grid marks are rotated -30 degrees in screen coordinates (y axis down)
DIAGONAL_ANGLE_DEG = -30.0

PRIMARY_ALPHA = 0.30
CORNER_ALPHA = 0.70
DIAGONAL_ALPHA = 0.15

_FONT_CANDIDATES = [
    os.getenv("WATERMARK_TTF"),
    "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "/System/Library/Fonts/Supplemental/Arial.ttf",
    "C:/Windows/Fonts/arial.ttf",
    "arial.ttf",
]


def _load_font(size: int):
    for fp in _FONT_CANDIDATES:
        if not fp:
            continue
        try:
            return ImageFont.truetype(fp, size)
        except OSError:
            continue
    try:
        return ImageFont.load_default(size=size)
    except TypeError:
        # Pillow < 10.1 only ships the fixed bitmap font
        logger.warning("Falling back to PIL default bitmap font; provide WATERMARK_TTF for scalable marks.")
        return ImageFont.load_default()


def font_sizes(width: int) -> Tuple[int, int, int]:
    """(primary, corner, diagonal) font sizes for an image of the given width."""
    return (
        max(PRIMARY_MIN_PX, int(width * PRIMARY_REL)),
        max(CORNER_MIN_PX, int(width * CORNER_REL)),
        max(DIAGONAL_MIN_PX, int(width * DIAGONAL_REL)),
    )


def _text_box(draw: ImageDraw.ImageDraw, text: str, font) -> Tuple[int, int]:
    bbox = draw.textbbox((0, 0), text, font=font)
    return bbox[2] - bbox[0], bbox[3] - bbox[1]


def _alpha(value: float) -> int:
    return int(max(0.0, min(1.0, value)) * 255)


def _diagonal_layer(size: Tuple[int, int], text: str, font_px: int) -> Image.Image:
    """Repeating grid of marks covering the whole image, rotated as one layer."""
    W, H = size
    font = _load_font(font_px)
    probe = ImageDraw.Draw(Image.new("RGBA", (1, 1)))
    tw, th = _text_box(probe, text, font)
    step_x = tw + max(font_px * 3, 40)
    step_y = th + max(font_px * 3, 40)

    # Square canvas large enough to cover the image after rotation
    side = int(math.ceil(math.hypot(W, H))) + step_x
    grid = Image.new("RGBA", (side, side), (0, 0, 0, 0))
    gdraw = ImageDraw.Draw(grid)
    a = _alpha(DIAGONAL_ALPHA)
    for row, y0 in enumerate(range(0, side, step_y)):
        offset = (step_x // 2) if row % 2 else 0
        for x0 in range(-offset, side, step_x):
            gdraw.text((x0, y0), text, font=font, fill=(255, 255, 255, a))

    # PIL rotates counter-clockwise for positive angles
    rotated = grid.rotate(-DIAGONAL_ANGLE_DEG, resample=Image.Resampling.BICUBIC, expand=False)
    cx = (side - W) // 2
    cy = (side - H) // 2
    return rotated.crop((cx, cy, cx + W, cy + H))


def apply_watermark(img: Image.Image, text: str = WATERMARK_TEXT, corner_text: str = WATERMARK_CORNER_TEXT) -> Image.Image:
    """Centered mark, corner mark and diagonal grid over a copy of img (RGB out)."""
    base = img.convert("RGBA")
    W, H = base.size
    primary_px, corner_px, diagonal_px = font_sizes(W)

    overlay = _diagonal_layer((W, H), text, diagonal_px)
    draw = ImageDraw.Draw(overlay)

    # Large translucent centered mark
    primary_font = _load_font(primary_px)
    tw, th = _text_box(draw, text, primary_font)
    stroke_w = max(1, primary_px // 14)
    draw.text(
        ((W - tw) // 2, (H - th) // 2),
        text,
        font=primary_font,
        fill=(255, 255, 255, _alpha(PRIMARY_ALPHA)),
        stroke_width=stroke_w,
        stroke_fill=(0, 0, 0, _alpha(PRIMARY_ALPHA / 2)),
    )

    # Small fixed corner mark, bottom-right
    corner_font = _load_font(corner_px)
    cw, ch = _text_box(draw, corner_text, corner_font)
    padding = max(10, corner_px // 2)
    cx, cy = W - cw - padding, H - ch - padding
    shadow = max(1, corner_px // 10)
    draw.text((cx + shadow, cy + shadow), corner_text, font=corner_font, fill=(0, 0, 0, _alpha(CORNER_ALPHA / 2)))
    draw.text((cx, cy), corner_text, font=corner_font, fill=(255, 255, 255, _alpha(CORNER_ALPHA)))

    return Image.alpha_composite(base, overlay).convert("RGB")


def render_watermark(data: bytes, text: str = WATERMARK_TEXT, corner_text: str = WATERMARK_CORNER_TEXT) -> Optional[bytes]:
    """Decode, mark and re-encode as JPEG. None when the source cannot be decoded."""
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError, ValueError) as ex:
        logger.warning(f"watermark source could not be decoded: {ex}")
        return None
    marked = apply_watermark(img, text, corner_text)
    buf = io.BytesIO()
    marked.save(buf, format="JPEG", quality=WATERMARK_QUALITY)
    return buf.getvalue()


async def load_source(url: str) -> Optional[bytes]:
    """Bytes for an image url: local /static/ keys from storage, http(s) via httpx."""
    u = (url or "").strip()
    if not u:
        return None
    if u.startswith("/static/"):
        return read_bytes_key(unquote(u[len("/static/"):]))
    if not u.lower().startswith(("http://", "https://")):
        logger.warning(f"unsupported watermark source: {u}")
        return None
    try:
        async with httpx.AsyncClient(timeout=20.0, follow_redirects=True) as client:
            r = await client.get(u)
            r.raise_for_status()
            return r.content
    except httpx.HTTPError as ex:
        logger.warning(f"watermark source fetch failed for {u}: {ex}")
        return None


async def watermark_from_url(url: str, text: str = WATERMARK_TEXT, corner_text: str = WATERMARK_CORNER_TEXT) -> Optional[bytes]:
    data = await load_source(url)
    if not data:
        return None
    return await run_in_threadpool(render_watermark, data, text, corner_text)
