import asyncio
import io
from unittest.mock import patch

from PIL import Image

from conftest import make_image_bytes
from utils.storage import upload_bytes
import utils.watermark as watermark
from utils.watermark import (
    CORNER_MIN_PX, DIAGONAL_MIN_PX, PRIMARY_MIN_PX,
    apply_watermark, font_sizes, load_source, render_watermark, watermark_from_url,
)


def test_font_sizes_have_minimums():
    assert font_sizes(100) == (PRIMARY_MIN_PX, CORNER_MIN_PX, DIAGONAL_MIN_PX)
    assert font_sizes(2000) == (160, 40, 70)


def test_render_keeps_dimensions_and_encodes_jpeg():
    out = render_watermark(make_image_bytes((640, 360)))
    img = Image.open(io.BytesIO(out))
    assert img.format == "JPEG"
    assert img.size == (640, 360)


def test_render_is_deterministic():
    src = make_image_bytes((400, 300))
    assert render_watermark(src, "STUDIO") == render_watermark(src, "STUDIO")


def test_marks_change_the_pixels():
    base = Image.new("RGB", (400, 300), (20, 20, 20))
    marked = apply_watermark(base, "STUDIO", "STUDIO")
    assert marked.mode == "RGB"
    assert marked.size == base.size
    assert marked.tobytes() != base.tobytes()


def _clear_layer(size, text, font_px):
    return Image.new("RGBA", size, (0, 0, 0, 0))


def test_corner_mark_sits_bottom_right_inside_padding():
    base = Image.new("RGB", (400, 300), (20, 20, 20))
    with patch.object(watermark, "_diagonal_layer", side_effect=_clear_layer):
        marked = apply_watermark(base, "STUDIO", "STUDIO")

    W, H = base.size
    corner = (W - 140, H - 40, W - 10, H - 10)
    assert marked.crop(corner).tobytes() != base.crop(corner).tobytes()

    # padding strip along the right and bottom edges stays clean
    for box in [(W - 3, 0, W, H), (0, H - 3, W, H), (0, 0, 60, 40)]:
        assert marked.crop(box).tobytes() == base.crop(box).tobytes()


def test_diagonal_grid_covers_every_quadrant():
    layer = watermark._diagonal_layer((400, 300), "STUDIO", DIAGONAL_MIN_PX)
    assert layer.size == (400, 300)
    alpha = layer.getchannel("A")
    for box in [(0, 0, 200, 150), (200, 0, 400, 150), (0, 150, 200, 300), (200, 150, 400, 300)]:
        assert alpha.crop(box).getbbox() is not None


def test_diagonal_grid_is_rotated_thirty_degrees():
    angles = []
    real_rotate = Image.Image.rotate

    def spy(self, angle, *args, **kwargs):
        angles.append(angle)
        return real_rotate(self, angle, *args, **kwargs)

    with patch.object(Image.Image, "rotate", spy):
        watermark._diagonal_layer((200, 100), "STUDIO", DIAGONAL_MIN_PX)
    assert watermark.DIAGONAL_ANGLE_DEG == -30.0
    assert angles == [30.0]


def test_png_with_alpha_is_flattened():
    buf = io.BytesIO()
    Image.new("RGBA", (120, 80), (255, 0, 0, 128)).save(buf, format="PNG")
    out = render_watermark(buf.getvalue())
    assert Image.open(io.BytesIO(out)).mode == "RGB"


def test_undecodable_source_returns_none():
    assert render_watermark(b"definitely not an image") is None


def test_load_source_reads_local_static_keys():
    upload_bytes("images/c1/a.jpg", b"abc")
    assert asyncio.run(load_source("/static/images/c1/a.jpg")) == b"abc"
    assert asyncio.run(load_source("/static/images/c1/missing.jpg")) is None
    assert asyncio.run(load_source("ftp://example.com/a.jpg")) is None
    assert asyncio.run(load_source("")) is None


def test_watermark_from_url():
    upload_bytes("images/c1/b.jpg", make_image_bytes((200, 150)))
    out = asyncio.run(watermark_from_url("/static/images/c1/b.jpg"))
    assert Image.open(io.BytesIO(out)).size == (200, 150)
    assert asyncio.run(watermark_from_url("/static/images/c1/none.jpg")) is None
