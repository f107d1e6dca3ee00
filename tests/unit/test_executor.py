import io

import pytest
from PIL import Image

from src.core.exceptions import ProcessingFailedError, SourceUnreadableError
from src.pipeline.executor import PipelineExecutor
from src.pipeline.stages import badge_size, parse_color, resolve_format
from src.modules.imagery.schemas import WatermarkSpec


def _open(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


def _png(width, height, color=(200, 30, 30), mode="RGB") -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def executor():
    return PipelineExecutor()


def test_crop_then_resize_example(executor):
    result = executor.execute(
        _png(1000, 800),
        {
            "crop": {"x": 0, "y": 0, "width": 500, "height": 400},
            "resize": {"width": 250, "height": 200},
        }
    )

    assert (result.width, result.height) == (250, 200)
    assert _open(result.data).size == (250, 200)


def test_empty_spec_keeps_format_and_size(executor):
    result = executor.execute(_png(40, 30), {})

    assert result.format == "png"
    assert result.content_type == "image/png"
    assert (result.width, result.height) == (40, 30)
    assert result.size_bytes == len(result.data)


def test_jpg_alias_encodes_jpeg(executor):
    result = executor.execute(_png(10, 10), {"format": "jpg"})

    assert result.format == "jpeg"
    assert _open(result.data).format == "JPEG"


def test_crop_outside_bounds_fails(executor):
    with pytest.raises(ProcessingFailedError) as exc_info:
        executor.execute(_png(100, 100), {"crop": {"x": 60, "y": 0, "width": 50, "height": 10}})

    assert exc_info.value.stage == "crop"
    assert exc_info.value.code == 422


@pytest.mark.parametrize("data", [b"", b"not an image at all"])
def test_unreadable_source(executor, data):
    with pytest.raises(SourceUnreadableError):
        executor.execute(data, {"rotate": 90})


@pytest.mark.parametrize("fit,expected", [
    ("fill", (200, 200)),
    ("cover", (200, 200)),
    ("contain", (200, 200)),
    ("inside", (200, 100)),
    ("outside", (400, 200)),
])
def test_resize_fit_policies(executor, fit, expected):
    result = executor.execute(_png(400, 200), {"resize": {"width": 200, "height": 200, "fit": fit}})

    assert (result.width, result.height) == expected


def test_resize_single_dimension_keeps_aspect(executor):
    result = executor.execute(_png(400, 200), {"resize": {"width": 100}})

    assert (result.width, result.height) == (100, 50)


def test_without_enlargement_leaves_small_images_alone(executor):
    result = executor.execute(_png(50, 40), {"resize": {"width": 500, "withoutEnlargement": True}})

    assert (result.width, result.height) == (50, 40)


def test_contain_letterboxes_with_transparency_for_alpha_images(executor):
    source = _png(400, 200, color=(10, 20, 30, 255), mode="RGBA")
    result = executor.execute(source, {"resize": {"width": 200, "height": 200, "fit": "contain"}})

    image = _open(result.data).convert("RGBA")
    assert image.getpixel((100, 0))[3] == 0
    assert image.getpixel((100, 100))[3] == 255


def test_rotate_cardinal_swaps_dimensions(executor):
    result = executor.execute(_png(100, 50), {"rotate": 90})

    assert (result.width, result.height) == (50, 100)


def test_rotate_clockwise(executor):
    source = Image.new("RGB", (20, 10), (0, 0, 0))
    source.paste((255, 0, 0), (0, 0, 10, 10))  # left half red
    buffer = io.BytesIO()
    source.save(buffer, format="PNG")

    rotated = _open(executor.execute(buffer.getvalue(), {"rotate": 90}).data).convert("RGB")

    # Clockwise: the left half ends up on top
    assert rotated.getpixel((5, 2)) == (255, 0, 0)
    assert rotated.getpixel((5, 17)) == (0, 0, 0)


def test_rotate_arbitrary_expands_with_transparent_corners(executor):
    result = executor.execute(_png(100, 100), {"rotate": 45, "format": "png"})

    image = _open(result.data)
    assert result.width > 100 and result.height > 100
    assert image.mode == "RGBA"
    assert image.getpixel((0, 0))[3] == 0


def test_flip_and_flop(executor):
    source = Image.new("RGB", (10, 10), (0, 0, 0))
    source.putpixel((0, 0), (255, 255, 255))
    buffer = io.BytesIO()
    source.save(buffer, format="PNG")

    flipped = _open(executor.execute(buffer.getvalue(), {"flip": True}).data).convert("RGB")
    flopped = _open(executor.execute(buffer.getvalue(), {"flop": True}).data).convert("RGB")

    assert flipped.getpixel((0, 9)) == (255, 255, 255)
    assert flopped.getpixel((9, 0)) == (255, 255, 255)


def test_grayscale_and_negate(executor):
    result = executor.execute(_png(10, 10, color=(255, 255, 255)), {"filters": {"grayscale": True, "negate": True}})

    image = _open(result.data)
    assert image.mode == "L"
    assert image.getpixel((5, 5)) == 0


def test_sepia_gives_warm_tone(executor):
    result = executor.execute(_png(10, 10, color=(128, 128, 128)), {"filters": {"sepia": True}})

    r, g, b = _open(result.data).convert("RGB").getpixel((5, 5))
    assert r > g > b


def test_filters_preserve_alpha(executor):
    source = _png(10, 10, color=(100, 150, 200, 77), mode="RGBA")
    spec = {"filters": {"blur": True, "sharpen": True, "normalize": True, "gamma": 2.2,
                        "brightness": 1.2, "saturation": 0.5, "hue": 90}}

    image = _open(executor.execute(source, spec).data)

    assert image.mode == "RGBA"
    assert image.getpixel((5, 5))[3] == 77


def test_watermark_badge_geometry():
    watermark = WatermarkSpec(text="hello", font_size=20, padding=10)

    assert badge_size(watermark) == (80, 40)


def test_watermark_draws_in_southeast_corner(executor):
    spec = {"watermark": {"text": "hi", "backgroundColor": "rgba(0,0,255,1)", "fontColor": "rgba(0,0,255,1)"}}
    result = executor.execute(_png(200, 200, color=(255, 255, 255)), spec)

    image = _open(result.data).convert("RGB")
    r, _, b = image.getpixel((175, 195))
    assert b > 200 and r < 50
    assert image.getpixel((5, 5)) == (255, 255, 255)


def test_parse_color():
    assert parse_color("rgba(0,0,0,0.3)") == (0, 0, 0, 76)
    assert parse_color("rgb(1, 2, 3)") == (1, 2, 3, 255)
    assert parse_color("#704214") == (112, 66, 20, 255)
    with pytest.raises(ProcessingFailedError):
        parse_color("not-a-colour")


def test_jpeg_flattens_alpha_onto_white(executor):
    source = _png(10, 10, color=(0, 0, 0, 0), mode="RGBA")

    image = _open(executor.execute(source, {"format": "jpeg"}).data)

    assert image.mode == "RGB"
    assert all(channel > 240 for channel in image.getpixel((5, 5)))


def test_compress_lowers_default_quality(executor):
    noisy = Image.effect_noise((200, 200), 64).convert("RGB")
    buffer = io.BytesIO()
    noisy.save(buffer, format="PNG")

    normal = executor.execute(buffer.getvalue(), {"format": "jpeg"})
    compressed = executor.execute(buffer.getvalue(), {"format": "jpeg", "compress": True})

    assert compressed.size_bytes < normal.size_bytes


def test_resolve_format():
    assert resolve_format(None, None) == "jpeg"
    assert resolve_format(None, "PNG") == "png"
    assert resolve_format("tif", "png") == "tiff"


def test_probe(executor):
    info = executor.probe(_png(30, 20, color=(1, 2, 3, 4), mode="RGBA"))

    assert (info.format, info.width, info.height) == ("png", 30, 20)
    assert info.has_alpha is True
    assert info.to_dict()["hasAlpha"] is True
