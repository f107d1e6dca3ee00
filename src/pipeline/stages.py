"""
Pipeline Stage Implementations

Each stage is a separate function taking a decoded Pillow image and the
parameters of one spec field, and returning a new image. The executor decides
which stages run and in which order; stages never touch storage.
"""

import io
import re
from functools import lru_cache
from typing import Optional, Tuple, Dict, Any

from PIL import Image, ImageColor, ImageDraw, ImageEnhance, ImageFilter, ImageFont, ImageOps

from src.core.exceptions import ProcessingFailedError
from src.modules.imagery.schemas import CropSpec, FilterSpec, ResizeSpec, WatermarkSpec


# Gravity -> (x, y) centering ratios as used by ImageOps.fit / ImageOps.pad
GRAVITY_CENTERING: Dict[str, Tuple[float, float]] = {
    "north": (0.5, 0.0),
    "northeast": (1.0, 0.0),
    "east": (1.0, 0.5),
    "southeast": (1.0, 1.0),
    "south": (0.5, 1.0),
    "southwest": (0.0, 1.0),
    "west": (0.0, 0.5),
    "northwest": (0.0, 0.0),
    "center": (0.5, 0.5),
}

RESAMPLE = Image.Resampling.LANCZOS
ROTATE_FILL = (255, 255, 255, 0)
SEPIA_TINT = (112, 66, 20)
WATERMARK_CORNER_RADIUS = 4
WATERMARK_CHAR_WIDTH = 0.6

FORMAT_ALIASES = {"jpg": "jpeg", "tif": "tiff", "mpo": "jpeg"}

PIL_FORMATS = {
    "jpeg": "JPEG",
    "png": "PNG",
    "webp": "WEBP",
    "gif": "GIF",
    "tiff": "TIFF",
    "bmp": "BMP",
    "avif": "AVIF",
}

CONTENT_TYPES = {
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "gif": "image/gif",
    "tiff": "image/tiff",
    "bmp": "image/bmp",
    "avif": "image/avif",
}

# Formats that keep an alpha channel; everything else is flattened onto white
ALPHA_FORMATS = {"png", "webp", "gif", "tiff", "avif"}


# =============================================================================
# Helpers
# =============================================================================

def normalize_mode(image: Image.Image) -> Image.Image:
    """Bring any decoded image into one of RGB, RGBA, L or LA."""
    if image.mode in ("RGB", "RGBA", "L", "LA"):
        return image
    if image.mode in ("1", "I", "I;16", "F"):
        return image.convert("L")
    if image.mode in ("PA", "RGBa", "La") or "transparency" in image.info:
        return image.convert("RGBA")
    return image.convert("RGB")


def has_alpha(image: Image.Image) -> bool:
    return image.mode in ("RGBA", "LA")


def _split_alpha(image: Image.Image) -> Tuple[Image.Image, Optional[Image.Image]]:
    if has_alpha(image):
        return image.convert(image.mode[:-1]), image.getchannel("A")
    return image, None


def _merge_alpha(image: Image.Image, alpha: Optional[Image.Image]) -> Image.Image:
    if alpha is not None:
        image.putalpha(alpha)
    return image


def _with_alpha(image: Image.Image) -> Image.Image:
    if image.mode == "L":
        return image.convert("LA")
    if image.mode == "RGB":
        return image.convert("RGBA")
    return image


_CSS_RGB = re.compile(r"^rgba?\(\s*([^)]*)\)$", re.IGNORECASE)


def parse_color(value: str) -> Tuple[int, int, int, int]:
    """
    Parse a colour into an RGBA tuple.

    Accepts CSS ``rgb()`` / ``rgba()`` with a fractional alpha
    (``rgba(0,0,0,0.3)``) as well as anything Pillow's ImageColor knows
    (``#704214``, ``white``).
    """
    match = _CSS_RGB.match(value.strip())
    if match:
        parts = [p.strip() for p in match.group(1).split(",")]
        if len(parts) not in (3, 4):
            raise ProcessingFailedError(f"Invalid colour: {value}", stage="watermark")
        try:
            r, g, b = (max(0, min(255, int(float(p)))) for p in parts[:3])
            alpha = float(parts[3]) if len(parts) == 4 else 1.0
        except ValueError:
            raise ProcessingFailedError(f"Invalid colour: {value}", stage="watermark")
        return r, g, b, round(max(0.0, min(1.0, alpha)) * 255)

    try:
        return ImageColor.getcolor(value, "RGBA")
    except ValueError:
        raise ProcessingFailedError(f"Invalid colour: {value}", stage="watermark")


@lru_cache(maxsize=32)
def load_font(family: str, size: int) -> ImageFont.ImageFont:
    for candidate in (f"{family}.ttf", family, "DejaVuSans.ttf"):
        try:
            return ImageFont.truetype(candidate, size)
        except OSError:
            continue
    return ImageFont.load_default(size=size)


# =============================================================================
# Stage 1: Crop (source pixel space)
# =============================================================================

def crop_stage(image: Image.Image, crop: CropSpec) -> Image.Image:
    right = crop.x + crop.width
    bottom = crop.y + crop.height
    if right > image.width or bottom > image.height:
        raise ProcessingFailedError(
            f"Crop area {crop.width}x{crop.height}+{crop.x}+{crop.y} exceeds "
            f"image bounds {image.width}x{image.height}",
            stage="crop"
        )
    return image.crop((crop.x, crop.y, right, bottom))


# =============================================================================
# Stage 2: Resize
# =============================================================================

def _scaled(size: Tuple[int, int], scale: float) -> Tuple[int, int]:
    return max(1, round(size[0] * scale)), max(1, round(size[1] * scale))


def target_size(image: Image.Image, resize: ResizeSpec) -> Tuple[int, int]:
    """Requested box, deriving a missing dimension from the aspect ratio."""
    width, height = image.size
    if resize.width is None:
        return max(1, round(width * resize.height / height)), resize.height
    if resize.height is None:
        return resize.width, max(1, round(height * resize.width / width))
    return resize.width, resize.height


def resize_stage(image: Image.Image, resize: ResizeSpec) -> Image.Image:
    box = target_size(image, resize)

    if resize.without_enlargement and (box[0] > image.width or box[1] > image.height):
        return image

    # One dimension given: aspect ratio is preserved whatever the fit
    if resize.width is None or resize.height is None:
        return image.resize(box, RESAMPLE)

    centering = GRAVITY_CENTERING[resize.position]
    ratio_w = box[0] / image.width
    ratio_h = box[1] / image.height

    if resize.fit == "fill":
        return image.resize(box, RESAMPLE)

    if resize.fit == "cover":
        return ImageOps.fit(image, box, method=RESAMPLE, centering=centering)

    if resize.fit == "contain":
        if has_alpha(image):
            color = (0,) * len(image.getbands())
        else:
            color = 0 if image.mode == "L" else (0, 0, 0)
        return ImageOps.pad(image, box, method=RESAMPLE, color=color, centering=centering)

    if resize.fit == "inside":
        return image.resize(_scaled(image.size, min(ratio_w, ratio_h)), RESAMPLE)

    # outside
    return image.resize(_scaled(image.size, max(ratio_w, ratio_h)), RESAMPLE)


# =============================================================================
# Stage 3: Rotate / Flip / Flop
# =============================================================================

def rotate_stage(image: Image.Image, degrees: int) -> Image.Image:
    """Rotate clockwise. Pillow rotates counter-clockwise, hence the negation."""
    angle = degrees % 360
    if angle == 0:
        return image
    if angle == 90:
        return image.transpose(Image.Transpose.ROTATE_270)
    if angle == 180:
        return image.transpose(Image.Transpose.ROTATE_180)
    if angle == 270:
        return image.transpose(Image.Transpose.ROTATE_90)

    image = _with_alpha(image)
    fill = ROTATE_FILL if image.mode == "RGBA" else (255, 0)
    return image.rotate(-angle, resample=Image.Resampling.BICUBIC, expand=True, fillcolor=fill)


def flip_stage(image: Image.Image, enabled: bool) -> Image.Image:
    """Mirror top to bottom."""
    return ImageOps.flip(image) if enabled else image


def flop_stage(image: Image.Image, enabled: bool) -> Image.Image:
    """Mirror left to right."""
    return ImageOps.mirror(image) if enabled else image


# =============================================================================
# Stage 4: Filters
# =============================================================================

def _gamma_table(gamma: float, bands: int):
    table = [min(255, round(255 * (i / 255) ** (1.0 / gamma))) for i in range(256)]
    return table * bands


def _rotate_hue(image: Image.Image, degrees: int) -> Image.Image:
    shift = round((degrees % 360) / 360 * 256) % 256
    if shift == 0:
        return image
    h, s, v = image.convert("HSV").split()
    h = h.point(lambda value: (value + shift) % 256)
    return Image.merge("HSV", (h, s, v)).convert("RGB")


def filters_stage(image: Image.Image, filters: FilterSpec) -> Image.Image:
    """
    Apply colour and convolution filters in a fixed order:
    grayscale, sepia, blur, sharpen, negate, normalize, gamma, brightness,
    saturation, hue. The alpha channel is split off and restored untouched.
    """
    base, alpha = _split_alpha(image)

    if filters.grayscale:
        base = base.convert("L")

    if filters.sepia:
        desaturated = ImageEnhance.Color(base.convert("RGB")).enhance(0.5)
        base = ImageOps.colorize(
            ImageOps.grayscale(desaturated),
            black=(0, 0, 0),
            white=(255, 255, 255),
            mid=SEPIA_TINT
        )

    if filters.blur:
        base = base.filter(ImageFilter.GaussianBlur(radius=filters.blur))

    if filters.sharpen:
        base = base.filter(ImageFilter.UnsharpMask(radius=2, percent=150, threshold=3))

    if filters.negate:
        base = ImageOps.invert(base)

    if filters.normalize:
        base = ImageOps.autocontrast(base, cutoff=1)

    if filters.gamma is not None:
        base = base.point(_gamma_table(filters.gamma, len(base.getbands())))

    if filters.brightness is not None:
        base = ImageEnhance.Brightness(base).enhance(filters.brightness)

    if filters.saturation is not None and base.mode == "RGB":
        base = ImageEnhance.Color(base).enhance(filters.saturation)

    if filters.hue and base.mode == "RGB":
        base = _rotate_hue(base, filters.hue)

    return _merge_alpha(base, alpha)


# =============================================================================
# Stage 5: Watermark
# =============================================================================

def badge_size(watermark: WatermarkSpec) -> Tuple[int, int]:
    width = int(len(watermark.text) * watermark.font_size * WATERMARK_CHAR_WIDTH + 2 * watermark.padding)
    height = watermark.font_size + 2 * watermark.padding
    return width, height


def watermark_stage(image: Image.Image, watermark: WatermarkSpec) -> Image.Image:
    base = image.convert("RGBA")
    badge_w, badge_h = badge_size(watermark)

    cx, cy = GRAVITY_CENTERING[watermark.position]
    left = round((base.width - badge_w) * cx)
    top = round((base.height - badge_h) * cy)

    overlay = Image.new("RGBA", base.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(overlay)
    draw.rounded_rectangle(
        (left, top, left + badge_w - 1, top + badge_h - 1),
        radius=WATERMARK_CORNER_RADIUS,
        fill=parse_color(watermark.background_color)
    )

    font = load_font(watermark.font_family, watermark.font_size)
    bbox = draw.textbbox((0, 0), watermark.text, font=font)
    text_w = bbox[2] - bbox[0]
    text_h = bbox[3] - bbox[1]
    draw.text(
        (left + (badge_w - text_w) / 2 - bbox[0], top + (badge_h - text_h) / 2 - bbox[1]),
        watermark.text,
        font=font,
        fill=parse_color(watermark.font_color)
    )

    composed = Image.alpha_composite(base, overlay)
    if image.mode in ("L", "RGB"):
        return composed.convert("RGB")
    return composed


# =============================================================================
# Stage 6: Encode
# =============================================================================

def resolve_format(requested: Optional[str], source_format: Optional[str]) -> str:
    """Explicit format, else the source format, else jpeg."""
    fmt = (requested or source_format or "jpeg").lower()
    return FORMAT_ALIASES.get(fmt, fmt)


def content_type_for(fmt: str) -> str:
    return CONTENT_TYPES.get(fmt, f"image/{fmt}")


def _flatten(image: Image.Image) -> Image.Image:
    if not has_alpha(image):
        return image
    rgba = image.convert("RGBA")
    background = Image.new("RGB", rgba.size, (255, 255, 255))
    background.paste(rgba, mask=rgba.getchannel("A"))
    return background


def _save_params(fmt: str, quality: int, compress: bool) -> Dict[str, Any]:
    if fmt == "jpeg":
        return {"quality": quality, "optimize": True}
    if fmt == "png":
        return {"optimize": compress, "compress_level": 9 if compress else 6}
    if fmt in ("webp", "avif"):
        return {"quality": quality}
    if fmt == "tiff":
        return {"compression": "tiff_deflate"}
    return {}


def encode_stage(
    image: Image.Image,
    fmt: str,
    quality: Optional[int] = None,
    compress: bool = False
) -> bytes:
    """
    Serialize to ``fmt``. Quality defaults to 60 when compressing, else 80.
    Formats Pillow cannot write fail with ProcessingFailedError.
    """
    effective_quality = quality or (60 if compress else 80)
    if fmt not in ALPHA_FORMATS:
        image = _flatten(image)

    buffer = io.BytesIO()
    try:
        image.save(
            buffer,
            format=PIL_FORMATS.get(fmt, fmt.upper()),
            **_save_params(fmt, effective_quality, compress)
        )
    except (KeyError, ValueError, OSError) as e:
        raise ProcessingFailedError(f"Cannot encode image as {fmt}: {e}", stage="encode")
    return buffer.getvalue()
