"""
Pillow helpers: metadata reading, sRGB normalization and watermarking.

These functions are blocking; the pipeline runs them with asyncio.to_thread.
"""

from functools import cache
from io import BytesIO
from pathlib import Path

from loguru import logger
from PIL import Image, ImageCms, ImageDraw, ImageFont

from prompt_tagger.extraction import ImageMetadata, MetadataComment


WATERMARK_TEXT = "AI Generated"
WATERMARK_BOX = (100, 20)
WATERMARK_FONT_SIZE = 14
WATERMARK_BACKGROUND = (0, 0, 0, 128)
WATERMARK_FOREGROUND = (255, 255, 255, 204)
WATERMARK_TEXT_MARGIN = 10
WATERMARK_FONTS = ("arial.ttf", "Arial.ttf", "DejaVuSans.ttf")


def read_embedded_metadata(image_path: Path) -> ImageMetadata:
    """
    Read the textual metadata chunks of an image.

    Returns:
        ImageMetadata whose ``comments`` is None when the image has no text
        chunks at all.

    Examples:
        >>> read_embedded_metadata(Path("render.png"))  # doctest: +SKIP
        ImageMetadata(format='PNG', comments=(MetadataComment(keyword='parameters', ...),))

    """
    with Image.open(image_path) as img:
        image_format = img.format
        # PNG text chunks after the image data are only read by load()
        img.load()
        text_chunks = dict(getattr(img, "text", None) or {})

    if not text_chunks:
        logger.debug("no_text_chunks_found", format=image_format)
        return ImageMetadata(format=image_format, comments=None)

    comments = tuple(
        MetadataComment(keyword=str(keyword), text=str(text))
        for keyword, text in text_chunks.items()
    )
    logger.debug(
        "text_chunks_read",
        format=image_format,
        keywords=[comment.keyword for comment in comments],
    )
    return ImageMetadata(format=image_format, comments=comments)


@cache
def srgb_profile() -> ImageCms.ImageCmsProfile:
    return ImageCms.ImageCmsProfile(ImageCms.createProfile("sRGB"))


@cache
def srgb_profile_bytes() -> bytes:
    return srgb_profile().tobytes()


def _to_rgb_mode(img: Image.Image) -> Image.Image:
    """Convert palette/greyscale/CMYK images to RGB or RGBA, keeping transparency."""
    if img.mode in ("RGB", "RGBA"):
        return img.copy()
    if img.mode in ("LA", "PA") or (img.mode == "P" and "transparency" in img.info):
        return img.convert("RGBA")
    return img.convert("RGB")


def normalize_color_profile(source: Path, target: Path) -> None:
    """
    Write a PNG copy of ``source`` tagged with the sRGB color profile.

    Pixels carrying an embedded non-sRGB ICC profile are converted to sRGB
    first; untagged pixels are assumed to already be sRGB.
    """
    with Image.open(source) as img:
        img.load()
        icc_profile = img.info.get("icc_profile")
        normalized = _to_rgb_mode(img)

    if icc_profile and icc_profile != srgb_profile_bytes():
        try:
            source_profile = ImageCms.getOpenProfile(BytesIO(icc_profile))
            normalized = ImageCms.profileToProfile(
                normalized,
                source_profile,
                srgb_profile(),
                outputMode=normalized.mode,
            )
            logger.debug("icc_profile_converted_to_srgb")
        except ImageCms.PyCMSError as exc:
            logger.warning("icc_profile_conversion_failed", error=str(exc))

    normalized.save(target, format="PNG", icc_profile=srgb_profile_bytes())
    logger.debug("normalized_copy_written", target=target.name, mode=normalized.mode)


def _load_watermark_font(size: int) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
    for name in WATERMARK_FONTS:
        try:
            return ImageFont.truetype(name, size)
        except OSError:
            continue
    logger.debug("watermark_font_fallback", size=size)
    return ImageFont.load_default(size=size)


def add_watermark(source: Path, target: Path, text: str = WATERMARK_TEXT) -> None:
    """
    Composite a small semi-transparent label onto the bottom-right corner.

    A ``WATERMARK_BOX`` sized half-transparent black box is drawn in the corner
    with ``text`` right-aligned inside it. The color profile of ``source`` is
    carried over to ``target``.
    """
    with Image.open(source) as img:
        img.load()
        icc_profile = img.info.get("icc_profile")
        original_mode = img.mode
        base = img.convert("RGBA")

    overlay = Image.new("RGBA", base.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(overlay)

    box_width, box_height = WATERMARK_BOX
    left = max(base.width - box_width, 0)
    top = max(base.height - box_height, 0)
    draw.rectangle((left, top, base.width - 1, base.height - 1), fill=WATERMARK_BACKGROUND)

    font = _load_watermark_font(WATERMARK_FONT_SIZE)
    text_box = draw.textbbox((0, 0), text, font=font)
    text_width = text_box[2] - text_box[0]
    text_height = text_box[3] - text_box[1]
    text_x = base.width - WATERMARK_TEXT_MARGIN - text_width - text_box[0]
    text_y = top + (min(box_height, base.height) - text_height) // 2 - text_box[1]
    draw.text((text_x, text_y), text, font=font, fill=WATERMARK_FOREGROUND)

    watermarked = Image.alpha_composite(base, overlay)
    if original_mode != "RGBA":
        watermarked = watermarked.convert("RGB")

    save_kwargs = {"icc_profile": icc_profile} if icc_profile else {}
    watermarked.save(target, format="PNG", **save_kwargs)
    logger.debug("watermark_applied", target=target.name, text=text)
