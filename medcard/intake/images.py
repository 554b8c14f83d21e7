"""Image normalization for uploaded scans.

Synchronous, pure Python (Pillow). Phone photos arrive rotated, oversized and
sometimes washed out; pages are normalized before storage and several pages
can be merged into one PDF so a multi-page submission keeps a single file.
"""

from __future__ import annotations

import io

from PIL import Image, ImageOps

MAX_LONG_SIDE = 2000
JPEG_QUALITY = 85
PDF_RESOLUTION = 150.0
LOW_CONTRAST_CUTOFF = 0.05

IMAGE_MIME_TYPES = frozenset({"image/jpeg", "image/png", "image/webp", "image/heic", "image/gif"})


class ImageProcessingError(Exception):
    """Raised when an uploaded image cannot be decoded."""

    def __init__(self, message: str, user_message: str) -> None:
        super().__init__(message)
        self.user_message = user_message


def is_image(mime_type: str) -> bool:
    return mime_type.lower() in IMAGE_MIME_TYPES or mime_type.lower().startswith("image/")


def normalize_image(raw_bytes: bytes) -> bytes:
    """Decode, straighten, downscale and re-encode a page as RGB JPEG.

    Raises:
        ImageProcessingError: If the bytes are not a readable image.
    """
    return _encode_jpeg(_load_page(raw_bytes))


def merge_pages_to_pdf(pages: list[bytes]) -> bytes:
    """Merge page images, in order, into one PDF.

    Raises:
        ImageProcessingError: If there are no pages or one cannot be decoded.
    """
    if not pages:
        raise ImageProcessingError("No pages to merge", user_message="Нет страниц для объединения.")

    images = [_load_page(raw) for raw in pages]
    buf = io.BytesIO()
    first, rest = images[0], images[1:]
    first.save(buf, format="PDF", save_all=True, append_images=rest, resolution=PDF_RESOLUTION)
    return buf.getvalue()


# ── Internals ────────────────────────────────────────────────────────


def _load_page(raw_bytes: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(raw_bytes))
        img.load()
    except Exception as exc:
        raise ImageProcessingError(
            f"Cannot decode image: {exc}",
            user_message="Не удалось прочитать изображение. Пришлите, пожалуйста, более чёткое фото.",
        ) from exc

    # EXIF orientation correction
    img = ImageOps.exif_transpose(img) or img

    long_side = max(img.size)
    if long_side > MAX_LONG_SIDE:
        ratio = MAX_LONG_SIDE / long_side
        img = img.resize((int(img.width * ratio), int(img.height * ratio)), Image.LANCZOS)

    if img.mode != "RGB":
        img = img.convert("RGB")

    if _is_low_contrast(img):
        img = ImageOps.autocontrast(img)
    return img


def _encode_jpeg(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=JPEG_QUALITY)
    return buf.getvalue()


def _is_low_contrast(img: Image.Image) -> bool:
    lo, hi = img.convert("L").getextrema()
    return (hi - lo) / 255.0 < LOW_CONTRAST_CUTOFF
