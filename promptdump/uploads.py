import io
import logging
import os

logger = logging.getLogger("PromptDump")

from PIL import Image, ImageOps

from .paths import get_uploads_dir
from .utils import now_millis

MAX_UPLOAD_BYTES = 5 * 1024 * 1024
RESIZE_THRESHOLD_BYTES = 2 * 1024 * 1024
RESIZE_LONG_EDGE = 1920
JPEG_QUALITY = 80
CROP_JPEG_QUALITY = 90

UPLOAD_KINDS = ("avatar", "banner", "preview")
AVATAR_ASPECT = 1.0
BANNER_ASPECT = 16 / 9


def validate_upload(data, content_type):
    if not str(content_type or "").lower().startswith("image/"):
        raise ValueError("Please choose an image file")
    if not data:
        raise ValueError("The file is empty")
    if len(data) > MAX_UPLOAD_BYTES:
        raise ValueError(f"Image must be smaller than {MAX_UPLOAD_BYTES // (1024 * 1024)} MB")


def _encode_jpeg(img, quality):
    if img.mode not in ("RGB", "L"):
        img = img.convert("RGB")
    out = io.BytesIO()
    img.save(out, format="JPEG", quality=quality, optimize=True)
    return out.getvalue()


def downscale_image(data, long_edge=RESIZE_LONG_EDGE, quality=JPEG_QUALITY):
    """Re-encode as JPEG with the longest side capped at ``long_edge``."""
    with Image.open(io.BytesIO(data)) as src:
        img = ImageOps.exif_transpose(src)
        w, h = img.size
        if w <= 0 or h <= 0:
            raise ValueError("invalid image size")
        scale = min(1.0, long_edge / float(max(w, h)))
        if scale < 1.0:
            new_size = (max(1, int(round(w * scale))), max(1, int(round(h * scale))))
            img = img.resize(new_size, Image.Resampling.LANCZOS)
        return _encode_jpeg(img, quality)


def crop_to_aspect(data, aspect_ratio, zoom=1.0, offset=(0, 0), width=RESIZE_LONG_EDGE):
    """Cover-crop to ``aspect_ratio`` at ``width`` px wide.

    ``zoom`` >= 1 enlarges the image inside the frame and ``offset`` pans it,
    both in output pixels, like dragging it around a cropping frame.
    """
    if aspect_ratio <= 0:
        raise ValueError("aspect_ratio must be positive")
    zoom = max(1.0, float(zoom or 1.0))
    target_w = int(width)
    target_h = max(1, int(round(target_w / aspect_ratio)))

    with Image.open(io.BytesIO(data)) as src:
        img = ImageOps.exif_transpose(src).convert("RGB")
        w, h = img.size
        scale = max(target_w / w, target_h / h) * zoom
        scaled = img.resize(
            (max(1, int(round(w * scale))), max(1, int(round(h * scale)))),
            Image.Resampling.LANCZOS,
        )

    dx, dy = offset or (0, 0)
    left = (scaled.width - target_w) / 2 - dx
    top = (scaled.height - target_h) / 2 - dy
    # Keep the frame fully covered.
    left = int(round(min(max(left, 0), scaled.width - target_w)))
    top = int(round(min(max(top, 0), scaled.height - target_h)))
    cropped = scaled.crop((left, top, left + target_w, top + target_h))
    return _encode_jpeg(cropped, CROP_JPEG_QUALITY)


def prepare_upload(data, content_type):
    """Return ``(bytes, content_type)`` ready for storage, or raise ValueError."""
    if not str(content_type or "").lower().startswith("image/"):
        raise ValueError("Please choose an image file")

    if data and len(data) > RESIZE_THRESHOLD_BYTES:
        try:
            resized = downscale_image(data)
        except (OSError, ValueError) as exc:
            logger.warning("resize failed, keeping original upload: %s", exc)
        else:
            logger.info(
                "resized image from %.2fMB to %.2fMB",
                len(data) / 1024 / 1024,
                len(resized) / 1024 / 1024,
            )
            data, content_type = resized, "image/jpeg"

    validate_upload(data, content_type)
    return data, content_type


def object_path(uid, kind):
    if kind not in UPLOAD_KINDS:
        raise ValueError(f"unknown upload kind: {kind}")
    return f"users/{uid}/{kind}_{now_millis()}"


class LocalObjectStorage:
    def __init__(self, root=None, base_url="/promptdump/files"):
        self.root = root or get_uploads_dir()
        self.base_url = base_url.rstrip("/")

    def _full_path(self, path):
        full = os.path.normpath(os.path.join(self.root, path))
        root = os.path.normpath(self.root)
        if os.path.commonpath([full, root]) != root:
            raise ValueError("invalid object path")
        return full

    def upload(self, path, data, content_type="application/octet-stream"):
        full = self._full_path(path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "wb") as f:
            f.write(data)
        logger.debug("stored %d bytes at %s (%s)", len(data), path, content_type)
        return f"{self.base_url}/{path}"

    def read(self, path):
        full = self._full_path(path)
        if not os.path.isfile(full):
            raise KeyError("object not found")
        with open(full, "rb") as f:
            return f.read()


def guess_content_type(data):
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.get_format_mimetype() or "application/octet-stream"
    except (OSError, ValueError):
        return "application/octet-stream"
