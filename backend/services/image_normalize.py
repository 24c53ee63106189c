import base64
import binascii
import io
import logging
import re
from typing import Optional, Tuple

from PIL import Image, ImageOps

logger = logging.getLogger(__name__)

DATA_URI_RE = re.compile(r"^data:(image/[A-Za-z0-9.+-]+);base64,(.*)$", re.DOTALL)


def to_data_uri(image_ref: str, default_mime: str = "image/jpeg") -> str:
    """
    Coerce an image reference into something the chat endpoint accepts.
    data: URIs and http(s) URLs pass through; a bare base64 payload gets a JPEG prefix.
    """
    ref = (image_ref or "").strip()
    if ref.startswith("data:") or ref.startswith("http://") or ref.startswith("https://"):
        return ref
    return f"data:{default_mime};base64,{ref}"


def decode_image_ref(image_ref: str) -> Optional[Tuple[bytes, str]]:
    """
    Returns (raw_bytes, mime) for data URIs and bare base64, or None for URLs
    and payloads that are not valid base64.
    """
    ref = (image_ref or "").strip()
    if ref.startswith("http://") or ref.startswith("https://"):
        return None
    mime = "image/jpeg"
    match = DATA_URI_RE.match(ref)
    if match:
        mime, ref = match.group(1), match.group(2)
    try:
        return base64.b64decode(ref, validate=False), mime
    except (binascii.Error, ValueError):
        return None


def normalize_image_bytes(
    image_bytes: bytes,
    *,
    max_dimension: int = 2200,
    prefer_mime: str = "image/jpeg",
    jpeg_quality: int = 90,
    allow_png_alpha: bool = True,
) -> Tuple[bytes, str, Optional[int], Optional[int]]:
    """
    Decode an image, apply EXIF orientation, optionally downscale to max_dimension (longest side),
    and re-encode to a predictable format (JPEG by default; PNG when alpha is present).

    Returns: (normalized_bytes, mime_type, width, height)
    """
    if not image_bytes:
        raise ValueError("Empty image")

    with Image.open(io.BytesIO(image_bytes)) as im:
        im = ImageOps.exif_transpose(im)
        width, height = im.size

        longest = max(width, height)
        if longest > max_dimension:
            scale = max_dimension / float(longest)
            new_w = max(1, int(round(width * scale)))
            new_h = max(1, int(round(height * scale)))
            im = im.resize((new_w, new_h), Image.Resampling.LANCZOS)
            width, height = im.size

        has_alpha = im.mode in ("RGBA", "LA") or (
            im.mode == "P" and "transparency" in (im.info or {})
        )

        out = io.BytesIO()
        if has_alpha and allow_png_alpha:
            out_mime = "image/png"
            im.save(out, format="PNG", optimize=True)
        else:
            out_mime = prefer_mime if prefer_mime in ("image/jpeg", "image/webp") else "image/jpeg"
            if has_alpha and im.mode in ("RGBA", "LA"):
                # Flatten onto white when PNG output is not allowed.
                bg = Image.new("RGB", im.size, (255, 255, 255))
                bg.paste(im, mask=im.split()[-1])
                rgb = bg
            else:
                rgb = im.convert("RGB")
            if out_mime == "image/webp":
                rgb.save(out, format="WEBP", quality=jpeg_quality, method=6)
            else:
                rgb.save(out, format="JPEG", quality=jpeg_quality, optimize=True, progressive=True)

        return out.getvalue(), out_mime, width, height


def normalize_image_bytes_with_budget(
    image_bytes: bytes,
    *,
    max_bytes: int,
    max_dimension: int = 2200,
    min_dimension: int = 900,
    prefer_mime: str = "image/jpeg",
    jpeg_quality: int = 88,
    min_jpeg_quality: int = 70,
    allow_png_alpha: bool = False,
) -> Tuple[bytes, str, Optional[int], Optional[int]]:
    """
    Normalize an image and ensure the output stays <= max_bytes by progressively
    downscaling and reducing quality (best-effort).
    """
    if max_bytes <= 0:
        raise ValueError("max_bytes must be > 0")

    dim = max_dimension
    q = jpeg_quality

    best: Optional[Tuple[bytes, str, Optional[int], Optional[int]]] = None

    for _ in range(8):
        best = normalize_image_bytes(
            image_bytes,
            max_dimension=dim,
            prefer_mime=prefer_mime,
            jpeg_quality=q,
            allow_png_alpha=allow_png_alpha,
        )
        if len(best[0]) <= max_bytes:
            return best

        dim = max(min_dimension, int(dim * 0.85))
        q = max(min_jpeg_quality, q - 6)

        if dim == min_dimension and q == min_jpeg_quality:
            break

    # Best-effort fallback (may exceed max_bytes)
    return best if best is not None else (image_bytes, "image/jpeg", None, None)


def prepare_for_model(image_ref: str, *, max_bytes: int) -> str:
    """
    Image reference ready for a generation call. Anything within the byte budget
    is sent untouched; oversized payloads are re-encoded under the budget.
    Undecodable payloads are passed through and left for the model to reject.
    """
    decoded = decode_image_ref(image_ref)
    if decoded is None:
        return to_data_uri(image_ref)
    raw, _mime = decoded
    if len(raw) <= max_bytes:
        return to_data_uri(image_ref)
    try:
        out_bytes, out_mime, w, h = normalize_image_bytes_with_budget(raw, max_bytes=max_bytes)
    except Exception as e:
        logger.warning(f"Could not re-encode oversized image ({len(raw)}B), sending as-is: {e}")
        return to_data_uri(image_ref)
    logger.info(f"Re-encoded oversized image {len(raw)}B -> {len(out_bytes)}B ({w}x{h}, {out_mime})")
    return f"data:{out_mime};base64,{base64.b64encode(out_bytes).decode('utf-8')}"


def shrink_for_classification(image_ref: str, *, max_dim: int = 900, jpeg_quality: int = 70) -> str:
    """
    Lightweight copy of a garment image for the classifier call: downscale + compress.
    Falls back to the original reference if it cannot be decoded.
    """
    decoded = decode_image_ref(image_ref)
    if decoded is None:
        return to_data_uri(image_ref)
    try:
        out_bytes, out_mime, _w, _h = normalize_image_bytes(
            decoded[0],
            max_dimension=max_dim,
            jpeg_quality=jpeg_quality,
            allow_png_alpha=False,
        )
    except Exception:
        return to_data_uri(image_ref)
    return f"data:{out_mime};base64,{base64.b64encode(out_bytes).decode('utf-8')}"
