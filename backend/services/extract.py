"""
Image reference extraction from free-form model replies.

The model is asked for a markdown image, but in practice it answers in many
shapes. MATCHERS is evaluated in order and the first strategy that finds
anything wins.
"""
import re
from typing import Callable, List, NamedTuple


class ImageMatcher(NamedTuple):
    name: str
    find: Callable[[str], List[str]]


MARKDOWN_IMAGE_RE = re.compile(r"!\[.*?\]\(((?:data:image/[^;]+;base64,|https?://)[^)]+)\)")
DATA_URI_RE = re.compile(r"(data:image/[^;]+;base64,[A-Za-z0-9+/=]+)")
IMAGE_URL_RE = re.compile(
    r"(https?://[^\s<>\"{}|\\^`\[\]]+\.(?:png|jpg|jpeg|gif|webp|bmp|svg))",
    re.IGNORECASE,
)
BARE_BASE64_RE = re.compile(r"^([A-Za-z0-9+/=]{100,})$", re.MULTILINE)
ANY_HTTPS_RE = re.compile(r"(https://[^\s<>\"{}|\\^`\[\]]+)")

SHORT_REPLY_LIMIT = 500


def _markdown_images(text: str) -> List[str]:
    return [m.group(1) for m in MARKDOWN_IMAGE_RE.finditer(text)]


def _data_uris(text: str) -> List[str]:
    return [m.group(1) for m in DATA_URI_RE.finditer(text)]


def _image_urls(text: str) -> List[str]:
    return [m.group(1) for m in IMAGE_URL_RE.finditer(text)]


def _bare_base64(text: str) -> List[str]:
    return [f"data:image/jpeg;base64,{m.group(1)}" for m in BARE_BASE64_RE.finditer(text)]


def _any_https(text: str) -> List[str]:
    return [m.group(1) for m in ANY_HTTPS_RE.finditer(text)]


def _whole_reply(text: str) -> List[str]:
    if len(text) >= SHORT_REPLY_LIMIT:
        return []
    cleaned = text.strip()
    if cleaned.startswith("http") or cleaned.startswith("data:image"):
        return [cleaned]
    return []


MATCHERS: List[ImageMatcher] = [
    ImageMatcher("markdown", _markdown_images),
    ImageMatcher("data_uri", _data_uris),
    ImageMatcher("image_url", _image_urls),
    ImageMatcher("bare_base64", _bare_base64),
    ImageMatcher("any_https", _any_https),
    ImageMatcher("whole_reply", _whole_reply),
]


def extract_image_refs(text: str) -> List[str]:
    if not text:
        return []
    for matcher in MATCHERS:
        found = matcher.find(text)
        if found:
            return found
    return []
