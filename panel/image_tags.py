"""
Image tag helpers.

Tags are compared as dotted numeric versions (e.g. 2026.2.14). A leading
"v" is ignored, and segments that do not start with a digit count as 0.
"""

import re

DEFAULT_IMAGE_REPO = "ghcr.io/openclaw/openclaw"

_TAG_RE = re.compile(r"^[0-9][0-9A-Za-z._-]*$")
_LEADING_DIGITS_RE = re.compile(r"^\d+")


def normalize_tag(value: str) -> str:
    """Strip a leading 'v' and validate the tag. Raises ValueError."""
    raw = (value or "").strip() if isinstance(value, str) else ""
    normalized = raw[1:] if raw.startswith("v") else raw
    if not normalized:
        raise ValueError("Version tag must not be empty")
    if not _TAG_RE.match(normalized):
        raise ValueError(f"Invalid version tag: {value!r}")
    return normalized


def is_version_tag(value: str) -> bool:
    """True when the tag normalizes cleanly."""
    try:
        normalize_tag(value)
    except ValueError:
        return False
    return True


def _version_parts(tag: str) -> list[int]:
    parts = []
    for segment in normalize_tag(tag).split("."):
        match = _LEADING_DIGITS_RE.match(segment)
        parts.append(int(match.group(0)) if match else 0)
    return parts


def compare_version_tags(a: str, b: str) -> int:
    """Compare two tags component-wise. Returns 1, 0 or -1."""
    pa = _version_parts(a)
    pb = _version_parts(b)
    for i in range(max(len(pa), len(pb))):
        av = pa[i] if i < len(pa) else 0
        bv = pb[i] if i < len(pb) else 0
        if av > bv:
            return 1
        if av < bv:
            return -1
    return 0


def image_tag_from_image(image: str) -> str:
    """Extract the tag from an image reference ('' when untagged)."""
    raw = (image or "").strip()
    if "@" in raw:
        raw = raw.split("@", 1)[0]
    last = raw.rsplit("/", 1)[-1]
    if ":" not in last:
        return ""
    return last.rsplit(":", 1)[1]


def make_image_ref(tag: str, image_repo: str = DEFAULT_IMAGE_REPO) -> str:
    return f"{image_repo}:{normalize_tag(tag)}"
