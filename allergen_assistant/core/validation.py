import re
from typing import Any, Optional

from allergen_assistant.core.errors import ValidationError

# Display labels double as the seed rows of the OIT allergen table.
ALLERGEN_LABELS: dict[str, str] = {
    "peanuts": "Peanuts",
    "pistachios": "Pistachios",
    "tree nuts": "Tree Nuts",
    "eggs": "Eggs",
    "shellfish": "Shellfish",
    "wheat": "Wheat",
    "cashews": "Cashews",
    "almonds": "Almonds",
    "milk": "Milk",
    "fish": "Fish",
    "soy": "Soy",
    "gluten": "Gluten",
}
ALLERGEN_OPTIONS = tuple(ALLERGEN_LABELS)

MAX_TEXT_LENGTH = 280
MAX_IMAGE_SIZE_BYTES = 5 * 1024 * 1024
ALLOWED_IMAGE_MIME_TYPES = frozenset(
    {
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/heic",
        "image/heif",
    }
)

# \w on str patterns is Unicode letters, Unicode digits and underscore.
_SAFE_CHARS = r"\w\s.,!?\"'()\-/:;%@#+"
SAFE_TEXT_RE = re.compile(rf"[{_SAFE_CHARS}]+")
UNSAFE_TEXT_CHARS_RE = re.compile(rf"[^{_SAFE_CHARS}]")
HTML_TAG_RE = re.compile(r"</?[A-Za-z][A-Za-z0-9-]*(?:\s[^<>]*)?/?>")
ANGLE_BRACKETS_RE = re.compile(r"[<>]")
WHITESPACE_RUN_RE = re.compile(r"\s+")
SAFE_DATA_URL_RE = re.compile(r"data:(image/[a-z0-9.+-]+);base64,[A-Za-z0-9+/=]+", re.IGNORECASE)


def sanitize_text_input(value: Any, preserve_whitespace: bool = False) -> str:
    if not isinstance(value, str):
        return ""

    working = HTML_TAG_RE.sub("", value)
    working = ANGLE_BRACKETS_RE.sub("", working)
    working = UNSAFE_TEXT_CHARS_RE.sub("", working)
    if not preserve_whitespace:
        working = WHITESPACE_RUN_RE.sub(" ", working).strip()
    if not working:
        return ""

    truncated = working[:MAX_TEXT_LENGTH]
    return truncated if preserve_whitespace else truncated.rstrip()


def is_safe_text(value: Any) -> bool:
    if value == "":
        return True
    return isinstance(value, str) and SAFE_TEXT_RE.fullmatch(value) is not None


def validate_and_normalize_text(value: Any, required: bool = True) -> str:
    sanitized = sanitize_text_input(value)
    if not sanitized:
        if required:
            raise ValidationError("Input is required.")
        return ""
    if not is_safe_text(sanitized):
        raise ValidationError("Input contains unsupported characters.")
    return sanitized


def _is_allergen_shaped(item: str) -> bool:
    return all(ch.isalpha() or ch.isspace() or ch == "-" for ch in item)


def sanitize_allergen_list(values: Any) -> list[str]:
    """Filter client-supplied allergen tags down to the known vocabulary.

    Never raises. Order of first appearance is kept so the result can be
    stored and sent back to the client unchanged.
    """
    if not isinstance(values, (list, tuple)):
        return []

    seen: dict[str, None] = {}
    for item in values:
        normalized = item.strip().lower() if isinstance(item, str) else ""
        if not normalized or not _is_allergen_shaped(normalized):
            continue
        if normalized in ALLERGEN_LABELS:
            seen.setdefault(normalized, None)
    return list(seen)


def validate_image_payload(
    data_url: Any,
    mime_type: Optional[str],
    size: Optional[float] = None,
    max_size: int = MAX_IMAGE_SIZE_BYTES,
) -> bool:
    if not mime_type or mime_type not in ALLOWED_IMAGE_MIME_TYPES:
        raise ValidationError("Unsupported image type.")
    if isinstance(size, (int, float)) and not isinstance(size, bool) and size > max_size:
        raise ValidationError("Image is too large.")
    if not isinstance(data_url, str) or SAFE_DATA_URL_RE.fullmatch(data_url) is None:
        raise ValidationError("Invalid image encoding.")
    if not data_url.startswith(f"data:{mime_type};base64,"):
        raise ValidationError("Image payload does not match mime type.")
    return True


def split_data_url(data_url: str) -> tuple[str, str]:
    """Return ``(mime_type, base64_body)`` for an already validated data URL."""
    header, _, body = data_url.partition(",")
    mime_type = header[len("data:") :].split(";", 1)[0]
    return mime_type, body
