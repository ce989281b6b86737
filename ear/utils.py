import re
from datetime import datetime
from zoneinfo import ZoneInfo

# -------------------------------------------------------------- #
# Constants
# -------------------------------------------------------------- #


# characters allowed in a recording filename label
_UNSAFE_LABEL_CHARS = re.compile(r"[^\w.\-]+")

MAX_LABEL_LENGTH = 64


# -------------------------------------------------------------- #
# Util Functions
# -------------------------------------------------------------- #


def get_current_timestamp_est() -> datetime:
    """Get the current EST timestamp."""
    return datetime.now(ZoneInfo("America/New_York"))


def format_filename_timestamp(moment: datetime) -> str:
    """
    Format a timestamp for use inside a filename.

    Millisecond resolution, with the ``:`` and ``.`` separators of the ISO form
    replaced by ``-`` so the result is safe on every filesystem.

    Example:
        >>> format_filename_timestamp(datetime(2025, 1, 2, 3, 4, 5, 678000))
        '2025-01-02T03-04-05-678'
    """
    return moment.strftime("%Y-%m-%dT%H-%M-%S-") + f"{moment.microsecond // 1000:03d}"


def sanitize_label(label: str, fallback: str = "unknown") -> str:
    """Make a display name safe to embed in a filename."""
    cleaned = _UNSAFE_LABEL_CHARS.sub("_", label.strip()).strip("._")
    if not cleaned:
        return fallback
    return cleaned[:MAX_LABEL_LENGTH]


def parse_id_list(raw: str | None) -> list[int]:
    """
    Parse a comma separated list of Discord snowflake ids.

    Blank entries are ignored. Raises ValueError for entries that are not integers.
    """
    if not raw:
        return []
    return [int(part.strip()) for part in raw.split(",") if part.strip()]
