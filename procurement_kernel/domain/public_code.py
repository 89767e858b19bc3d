"""
Public request codes: ``<PREFIX>-<zero-padded counter>``, e.g. ``SC-000042``.

The counter is allocated per prefix by SequenceService; this module only
formats, parses and normalizes.
"""

import re
import unicodedata

DEFAULT_NUMBER_WIDTH = 6

_CODE_RE = re.compile(r"^(?P<prefix>[A-Z]{1,10})-(?P<number>\d+)$")


def initials_prefix(display_name: str, default: str) -> str:
    """
    Prefix from the first letters of the first two words of a name.

    Accents are stripped.  Falls back to ``default`` when the name has no
    usable letters.
    """
    ascii_name = (
        unicodedata.normalize("NFKD", display_name or "")
        .encode("ascii", "ignore")
        .decode("ascii")
    )
    words = [w for w in re.split(r"[^A-Za-z]+", ascii_name) if w]
    initials = "".join(w[0] for w in words[:2]).upper()
    return initials or default


def format_public_code(prefix: str, number: int, width: int = DEFAULT_NUMBER_WIDTH) -> str:
    if number <= 0:
        raise ValueError(f"Request number must be positive, got {number}")
    return f"{prefix.upper()}-{number:0{width}d}"


def parse_public_code(code: str) -> tuple[str, int]:
    """
    Split a public code into ``(prefix, number)``.

    Raises:
        ValueError: If the code is not ``<LETTERS>-<DIGITS>``.
    """
    match = _CODE_RE.match(normalize_public_code(code))
    if match is None:
        raise ValueError(f"Malformed request code: {code!r}")
    return match.group("prefix"), int(match.group("number"))


def normalize_public_code(code: str) -> str:
    return (code or "").strip().upper()


def repair_legacy_code(code: str, width: int = DEFAULT_NUMBER_WIDTH) -> str:
    """
    Undo the historical extra-trailing-zero defect (``JZ-0000010`` -> ``JZ-000001``).

    Only applies when the numeric part is longer than ``width`` and ends
    in ``0``; any other code is returned normalized but unchanged.  Used
    for look-ups only when legacy code repair is enabled.
    """
    normalized = normalize_public_code(code)
    match = _CODE_RE.match(normalized)
    if match is None:
        return normalized
    digits = match.group("number")
    if len(digits) > width and digits.endswith("0") and int(digits[:-1]) > 0:
        return format_public_code(match.group("prefix"), int(digits[:-1]), width)
    return normalized
