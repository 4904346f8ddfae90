import re
from typing import Optional

from matric_recon.errors import MalformedKeyError
from matric_recon.models import NormalizedKey

CANONICAL_DELIMITER = "/"

_TRAILING_DIGITS = re.compile(r"([0-9]+)$")


def _fold_delimiters(s: str, delimiters: str) -> str:
    for ch in delimiters:
        if ch != CANONICAL_DELIMITER:
            s = s.replace(ch, CANONICAL_DELIMITER)
    s = re.sub(r"/{2,}", CANONICAL_DELIMITER, s)
    return s.strip(CANONICAL_DELIMITER)


def normalize_key(raw_key, delimiters: str = "/", sheet: Optional[str] = None, row: Optional[int] = None) -> NormalizedKey:
    """Canonicalize a matric number into prefix / tail / trailing digits.

    "  cs / 19 / 001 " -> prefix "CS/19", tail "001", suffix_digits "001".
    Raises MalformedKeyError when there is no delimiter or the part after
    the last delimiter does not end in digits.
    """
    text = "" if raw_key is None else str(raw_key)
    s = re.sub(r"\s+", "", text.strip().upper())
    if not s:
        raise MalformedKeyError(text, "empty matric number", sheet, row)
    s = _fold_delimiters(s, delimiters or CANONICAL_DELIMITER)

    idx = s.rfind(CANONICAL_DELIMITER)
    if idx < 0:
        raise MalformedKeyError(text, "no delimiter", sheet, row)
    prefix, tail = s[:idx], s[idx + 1:]

    m = _TRAILING_DIGITS.search(tail)
    if not m:
        raise MalformedKeyError(text, "no trailing digit run", sheet, row)
    return NormalizedKey(prefix=prefix, tail=tail, suffix_digits=m.group(1))


def try_normalize(raw_key, delimiters: str = "/", sheet: Optional[str] = None, row: Optional[int] = None):
    """(key, None) on success, (None, MalformedKeyError) otherwise."""
    try:
        return normalize_key(raw_key, delimiters, sheet, row), None
    except MalformedKeyError as e:
        return None, e
