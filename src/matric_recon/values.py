import re
from typing import Iterable, Optional

CLASSES_OF_DEGREE = [
    "First Class",
    "Second Class Upper",
    "Second Class Lower",
    "Third Class",
    "Pass",
]


def canonical_value(raw, allowed: Optional[Iterable[str]] = None, case_insensitive: bool = True) -> Optional[str]:
    if raw is None:
        return None
    s = re.sub(r"\s+", " ", str(raw)).strip()
    if not s:
        return None
    for label in allowed or ():
        if s == label or (case_insensitive and s.casefold() == label.casefold()):
            return label
    return s


def is_known_value(value: Optional[str], allowed: Optional[Iterable[str]]) -> bool:
    if value is None or not allowed:
        return True
    return value in set(allowed)
