"""
Edit-distance classifier: how much did the user change a suggested draft before sending?
"""

import re
from typing import Optional

from rapidfuzz.distance import Levenshtein

from touchcrm.models import EditDistanceResult

UNTOUCHED_MAX_PERCENT = 2
LIGHT_MAX_PERCENT = 20

_WHITESPACE_RE = re.compile(r'\s+')


def normalize(text: str) -> str:
    return _WHITESPACE_RE.sub(' ', (text or '').lower().strip())


def classify(original: str, modified: str) -> EditDistanceResult:
    """
    Levenshtein distance between the normalized texts, as a percentage of the
    longer one. Two empty strings are 0% changed.
    """
    a = normalize(original)
    b = normalize(modified)
    distance = Levenshtein.distance(a, b)
    longest = max(len(a), len(b))
    percent = (distance / longest) * 100 if longest else 0.0

    if percent <= UNTOUCHED_MAX_PERCENT:
        level = 'untouched'
    elif percent <= LIGHT_MAX_PERCENT:
        level = 'light'
    else:
        level = 'heavy'
    return EditDistanceResult(distance=distance, percent_changed=percent, level=level)


def customization_for(original: Optional[str], sent: str) -> str:
    """Customization level of a sent message. No suggested draft means it was written from scratch."""
    if original is None:
        return 'custom'
    return classify(original, sent).level
