"""Key-phrase extraction by term frequency."""

import re
from collections import Counter

from sklearn.feature_extraction.text import ENGLISH_STOP_WORDS

_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")
_ALPHA_RE = re.compile(r"^[a-z]+$")

MIN_TOKEN_LENGTH = 4


def tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall((text or "").lower())


def extract_key_phrases(text: str, top_n: int = 5) -> list[str]:
    """Return the ``top_n`` most frequent meaningful terms in ``text``.

    Keeps lowercase alphabetic tokens of at least four characters that are not
    English stop words. Ties keep first-seen order.
    """
    tokens = [
        token
        for token in tokenize(text)
        if len(token) >= MIN_TOKEN_LENGTH
        and token not in ENGLISH_STOP_WORDS
        and _ALPHA_RE.match(token)
    ]
    # Counter.most_common is stable for equal counts (insertion order)
    return [term for term, _ in Counter(tokens).most_common(top_n)]
