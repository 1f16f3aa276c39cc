"""Text normalization, content hashing and edit-distance similarity."""
import re
import hashlib

_WHITESPACE_RE = re.compile(r'\s+')
_PUNCTUATION_RE = re.compile(r'[^\w\s]')


def normalize_text(text: str) -> str:
    if not text:
        return ''
    out = text.strip().lower()
    out = _WHITESPACE_RE.sub(' ', out)
    return _PUNCTUATION_RE.sub('', out)


def generate_content_hash(text: str) -> str:
    return hashlib.sha256(normalize_text(text).encode('utf-8')).hexdigest()


def levenshtein_distance(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    # keep only two rows, iterate over the shorter string
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(
                current[j - 1] + 1,
                previous[j] + 1,
                previous[j - 1] + cost,
            ))
        previous = current
    return previous[-1]


def calculate_similarity(text1: str, text2: str) -> float:
    """Similarity in [0, 1] between two texts after normalization.

    1.0 for equal normalized forms (including two empty strings), 0.0 when
    only one side is empty, otherwise one minus the Levenshtein distance
    divided by the longer length.
    """
    n1 = normalize_text(text1)
    n2 = normalize_text(text2)
    if n1 == n2:
        return 1.0
    if not n1 or not n2:
        return 0.0
    distance = levenshtein_distance(n1, n2)
    return 1.0 - distance / max(len(n1), len(n2))
