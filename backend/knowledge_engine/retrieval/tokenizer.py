"""
Unified tokenizer for BM25 indexing, querying and query enhancement.

Lower-cases, strips diacritics, removes punctuation and drops short words and
stop words, so "sábado" and "sabado" become the same term. Runs of CJK
characters are segmented with jieba instead of being split on whitespace.

CRITICAL: the same tokenize() must be used for both indexing and querying,
otherwise BM25 term statistics will not line up with query terms.
"""

import re
import unicodedata
from typing import List

import jieba


# Terms of this length or shorter are dropped (CJK words are exempt).
MAX_DROPPED_TERM_LENGTH = 2

_CJK_CLASS = (
    "\u3400-\u4dbf"  # CJK Unified Ideographs Extension A
    "\u4e00-\u9fff"  # CJK Unified Ideographs
    "\uf900-\ufaff"  # CJK Compatibility Ideographs
)
_CJK_RUN = re.compile(f"[{_CJK_CLASS}]+")
_SEGMENT_RE = re.compile(f"[{_CJK_CLASS}]+|[^\\W_{_CJK_CLASS}]+")
_PUNCTUATION_RE = re.compile(r"[^\w\s]|_")
_WHITESPACE_RE = re.compile(r"\s+")

# Stored already lower-cased and without diacritics.
STOP_WORDS = frozenset(
    """
    el la los las un una unos unas lo al del de en con por para sin sobre entre hacia hasta desde
    que como donde cuando cual cuales cuanto cuanta cuantos cuantas quien quienes
    es son esta estan estoy estas este estos esa ese esos esas eso esto aquel aquella
    hay tiene tienen tengo tenemos ser sido estar fue fueron era eran sera
    me te se nos les mi tu su mis tus sus nuestro nuestra nuestros nuestras
    pero mas menos muy tambien porque pues aun ya asi otro otra otros otras
    hola buenos buenas dias tardes noches favor gracias quiero quisiera puedo pueden podria podrian
    the and for are but not you your with this that these those from have has had was were
    what when where which who whom why how can could would should will about into our their
    """.split()
)


def strip_diacritics(text: str) -> str:
    """Remove combining marks after NFD decomposition ("canción" -> "cancion")."""
    decomposed = unicodedata.normalize("NFD", text)
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return unicodedata.normalize("NFC", stripped)


def normalize_text(text: str) -> str:
    """
    Lower-case, strip diacritics and punctuation, collapse whitespace.

    Used wherever free text is compared against terms produced by tokenize().
    """
    if not text:
        return ""
    lowered = strip_diacritics(text.lower())
    without_punctuation = _PUNCTUATION_RE.sub(" ", lowered)
    return _WHITESPACE_RE.sub(" ", without_punctuation).strip()


def is_stop_word(term: str) -> bool:
    return term in STOP_WORDS


def _tokenize_cjk(segment: str) -> List[str]:
    return [t.strip() for t in jieba.cut(segment, cut_all=False) if t.strip()]


def tokenize(text: str) -> List[str]:
    """
    Convert text into an ordered list of index terms.

    Args:
        text: Raw text in any casing, with or without accents

    Returns:
        Terms in their original order (duplicates kept, they carry term frequency)

    Examples:
        >>> tokenize("¿Abren el sábado?")
        ['abren', 'sabado']
        >>> tokenize("Horario de atención")
        ['horario', 'atencion']
    """
    normalized = normalize_text(text)
    if not normalized:
        return []

    terms: List[str] = []
    for match in _SEGMENT_RE.finditer(normalized):
        segment = match.group(0)
        if _CJK_RUN.fullmatch(segment):
            terms.extend(_tokenize_cjk(segment))
            continue
        if len(segment) <= MAX_DROPPED_TERM_LENGTH or is_stop_word(segment):
            continue
        terms.append(segment)
    return terms
