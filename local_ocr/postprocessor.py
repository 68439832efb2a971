"""
postprocessor.py

Text cleanup for recognized German / multi-language legal text.

Handles:
- OCR artifacts (umlaut confusions, digit/letter swaps, noise runs)
- Unicode normalization (NFC, typographic quotes and dashes, full-width forms)
- Whitespace cleanup
- Language detection (de, en, fr, it)

postprocess() runs the three cleanup stages until the text stops
changing, so applying it twice gives the same result as applying it once.
"""

import logging
import re
import unicodedata
from typing import List, Pattern, Tuple

from local_ocr import config
from local_ocr.schemas import PostprocessResult

logger = logging.getLogger(__name__)

_LOWER = "a-zäöüß"
_UPPER = "A-ZÄÖÜ"

# Ordered: each rule sees the output of the previous one.
ARTIFACT_RULES: List[Tuple[Pattern, str]] = [
    # Umlaut confusions
    (re.compile(rf"(?<=[{_LOWER}])ii(?=[{_LOWER}])"), "ü"),
    (re.compile(rf"(?<=[{_UPPER}])II(?=[{_LOWER}])"), "Ü"),
    (re.compile("[oO][\u00a8\u0308]"), "ö"),
    (re.compile("[uU][\u00a8\u0308]"), "ü"),
    (re.compile("[aA][\u00a8\u0308]"), "ä"),
    # Digit/letter confusion
    (re.compile(r"\bl\b(?=\.\s*\d)"), "1"),  # "l. 5" list numbering
    (re.compile(r"(§\s*)l(?=\d)"), r"\g<1>1"),  # "§ l23"
    (re.compile(r"(?<=\d)O(?=\d)"), "0"),  # "1O2"
    (re.compile(r"(?<=\d)l(?=\d)"), "1"),  # "2l3"
    # Scan noise
    (re.compile(r"[|¦¡!]{3,}"), ""),
    (re.compile(r"[~^`]{2,}"), ""),
    (re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]"), ""),
    # Spacing
    (re.compile(rf"([.,:;!?])([{_UPPER}])"), r"\1 \2"),
    (re.compile(r" {3,}"), "  "),
    (re.compile(r"\n{4,}"), "\n\n\n"),
]

_QUOTES_DOUBLE = re.compile("[“”„‟]")
_QUOTES_SINGLE = re.compile("[‘’‚‛]")
_DASHES = re.compile("[\u2013\u2014\u2015]")
_INVISIBLE = re.compile("[\u200b\u200c\u200d\ufeff\u00ad]")

# Full-width digits and Latin letters -> ASCII
_FULLWIDTH_TO_ASCII = {
    code: code - 0xFEE0
    for start, end in ((0xFF10, 0xFF19), (0xFF21, 0xFF3A), (0xFF41, 0xFF5A))
    for code in range(start, end + 1)
}

_LANGUAGE_KEYWORDS = [
    (
        "de",
        re.compile(
            r"\b(der|die|das|und|ist|nicht|wurde|frist|anspruch|gericht|urteil|"
            r"gemäß|beschluss|klage|beklagte|kläger|antrag)\b"
        ),
    ),
    (
        "en",
        re.compile(
            r"\b(the|and|is|not|was|has|have|court|judgment|claim|defendant|"
            r"plaintiff|shall|whereas|hereby)\b"
        ),
    ),
    (
        "fr",
        re.compile(
            r"\b(le|la|les|des|est|pas|une|que|pour|dans|tribunal|jugement|"
            r"arrêt|demande|défendeur)\b"
        ),
    ),
    (
        "it",
        re.compile(
            r"\b(il|la|le|del|della|non|che|per|con|tribunale|sentenza|domanda|"
            r"convenuto)\b"
        ),
    ),
]


def remove_artifacts(text: str) -> str:
    """Apply ARTIFACT_RULES in order."""
    for pattern, replacement in ARTIFACT_RULES:
        text = pattern.sub(replacement, text)
    return text


def normalize_unicode(text: str) -> str:
    """
    Normalize characters OCR engines commonly emit in odd forms.

    - NFC composition
    - Typographic quotes -> ASCII quotes, dash variants -> en dash
    - NBSP -> space; zero-width characters and soft hyphen removed
    - Full-width digits and letters -> ASCII
    """
    text = unicodedata.normalize("NFC", text)
    text = _QUOTES_DOUBLE.sub('"', text)
    text = _QUOTES_SINGLE.sub("'", text)
    text = _DASHES.sub("\u2013", text)
    text = text.replace("\u00a0", " ")
    text = _INVISIBLE.sub("", text)
    text = text.translate(_FULLWIDTH_TO_ASCII)
    return text.strip()


def fix_whitespace(text: str) -> str:
    """
    Normalize line endings, keep at most one blank line between
    paragraphs and collapse other whitespace runs to a single space.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"\n{3,}", "\n\n", text)
    text = re.sub(r"[^\S\n]+", " ", text)
    return text.strip()


def detect_language(text: str) -> str:
    """
    Guess the dominant language from closed keyword lists.

    Returns 'de', 'en', 'fr', 'it' or 'unknown' when no keyword matches.
    Ties resolve in that order.
    """
    lower = text.lower()
    scores = [(lang, len(pattern.findall(lower))) for lang, pattern in _LANGUAGE_KEYWORDS]
    best = max(score for _, score in scores)
    if best == 0:
        return "unknown"
    for lang, score in scores:
        if score == best:
            return lang
    return "unknown"


def _clean(text: str) -> str:
    return fix_whitespace(normalize_unicode(remove_artifacts(text)))


def postprocess(text: str) -> PostprocessResult:
    """
    Clean recognized text and detect its language.

    Args:
        text: Raw text of one page.

    Returns:
        PostprocessResult with the cleaned text and language code.
        Empty or whitespace-only input gives ('', 'unknown').
    """
    if not text or not text.strip():
        return PostprocessResult(text="", language="unknown")

    cleaned = _clean(text)
    for _ in range(config.POSTPROCESS_MAX_PASSES - 1):
        again = _clean(cleaned)
        if again == cleaned:
            break
        cleaned = again
    else:
        logger.debug("Postprocess did not settle after %d passes", config.POSTPROCESS_MAX_PASSES)

    return PostprocessResult(text=cleaned, language=detect_language(cleaned))
