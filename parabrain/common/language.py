"""
Language Detection Service

Per-message language detection using langdetect + Thai script fallback.
The result is handed to the classifier prompt as a reply-language hint.
"""

import re
from dataclasses import dataclass

from langdetect import DetectorFactory, LangDetectException, detect_langs

# Thai block U+0E00..U+0E7F
_THAI_RE = re.compile(r"[\u0E00-\u0E7F]")

# Seed langdetect for deterministic results
DetectorFactory.seed = 0


@dataclass(frozen=True)
class LanguageInfo:
    """Detected language information"""
    code: str           # ISO 639-1: "th", "en", ...
    confidence: float   # 0.0~1.0
    script: str         # "Thai", "Latin", "Mixed"

    @property
    def is_thai(self) -> bool:
        return self.code == "th"

    @property
    def reply_language(self) -> str:
        """Language name the assistant should answer in"""
        return "Thai" if self.is_thai else "English"


def _thai_ratio(text: str) -> float:
    letters = [ch for ch in text if not ch.isspace() and not ch.isdigit()]
    if not letters:
        return 0.0
    return sum(1 for ch in letters if _THAI_RE.match(ch)) / len(letters)


def detect_language(text: str) -> LanguageInfo:
    """Detect language of input text.

    Any meaningful share of Thai characters wins outright; langdetect only
    decides between Latin-script languages. Latin text defaults to English.
    """
    if not text or not text.strip():
        return LanguageInfo(code="th", confidence=0.5, script="Thai")

    cleaned = text.strip()
    ratio = _thai_ratio(cleaned)

    if ratio >= 0.5:
        return LanguageInfo(code="th", confidence=round(min(1.0, 0.5 + ratio / 2), 4), script="Thai")
    if ratio > 0.15:
        return LanguageInfo(code="th", confidence=0.6, script="Mixed")

    if len(cleaned) < 10:
        return LanguageInfo(code="en", confidence=0.5, script="Latin")

    try:
        results = detect_langs(cleaned)
    except LangDetectException:
        results = []

    if results and results[0].lang == "en":
        return LanguageInfo(code="en", confidence=round(results[0].prob, 4), script="Latin")

    # langdetect often mislabels short English as nl/af/de; treat Latin as English
    return LanguageInfo(code="en", confidence=0.5, script="Latin")
