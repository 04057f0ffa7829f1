"""Deterministic memory categorization and importance scoring.

Both functions work purely on the surface form of the text and never call a
provider, so they keep working when the embedding or language model is down.
"""

from __future__ import annotations

import re

from ..models import MemoryClassification, MemoryType


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


_MONTHS = (
    "january|february|march|april|may|june|july|august|september|october|november|december|"
    "jan|feb|mar|apr|jun|jul|aug|sep|sept|oct|nov|dec"
)

_FACT_PATTERNS = [
    re.compile(r"\bbirthday\b", re.IGNORECASE),
    re.compile(r"\bmy name is\b", re.IGNORECASE),
    re.compile(r"\b(?:name is|named|called)\s+[A-Z][a-z]+", re.UNICODE),
    re.compile(r"\bborn\b", re.IGNORECASE),
    re.compile(r"\b\d{1,3}\s+years?\s+old\b", re.IGNORECASE),
    re.compile(r"\b(?:lives?|living|moved)\s+(?:in|to)\b", re.IGNORECASE),
    re.compile(r"\bworks?\s+(?:as|at)\b", re.IGNORECASE),
    re.compile(rf"\b(?:{_MONTHS})\.?\s+\d{{1,2}}(?:st|nd|rd|th)?\b", re.IGNORECASE),
    re.compile(rf"\b\d{{1,2}}(?:st|nd|rd|th)?\s+(?:of\s+)?(?:{_MONTHS})\b", re.IGNORECASE),
    re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),
    re.compile(r"\b\d{1,2}/\d{1,2}(?:/\d{2,4})?\b"),
]

_EMOTION_PATTERNS = [
    re.compile(
        r"\b(?:felt|feel|feels|feeling|happy|happier|sad|sadness|excited|exciting|upset|angry|mad|"
        r"anxious|anxiety|nervous|worried|scared|afraid|lonely|depressed|stressed|overwhelmed|"
        r"thrilled|joy|joyful|grateful|proud|hurt|crying|cried|frustrated|heartbroken|miserable)\b",
        re.IGNORECASE,
    ),
    re.compile(r"[\U0001F600-\U0001F64F\U0001F970-\U0001F97A☹☺❤]"),
    re.compile(r"(?:^|\s)(?::\)|:\(|:D|;\)|:'\()(?=\s|$)"),
]

_PREFERENCE_PATTERNS = [
    re.compile(
        r"\b(?:prefer|prefers|preferred|preference|like|likes|liked|love|loves|loved|hate|hates|hated|"
        r"favorite|favourite|enjoy|enjoys|enjoyed|dislike|dislikes|can't stand|into)\b",
        re.IGNORECASE,
    ),
]

_SALIENT_EVENT_PATTERNS = [
    re.compile(
        r"\b(?:passed away|died|death|dead|funeral|killed|lost (?:my|their|his|her) \w+|"
        r"diagnosed|cancer|hospital|surgery|accident)\b",
        re.IGNORECASE,
    ),
    re.compile(r"\b(?:gave birth|new baby|was born|pregnant|adopted)\b", re.IGNORECASE),
    re.compile(r"\b(?:broke up|breakup|break-up|divorce|divorced|separated|dumped|cheated)\b", re.IGNORECASE),
    re.compile(r"\b(?:engaged|married|wedding|proposed)\b", re.IGNORECASE),
    re.compile(
        r"\b(?:graduated|graduation|promoted|promotion|got the job|new job|fired|laid off|"
        r"won (?:a|an|the|first)|award|finished (?:my|their|the) (?:degree|thesis|marathon)|moved (?:to|out))\b",
        re.IGNORECASE,
    ),
]

_INCIDENTAL_PATTERNS = [
    re.compile(
        r"\b(?:weather|sunny|rain|raining|rainy|cloudy|snowing|hot today|cold today|"
        r"small talk|nothing much|not much|just chilling|bored|traffic|what's up|hello|hi|hey)\b",
        re.IGNORECASE,
    ),
]

_SENTENCE_END = (".", "!", "?")
_NUMBER = re.compile(r"\b\d+(?:[.,]\d+)?\b")

_BASE_SALIENT = 0.8
_BASE_BY_TYPE = {
    MemoryType.FACT: 0.6,
    MemoryType.EMOTION: 0.55,
    MemoryType.PREFERENCE: 0.5,
}
_BASE_INCIDENTAL = 0.15
_BASE_NEUTRAL = 0.4
_SPECIFICITY_CAP = 0.15


def _count_matches(patterns: list[re.Pattern[str]], text: str) -> int:
    return sum(len(pattern.findall(text)) for pattern in patterns)


def _normalize(text: str) -> str:
    return " ".join((text or "").split())


def categorize_memory(text: str) -> MemoryClassification:
    """Classify text as fact, emotion, preference or other.

    Checked in priority order fact > emotion > preference; the first category
    with any marker wins. The confidence hint grows with the number of markers.
    """
    src = _normalize(text)
    if not src:
        return MemoryClassification(MemoryType.OTHER, 0.2)

    for memory_type, patterns in (
        (MemoryType.FACT, _FACT_PATTERNS),
        (MemoryType.EMOTION, _EMOTION_PATTERNS),
        (MemoryType.PREFERENCE, _PREFERENCE_PATTERNS),
    ):
        hits = _count_matches(patterns, src)
        if hits:
            return MemoryClassification(memory_type, round(min(0.95, 0.5 + 0.15 * hits), 3))
    return MemoryClassification(MemoryType.OTHER, 0.2)


def _specificity_bonus(text: str) -> float:
    bonus = 0.0
    numbers = len(_NUMBER.findall(text))
    bonus += min(0.06, 0.03 * numbers)
    tokens = text.split()
    named = sum(
        1
        for prev, word in zip(tokens, tokens[1:])
        if not prev.endswith(_SENTENCE_END) and len(word) > 2 and word[0].isupper() and word[1:2].islower()
    )
    bonus += min(0.06, 0.02 * named)
    words = len(tokens)
    if words >= 8:
        bonus += 0.02
    if words >= 20:
        bonus += 0.02
    return min(_SPECIFICITY_CAP, bonus)


def calculate_importance(text: str) -> float:
    src = _normalize(text)
    if not src:
        return 0.0

    salient = _count_matches(_SALIENT_EVENT_PATTERNS, src)
    classification = categorize_memory(src)

    if salient:
        base = _BASE_SALIENT + min(0.1, 0.05 * (salient - 1))
        if _count_matches(_EMOTION_PATTERNS, src):
            base += 0.05
    elif classification.memory_type in _BASE_BY_TYPE:
        base = _BASE_BY_TYPE[classification.memory_type]
    elif _count_matches(_INCIDENTAL_PATTERNS, src):
        # Incidental statements stay low regardless of specificity.
        return _BASE_INCIDENTAL
    else:
        base = _BASE_NEUTRAL

    return round(_clamp(base + _specificity_bonus(src), 0.0, 1.0), 3)
