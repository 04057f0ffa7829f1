from __future__ import annotations

import re

from ..models import EmotionalContext, PersonaDefinition, PersonaType

_EMOTION_LEXICON: dict[str, tuple[str, ...]] = {
    "anxious": (
        "anxious", "anxiety", "worried", "worry", "nervous", "scared", "afraid", "stress", "stressed",
        "panic", "overwhelmed", "uneasy", "terrified",
    ),
    "sad": (
        "sad", "down", "lonely", "alone", "miss", "missing", "crying", "cried", "depressed", "unhappy", "hurt",
        "heartbroken", "upset", "tired of", "grief", "passed away",
    ),
    "angry": (
        "angry", "mad", "furious", "annoyed", "annoying", "hate", "frustrated", "pissed", "sick of",
    ),
    "excited": (
        "excited", "can't wait", "cant wait", "thrilled", "omg", "pumped", "hyped", "stoked", "incredible",
    ),
    "happy": (
        "happy", "glad", "great", "good", "love", "wonderful", "yay", "nice", "fun", "grateful",
        "thank", "thanks", "awesome", "amazing", "best", "perfect", "hello", "hi",
    ),
}
# Earlier entries win ties so distress is never masked by a polite greeting.
_EMOTION_PRIORITY = ("anxious", "sad", "angry", "excited", "happy")
_POSITIVE = {"excited", "happy"}

_MOOD_TEMPERATURES = {
    "excited": 1.0,
    "happy": 0.9,
    "neutral": 0.8,
    "sad": 0.7,
    "angry": 0.6,
    "anxious": 0.7,
}

_HIGH_EMPATHY_MIRROR = {
    "sad": "caring",
    "happy": "joyful",
    "anxious": "reassuring",
}

_FRIEND_MOODS = {
    "sad": "supportive",
    "happy": "excited",
    "anxious": "calming",
    "neutral": "friendly",
}

_PERSONA_MOODS: dict[PersonaType, dict[str, str]] = {
    PersonaType.ROMANTIC: {
        "sad": "affectionate",
        "happy": "loving",
        "anxious": "supportive",
        "neutral": "warm",
    },
    PersonaType.FRIEND: _FRIEND_MOODS,
    PersonaType.COMPANION: _FRIEND_MOODS,
    PersonaType.MENTOR: {
        "sad": "encouraging",
        "happy": "proud",
        "anxious": "wise",
        "neutral": "focused",
    },
    PersonaType.HYPE: {
        "sad": "motivating",
        "happy": "hyped",
        "anxious": "reassuring",
        "neutral": "energetic",
    },
}

_SUGGESTIONS = {
    "happy": [
        "Tell me more about what made you happy!",
        "Want to celebrate together?",
        "Let's make something creative!",
    ],
    "sad": [
        "I'm here for you",
        "Want to talk about it?",
        "Let me cheer you up",
    ],
    "anxious": [
        "Let's take a deep breath together",
        "What would help you feel better?",
        "Want me to distract you?",
    ],
    "neutral": [
        "How was your day?",
        "Let's do something fun",
        "Tell me about your dreams",
    ],
}

_POSITIVE_RELATIONSHIP = ("love", "amazing", "best", "thank", "appreciate", "happy", "wonderful", "perfect")
_NEGATIVE_RELATIONSHIP = ("hate", "annoying", "boring", "leave", "goodbye", "stop")


def _phrase_hits(text: str, phrases: tuple[str, ...]) -> int:
    return sum(1 for phrase in phrases if re.search(rf"\b{re.escape(phrase)}\b", text))


def analyze_user_emotion(text: str) -> tuple[str, float, float]:
    """Return (primary emotion, valence in [-1, 1], intensity in [0, 1]) for a user message."""
    lowered = " ".join((text or "").casefold().split())
    if not lowered:
        return "neutral", 0.0, 0.0

    hits = {emotion: _phrase_hits(lowered, phrases) for emotion, phrases in _EMOTION_LEXICON.items()}
    best = max(hits.values())
    if best == 0:
        return "neutral", 0.0, 0.0
    primary = next(emotion for emotion in _EMOTION_PRIORITY if hits[emotion] == best)

    positive = sum(hits[emotion] for emotion in _POSITIVE)
    negative = sum(count for emotion, count in hits.items() if emotion not in _POSITIVE)
    valence = (positive - negative) / (positive + negative)
    exclamations = min(3, lowered.count("!"))
    intensity = min(1.0, 0.3 * best + 0.1 * exclamations)
    return primary, round(valence, 3), round(intensity, 3)


def temperature_for_emotion(emotion: str) -> float:
    return _MOOD_TEMPERATURES.get(emotion, 0.8)


def persona_mood(persona: PersonaDefinition, user_emotion: str) -> str:
    if persona.personality.empathy_level.strip().lower() == "high" and user_emotion in _HIGH_EMPATHY_MIRROR:
        return _HIGH_EMPATHY_MIRROR[user_emotion]
    return _PERSONA_MOODS.get(persona.persona_type, {}).get(user_emotion, "engaged")


def emotional_context_for(persona: PersonaDefinition, user_text: str) -> EmotionalContext:
    emotion, valence, intensity = analyze_user_emotion(user_text)
    return EmotionalContext(
        mood=persona_mood(persona, emotion),
        user_emotion=emotion,
        valence=valence,
        intensity=intensity,
    )


def suggestions_for(user_emotion: str) -> list[str]:
    return list(_SUGGESTIONS.get(user_emotion, _SUGGESTIONS["neutral"]))


def relationship_delta(user_text: str) -> int:
    lowered = (user_text or "").casefold()
    positive = sum(1 for marker in _POSITIVE_RELATIONSHIP if marker in lowered)
    negative = sum(1 for marker in _NEGATIVE_RELATIONSHIP if marker in lowered)
    if positive > negative and positive >= 2:
        return 1
    if negative > positive and negative >= 2:
        return -1
    return 0
