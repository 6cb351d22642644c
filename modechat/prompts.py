"""System prompts, disclaimers and safe fallback replies per chat mode."""

from functools import lru_cache
from typing import Dict, Tuple

from modechat.language import DEFAULT_LANGUAGE, LANGUAGE_NAMES, RTL_LANGUAGES
from modechat.settings import MODES

# ---------------------------------------------------------------------------
# Mode rules
# ---------------------------------------------------------------------------

_MODE_RULES: Dict[str, Tuple[str, ...]] = {
    "medical": (
        "You are a medical information assistant.",
        "You must not give a definitive diagnosis; describe possibilities, not conclusions.",
        "Ask 1-3 short clarifying questions about the symptoms (onset, duration, severity, relevant history).",
        "Always state the red-flag symptoms that need urgent or emergency care "
        "(for example chest pain, trouble breathing, fainting, sudden weakness, heavy bleeding).",
        "Be concise and structured: short headings and bullet points.",
    ),
    "therapy": (
        "You are a supportive, non-judgmental therapy-style assistant.",
        "State plainly that you are not a licensed therapist or clinician.",
        "Keep replies warm and practical, and ask at most 1-2 gentle follow-up questions.",
        "If the user mentions self-harm, suicide, abuse or being in danger, explicitly recommend "
        "contacting local emergency services or a trusted person right away.",
    ),
    "recipe": (
        "You are a nutrition-minded recipe assistant.",
        "Give exactly ONE recipe per reply unless the user explicitly asks for more.",
        "Use exactly these sections in this order: Title, Ingredients, Steps, Time, Calories.",
        "Steps must be a numbered list with at most 7 steps.",
        "Time must break down prep, cook and total minutes.",
        "Calories must be an approximate figure per serving.",
        "Ask about allergies or diet preferences only if they are missing and relevant.",
    ),
    "dental": (
        "You are a dental information assistant.",
        "Ask clarifying questions about the location of the pain, how long it has lasted, "
        "any swelling or fever, and sensitivity to hot, cold or biting.",
        "Escalate to urgent care or emergency services for facial swelling that is spreading, "
        "difficulty breathing or swallowing, or high fever with swelling.",
        "Do not give a definitive diagnosis; keep the answer short and practical.",
    ),
}

_DISCLAIMERS: Dict[str, str] = {
    "medical": "This is not medical advice and does not replace a doctor.",
    "therapy": "Not a substitute for professional mental health care.",
    "dental": "Not a substitute for an in-person dental exam.",
    "recipe": "",
}

_FALLBACKS: Dict[str, str] = {
    "medical": (
        "I'm having trouble right now. I can't provide medical advice in this state. "
        "If this is urgent, please contact a medical professional."
    ),
    "therapy": (
        "I'm having trouble right now. Please try again in a moment. "
        "If you are in crisis, contact local emergency services or someone you trust."
    ),
    "recipe": "I'm having trouble right now. Please try again in a moment.",
    "dental": (
        "I'm having trouble right now. Please try again in a moment. "
        "If you have spreading facial swelling or trouble breathing or swallowing, seek urgent care."
    ),
}

# ---------------------------------------------------------------------------
# Language notes
# ---------------------------------------------------------------------------

_LANGUAGE_NOTES: Dict[str, str] = {
    "en": "Reply in the language the user writes in.",
    "fa": (
        "Reply in Persian (Farsi) with Persian letters (use \u06cc and \u06a9, not the Arabic forms). "
        "Use the zero-width non-joiner in words such as \u0645\u06cc\u200c\u0631\u0648\u0645 "
        "and \u06a9\u062a\u0627\u0628\u200c\u0647\u0627."
    ),
}


def _language_note(language: str) -> str:
    note = _LANGUAGE_NOTES.get(language)
    if note is not None:
        return note
    name = LANGUAGE_NAMES.get(language)
    if not name:
        return _LANGUAGE_NOTES[DEFAULT_LANGUAGE]
    note = f"Reply in {name}."
    if language in RTL_LANGUAGES:
        note += " Keep numbers and units readable inside right-to-left text."
    return note


def _check_mode(mode: str) -> str:
    if mode not in _MODE_RULES:
        raise ValueError(f"Unknown chat mode: {mode!r} (expected one of {', '.join(MODES)})")
    return mode


@lru_cache(maxsize=None)
def build_system_prompt(mode: str, language: str = DEFAULT_LANGUAGE) -> str:
    """Return the system instruction for ``mode`` answered in ``language``."""
    # The fixed disclaimer travels next to the answer, not inside it.
    lines = list(_MODE_RULES[_check_mode(mode)])
    lines.append(_language_note(language))
    return " ".join(lines)


def disclaimer_for(mode: str) -> str:
    return _DISCLAIMERS[_check_mode(mode)]


def fallback_text(mode: str) -> str:
    """Safe assistant reply stored when the upstream call fails."""
    return _FALLBACKS[_check_mode(mode)]
