"""Script-based language detection and Persian text clean-up.

Detection only picks the reply language and text direction, so a wrong
guess on mixed-script input is tolerated.
"""

import re
from typing import Callable, Dict

DEFAULT_LANGUAGE = "en"

LANGUAGE_NAMES: Dict[str, str] = {
    "en": "English",
    "fa": "Persian (Farsi)",
    "ar": "Arabic",
    "ur": "Urdu",
    "he": "Hebrew",
    "ru": "Russian",
    "uk": "Ukrainian",
    "hi": "Hindi",
    "ja": "Japanese",
    "zh": "Chinese",
}

RTL_LANGUAGES = frozenset({"fa", "ar", "ur", "he"})

# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

_HEBREW = re.compile("[\u0590-\u05ff\ufb1d-\ufb4f]")
_KANA = re.compile("[\u3040-\u30ff\u31f0-\u31ff]")
_HAN = re.compile("[\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff]")
_DEVANAGARI = re.compile("[\u0900-\u097f]")
_CYRILLIC = re.compile("[\u0400-\u04ff]")
_ARABIC_SCRIPT = re.compile("[\u0600-\u06ff\u0750-\u077f\ufb50-\ufdff\ufe70-\ufeff]")

# і ї є ґ (both cases) do not occur in Russian
_UKRAINIAN_MARKERS = re.compile("[\u0456\u0457\u0454\u0491\u0406\u0407\u0404\u0490]")

# tteh, ddal, rreh, noon ghunna, heh doachashmee, yeh barree (+hamza)
_URDU_MARKERS = re.compile("[\u0679\u0688\u0691\u06ba\u06be\u06d2\u06d3]")
# peh, tcheh, jeh, gaf, keheh, farsi yeh
_PERSIAN_MARKERS = re.compile("[\u067e\u0686\u0698\u06af\u06a9\u06cc]")
# arabic yeh, kaf, teh marbuta, alef maksura
_ARABIC_MARKERS = re.compile("[\u064a\u0643\u0629\u0649]")


def _arabic_script_language(text: str) -> str:
    if _URDU_MARKERS.search(text):
        return "ur"
    persian = len(_PERSIAN_MARKERS.findall(text))
    arabic = len(_ARABIC_MARKERS.findall(text))
    # No markers at all is most likely short Persian input.
    return "ar" if arabic > persian else "fa"


def detect_language(text: str) -> str:
    """Classify ``text`` into one of :data:`LANGUAGE_NAMES` by script.

    Scripts used by a single supported language win outright, in priority
    order. Shared scripts (Cyrillic, Arabic) fall back to marker letters.
    """
    if not text:
        return DEFAULT_LANGUAGE
    if _HEBREW.search(text):
        return "he"
    if _KANA.search(text):
        return "ja"
    if _HAN.search(text):
        return "zh"
    if _DEVANAGARI.search(text):
        return "hi"
    if _CYRILLIC.search(text):
        return "uk" if _UKRAINIAN_MARKERS.search(text) else "ru"
    if _ARABIC_SCRIPT.search(text):
        return _arabic_script_language(text)
    return DEFAULT_LANGUAGE


def text_direction(language: str) -> str:
    return "rtl" if language in RTL_LANGUAGES else "ltr"


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

ZWNJ = "\u200c"

_FA_LETTER = "\u0621-\u063a\u0641-\u064a\u0671-\u06d3"

_FA_LETTER_MAP = str.maketrans({
    "\u064a": "\u06cc",  # arabic yeh -> farsi yeh
    "\u0649": "\u06cc",  # alef maksura -> farsi yeh
    "\u0643": "\u06a9",  # arabic kaf -> keheh
})

_HSPACE_RUN = re.compile("[ \t\u00a0]+")
_TRAILING_SPACE = re.compile(" +\n")
_EXTRA_NEWLINES = re.compile("\n{3,}")
_LOOSE_ZWNJ = re.compile(" *\u200c[ \u200c]*")
_PUNCT_NO_SPACE = re.compile("([.!?:\u060c\u061b\u061f])(?=[" + _FA_LETTER + "])")

# mi- / nemi- written as a separate word before the verb stem
_PREFIX_CLITIC = re.compile(
    "(?<![" + _FA_LETTER + "\u200c])(\u0646?\u0645\u06cc) (?=[" + _FA_LETTER + "])"
)
# -ha and its possessive/indefinite extensions split off the noun
_PLURAL_SUFFIX = re.compile(
    "(?<=[" + _FA_LETTER + "]) "
    "(\u0647\u0627(?:\u06cc\u0645\u0627\u0646|\u06cc\u062a\u0627\u0646|\u06cc\u0634\u0627\u0646"
    "|\u06cc\u06cc|\u06cc\u0645|\u06cc\u062a|\u06cc\u0634|\u06cc)?)"
    "(?![" + _FA_LETTER + "])"
)


def _normalize_persian(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\r", "\n").translate(_FA_LETTER_MAP)
    text = _HSPACE_RUN.sub(" ", text)
    text = _TRAILING_SPACE.sub("\n", text)
    text = _EXTRA_NEWLINES.sub("\n\n", text)
    text = _LOOSE_ZWNJ.sub(ZWNJ, text)
    text = _PUNCT_NO_SPACE.sub(r"\1 ", text)
    text = _PREFIX_CLITIC.sub(r"\1" + ZWNJ, text)
    text = _PLURAL_SUFFIX.sub(ZWNJ + r"\1", text)
    return text.strip()


_NORMALIZERS: Dict[str, Callable[[str], str]] = {
    "fa": _normalize_persian,
}


def normalize_text(text: str, language: str) -> str:
    """Fix spacing and joiner glitches left by token-by-token generation.

    Idempotent. A no-op for languages without a normalizer.
    """
    normalizer = _NORMALIZERS.get(language)
    if normalizer is None or not text:
        return text
    return normalizer(text)
