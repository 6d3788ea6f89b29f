# coding=utf-8
from __future__ import annotations

from typing import Dict, FrozenSet, Optional

AUTO = "auto"

# ISO codes accepted as translation source/target.
TRANSLATION_LANGUAGES: Dict[str, str] = {
    "en": "English",
    "zh": "Chinese",
    "es": "Spanish",
    "ar": "Arabic",
    "hi": "Hindi",
    "bn": "Bengali",
    "pt": "Portuguese",
    "ru": "Russian",
    "ja": "Japanese",
    "de": "German",
    "fr": "French",
    "it": "Italian",
    "nl": "Dutch",
    "pl": "Polish",
    "uk": "Ukrainian",
    "cs": "Czech",
    "ro": "Romanian",
    "el": "Greek",
    "hu": "Hungarian",
    "sv": "Swedish",
    "da": "Danish",
    "fi": "Finnish",
    "no": "Norwegian",
    "sk": "Slovak",
    "bg": "Bulgarian",
    "hr": "Croatian",
    "sr": "Serbian",
    "sl": "Slovenian",
    "lt": "Lithuanian",
    "lv": "Latvian",
    "et": "Estonian",
    "ca": "Catalan",
    "gl": "Galician",
    "eu": "Basque",
    "is": "Icelandic",
    "mt": "Maltese",
    "cy": "Welsh",
    "ga": "Irish",
    "sq": "Albanian",
    "mk": "Macedonian",
    "be": "Belarusian",
    "bs": "Bosnian",
    "tr": "Turkish",
    "fa": "Persian",
    "he": "Hebrew",
    "ur": "Urdu",
    "kk": "Kazakh",
    "az": "Azerbaijani",
    "uz": "Uzbek",
    "hy": "Armenian",
    "ka": "Georgian",
    "tg": "Tajik",
    "ta": "Tamil",
    "te": "Telugu",
    "ml": "Malayalam",
    "kn": "Kannada",
    "mr": "Marathi",
    "gu": "Gujarati",
    "pa": "Punjabi",
    "ne": "Nepali",
    "si": "Sinhala",
    "ko": "Korean",
    "vi": "Vietnamese",
    "th": "Thai",
    "id": "Indonesian",
    "ms": "Malay",
    "fil": "Filipino",
    "my": "Burmese",
    "km": "Khmer",
    "lo": "Lao",
    "sw": "Swahili",
    "af": "Afrikaans",
    "am": "Amharic",
    "ha": "Hausa",
    "yo": "Yoruba",
    "sn": "Shona",
    "so": "Somali",
    "mg": "Malagasy",
    "la": "Latin",
    "eo": "Esperanto",
    "haw": "Hawaiian",
    "mi": "Maori",
    "mn": "Mongolian",
    "jw": "Javanese",
    "su": "Sundanese",
    "yi": "Yiddish",
    "lb": "Luxembourgish",
    "ht": "Haitian Creole",
    "ps": "Pashto",
    "sd": "Sindhi",
}

# Whisper recognizes a few languages the translator does not list.
TRANSCRIPTION_LANGUAGES: FrozenSet[str] = frozenset(TRANSLATION_LANGUAGES) | frozenset(
    {"oc", "br", "fo", "nn", "tt", "ba", "tk", "as", "ln", "yue", "gd", "bo", "sa"}
)

_NAME_ALIASES: Dict[str, str] = {
    "mandarin": "zh",
    "farsi": "fa",
    "sinhalese": "si",
    "tagalog": "fil",
    "myanmar": "my",
    "cambodian": "km",
    "laotian": "lo",
    "haitian": "ht",
    "occitan": "oc",
    "breton": "br",
    "faroese": "fo",
    "nynorsk": "nn",
    "tatar": "tt",
    "bashkir": "ba",
    "turkmen": "tk",
    "assamese": "as",
    "lingala": "ln",
    "cantonese": "yue",
    "scottish gaelic": "gd",
    "tibetan": "bo",
    "sanskrit": "sa",
}

NAME_TO_CODE: Dict[str, str] = {name.lower(): code for code, name in TRANSLATION_LANGUAGES.items()}
NAME_TO_CODE.update(_NAME_ALIASES)


def normalize_language_code(raw: Optional[str], default: str = "en") -> str:
    """Map an engine language label ("spanish", "ES", "es") to an ISO code."""
    text = str(raw or "").strip().lower()
    if not text:
        return default
    if len(text) <= 3:
        return text
    return NAME_TO_CODE.get(text, default)


def language_name(code: str) -> str:
    return TRANSLATION_LANGUAGES.get(str(code or "").lower(), str(code or ""))


def is_translation_language(code: Optional[str]) -> bool:
    return str(code or "").strip().lower() in TRANSLATION_LANGUAGES


def is_transcription_language(code: Optional[str]) -> bool:
    return str(code or "").strip().lower() in TRANSCRIPTION_LANGUAGES


def is_source_language(code: Optional[str]) -> bool:
    ln = str(code or "").strip().lower()
    return ln == AUTO or is_transcription_language(ln)
