"""
Translation lookups for user facing messages.

Services never reach for a global locale store. Anything that produces a
message takes a ``Translator`` at construction time and falls back to the
built-in English text when no translation is available.
"""

from typing import Protocol


class Translator(Protocol):
    def __call__(self, key: str, fallback: str) -> str: ...


def default_translate(key: str, fallback: str) -> str:
    return fallback


def translate(
    translator: Translator, key: str, fallback: str, **replacements: str
) -> str:
    """Look up `key` and substitute `{token}` placeholders

    Args:
        translator (Translator): lookup capability
        key (str): message key
        fallback (str): English text used when the key is unknown
        replacements: values for `{token}` placeholders

    Returns:
        str: the translated message
    """
    try:
        text = translator(key, fallback) or fallback
    except LookupError:
        text = fallback

    for token, value in replacements.items():
        text = text.replace(f"{{{token}}}", value)

    return text
