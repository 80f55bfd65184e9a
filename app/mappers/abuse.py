"""Lexical abuse detection over patient transcript turns.

The term lists are the tunable surface. Each term is compiled into a
case-insensitive pattern where every letter also matches its common
symbol substitutions (``f*ck``, ``sh!t``, ``a$$hole``) and single
separators between letters (``f.u.c.k``).
"""

import re
from collections.abc import Iterable

from app.schemas.calls import Speaker, TranscriptMessage

PROFANITY_TERMS = (
    "fuck", "fucking", "fucked", "fck", "motherfucker",
    "shit", "shitty", "bullshit",
    "ass", "asshole", "bitch", "bastard",
    "damn", "dammit", "crap", "crappy",
)

HARASSMENT_TERMS = (
    "stupid", "idiot", "moron", "dumb", "retard",
    "hate you", "go to hell", "screw you", "shut up",
)

# "sue" also matches the given name Sue; drop it here if that is too noisy.
THREAT_TERMS = (
    "threat", "kill", "hurt", "sue",
    "i will find you", "you will regret",
)

DEFAULT_ABUSIVE_TERMS = PROFANITY_TERMS + HARASSMENT_TERMS + THREAT_TERMS

_SUBSTITUTIONS = {
    "a": "a@4*",
    "b": "b8",
    "c": "c(*",
    "e": "e3*",
    "g": "g9",
    "h": "h#",
    "i": "i1!|*",
    "l": "l1|",
    "o": "o0*",
    "s": "s$5*",
    "t": "t7+",
    "u": "uv*",
}

_SEPARATOR = r"[\s.\-_]?"


def _letter_class(ch: str) -> str:
    chars = _SUBSTITUTIONS.get(ch, ch)
    return "[" + "".join(re.escape(c) for c in chars) + "]"


def compile_term(term: str) -> re.Pattern[str]:
    words = term.lower().split()
    word_patterns = [
        _SEPARATOR.join(_letter_class(ch) for ch in word) for word in words
    ]
    body = r"\s+".join(word_patterns)
    # Lookarounds instead of \b: substitutes like "*" or "$" are not word chars.
    return re.compile(rf"(?<![a-z0-9]){body}(?![a-z0-9])", re.IGNORECASE)


def build_patterns(terms: Iterable[str] = DEFAULT_ABUSIVE_TERMS) -> list[re.Pattern[str]]:
    return [compile_term(t) for t in terms if t.strip()]


ABUSIVE_PATTERNS = build_patterns()


def contains_abuse(text: str, patterns: list[re.Pattern[str]] = ABUSIVE_PATTERNS) -> bool:
    return any(p.search(text) for p in patterns)


def detect_abusive_language(
    messages: Iterable[TranscriptMessage],
    patterns: list[re.Pattern[str]] = ABUSIVE_PATTERNS,
) -> bool:
    """True when any patient-spoken turn matches an abusive pattern."""
    return any(
        msg.speaker == Speaker.patient and contains_abuse(msg.text, patterns)
        for msg in messages
    )
