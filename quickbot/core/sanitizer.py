import re

MIN_MEANINGFUL_CHARS = 3
MAX_SYMBOL_RATIO = 0.6
MIN_ALNUM_RATIO = 0.3
MASH_MIN_LETTERS = 10
MASH_MIN_VOWEL_RATIO = 0.25
MASH_MIN_ROW_RATIO = 0.8

# whitespace and digit runs ("1000000") are not noise
_REPEATED_CHAR_RE = re.compile(r"([^\s\d])\1{5,}")
_ASCII_LETTER_RUN_RE = re.compile(r"[A-Za-z]+")
_VOWELS = frozenset("aeiouy")
_KEYBOARD_ROWS = ("qwertyuiop", "asdfghjkl", "zxcvbnm")


def _has_letter_run(text: str, length: int = 2) -> bool:
    run = 0
    for ch in text:
        if ch.isalpha():
            run += 1
            if run >= length:
                return True
        else:
            run = 0
    return False


def _row_share(run: str) -> float:
    return max(sum(1 for ch in run if ch in row) for row in _KEYBOARD_ROWS) / len(run)


def _looks_like_keyboard_mash(text: str) -> bool:
    # vowel-poor alone is not enough: "Schwarzschild" is a real word
    for run in _ASCII_LETTER_RUN_RE.findall(text):
        if len(run) < MASH_MIN_LETTERS:
            continue
        run = run.lower()
        vowels = sum(1 for ch in run if ch in _VOWELS)
        if vowels == 0:
            return True
        if vowels < len(run) * MASH_MIN_VOWEL_RATIO and _row_share(run) >= MASH_MIN_ROW_RATIO:
            return True
    return False


def is_gibberish(message: str) -> bool:
    """Return True when a chat message is too noisy to be worth answering.

    Messages shorter than three characters are never flagged here; those are
    handled by the out-of-scope classifier instead.
    """
    text = (message or "").strip()
    if len(text) < MIN_MEANINGFUL_CHARS:
        return False

    alnum = sum(1 for ch in text if ch.isalnum())
    symbols = sum(1 for ch in text if not ch.isalnum() and not ch.isspace())

    if symbols > len(text) * MAX_SYMBOL_RATIO:
        return True
    if alnum < len(text) * MIN_ALNUM_RATIO:
        return True
    if _REPEATED_CHAR_RE.search(text):
        return True
    if not _has_letter_run(text):
        return True
    return _looks_like_keyboard_mash(text)


def validate_user_hint(hint: str | None) -> str | None:
    """Check free-text guidance for field generation. Returns an error message or None."""
    if not hint or not hint.strip():
        return None
    text = hint.strip()
    if len(text) < MIN_MEANINGFUL_CHARS or is_gibberish(text):
        return "Input is too vague to generate meaningful content."
    return None
