import re

_TRAILING = r"[\s!.?,~]*"

_OUT_OF_SCOPE_PATTERNS = [
    # greetings
    re.compile(
        r"^(hi+|hello+|hey+|hiya|yo|howdy|greetings|sup|what'?s up|good (morning|afternoon|evening|day))"
        + r"(\s+there)?"
        + _TRAILING
        + r"$",
        flags=re.IGNORECASE,
    ),
    # thanks
    re.compile(
        r"^(thanks|thank you|thx|ty|cheers|much appreciated|thanks a lot|thank you so much|many thanks)"
        + _TRAILING
        + r"$",
        flags=re.IGNORECASE,
    ),
    # farewells
    re.compile(
        r"^(bye|bye bye|goodbye|good bye|see you|see ya|cya|later|take care|good night|farewell)"
        + _TRAILING
        + r"$",
        flags=re.IGNORECASE,
    ),
    # acknowledgements
    re.compile(
        r"^(ok|okay|k|kk|cool|nice|great|got it|alright|all right|sure|fine|awesome|perfect|noted|hmm+)"
        + _TRAILING
        + r"$",
        flags=re.IGNORECASE,
    ),
    # yes / no
    re.compile(r"^(yes|no|yeah|yep|yup|nope|nah|y|n)" + _TRAILING + r"$", flags=re.IGNORECASE),
]

MIN_SCOPED_CHARS = 3


def is_obviously_out_of_scope(message: str) -> bool:
    """Classify conversational noise that never needs a model call."""
    text = (message or "").strip().lower()
    if len(text) < MIN_SCOPED_CHARS:
        return True
    if not any(ch.isalpha() for ch in text):
        return True
    return any(pattern.match(text) for pattern in _OUT_OF_SCOPE_PATTERNS)
