"""Drafting bot configuration fields with the model.

Each field kind maps to exactly one template and one temperature; adding a
kind means adding it to ``FieldKind`` and both tables, which
``_check_tables`` verifies at import time.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

from quickbot.core.llm import ModelInvocationError, ModelInvoker
from quickbot.core.metrics import metrics
from quickbot.core.profiles import BotProfile, BotProfileStore
from quickbot.core.sanitizer import validate_user_hint

logger = logging.getLogger(__name__)

REJECT_TOKEN = "[REJECT]"
QUICK_QUESTION_COUNT = 5
DEFAULT_QUICK_QUESTIONS = [
    "What does your product do?",
    "How can I get started?",
    "What pricing plans are available?",
    "Can I customize the chatbot?",
    "How do I contact support?",
]

_PERSONA_FORMAT_RE = re.compile(r"[*#:_\-]{2,}|name:|role:|description:", flags=re.IGNORECASE)


class FieldKind(str, Enum):
    PERSONA = "persona"
    MISSION = "botthesis"
    GREETINGS = "greetings"
    FALLBACK_MESSAGE = "fallback_message"
    BUSINESS_NAME = "business_name"
    BUSINESS_TYPE = "business_type"
    BUSINESS_DESCRIPTION = "business_description"
    PRODUCT_NAME = "product_name"
    PRODUCT_DESCRIPTION = "product_description"
    QUICK_QUESTIONS = "quick_questions"
    WELCOME_MESSAGE = "welcome_message"


DISABLED_FIELDS = frozenset({FieldKind.BUSINESS_NAME, FieldKind.BUSINESS_TYPE, FieldKind.PRODUCT_NAME})


class FieldGenerationError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


@dataclass
class FieldContext:
    business_name: str = ""
    business_type: str = ""
    product_name: str = ""
    user_hint: str = ""
    current_value: str = ""


_INSTRUCTION_PRIORITY = """Instruction priority rules:
1. Content focus instructions (what to emphasize) take highest priority.
2. Clarity and correctness override stylistic preferences.
3. If length instructions conflict, choose the length that best preserves meaning.
4. If tone instructions conflict, choose the most professional and confident option.
5. Never sacrifice important information to satisfy a weaker instruction."""

_REJECTION_RULE = f"""If the information above is insufficient, irrelevant, or contradictory,
respond with exactly:
{REJECT_TOKEN}"""


def _base_context(ctx: FieldContext) -> str:
    return f"""Business name: {ctx.business_name or "N/A"}
Business type: {ctx.business_type or "N/A"}
Product: {ctx.product_name or "N/A"}

Existing content (if any):
{ctx.current_value or "None"}

User instructions:
{ctx.user_hint or "None"}"""


def _template(task: str, guidance: str) -> Callable[[FieldContext], str]:
    def render(ctx: FieldContext) -> str:
        return "\n\n".join([task, _base_context(ctx), _INSTRUCTION_PRIORITY, guidance, _REJECTION_RULE])

    return render


_TEMPLATES: Dict[FieldKind, Callable[[FieldContext], str]] = {
    FieldKind.PERSONA: _template(
        "Write a chatbot persona as natural, flowing prose.",
        """What this persona should convey:
- How the assistant behaves
- How it communicates with users
- What it is especially good at helping with
- The tone users should expect

Guidance:
- Write in second person ("you")
- Expand naturally; do not pad or over-compress
- Avoid headings, labels, lists, names, or formatting
- This should read like behavioral guidance, not a profile card""",
    ),
    FieldKind.MISSION: _template(
        "Write a clear mission statement for the chatbot.",
        """Guidance:
- Explain why the bot exists
- Focus on purpose and value
- Confident, direct language
- Plain paragraph only""",
    ),
    FieldKind.GREETINGS: _template(
        "Write the first message the chatbot says to a user.",
        """Guidance:
- Friendly but professional
- Invites conversation without overselling
- Short and human""",
    ),
    FieldKind.FALLBACK_MESSAGE: _template(
        "Write what the chatbot should say when it does not understand a request.",
        """Guidance:
- Calm and helpful
- Encourages the user to rephrase
- One short sentence""",
    ),
    FieldKind.BUSINESS_DESCRIPTION: _template(
        "Write a concise description of the business.",
        """Guidance:
- Focus on differentiation if instructed
- Reduce generic benefits unless they support the main focus
- Clear, factual, and grounded
- Avoid marketing fluff""",
    ),
    FieldKind.PRODUCT_DESCRIPTION: _template(
        "Write a description of the product.",
        """Guidance:
- Explain what the product does and why it is useful
- Prioritize unique value when instructed
- Natural, readable paragraph
- Avoid buzzwords""",
    ),
    FieldKind.QUICK_QUESTIONS: _template(
        "Generate common questions a customer might ask.",
        f"""Guidance:
- Exactly {QUICK_QUESTION_COUNT} questions
- Short and natural
- From a customer perspective
- Return ONLY a valid JSON array of strings
- Each question must end with '?'""",
    ),
    FieldKind.WELCOME_MESSAGE: _template(
        "Write a short welcome message shown when the chatbot loads.",
        """Guidance:
- Warm and inviting
- Sets expectations for how the bot can help
- One clear sentence""",
    ),
}

FIELD_TEMPERATURE: Dict[FieldKind, float] = {
    FieldKind.PERSONA: 0.45,
    FieldKind.MISSION: 0.45,
    FieldKind.GREETINGS: 0.4,
    FieldKind.FALLBACK_MESSAGE: 0.3,
    FieldKind.BUSINESS_DESCRIPTION: 0.5,
    FieldKind.PRODUCT_DESCRIPTION: 0.5,
    FieldKind.QUICK_QUESTIONS: 0.35,
    FieldKind.WELCOME_MESSAGE: 0.4,
}


def _check_tables() -> None:
    enabled = set(FieldKind) - DISABLED_FIELDS
    missing = (enabled - set(_TEMPLATES)) | (enabled - set(FIELD_TEMPERATURE))
    if missing:
        raise RuntimeError(f"field kinds without template or temperature: {sorted(k.value for k in missing)}")


_check_tables()


def build_field_prompt(kind: FieldKind, ctx: FieldContext) -> str:
    if kind in DISABLED_FIELDS:
        raise FieldGenerationError(400, "AI generation is disabled for this field.")
    return (
        "You are an AI assistant generating chatbot configuration content\n"
        "that will be used directly in a production system.\n\n"
        "Do not explain your reasoning.\n"
        "Do not include formatting or metadata.\n"
        "Follow the task exactly.\n\n" + _TEMPLATES[kind](ctx)
    )


def parse_field_kind(raw: str) -> FieldKind:
    try:
        return FieldKind(raw)
    except ValueError as exc:
        raise FieldGenerationError(400, "Unknown field.") from exc


def _parse_quick_questions(output: str) -> List[str]:
    try:
        parsed = json.loads(output)
    except json.JSONDecodeError:
        return list(DEFAULT_QUICK_QUESTIONS)
    if (
        not isinstance(parsed, list)
        or len(parsed) != QUICK_QUESTION_COUNT
        or not all(isinstance(item, str) and item.strip() for item in parsed)
    ):
        return list(DEFAULT_QUICK_QUESTIONS)
    return [item.strip() for item in parsed]


class FieldGenerator:
    def __init__(self, invoker: ModelInvoker, profiles: BotProfileStore, model: str) -> None:
        self._invoker = invoker
        self._profiles = profiles
        self._model = model

    async def generate(
        self,
        bot_id: str,
        field: str,
        user_hint: Optional[str] = None,
        current_value: Optional[str] = None,
    ) -> Union[str, List[str]]:
        kind = parse_field_kind(field)
        if kind in DISABLED_FIELDS:
            raise FieldGenerationError(400, "AI generation is disabled for this field.")
        hint_error = validate_user_hint(user_hint)
        if hint_error:
            raise FieldGenerationError(400, hint_error)

        profile = await self._profiles.get_bot_profile(bot_id) or BotProfile(bot_id=bot_id)
        ctx = FieldContext(
            business_name=profile.business_name,
            business_type=profile.business_type,
            product_name=profile.product_name,
            user_hint=(user_hint or "").strip(),
            current_value=(current_value or "").strip(),
        )
        prompt = build_field_prompt(kind, ctx)
        try:
            output = await self._invoker.generate(prompt, self._model, FIELD_TEMPERATURE[kind])
        except ModelInvocationError as exc:
            metrics.inc("field_generation_total", {"result": "model_error"})
            raise FieldGenerationError(500, "Internal server error") from exc

        text = output.text.strip()
        if text == REJECT_TOKEN:
            metrics.inc("field_generation_total", {"result": "rejected"})
            raise FieldGenerationError(400, "Cannot generate this field from the provided input.")
        if kind is FieldKind.PERSONA and _PERSONA_FORMAT_RE.search(text):
            metrics.inc("field_generation_total", {"result": "format_violation"})
            raise FieldGenerationError(422, "Persona format violation. Please retry.")
        metrics.inc("field_generation_total", {"result": "ok"})
        if kind is FieldKind.QUICK_QUESTIONS:
            return _parse_quick_questions(text)
        return text
