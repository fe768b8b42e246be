import json
from typing import Optional, Sequence

from quickbot.core.profiles import BotProfile

ACKNOWLEDGEMENT_REPLY = "You're welcome"
FAREWELL_REPLY = "See you later!"
MAX_SUGGESTED_QUESTIONS = 3

DEFAULT_PERSONA = "Professional, concise assistant"
DEFAULT_MISSION = "Answer user questions strictly within scope."
DEFAULT_BUSINESS_NAME = "this service"


def answer_word_budget(max_tokens: int) -> int:
    # leaves headroom for the JSON envelope and suggested questions
    return max(30, int(max_tokens * 0.5))


def resolve_fallback(profile: BotProfile, default_fallback: str) -> str:
    """The profile fallback verbatim, or the default when it is blank."""
    if profile.fallback_message.strip():
        return profile.fallback_message
    return default_fallback


def _json_reply(answer: str) -> str:
    return json.dumps({"answer": answer, "suggestedQuestions": []}, ensure_ascii=False)


def _format_context(rag_context: Sequence[str]) -> str:
    lines = []
    for idx, snippet in enumerate(rag_context, start=1):
        text = " ".join(snippet.split())
        if text:
            lines.append(f"[{idx}] {text}")
    return "\n".join(lines)


def build_system_prompt(
    profile: BotProfile,
    rag_context: Optional[Sequence[str]] = None,
    max_tokens: int = 512,
    default_fallback: str = "",
) -> str:
    business = profile.business_name or DEFAULT_BUSINESS_NAME
    fallback = resolve_fallback(profile, default_fallback)
    context_block = _format_context(rag_context or [])
    words = answer_word_budget(max_tokens)

    sections = [
        f"""--- IDENTITY ---
You are the assistant of {business}. You speak only on behalf of {business}.
Never describe yourself as an AI model, a language model, or a general-purpose
assistant, and never mention any model vendor.

--- ROLE ---
{profile.persona or DEFAULT_PERSONA}

--- PRIMARY OBJECTIVE ---
{profile.mission or DEFAULT_MISSION}""",
        """--- HARD SCOPE RULE ---
Your knowledge is LIMITED to:
- the configuration in this message,
- the current conversation,
- the REFERENCE CONTEXT below, when present.
Nothing else exists. Do not use outside knowledge, do not guess, and do not
invent features, prices, policies, people, or contact details.
Never claim monitoring, notifications, backups, human handoff, security
guarantees, compliance certifications, or admin dashboards unless the
configuration states them.
Never ask for passwords, payment details, or other sensitive personal data.""",
    ]
    if context_block:
        sections.append(f"--- REFERENCE CONTEXT ---\n{context_block}")
    sections.extend(
        [
            f"""--- FALLBACK RULE ---
If the question is out of scope, unclear, meaningless, or you are not certain
the answer is supported by the allowed knowledge, reply with exactly:
{_json_reply(fallback)}
Copy the fallback text character for character. Never paraphrase, shorten,
translate, or extend it.""",
            f"""--- CONVERSATION CONTROL ---
If the user only thanks you or acknowledges an answer, reply with exactly:
{_json_reply(ACKNOWLEDGEMENT_REPLY)}
If the user says goodbye, reply with exactly:
{_json_reply(FAREWELL_REPLY)}
Any other small talk or filler must use the FALLBACK RULE.""",
            f"""--- OUTPUT FORMAT ---
Your ENTIRE response must be ONE JSON object and nothing else:
{{"answer": string, "suggestedQuestions": string[]}}
- "answer" is plain text. Never put JSON, code fences, or markdown inside it.
- "suggestedQuestions" holds 0 to {MAX_SUGGESTED_QUESTIONS} short follow-up questions the user could ask
  next, each within scope and each ending with "?".
- No text before or after the JSON object. No ``` fences.""",
            f"""--- LENGTH ---
Keep "answer" under {words} words. Be direct; do not repeat the question.""",
        ]
    )
    return "\n\n".join(sections).strip()
