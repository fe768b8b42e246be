"""Turn raw model text into a validated chat answer.

The model is asked for ``{"answer": str, "suggestedQuestions": [str]}`` but
may wrap it in markdown fences, surround it with prose, over-produce
questions, or encode the whole object a second time inside ``answer``.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional

from quickbot.core.metrics import metrics

MAX_SUGGESTED_QUESTIONS = 3
MAX_UNWRAP_DEPTH = 3

_FENCE_OPEN_RE = re.compile(r"^```[A-Za-z0-9_-]*\s*")
_FENCE_CLOSE_RE = re.compile(r"\s*```$")
_OBJECT_SPAN_RE = re.compile(r"\{.*\}", flags=re.DOTALL)


class OutputRepairError(ValueError):
    pass


@dataclass
class ChatTurnResult:
    answer: str
    suggested_questions: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"answer": self.answer, "suggestedQuestions": list(self.suggested_questions)}


def strip_fences(text: str) -> str:
    trimmed = (text or "").strip()
    if trimmed.startswith("```"):
        trimmed = _FENCE_OPEN_RE.sub("", trimmed, count=1)
        trimmed = _FENCE_CLOSE_RE.sub("", trimmed)
    return trimmed.strip()


def _loads_object(text: str) -> Optional[dict]:
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _extract_object(text: str) -> Optional[dict]:
    parsed = _loads_object(text)
    if parsed is not None:
        metrics.inc("chat_repair_total", {"stage": "direct"})
        return parsed
    match = _OBJECT_SPAN_RE.search(text)
    if match:
        parsed = _loads_object(match.group(0))
        if parsed is not None:
            metrics.inc("chat_repair_total", {"stage": "span"})
            return parsed
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        # first balanced object when the greedy span holds more than one
        try:
            parsed, _ = json.JSONDecoder().raw_decode(text[start:])
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            metrics.inc("chat_repair_total", {"stage": "span"})
            return parsed
    return None


def normalize_questions(raw: Any) -> List[str]:
    if not isinstance(raw, list):
        return []
    questions: List[str] = []
    for item in raw:
        if not isinstance(item, str):
            continue
        question = item.strip()
        if not question.endswith("?") or len(question) < 2:
            continue
        if question in questions:
            continue
        questions.append(question)
        if len(questions) >= MAX_SUGGESTED_QUESTIONS:
            break
    return questions


def _looks_like_object(text: str) -> bool:
    stripped = text.strip()
    return stripped.startswith("{") and stripped.endswith("}")


def _unwrap(answer: str, questions: List[str]) -> tuple[str, List[str]]:
    depth = 0
    while _looks_like_object(answer) and depth < MAX_UNWRAP_DEPTH:
        inner = _loads_object(answer.strip())
        if inner is None or not isinstance(inner.get("answer"), str):
            break
        metrics.inc("chat_repair_total", {"stage": "unwrap"})
        answer = inner["answer"].strip()
        if "suggestedQuestions" in inner:
            questions = normalize_questions(inner.get("suggestedQuestions"))
        depth += 1
    return answer, questions


def _is_encoded_answer(text: str) -> bool:
    if not _looks_like_object(text):
        return False
    inner = _loads_object(text.strip())
    return inner is not None and ("answer" in inner or "suggestedQuestions" in inner)


def parse_model_output(raw: str) -> ChatTurnResult:
    """Validate the model's reply, raising ``OutputRepairError`` when no
    usable ``answer`` can be recovered."""
    text = strip_fences(raw)
    if not text:
        raise OutputRepairError("empty model output")
    payload = _extract_object(text)
    if payload is None:
        raise OutputRepairError("no JSON object in model output")

    answer = payload.get("answer")
    if not isinstance(answer, str):
        raise OutputRepairError("answer is not a string")
    answer, questions = _unwrap(answer.strip(), normalize_questions(payload.get("suggestedQuestions")))
    answer = strip_fences(answer)
    if not answer:
        raise OutputRepairError("answer is empty")
    if _is_encoded_answer(answer):
        raise OutputRepairError("answer is still an encoded object")
    return ChatTurnResult(answer=answer, suggested_questions=questions)
