from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from quickbot.core.chat_log import ChatLogEntry, ChatLogger, snapshot_history
from quickbot.core.limiter import SlidingWindowLimiter, rate_limit_key
from quickbot.core.llm import ModelInvocationError, ModelInvoker, estimate_tokens, resolve_model, trim_history
from quickbot.core.metrics import metrics
from quickbot.core.profiles import BotProfile, BotProfileStore
from quickbot.core.prompt import build_system_prompt, resolve_fallback
from quickbot.core.rag import ContextRetriever
from quickbot.core.repair import ChatTurnResult, OutputRepairError, parse_model_output
from quickbot.core.sanitizer import is_gibberish
from quickbot.core.scope import is_obviously_out_of_scope
from quickbot.core.settings import Settings

logger = logging.getLogger(__name__)

SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{8,64}$")
VALID_ROLES = {"user", "assistant"}

NOT_UNDERSTANDABLE_MESSAGE = "Message not understandable. Please rephrase."
MODEL_FAILED_MESSAGE = "Model invocation failed"


class ChatError(Exception):
    def __init__(self, status_code: int, code: str, message: str, headers: Optional[Dict[str, str]] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.headers = headers or {}


@dataclass
class ChatTurnRequest:
    bot_id: str
    session_id: Optional[str]
    message: str
    chat_history: List[Dict[str, str]] = field(default_factory=list)
    api_key_token: Optional[str] = None
    model_override: Optional[str] = None
    trace_id: Optional[str] = None
    request_id: Optional[str] = None


def is_valid_session_id(raw: Optional[str]) -> bool:
    return isinstance(raw, str) and SESSION_ID_RE.fullmatch(raw) is not None


class ChatPipeline:
    """Per-message chat flow.

    validate -> authenticate -> sanitize -> admit -> load profile -> retrieve
    context -> short-circuit -> prompt -> invoke -> repair -> log
    """

    def __init__(
        self,
        settings: Settings,
        profiles: BotProfileStore,
        limiter: SlidingWindowLimiter,
        retriever: ContextRetriever,
        invoker: ModelInvoker,
        chat_logger: ChatLogger,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.settings = settings
        self.profiles = profiles
        self.limiter = limiter
        self.retriever = retriever
        self.invoker = invoker
        self.chat_logger = chat_logger
        self._clock = clock

    async def run(self, request: ChatTurnRequest) -> ChatTurnResult:
        started = self._clock()
        self._validate(request)
        if request.api_key_token is not None:
            await self._authenticate(request)

        if is_gibberish(request.message):
            metrics.inc("chat_rejected_total", {"reason": "gibberish"})
            self._log_turn(request, NOT_UNDERSTANDABLE_MESSAGE, started)
            raise ChatError(400, "message_not_understandable", NOT_UNDERSTANDABLE_MESSAGE)

        decision = await self.limiter.limit(rate_limit_key(request.bot_id, str(request.session_id)))
        if not decision.allowed:
            metrics.inc("chat_rejected_total", {"reason": "rate_limited"})
            raise ChatError(
                429,
                "rate_limited",
                "Too many requests. Please slow down.",
                headers={
                    "X-RateLimit-Remaining": str(decision.remaining),
                    "X-RateLimit-Reset": str(decision.reset_at),
                    "Retry-After": str(decision.retry_after),
                },
            )

        profile = await self.profiles.get_bot_profile(request.bot_id)
        if profile is None:
            metrics.inc("chat_rejected_total", {"reason": "bot_not_found"})
            raise ChatError(404, "bot_not_found", "Bot not found")
        fallback = self.fallback_message(profile)

        context = await self.retriever.retrieve(request.bot_id, request.message)
        if not context and is_obviously_out_of_scope(request.message):
            metrics.inc("chat_turn_total", {"outcome": "short_circuit"})
            result = ChatTurnResult(answer=fallback, suggested_questions=[])
            self._log_turn(request, result.answer, started)
            return result

        model = resolve_model(request.model_override, self._allowed_models(profile), self.settings.llm_default_model)
        system_prompt = build_system_prompt(
            profile,
            context,
            max_tokens=self.invoker.max_tokens,
            default_fallback=self.settings.default_fallback_message,
        )
        history = trim_history(request.chat_history, self.settings.prompt_history_entries)
        try:
            output = await self.invoker.invoke(system_prompt, history, request.message, model)
        except ModelInvocationError as exc:
            metrics.inc("chat_turn_total", {"outcome": "model_error"})
            logger.warning("chat turn for bot %s failed at model stage: %s", request.bot_id, exc.reason)
            self._log_turn(request, MODEL_FAILED_MESSAGE, started, model=model)
            raise ChatError(500, "model_invocation_failed", MODEL_FAILED_MESSAGE) from exc

        try:
            result = parse_model_output(output.text)
            metrics.inc("chat_turn_total", {"outcome": "answered"})
        except OutputRepairError as exc:
            logger.warning("unusable model output for bot %s, using fallback: %s", request.bot_id, exc)
            metrics.inc("chat_turn_total", {"outcome": "repair_fallback"})
            result = ChatTurnResult(answer=fallback, suggested_questions=[])

        tokens = output.tokens or estimate_tokens(result.answer + request.message)
        self._log_turn(request, result.answer, started, tokens=tokens, model=model)
        return result

    def fallback_message(self, profile: BotProfile) -> str:
        return resolve_fallback(profile, self.settings.default_fallback_message)

    def _allowed_models(self, profile: BotProfile) -> List[str]:
        allowed = list(self.settings.llm_allowed_models)
        if profile.allowed_models:
            narrowed = [name for name in allowed if name in profile.allowed_models]
            if narrowed:
                return narrowed
        return allowed

    def _validate(self, request: ChatTurnRequest) -> None:
        if not isinstance(request.bot_id, str) or not request.bot_id.strip():
            raise ChatError(400, "invalid_request", "Missing bot id")
        if not request.session_id:
            raise ChatError(400, "missing_session_id", "Missing x-session-id header")
        if not is_valid_session_id(request.session_id):
            raise ChatError(400, "invalid_session_id", "Invalid session id")
        if not isinstance(request.message, str) or not request.message.strip():
            raise ChatError(400, "invalid_request", "Message must not be empty")
        if len(request.message) > self.settings.max_message_chars:
            raise ChatError(400, "message_too_long", "Message is too long")
        if len(request.chat_history) > self.settings.max_history_entries:
            raise ChatError(400, "history_too_long", "Chat history is too long")
        for item in request.chat_history:
            if item.get("role") not in VALID_ROLES or not isinstance(item.get("content"), str):
                raise ChatError(400, "invalid_request", "Invalid chat history entry")
            if len(item["content"]) > self.settings.max_message_chars:
                raise ChatError(400, "message_too_long", "Chat history entry is too long")

    async def _authenticate(self, request: ChatTurnRequest) -> None:
        token = (request.api_key_token or "").strip()
        bound_bot = await self.profiles.lookup_api_key(token) if token else None
        if bound_bot is None or bound_bot != request.bot_id:
            metrics.inc("chat_rejected_total", {"reason": "invalid_api_key"})
            raise ChatError(401, "invalid_api_key", "Invalid API key")

    def _log_turn(
        self,
        request: ChatTurnRequest,
        answer: str,
        started: float,
        tokens: Optional[int] = None,
        model: Optional[str] = None,
    ) -> None:
        history = snapshot_history(request.chat_history)
        elapsed_ms = int((self._clock() - started) * 1000)
        common = {
            "bot_id": request.bot_id,
            "session_id": str(request.session_id),
            "trace_id": request.trace_id,
            "request_id": request.request_id,
        }
        self.chat_logger.emit_turn(
            ChatLogEntry(role="user", message=request.message, history=history, **common),
            ChatLogEntry(
                role="assistant",
                message=answer,
                history=[],
                tokens_used=tokens,
                response_time_ms=elapsed_ms,
                model=model,
                **common,
            ),
        )
