import time
from typing import Dict, List, Optional

import pytest

from quickbot.core.chat_log import ChatLogEntry, ChatLogger, ChatLogSink
from quickbot.core.limiter import MemorySlidingWindowLimiter
from quickbot.core.llm import ModelInvocationError, ModelOutput
from quickbot.core.metrics import metrics
from quickbot.core.pipeline import ChatPipeline, ChatTurnRequest
from quickbot.core.profiles import BotProfile, BotProfileStore
from quickbot.core.rag import ContextRetriever
from quickbot.core.settings import Settings

FALLBACK = "Sorry, I can only help with Acme Widgets questions."
SESSION_ID = "sess_12345678"


class FakeProfileStore(BotProfileStore):
    def __init__(self, profiles: Optional[Dict[str, BotProfile]] = None, api_keys: Optional[Dict[str, str]] = None):
        self.profiles = profiles or {}
        self.api_keys = api_keys or {}
        self.profile_calls: List[str] = []
        self.key_calls: List[str] = []

    async def get_bot_profile(self, bot_id):
        self.profile_calls.append(bot_id)
        return self.profiles.get(bot_id)

    async def lookup_api_key(self, token):
        self.key_calls.append(token)
        return self.api_keys.get(token)


class FakeInvoker:
    max_tokens = 512

    def __init__(self, text: str = "", error: Optional[Exception] = None, tokens: Optional[int] = None):
        self.text = text
        self.error = error
        self.tokens = tokens
        self.calls: List[dict] = []
        self.generate_calls: List[dict] = []

    async def invoke(self, system_prompt, history, user_message, model, timeout_ms=None):
        self.calls.append(
            {"system_prompt": system_prompt, "history": list(history), "user_message": user_message, "model": model}
        )
        if self.error is not None:
            raise self.error
        return ModelOutput(text=self.text, model=model, tokens=self.tokens)

    async def generate(self, prompt, model, temperature, max_tokens=220):
        self.generate_calls.append({"prompt": prompt, "model": model, "temperature": temperature})
        if self.error is not None:
            raise self.error
        return ModelOutput(text=self.text, model=model)


class FakeIndex:
    configured = True

    def __init__(self, hits=None, error: Optional[Exception] = None):
        self.hits = hits or []
        self.error = error
        self.queries: List[tuple] = []
        self.upserts: List[list] = []

    async def search(self, query, bot_id, limit):
        self.queries.append((query, bot_id, limit))
        if self.error is not None:
            raise self.error
        return self.hits

    async def upsert(self, documents):
        if self.error is not None:
            raise self.error
        self.upserts.append(documents)


class MemorySink(ChatLogSink):
    name = "memory"

    def __init__(self):
        self.entries: List[ChatLogEntry] = []

    def write(self, entry):
        self.entries.append(entry)


class SlowFirstSink(MemorySink):
    """Stalls on its first write only."""

    def __init__(self, delay: float = 0.2):
        super().__init__()
        self.delay = delay

    def write(self, entry):
        if not self.entries and self.delay:
            delay, self.delay = self.delay, 0
            time.sleep(delay)
        super().write(entry)


class FailingSink(ChatLogSink):
    name = "failing"

    def write(self, entry):
        raise RuntimeError("log store down")


def make_profile(**overrides) -> BotProfile:
    data = {
        "bot_id": "bot-1",
        "persona": "Friendly support agent for Acme Widgets.",
        "mission": "Help customers choose and maintain Acme widgets.",
        "fallback_message": FALLBACK,
        "business_name": "Acme Widgets",
    }
    data.update(overrides)
    return BotProfile(**data)


def make_request(message: str = "How do I reset my widget?", **overrides) -> ChatTurnRequest:
    data = {"bot_id": "bot-1", "session_id": SESSION_ID, "message": message}
    data.update(overrides)
    return ChatTurnRequest(**data)


def make_pipeline(
    invoker=None,
    profiles=None,
    index=None,
    sinks=None,
    limiter=None,
    settings=None,
) -> ChatPipeline:
    settings = settings or Settings()
    return ChatPipeline(
        settings=settings,
        profiles=profiles or FakeProfileStore({"bot-1": make_profile()}),
        limiter=limiter or MemorySlidingWindowLimiter(settings.rate_limit_requests, settings.rate_limit_window_sec),
        retriever=ContextRetriever(index),
        invoker=invoker or FakeInvoker('{"answer": "ok", "suggestedQuestions": []}'),
        chat_logger=ChatLogger(sinks if sinks is not None else [MemorySink()], redact=False),
    )


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def model_timeout():
    return ModelInvocationError("timeout")
