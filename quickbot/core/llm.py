from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx

from quickbot.core.metrics import metrics
from quickbot.core.settings import Settings

logger = logging.getLogger(__name__)

RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "answer": {"type": "string"},
        "suggestedQuestions": {
            "type": "array",
            "items": {"type": "string"},
            "maxItems": 3,
        },
    },
    "required": ["answer", "suggestedQuestions"],
}

SUPPORTED_PROVIDERS = {"ollama", "openai_compat"}


class ModelInvocationError(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass
class ModelOutput:
    text: str
    model: str
    tokens: Optional[int] = None


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return max(1, math.ceil(len(text) / 4))


def resolve_model(override: Optional[str], allowed: Sequence[str], default: str) -> str:
    """Pick the model for a turn. Unknown overrides degrade to the default, never reject."""
    candidates = [name for name in allowed if name]
    if override and override.strip() in candidates:
        return override.strip()
    if default in candidates or not candidates:
        return default
    return candidates[0]


def trim_history(history: Sequence[Dict[str, str]], keep: int) -> List[Dict[str, str]]:
    if keep <= 0:
        return []
    messages = [
        {"role": item["role"], "content": item["content"]}
        for item in history
        if item.get("role") in {"user", "assistant"} and isinstance(item.get("content"), str) and item["content"].strip()
    ]
    return messages[-keep:]


class ModelInvoker:
    def __init__(
        self,
        http: httpx.AsyncClient,
        provider: str,
        base_url: str,
        api_key: str = "",
        temperature: float = 0.2,
        max_tokens: int = 512,
        timeout_ms: int = 50000,
    ) -> None:
        if provider not in SUPPORTED_PROVIDERS:
            raise ValueError(f"Unknown LLM provider: {provider}")
        self._http = http
        self.provider = provider
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout_ms = timeout_ms

    @classmethod
    def from_settings(cls, settings: Settings, http: httpx.AsyncClient) -> "ModelInvoker":
        return cls(
            http,
            provider=settings.llm_provider,
            base_url=settings.llm_base_url,
            api_key=settings.llm_api_key,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            timeout_ms=settings.llm_timeout_ms,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"content-type": "application/json"}
        if self._api_key:
            headers["authorization"] = f"Bearer {self._api_key}"
        return headers

    async def invoke(
        self,
        system_prompt: str,
        history: Sequence[Dict[str, str]],
        user_message: str,
        model: str,
        timeout_ms: Optional[int] = None,
    ) -> ModelOutput:
        messages = [{"role": "system", "content": system_prompt}]
        messages.extend(history)
        messages.append({"role": "user", "content": user_message})
        if self.provider == "ollama":
            path = "/api/chat"
            body: Dict[str, Any] = {
                "model": model,
                "messages": messages,
                "stream": False,
                "format": RESPONSE_SCHEMA,
                "options": {"temperature": self.temperature, "num_predict": self.max_tokens},
            }
        else:
            path = "/chat/completions"
            body = {
                "model": model,
                "messages": messages,
                "temperature": self.temperature,
                "max_tokens": self.max_tokens,
                "response_format": {"type": "json_object"},
                "stream": False,
            }
        data = await self._call(path, body, model, timeout_ms or self.timeout_ms)
        text = _extract_content(data)
        return ModelOutput(text=text, model=model, tokens=_extract_tokens(data))

    async def generate(self, prompt: str, model: str, temperature: float, max_tokens: int = 220) -> ModelOutput:
        """Single free-text completion, used for configuration field drafting."""
        if self.provider == "ollama":
            path = "/api/generate"
            body: Dict[str, Any] = {
                "model": model,
                "prompt": prompt,
                "stream": False,
                "options": {
                    "temperature": temperature,
                    "num_predict": max_tokens,
                    "top_p": 0.9,
                    "repeat_penalty": 1.1,
                },
            }
        else:
            path = "/chat/completions"
            body = {
                "model": model,
                "messages": [{"role": "user", "content": prompt}],
                "temperature": temperature,
                "max_tokens": max_tokens,
                "top_p": 0.9,
                "stream": False,
            }
        data = await self._call(path, body, model, self.timeout_ms)
        return ModelOutput(text=_extract_content(data).strip(), model=model, tokens=_extract_tokens(data))

    async def _call(self, path: str, body: Dict[str, Any], model: str, timeout_ms: int) -> Dict[str, Any]:
        timeout = max(timeout_ms, 1) / 1000.0
        try:
            # wait_for cancels the request task, so the connection is abandoned on timeout
            response = await asyncio.wait_for(
                self._http.post(f"{self._base_url}{path}", json=body, headers=self._headers(), timeout=timeout + 1.0),
                timeout=timeout,
            )
            response.raise_for_status()
            data = response.json()
        except asyncio.TimeoutError as exc:
            metrics.inc("chat_llm_call_total", {"result": "timeout"})
            logger.warning("model %s timed out after %dms", model, timeout_ms)
            raise ModelInvocationError("timeout") from exc
        except httpx.TimeoutException as exc:
            metrics.inc("chat_llm_call_total", {"result": "timeout"})
            logger.warning("model %s transport timeout: %s", model, exc)
            raise ModelInvocationError("timeout") from exc
        except httpx.HTTPStatusError as exc:
            metrics.inc("chat_llm_call_total", {"result": "http_error"})
            logger.warning("model %s returned status %s", model, exc.response.status_code)
            raise ModelInvocationError("provider_error") from exc
        except Exception as exc:
            metrics.inc("chat_llm_call_total", {"result": "error"})
            logger.warning("model %s invocation failed: %s", model, exc)
            raise ModelInvocationError("provider_error") from exc
        if not isinstance(data, dict):
            metrics.inc("chat_llm_call_total", {"result": "bad_payload"})
            raise ModelInvocationError("bad_payload")
        metrics.inc("chat_llm_call_total", {"result": "ok"})
        return data


def _extract_content(data: Dict[str, Any]) -> str:
    message = data.get("message")
    if isinstance(message, dict) and message.get("content") is not None:
        return str(message["content"])
    if data.get("response") is not None:
        return str(data["response"])
    choices = data.get("choices")
    if isinstance(choices, list) and choices:
        choice = choices[0]
        if isinstance(choice, dict):
            inner = choice.get("message")
            if isinstance(inner, dict) and inner.get("content") is not None:
                return str(inner["content"])
            if choice.get("text") is not None:
                return str(choice["text"])
    return ""


def _extract_tokens(data: Dict[str, Any]) -> Optional[int]:
    usage = data.get("usage")
    if isinstance(usage, dict):
        total = usage.get("total_tokens")
        if isinstance(total, int) and total > 0:
            return total
    prompt_count = data.get("prompt_eval_count")
    eval_count = data.get("eval_count")
    if isinstance(prompt_count, int) and isinstance(eval_count, int):
        return prompt_count + eval_count
    return None
