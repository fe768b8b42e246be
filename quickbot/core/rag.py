from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from quickbot.core.metrics import metrics
from quickbot.core.profiles import BotProfileStore
from quickbot.core.settings import Settings

logger = logging.getLogger(__name__)

INGEST_FIELDS = ("persona", "mission")


class SearchIndexClient:
    """Minimal client for the hosted search index that stores bot configuration text."""

    def __init__(self, http: httpx.AsyncClient, base_url: str, token: str, index: str, timeout_ms: int = 3000) -> None:
        self._http = http
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._index = index
        self._timeout = max(0.1, timeout_ms / 1000.0)

    @property
    def configured(self) -> bool:
        return bool(self._base_url)

    def _headers(self) -> Dict[str, str]:
        headers = {"content-type": "application/json"}
        if self._token:
            headers["authorization"] = f"Bearer {self._token}"
        return headers

    async def search(self, query: str, bot_id: str, limit: int) -> List[Dict[str, Any]]:
        payload = {
            "query": query,
            "topK": limit,
            "includeData": True,
            "filter": f"botId = '{_escape_filter(bot_id)}'",
        }
        resp = await self._http.post(
            f"{self._base_url}/search/{self._index}",
            json=payload,
            headers=self._headers(),
            timeout=self._timeout,
        )
        resp.raise_for_status()
        data = resp.json()
        hits = data.get("result") if isinstance(data, dict) else data
        return [hit for hit in hits or [] if isinstance(hit, dict)]

    async def upsert(self, documents: List[Dict[str, Any]]) -> None:
        resp = await self._http.post(
            f"{self._base_url}/upsert/{self._index}",
            json=documents,
            headers=self._headers(),
            timeout=self._timeout,
        )
        resp.raise_for_status()


def _escape_filter(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _hit_text(hit: Dict[str, Any]) -> Optional[str]:
    content = hit.get("content")
    text = content.get("text") if isinstance(content, dict) else None
    if not isinstance(text, str):
        return None
    text = text.strip()
    return text or None


class ContextRetriever:
    def __init__(self, index: Optional[SearchIndexClient], top_k: int = 3, max_chars: int = 1500) -> None:
        self._index = index
        self._top_k = max(1, top_k)
        self._max_chars = max(1, max_chars)

    async def retrieve(self, bot_id: str, query: str) -> List[str]:
        """Best-effort search for configuration snippets relevant to ``query``.

        Never raises: an unconfigured index, a network failure or a malformed
        reply all yield an empty list.
        """
        if self._index is None or not self._index.configured:
            return []
        try:
            hits = await self._index.search(query, bot_id, self._top_k)
        except Exception as exc:
            logger.warning("context retrieval failed for bot %s, continuing without context: %s", bot_id, exc)
            metrics.inc("chat_rag_retrieve_error_total")
            return []
        contexts: List[str] = []
        for hit in hits:
            metadata = hit.get("metadata")
            if isinstance(metadata, dict) and metadata.get("botId") not in (None, bot_id):
                continue
            text = _hit_text(hit)
            if text is None:
                continue
            contexts.append(text[: self._max_chars])
            if len(contexts) >= self._top_k:
                break
        metrics.inc("chat_rag_retrieve_total")
        return contexts


class ContextIngestor:
    def __init__(self, index: Optional[SearchIndexClient], profiles: BotProfileStore) -> None:
        self._index = index
        self._profiles = profiles

    async def ingest_bot_content(self, bot_id: str) -> bool:
        if self._index is None or not self._index.configured:
            logger.warning("search index not configured, skipping ingestion for bot %s", bot_id)
            return False
        try:
            profile = await self._profiles.get_bot_profile(bot_id)
            if profile is None:
                logger.warning("ingestion skipped, bot %s not found", bot_id)
                return False
            documents = []
            for name in INGEST_FIELDS:
                text = getattr(profile, name).strip()
                if not text:
                    continue
                documents.append(
                    {
                        "id": f"bot:{bot_id}:{name}",
                        "content": {"text": text},
                        "metadata": {"botId": bot_id, "field": name},
                    }
                )
            if documents:
                await self._index.upsert(documents)
            metrics.inc("rag_ingest_total", {"result": "ok"})
            logger.info("ingested %d documents for bot %s", len(documents), bot_id)
            return True
        except Exception as exc:
            logger.warning("ingestion failed for bot %s: %s", bot_id, exc)
            metrics.inc("rag_ingest_total", {"result": "error"})
            return False


def build_search_index(settings: Settings, http: httpx.AsyncClient) -> Optional[SearchIndexClient]:
    if not settings.search_url:
        return None
    return SearchIndexClient(
        http,
        settings.search_url,
        settings.search_token,
        settings.search_index,
        timeout_ms=settings.rag_timeout_ms,
    )
