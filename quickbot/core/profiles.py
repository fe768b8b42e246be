from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

import pymysql
import pymysql.cursors

from quickbot.core.cache import CacheClient
from quickbot.core.metrics import metrics
from quickbot.core.settings import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BotProfile:
    bot_id: str
    persona: str = ""
    mission: str = ""
    fallback_message: str = ""
    business_name: str = ""
    allowed_models: tuple[str, ...] = field(default_factory=tuple)
    business_type: str = ""
    business_description: str = ""
    product_name: str = ""
    product_description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["allowed_models"] = list(self.allowed_models)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BotProfile":
        return cls(
            bot_id=str(data.get("bot_id") or ""),
            persona=_text(data.get("persona")),
            mission=_text(data.get("mission")),
            fallback_message=_raw_text(data.get("fallback_message")),
            business_name=_text(data.get("business_name")),
            allowed_models=_models(data.get("allowed_models")),
            business_type=_text(data.get("business_type")),
            business_description=_text(data.get("business_description")),
            product_name=_text(data.get("product_name")),
            product_description=_text(data.get("product_description")),
        )


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _raw_text(value: Any) -> str:
    # the fallback message is returned verbatim, so keep it as stored
    if value is None:
        return ""
    return str(value)


def _models(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            value = value.split(",")
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(str(item).strip() for item in value if str(item).strip())


def hash_api_key(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class BotProfileStore:
    async def get_bot_profile(self, bot_id: str) -> Optional[BotProfile]:
        raise NotImplementedError

    async def lookup_api_key(self, token: str) -> Optional[str]:
        """Return the bot id bound to ``token``, or None."""
        raise NotImplementedError


_PROFILE_SQL = """
SELECT
    b.id AS bot_id,
    c.persona,
    c.botthesis AS mission,
    c.fallback_message,
    s.business_name,
    s.business_type,
    s.business_description,
    s.product_name,
    s.product_description,
    s.allowed_models
FROM bots b
LEFT JOIN bot_configs c ON c.bot_id = b.id
LEFT JOIN bot_settings s ON s.bot_id = b.id
WHERE b.id = %s
LIMIT 1
"""

_API_KEY_SQL = """
SELECT bot_id FROM api_keys
WHERE key_hash = %s AND revoked_at IS NULL
LIMIT 1
"""


class MySQLBotProfileStore(BotProfileStore):
    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def _connect(self):
        timeout = max(0.05, self._settings.db_connect_timeout_ms / 1000.0)
        return pymysql.connect(
            host=self._settings.db_host,
            port=self._settings.db_port,
            user=self._settings.db_user,
            password=self._settings.db_password,
            database=self._settings.db_name,
            charset="utf8mb4",
            autocommit=True,
            connect_timeout=timeout,
            read_timeout=timeout,
            write_timeout=timeout,
            cursorclass=pymysql.cursors.DictCursor,
        )

    def _fetch_one(self, sql: str, params: tuple) -> Optional[Dict[str, Any]]:
        connection = self._connect()
        try:
            with connection.cursor() as cursor:
                cursor.execute(sql, params)
                return cursor.fetchone()
        finally:
            connection.close()

    async def get_bot_profile(self, bot_id: str) -> Optional[BotProfile]:
        row = await asyncio.to_thread(self._fetch_one, _PROFILE_SQL, (bot_id,))
        if not row:
            return None
        return BotProfile.from_dict(row)

    async def lookup_api_key(self, token: str) -> Optional[str]:
        row = await asyncio.to_thread(self._fetch_one, _API_KEY_SQL, (hash_api_key(token),))
        if not row or not row.get("bot_id"):
            return None
        return str(row["bot_id"])


class CachedBotProfileStore(BotProfileStore):
    """Read-through cache in front of another store. API keys are not cached."""

    def __init__(self, store: BotProfileStore, cache: CacheClient, ttl_sec: int = 300) -> None:
        self._store = store
        self._cache = cache
        self._ttl = ttl_sec

    @staticmethod
    def cache_key(bot_id: str) -> str:
        return f"bot_profile:{bot_id}"

    async def get_bot_profile(self, bot_id: str) -> Optional[BotProfile]:
        if self._ttl > 0:
            cached = await self._cache.get_json(self.cache_key(bot_id))
            if isinstance(cached, dict) and cached.get("bot_id"):
                metrics.inc("chat_profile_cache_total", {"result": "hit"})
                return BotProfile.from_dict(cached)
        metrics.inc("chat_profile_cache_total", {"result": "miss"})
        profile = await self._store.get_bot_profile(bot_id)
        if profile is not None and self._ttl > 0:
            await self._cache.set_json(self.cache_key(bot_id), profile.to_dict(), ttl=self._ttl)
        return profile

    async def invalidate(self, bot_id: str) -> None:
        await self._cache.delete(self.cache_key(bot_id))

    async def lookup_api_key(self, token: str) -> Optional[str]:
        return await self._store.lookup_api_key(token)
