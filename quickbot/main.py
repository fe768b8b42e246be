import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from quickbot.api.routes import router as api_router
from quickbot.core.cache import CacheClient
from quickbot.core.chat_log import build_chat_logger
from quickbot.core.field_generation import FieldGenerator
from quickbot.core.limiter import build_limiter
from quickbot.core.llm import ModelInvoker
from quickbot.core.pipeline import ChatPipeline
from quickbot.core.profiles import CachedBotProfileStore, MySQLBotProfileStore
from quickbot.core.rag import ContextIngestor, ContextRetriever, build_search_index
from quickbot.core.settings import SETTINGS, Settings

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    pipeline: ChatPipeline
    ingestor: ContextIngestor
    field_generator: FieldGenerator
    closers: List[Callable[[], Awaitable[None]]] = field(default_factory=list)

    async def aclose(self) -> None:
        await self.pipeline.chat_logger.drain()
        for close in self.closers:
            try:
                await close()
            except Exception as exc:
                logger.warning("shutdown step failed: %s", exc)


def build_services(settings: Settings) -> AppServices:
    http = httpx.AsyncClient()
    cache = CacheClient.from_url(settings.redis_url)
    profiles = CachedBotProfileStore(MySQLBotProfileStore(settings), cache, ttl_sec=settings.profile_cache_ttl_sec)
    limiter = build_limiter(settings)
    index = build_search_index(settings, http)
    invoker = ModelInvoker.from_settings(settings, http)
    pipeline = ChatPipeline(
        settings=settings,
        profiles=profiles,
        limiter=limiter,
        retriever=ContextRetriever(index, top_k=settings.rag_top_k, max_chars=settings.rag_max_chars),
        invoker=invoker,
        chat_logger=build_chat_logger(settings),
    )
    return AppServices(
        pipeline=pipeline,
        ingestor=ContextIngestor(index, profiles),
        field_generator=FieldGenerator(invoker, profiles, settings.llm_default_model),
        closers=[http.aclose, limiter.close],
    )


def create_app(settings: Optional[Settings] = None, services: Optional[AppServices] = None) -> FastAPI:
    resolved = settings or SETTINGS

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.services is None
        if owned:
            app.state.services = build_services(resolved)
            logger.info(
                "quickbot chat service started provider=%s model=%s",
                resolved.llm_provider,
                resolved.llm_default_model,
            )
        try:
            yield
        finally:
            if owned:
                await app.state.services.aclose()
                app.state.services = None

    app = FastAPI(title="quickbot-chat-service", lifespan=lifespan)
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=resolved.cors_allow_origins,
        allow_origin_regex=resolved.cors_allow_origin_regex or None,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Session-Id", "X-Requested-With"],
        expose_headers=["x-trace-id", "x-request-id", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
    )
    app.include_router(api_router)
    return app


app = create_app()
