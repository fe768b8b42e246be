import os
from dataclasses import dataclass, field


def _split_items(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


DEFAULT_ALLOWED_MODELS = "llama3.1:8b,llama3:8b,mistral,mixtral,codellama"


@dataclass
class Settings:
    cors_allow_origins: list[str] = field(default_factory=lambda: ["*"])
    cors_allow_origin_regex: str = ""

    # chat request bounds
    max_message_chars: int = 2000
    max_history_entries: int = 20
    prompt_history_entries: int = 10
    default_fallback_message: str = "I'm not sure about that. Could you rephrase your question?"

    # admission control
    rate_limit_requests: int = 20
    rate_limit_window_sec: int = 60
    rate_limit_prefix: str = "ratelimit:chat"
    redis_url: str = ""

    # model backend
    llm_provider: str = "ollama"
    llm_base_url: str = "http://localhost:11434"
    llm_api_key: str = ""
    llm_default_model: str = "llama3.1:8b"
    llm_allowed_models: list[str] = field(default_factory=lambda: _split_items(DEFAULT_ALLOWED_MODELS))
    llm_timeout_ms: int = 50000
    llm_max_tokens: int = 512
    llm_temperature: float = 0.2

    # retrieval
    search_url: str = ""
    search_token: str = ""
    search_index: str = "bot-configs"
    rag_top_k: int = 3
    rag_max_chars: int = 1500
    rag_timeout_ms: int = 3000

    # bot profile store and cache
    db_host: str = "127.0.0.1"
    db_port: int = 3306
    db_name: str = "quickbot"
    db_user: str = "quickbot"
    db_password: str = "quickbot"
    db_connect_timeout_ms: int = 500
    profile_cache_ttl_sec: int = 300

    # interaction log sinks
    chat_log_path: str = ""
    chat_log_db_enabled: bool = False
    chat_log_redact: bool = True


def load_settings() -> Settings:
    origins = _split_items(os.getenv("QB_CORS_ALLOW_ORIGINS", ""))
    allowed_models = _split_items(os.getenv("QB_LLM_ALLOWED_MODELS", DEFAULT_ALLOWED_MODELS))
    default_model = os.getenv("QB_LLM_DEFAULT_MODEL", "llama3.1:8b").strip() or "llama3.1:8b"
    if default_model not in allowed_models:
        allowed_models.insert(0, default_model)
    return Settings(
        cors_allow_origins=origins or ["*"],
        cors_allow_origin_regex=os.getenv("QB_CORS_ALLOW_ORIGIN_REGEX", "").strip(),
        max_message_chars=max(100, int(os.getenv("QB_CHAT_MAX_MESSAGE_CHARS", "2000"))),
        max_history_entries=max(1, int(os.getenv("QB_CHAT_MAX_HISTORY_ENTRIES", "20"))),
        prompt_history_entries=max(0, int(os.getenv("QB_CHAT_PROMPT_HISTORY_ENTRIES", "10"))),
        default_fallback_message=os.getenv(
            "QB_CHAT_DEFAULT_FALLBACK_MESSAGE",
            "I'm not sure about that. Could you rephrase your question?",
        ),
        rate_limit_requests=max(1, int(os.getenv("QB_RATE_LIMIT_REQUESTS", "20"))),
        rate_limit_window_sec=max(1, int(os.getenv("QB_RATE_LIMIT_WINDOW_SEC", "60"))),
        rate_limit_prefix=os.getenv("QB_RATE_LIMIT_PREFIX", "ratelimit:chat").strip() or "ratelimit:chat",
        redis_url=os.getenv("QB_REDIS_URL", "").strip(),
        llm_provider=os.getenv("QB_LLM_PROVIDER", "ollama").strip().lower(),
        llm_base_url=os.getenv("QB_LLM_BASE_URL", "http://localhost:11434").rstrip("/"),
        llm_api_key=os.getenv("QB_LLM_API_KEY", ""),
        llm_default_model=default_model,
        llm_allowed_models=allowed_models,
        llm_timeout_ms=max(1000, int(os.getenv("QB_LLM_TIMEOUT_MS", "50000"))),
        llm_max_tokens=max(16, int(os.getenv("QB_LLM_MAX_TOKENS", "512"))),
        llm_temperature=min(2.0, max(0.0, float(os.getenv("QB_LLM_TEMPERATURE", "0.2")))),
        search_url=os.getenv("QB_SEARCH_URL", "").rstrip("/"),
        search_token=os.getenv("QB_SEARCH_TOKEN", ""),
        search_index=os.getenv("QB_SEARCH_INDEX", "bot-configs").strip() or "bot-configs",
        rag_top_k=max(1, int(os.getenv("QB_RAG_TOP_K", "3"))),
        rag_max_chars=max(100, int(os.getenv("QB_RAG_MAX_CHARS", "1500"))),
        rag_timeout_ms=max(100, int(os.getenv("QB_RAG_TIMEOUT_MS", "3000"))),
        db_host=os.getenv("QB_DB_HOST", "127.0.0.1").strip(),
        db_port=max(1, int(os.getenv("QB_DB_PORT", "3306"))),
        db_name=os.getenv("QB_DB_NAME", "quickbot").strip(),
        db_user=os.getenv("QB_DB_USER", "quickbot").strip(),
        db_password=os.getenv("QB_DB_PASSWORD", "quickbot"),
        db_connect_timeout_ms=max(50, int(os.getenv("QB_DB_CONNECT_TIMEOUT_MS", "500"))),
        profile_cache_ttl_sec=max(0, int(os.getenv("QB_PROFILE_CACHE_TTL_SEC", "300"))),
        chat_log_path=os.getenv("QB_CHAT_LOG_PATH", "var/quickbot/chat_log.jsonl").strip(),
        chat_log_db_enabled=_env_bool("QB_CHAT_LOG_DB_ENABLED", "false"),
        chat_log_redact=_env_bool("QB_CHAT_LOG_REDACT", "true"),
    )


SETTINGS = load_settings()
