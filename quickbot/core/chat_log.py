from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Sequence, Set

import pymysql

from quickbot.core.metrics import metrics
from quickbot.core.settings import Settings

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"\b[A-Z0-9._%+\-]+@[A-Z0-9.\-]+\.[A-Z]{2,}\b", flags=re.IGNORECASE)
_PHONE_RE = re.compile(r"(?<![\w])\+?\d[\d\s().\-]{7,}\d(?![\w])")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def redact_text(raw: str) -> str:
    text = _EMAIL_RE.sub("[REDACTED:EMAIL]", str(raw or ""))
    return _PHONE_RE.sub("[REDACTED:PHONE]", text)


@dataclass
class ChatLogEntry:
    bot_id: str
    session_id: str
    role: str
    message: str
    history: List[Dict[str, str]] = field(default_factory=list)
    tokens_used: Optional[int] = None
    response_time_ms: Optional[int] = None
    model: Optional[str] = None
    trace_id: Optional[str] = None
    request_id: Optional[str] = None
    created_at: str = field(default_factory=now_iso)

    def redacted(self) -> "ChatLogEntry":
        data = asdict(self)
        data["message"] = redact_text(self.message)
        data["history"] = [
            {"role": item.get("role", ""), "content": redact_text(item.get("content", ""))} for item in self.history
        ]
        return ChatLogEntry(**data)


class ChatLogSink:
    name = "sink"

    def write(self, entry: ChatLogEntry) -> None:
        raise NotImplementedError


class JsonlChatLogSink(ChatLogSink):
    name = "file"

    def __init__(self, path: str) -> None:
        self._path = Path(path)

    def write(self, entry: ChatLogEntry) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(asdict(entry), ensure_ascii=False) + "\n")


class MySQLChatLogSink(ChatLogSink):
    name = "db"

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def write(self, entry: ChatLogEntry) -> None:
        timeout = max(0.05, self._settings.db_connect_timeout_ms / 1000.0)
        connection = pymysql.connect(
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
        )
        try:
            with connection.cursor() as cursor:
                cursor.execute(
                    """
                    INSERT INTO chat_logs (
                        bot_id,
                        session_id,
                        role,
                        message,
                        history_json,
                        tokens_used,
                        response_time_ms,
                        model,
                        trace_id,
                        request_id
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        entry.bot_id,
                        entry.session_id,
                        entry.role,
                        entry.message,
                        json.dumps(entry.history, ensure_ascii=False),
                        entry.tokens_used,
                        entry.response_time_ms,
                        entry.model,
                        entry.trace_id,
                        entry.request_id,
                    ),
                )
        finally:
            connection.close()


class ChatLogger:
    """Fire-and-forget writer for chat turns.

    ``emit_turn`` returns immediately. The entries of one turn are written by a
    single task in the order given, and writes from different turns never
    interleave within a sink. Sink failures are counted and logged but never
    reach the caller.
    """

    def __init__(self, sinks: Sequence[ChatLogSink], redact: bool = True) -> None:
        self._sinks = list(sinks)
        self._redact = redact
        self._pending: Set[asyncio.Task] = set()
        self._write_lock = Lock()

    def emit(self, entry: ChatLogEntry) -> None:
        self.emit_turn(entry)

    def emit_turn(self, *entries: ChatLogEntry) -> None:
        if not self._sinks or not entries:
            return
        try:
            task = asyncio.get_running_loop().create_task(self._write(list(entries)))
        except Exception as exc:
            logger.warning("chat log emit failed: %s", exc)
            metrics.inc("chat_log_write_error_total", {"sink": "emit"})
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, entries: List[ChatLogEntry]) -> None:
        try:
            records = [entry.redacted() if self._redact else entry for entry in entries]
        except Exception as exc:
            logger.warning("chat log redaction failed: %s", exc)
            metrics.inc("chat_log_write_error_total", {"sink": "redact"})
            return
        await asyncio.to_thread(self._write_records, records)

    def _write_records(self, records: List[ChatLogEntry]) -> None:
        with self._write_lock:
            for sink in self._sinks:
                for record in records:
                    try:
                        sink.write(record)
                    except Exception as exc:
                        logger.warning("chat log %s sink write failed: %s", sink.name, exc)
                        metrics.inc("chat_log_write_error_total", {"sink": sink.name})

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def build_chat_logger(settings: Settings) -> ChatLogger:
    sinks: List[ChatLogSink] = []
    if settings.chat_log_path:
        sinks.append(JsonlChatLogSink(settings.chat_log_path))
    if settings.chat_log_db_enabled:
        sinks.append(MySQLChatLogSink(settings))
    return ChatLogger(sinks, redact=settings.chat_log_redact)


def snapshot_history(history: Sequence[Dict[str, Any]]) -> List[Dict[str, str]]:
    return [{"role": str(item.get("role", "")), "content": str(item.get("content", ""))} for item in history]
