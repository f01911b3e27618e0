from __future__ import annotations

import json
import logging
import os
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from flask import Flask, current_app


_CORE_LOG_RECORD_FIELDS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
}

_log_context: ContextVar[Dict[str, Any]] = ContextVar("relational_log_context", default={})


def _resolve_app() -> Optional[Flask]:
    try:
        return current_app._get_current_object()  # type: ignore[attr-defined]
    except RuntimeError:
        return None


def get_log_context() -> Dict[str, Any]:
    """Return a shallow copy of the active contextual logging fields."""

    return dict(_log_context.get())


def update_log_context(**fields: Any) -> None:
    """Merge fields into the active context; ``None`` removes a key."""

    current = dict(_log_context.get())
    for key, value in fields.items():
        if value is None:
            current.pop(key, None)
        else:
            current[key] = value
    _log_context.set(current)


def clear_log_context(*keys: str) -> None:
    if not keys:
        _log_context.set({})
        return
    current = dict(_log_context.get())
    for key in keys:
        current.pop(key, None)
    _log_context.set(current)


@contextmanager
def log_context(**fields: Any):
    """Context manager that temporarily adds contextual logging fields."""

    current = dict(_log_context.get())
    current.update({k: v for k, v in fields.items() if v is not None})
    token = _log_context.set(current)
    try:
        yield
    finally:
        _log_context.reset(token)


class ContextAwareFormatter(logging.Formatter):
    """Formatter that can emit JSON or text logs enriched with contextual fields."""

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        *,
        json_format: bool = False,
        static_fields: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(fmt=fmt or "[%(asctime)s] %(levelname)s %(name)s - %(message)s", datefmt=datefmt)
        self.json_format = json_format
        self.static_fields = dict(static_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        if self.json_format:
            return self._format_json(record)

        base = super().format(record)
        context = _log_context.get()
        if context:
            ctx = " ".join(f"{key}={value}" for key, value in sorted(context.items()))
            base = f"{base} | {ctx}"
        return base

    def _format_json(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(self.static_fields)

        for key, value in record.__dict__.items():
            if key in _CORE_LOG_RECORD_FIELDS or key.startswith("_") or key in payload:
                continue
            payload[key] = value

        context = _log_context.get()
        if context:
            payload.setdefault("context", {}).update(context)

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str, separators=(",", ":"))


@dataclass(frozen=True)
class LogCategory:
    name: str
    filename: str


DEFAULT_CATEGORIES: Dict[str, LogCategory] = {
    "connection": LogCategory("connection", "connection.log"),
    "database": LogCategory("database", "database.log"),
    "identity": LogCategory("identity", "identity.log"),
    "schema": LogCategory("schema", "schema.log"),
    "transaction": LogCategory("transaction", "transaction.log"),
}


class LoggerManager:
    """
    Hands out one logger per category under the ``relational.`` namespace.

    Console output is on by default.  Files are only written when a base
    directory is configured; each category then gets its own daily-rotated
    file in that directory.
    """

    def __init__(
        self,
        *,
        base_dir: Optional[str] = None,
        rotation_when: str = "midnight",
        backup_count: int = 7,
        categories: Optional[Dict[str, LogCategory]] = None,
        default_level: int = logging.INFO,
        category_levels: Optional[Dict[str, int]] = None,
        enable_console: bool = True,
        console_level: Optional[int] = None,
        json_format: bool = False,
        text_format: Optional[str] = None,
        static_fields: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._base_dir = base_dir
        self._rotation_when = rotation_when
        self._backup_count = backup_count
        self._categories = (categories or DEFAULT_CATEGORIES).copy()
        self._default_level = default_level
        self._category_levels = {k.lower(): v for k, v in (category_levels or {}).items()}
        self._enable_console = enable_console
        self._console_level = console_level if console_level is not None else default_level
        self._json_format = json_format
        self._text_format = text_format
        self._static_fields = dict(static_fields or {})
        self._loggers: Dict[str, logging.Logger] = {}
        self._console_handler: Optional[logging.Handler] = None

    @property
    def base_dir(self) -> Optional[Path]:
        if self._base_dir:
            return Path(self._base_dir)
        return None

    def register_category(self, name: str, filename: Optional[str] = None) -> LogCategory:
        """Register a new logging category (idempotent)."""

        key = name.strip().lower()
        spec = LogCategory(key, filename or f"{key}.log")
        existing = self._categories.get(key)
        if existing and existing.filename != spec.filename:
            self._detach_logger(key)
        self._categories[key] = spec
        return spec

    def get_logger(self, category: str) -> logging.Logger:
        category_key = category.lower()
        if category_key in self._loggers:
            return self._loggers[category_key]

        spec = self._categories.get(category_key)
        if spec is None:
            spec = self.register_category(category)

        logger = logging.getLogger(f"relational.{spec.name}")
        logger.propagate = False
        level = self._category_levels.get(category_key, self._default_level)
        logger.setLevel(level)

        log_dir = self.base_dir
        if log_dir is not None:
            log_dir.mkdir(parents=True, exist_ok=True)
            handler = TimedRotatingFileHandler(
                log_dir / spec.filename,
                when=self._rotation_when,
                backupCount=self._backup_count,
                encoding="utf-8",
                utc=True,
            )
            handler.setLevel(level)
            handler.setFormatter(self._build_formatter())
            logger.addHandler(handler)

        if self._enable_console:
            console_handler = self._ensure_console_handler()
            if console_handler not in logger.handlers:
                logger.addHandler(console_handler)

        app = _resolve_app()
        if app and app.logger.handlers:
            for app_handler in app.logger.handlers:
                if app_handler not in logger.handlers:
                    logger.addHandler(app_handler)

        self._loggers[category_key] = logger
        return logger

    def _build_formatter(self) -> ContextAwareFormatter:
        return ContextAwareFormatter(
            fmt=self._text_format,
            json_format=self._json_format,
            static_fields=self._static_fields,
        )

    def _ensure_console_handler(self) -> logging.Handler:
        if self._console_handler is None:
            handler = logging.StreamHandler()
            handler.setLevel(self._console_level)
            handler.setFormatter(self._build_formatter())
            self._console_handler = handler
        return self._console_handler

    def shutdown(self) -> None:
        for key in list(self._loggers.keys()):
            self._detach_logger(key)
        if self._console_handler:
            self._console_handler.close()
            self._console_handler = None

    def _detach_logger(self, category_key: str) -> None:
        logger = self._loggers.pop(category_key, None)
        if not logger:
            return
        for handler in list(logger.handlers):
            # app handlers belong to Flask; only close the ones we created
            if isinstance(handler, TimedRotatingFileHandler):
                handler.close()
            logger.removeHandler(handler)


def _to_int(value: Optional[Any], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _to_bool(value: Optional[Any], *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(value)


def _to_level(value: Optional[Any], *, default: int = logging.INFO) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        numeric = getattr(logging, value.strip().upper(), None)
        if isinstance(numeric, int):
            return numeric
    return default


def _apply_category_flags(
    categories: Dict[str, LogCategory],
    enable: Optional[Iterable[str]] = None,
) -> Dict[str, LogCategory]:
    updated = categories.copy()
    for key in enable or ():
        normalized = str(key).strip().lower()
        if normalized and normalized not in updated:
            updated[normalized] = LogCategory(normalized, f"{normalized}.log")
    return updated


_manager: Optional[LoggerManager] = None


def init_logger(app: Flask) -> LoggerManager:
    """
    Configure the shared logger manager from a Flask application's config.
    """

    global _manager

    category_levels = {
        str(name).strip().lower(): _to_level(level)
        for name, level in (app.config.get("RELATIONAL_LOG_CATEGORY_LEVELS") or {}).items()
    }

    manager = LoggerManager(
        base_dir=app.config.get("RELATIONAL_LOG_DIR"),
        rotation_when=app.config.get("RELATIONAL_LOG_ROTATION_WHEN", "midnight"),
        backup_count=_to_int(app.config.get("RELATIONAL_LOG_BACKUP_COUNT"), default=7),
        categories=_apply_category_flags(DEFAULT_CATEGORIES, app.config.get("RELATIONAL_LOG_EXTRA_CATEGORIES")),
        default_level=_to_level(app.config.get("RELATIONAL_LOG_LEVEL")),
        category_levels=category_levels,
        enable_console=_to_bool(app.config.get("RELATIONAL_LOG_CONSOLE", True), default=True),
        json_format=_to_bool(app.config.get("RELATIONAL_LOG_JSON", False)),
        text_format=app.config.get("RELATIONAL_LOG_TEXT_FORMAT"),
        static_fields=app.config.get("RELATIONAL_LOG_STATIC_FIELDS") or {},
    )

    shutdown_logger()
    _manager = manager
    return _manager


def logger_manager() -> LoggerManager:
    global _manager
    if _manager is None:
        _manager = LoggerManager(
            base_dir=os.getenv("RELATIONAL_LOG_DIR"),
            rotation_when=os.getenv("RELATIONAL_LOG_ROTATION_WHEN", "midnight"),
            backup_count=_to_int(os.getenv("RELATIONAL_LOG_BACKUP_COUNT"), default=7),
            default_level=_to_level(os.getenv("RELATIONAL_LOG_LEVEL")),
            enable_console=_to_bool(os.getenv("RELATIONAL_LOG_CONSOLE", "true"), default=True),
            json_format=_to_bool(os.getenv("RELATIONAL_LOG_JSON")),
            text_format=os.getenv("RELATIONAL_LOG_TEXT_FORMAT"),
        )
    return _manager


def shutdown_logger() -> None:
    global _manager
    if _manager is None:
        return
    _manager.shutdown()
    _manager = None


def get_logger(category: str) -> logging.Logger:
    return logger_manager().get_logger(category)


def register_category(name: str, filename: Optional[str] = None) -> LogCategory:
    return logger_manager().register_category(name, filename=filename)
