# FILE: dicehouse/logging.py
from __future__ import annotations

import contextvars
import datetime as _dt
import json
import logging
import os
import sys
import time
import traceback
import uuid
from typing import Any, Dict, Optional, Set

# ---------- Module-level config (env-driven, safe defaults) ----------
_LOG_SCHEMA = os.environ.get("DICE_LOG_SCHEMA", "dicehouse.log.v1")
_LOG_SERVICE = os.environ.get("DICE_SERVICE", "dicehouse")
_LOG_VERSION = os.environ.get("DICE_VERSION", "0.0.0")
_LOG_ENV = os.environ.get("DICE_ENV", os.environ.get("ENV", "dev"))
_LOG_INSTANCE = os.environ.get(
    "DICE_INSTANCE", os.uname().nodename if hasattr(os, "uname") else "unknown"
)

# Max chars per string field
try:
    _MAX_FIELD = max(512, int(os.environ.get("DICE_LOG_MAX_FIELD", "4096")))
except ValueError:
    _MAX_FIELD = 4096

_INCLUDE_STACK = os.environ.get("DICE_LOG_INCLUDE_STACK", "1") == "1"

# Header keys that never reach a log line
_REDACT_KEYS = {
    "authorization",
    "cookie",
    "set-cookie",
    "x-dice-admin-token",
    "x-api-key",
}

# Fields promoted into the envelope; everything else from `extra` lands in "meta"
_ENVELOPE_FIELDS = (
    "req_id",
    "path",
    "method",
    "status",
    "latency_ms",
    "bytes_in",
    "bytes_out",
    "actor",
    "player",
    "game_id",
)

_LOG_RECORD_STD_ATTRS: Set[str] = {
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
    "message",
}

# ---------- Context management ----------
_log_ctx: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "dice_log_ctx", default={}
)


def bind(**fields: Any) -> None:
    """Merge fields into the current logging context (per-coroutine)."""
    cur = dict(_log_ctx.get())
    for k, v in fields.items():
        if v is None:
            continue
        cur[str(k)] = v
    _log_ctx.set(cur)


def unbind(*keys: str) -> None:
    cur = dict(_log_ctx.get())
    for k in keys:
        cur.pop(k, None)
    _log_ctx.set(cur)


def reset() -> None:
    _log_ctx.set({})


def context() -> Dict[str, Any]:
    return dict(_log_ctx.get())


# ---------- Helpers ----------
def _ts_iso() -> str:
    now = _dt.datetime.now(_dt.timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def _compact_json(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def _truncate(v: Any) -> Any:
    if isinstance(v, str) and len(v) > _MAX_FIELD:
        return v[:_MAX_FIELD] + "...<truncated>"
    return v


def scrub_dict(d: Dict[str, Any]) -> Dict[str, Any]:
    """Replace secret-bearing keys (admin token, cookies) with "***"."""
    out: Dict[str, Any] = {}
    for k, v in (d or {}).items():
        if k.lower() in _REDACT_KEYS:
            out[k] = "***"
        else:
            out[k] = v if not isinstance(v, dict) else scrub_dict(v)
    return out


def _meta_from_record(record: logging.LogRecord, evt_keys: Set[str]) -> Optional[Dict[str, Any]]:
    meta: Dict[str, Any] = {}
    for k, v in record.__dict__.items():
        if k in _LOG_RECORD_STD_ATTRS or k in evt_keys or k.startswith("_"):
            continue
        meta[k] = _truncate(v)
    return meta or None


# ---------- JSON formatter ----------
class JSONFormatter(logging.Formatter):
    """
    JSON formatter with a stable envelope:
      - schema, service, version, env, instance
      - ts, lvl, logger, msg
      - req_id, path, method, status, latency_ms, bytes_in/out
      - actor, player, game_id
    Remaining `extra` fields are collected under "meta".
    """

    def __init__(self, *, include_stack: bool = True):
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ctx = context()
        evt: Dict[str, Any] = {
            "schema": _LOG_SCHEMA,
            "service": _LOG_SERVICE,
            "version": _LOG_VERSION,
            "env": _LOG_ENV,
            "instance": _LOG_INSTANCE,
            "ts": _ts_iso(),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": str(record.getMessage()),
        }

        # bound context wins over record attributes
        for name in _ENVELOPE_FIELDS:
            v = ctx.get(name)
            if v is None:
                v = getattr(record, name, None)
            if v is not None:
                evt[name] = _truncate(v)

        if record.exc_info and self.include_stack:
            exc_type, exc_val, exc_tb = record.exc_info
            evt["exc_type"] = getattr(exc_type, "__name__", str(exc_type))
            evt["exc_message"] = str(exc_val)[:_MAX_FIELD]
            evt["stack"] = "".join(
                traceback.format_exception(exc_type, exc_val, exc_tb)
            )[:_MAX_FIELD]

        meta = _meta_from_record(record, set(evt.keys()))
        if meta:
            evt["meta"] = meta
        return _compact_json(evt)


# ---------- Root / uvicorn integration ----------
def _clear_handlers(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)


def configure_json_logging(
    level: str = "INFO",
    *,
    include_uvicorn: bool = True,
    stream: Any = None,
    include_stack: bool = _INCLUDE_STACK,
) -> logging.Logger:
    """Route root (and optionally uvicorn) logging through JSONFormatter."""
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    h = logging.StreamHandler(stream=stream or sys.stderr)
    h.setFormatter(JSONFormatter(include_stack=include_stack))
    h.setLevel(lvl)

    root = logging.getLogger()
    root.setLevel(lvl)
    _clear_handlers(root)
    root.addHandler(h)

    if include_uvicorn:
        for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
            lg = logging.getLogger(name)
            lg.setLevel(lvl)
            _clear_handlers(lg)
            lg.addHandler(h)
            lg.propagate = False
    return root


# ---------- Request helpers ----------
def ensure_request_id(headers: Optional[Dict[str, str]] = None) -> str:
    """Get or create a request id and bind it into the logging context."""
    rid = None
    if headers:
        rid = headers.get("x-request-id") or headers.get("X-Request-Id")
    if not rid:
        rid = uuid.uuid4().hex[:16]
    bind(req_id=rid)
    return rid


class RequestLogMiddleware:
    """
    ASGI middleware emitting one JSON "http.finish" line per request:
    req_id, method, path, status, latency_ms, bytes_in/out. Bodies are never
    logged; headers only when `log_headers` is set, and then scrubbed.
    """

    def __init__(self, app, *, logger_name: str = "dicehouse.http", log_headers: bool = False):
        self.app = app
        self.log = logging.getLogger(logger_name)
        self.log_headers = bool(log_headers)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        method = scope.get("method", "")
        path = scope.get("path", "")
        headers = {
            k.decode("latin1").lower(): v.decode("latin1")
            for k, v in (scope.get("headers") or [])
        }
        rid = ensure_request_id(headers)
        bind(path=path, method=method)

        if self.log_headers:
            self.log.info("http.start", extra={"headers": scrub_dict(headers)})

        t0 = time.perf_counter()
        status_holder = {"code": None}
        bytes_out_holder = {"n": 0}
        bytes_in = 0

        async def _send_wrapper(message):
            if message["type"] == "http.response.start":
                status_holder["code"] = message.get("status")
            if message["type"] == "http.response.body":
                bytes_out_holder["n"] += len(message.get("body", b"") or b"")
            await send(message)

        async def _recv_wrapper():
            nonlocal bytes_in
            msg = await receive()
            if msg["type"] == "http.request":
                bytes_in += len(msg.get("body", b"") or b"")
            return msg

        try:
            await self.app(scope, _recv_wrapper, _send_wrapper)
        finally:
            dt_ms = (time.perf_counter() - t0) * 1000.0
            self.log.info(
                "http.finish",
                extra={
                    "req_id": rid,
                    "path": path,
                    "method": method,
                    "status": status_holder["code"],
                    "latency_ms": round(dt_ms, 3),
                    "bytes_in": bytes_in,
                    "bytes_out": bytes_out_holder["n"],
                },
            )
            unbind("req_id", "path", "method")


# ---------- Convenience: module-level logger ----------
_configured = False


def get_logger(name: str = "dicehouse", *, level: Optional[str] = None) -> logging.Logger:
    """
    Return a logger. The first call installs JSON output on root at `level`
    (or DICE_LOG_LEVEL); a later call with an explicit `level` re-applies it.
    """
    global _configured
    if level is not None or not _configured:
        configure_json_logging(level=level or os.environ.get("DICE_LOG_LEVEL", "INFO"))
        _configured = True
    return logging.getLogger(name)


__all__ = [
    "bind",
    "unbind",
    "reset",
    "context",
    "configure_json_logging",
    "get_logger",
    "ensure_request_id",
    "JSONFormatter",
    "RequestLogMiddleware",
    "scrub_dict",
]
