"""
MCP Utilities

Shared plumbing for the tool layer:

- JSON logs on the ``comfyui-mcp`` logger, one object per line on stderr
  (stdout carries the MCP stdio transport).
- A correlation id per tool call, so every log line emitted while serving a
  call can be grouped.
- Plain error envelopes ({"error", "code", "isError"}) and the decorator
  that wraps every tool.
"""

import functools
import json
import logging
import os
import time
import uuid
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Optional

from .errors import InvalidWorkflowError, format_invalid_workflow

LOGGER_NAME = "comfyui-mcp"

logger = logging.getLogger(LOGGER_NAME)
logger.setLevel(logging.INFO)

# Attributes every LogRecord has; anything else passed via extra= is ours.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def _timestamp(created: float) -> str:
    return datetime.fromtimestamp(created).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


class JSONFormatter(logging.Formatter):
    """One JSON object per record: timestamp, level, logger, message, plus extra fields."""

    def format(self, record):
        entry: Dict[str, Any] = {
            "timestamp": _timestamp(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key == "custom_fields":
                entry.update(value)
            elif key not in _RECORD_ATTRS:
                entry[key] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, separators=(",", ":"), default=str)


def configure_logging(level: Optional[str] = None) -> None:
    """
    Route the comfyui-mcp logger through a single JSON stderr handler.

    level defaults to COMFYUI_MCP_LOG_LEVEL when set.
    """
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)

    level = level or os.environ.get("COMFYUI_MCP_LOG_LEVEL")
    if level:
        logger.setLevel(level.upper())


configure_logging()


# =============================================================================
# Correlation ids
# =============================================================================

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def _short_id() -> str:
    return uuid.uuid4().hex[:8]


def set_correlation_id(cid: str):
    correlation_id_var.set(cid)


def get_correlation_id() -> str:
    """Correlation id of the current tool call; one is created if none is set."""
    cid = correlation_id_var.get()
    if cid is None:
        cid = _short_id()
        correlation_id_var.set(cid)
    return cid


def clear_correlation_id():
    correlation_id_var.set(None)


def log_structured(level: str, message: str, **fields):
    """
    Log an event name plus arbitrary fields as one JSON line.

    Example:
        log_structured("info", "workflow_queued", prompt_id=pid, node_count=12)
    """
    extra: Dict[str, Any] = {"correlation_id": get_correlation_id()}
    if fields:
        extra["custom_fields"] = fields
    logger.log(logging.getLevelName(level.upper()), message, extra=extra)


class ToolInvocation:
    """Wall-clock timing for one tool call, logged when the call finishes."""

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        self.invocation_id = _short_id()
        self.correlation_id = get_correlation_id()
        self.start_time = time.monotonic()

    @property
    def latency_ms(self) -> float:
        return round((time.monotonic() - self.start_time) * 1000, 2)

    def complete(self, status: str = "success", error: Optional[str] = None) -> Dict[str, Any]:
        """Log tool_completed (status "success") or tool_failed; return the logged fields."""
        fields: Dict[str, Any] = {
            "tool": self.tool_name,
            "invocation_id": self.invocation_id,
            "latency_ms": self.latency_ms,
            "status": status,
        }
        if error:
            fields["error"] = error

        succeeded = status == "success"
        log_structured("info" if succeeded else "error", "tool_completed" if succeeded else "tool_failed", **fields)
        return fields


# =============================================================================
# Error envelopes
# =============================================================================


def mcp_error(
    message: str,
    code: str = "TOOL_ERROR",
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Minimal MCP tool error: {"error", "code", "isError": True[, "details"]}.

    Richer envelopes with suggestions live in errors.py.

    Example:
        return mcp_error("Workflow library is disabled", "FEATURE_DISABLED")
    """
    envelope: Dict[str, Any] = {"error": message, "code": code, "isError": True}
    if details:
        envelope["details"] = details
    return envelope


def not_found_error(resource_type: str, identifier: str) -> Dict[str, Any]:
    return mcp_error(f"{resource_type} not found: {identifier}", "NOT_FOUND", {resource_type.lower(): identifier})


def validation_error(message: str, field: Optional[str] = None) -> Dict[str, Any]:
    return mcp_error(message, "VALIDATION_ERROR", {"field": field} if field else None)


def is_error(result: Any) -> bool:
    """True for both MCP envelopes and the client's plain {"error": ...} dicts."""
    return isinstance(result, dict) and (result.get("isError") is True or "error" in result)


# =============================================================================
# Tool decorator
# =============================================================================


def mcp_tool_wrapper(func):
    """
    Run a tool under a fresh correlation id and log how it ended.

    Malformed workflows that escape the tool body become INVALID_WORKFLOW;
    any other exception becomes an INTERNAL_ERROR envelope.

    Example:
        @mcp.tool()
        @mcp_tool_wrapper
        def comfy_get_queue() -> dict:
            ...
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        set_correlation_id(_short_id())
        invocation = ToolInvocation(func.__name__)
        try:
            result = func(*args, **kwargs)
        except InvalidWorkflowError as e:
            invocation.complete("error", str(e))
            return format_invalid_workflow(str(e), e.errors)
        except Exception as e:
            logger.debug(f"{func.__name__} raised", exc_info=True)
            invocation.complete("error", str(e))
            return mcp_error(str(e), "INTERNAL_ERROR")
        else:
            if isinstance(result, dict) and result.get("isError"):
                invocation.complete("error", result.get("error"))
            else:
                invocation.complete("success")
            return result
        finally:
            clear_correlation_id()

    return wrapper
