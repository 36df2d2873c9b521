"""
ComfyUI HTTP Client

Thin wrapper over ComfyUI's REST endpoints (/prompt, /queue, /history,
/interrupt, /object_info, /system_stats). Methods return the decoded JSON
body, or {"error": ...} when the server is unreachable or replies with
something unusable; they do not raise for transport problems.

Transient failures are retried with exponential backoff. Tune with
COMFYUI_RETRY_ATTEMPTS, COMFYUI_RETRY_BACKOFF and COMFYUI_RETRY_MULTIPLIER.
"""

import functools
import json
import logging
import os
import random
import string
import time
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Optional, TypeVar

from .config import get_config

logger = logging.getLogger("comfyui-mcp")

RETRY_MAX_ATTEMPTS = int(os.environ.get("COMFYUI_RETRY_ATTEMPTS", "3"))
RETRY_BACKOFF = float(os.environ.get("COMFYUI_RETRY_BACKOFF", "1.0"))
RETRY_MULTIPLIER = float(os.environ.get("COMFYUI_RETRY_MULTIPLIER", "2.0"))

# Substrings of error messages worth another attempt
RETRYABLE_ERRORS = (
    "timed out",
    "connection refused",
    "connection reset",
    "temporary failure",
    "service unavailable",
    "502",
    "503",
    "504",
)

T = TypeVar("T")


def _is_retryable(message: str) -> bool:
    message = message.lower()
    return any(pattern in message for pattern in RETRYABLE_ERRORS)


def _transient_error(outcome: Any) -> Optional[str]:
    """Message of a retryable {"error": ...} result, else None."""
    if isinstance(outcome, dict) and "error" in outcome and _is_retryable(str(outcome["error"])):
        return str(outcome["error"])
    return None


def retry(
    max_attempts: int = RETRY_MAX_ATTEMPTS,
    backoff: float = RETRY_BACKOFF,
    multiplier: float = RETRY_MULTIPLIER,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Retry a call while it fails transiently, sleeping backoff, backoff*multiplier, ...

    A failure is either a raised exception or a returned {"error": ...} dict
    whose message matches RETRYABLE_ERRORS. The last attempt's outcome is
    passed through unchanged.
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            delay = backoff
            for attempt in range(1, max_attempts + 1):
                try:
                    outcome = func(*args, **kwargs)
                except Exception as e:
                    if attempt == max_attempts or not _is_retryable(str(e)):
                        raise
                    reason = str(e)
                else:
                    reason = _transient_error(outcome)
                    if reason is None or attempt == max_attempts:
                        return outcome
                logger.debug(f"{func.__name__} attempt {attempt}/{max_attempts} failed ({reason}); retrying")
                time.sleep(delay)
                delay *= multiplier
            return {"error": "Max retries exceeded"}

        return wrapper

    return decorator


def generate_client_id() -> str:
    """Client id for /prompt submissions: mcp-<ms timestamp>-<random>."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"mcp-{int(time.time() * 1000)}-{suffix}"


class ComfyUIClient:
    """Blocking JSON client for one ComfyUI server."""

    def __init__(self, base_url: Optional[str] = None, timeout: int = 30):
        self.base_url = (base_url or get_config().comfyui.base_url).rstrip("/")
        self.timeout = timeout

    @retry()
    def request(
        self,
        endpoint: str,
        method: str = "GET",
        data: Optional[dict] = None,
        timeout: Optional[int] = None,
    ) -> dict:
        """Send one request; JSON in, JSON out."""
        body = None if data is None else json.dumps(data).encode()
        req = urllib.request.Request(f"{self.base_url}{endpoint}", data=body, method=method)
        if body is not None:
            req.add_header("Content-Type", "application/json")

        try:
            with urllib.request.urlopen(req, timeout=timeout or self.timeout) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as e:
            return self._http_error(e)
        except (urllib.error.URLError, TimeoutError, ConnectionError) as e:
            return {"error": str(e)}

        if not raw:
            return {}
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return {"error": "Invalid JSON response"}

    @staticmethod
    def _http_error(e: urllib.error.HTTPError) -> Dict[str, Any]:
        """Keep ComfyUI's validation payload ({"error", "node_errors"}) when it sends one."""
        try:
            payload = json.loads(e.read() or b"{}")
        except (json.JSONDecodeError, OSError):
            payload = {}
        if isinstance(payload, dict) and payload.get("node_errors"):
            error = payload.get("error")
            if isinstance(error, dict):
                error = error.get("message", str(error))
            return {"error": error or f"HTTP {e.code}", "node_errors": payload["node_errors"], "status_code": e.code}
        return {"error": f"HTTP {e.code}: {e.reason}", "status_code": e.code}

    def get(self, endpoint: str, timeout: Optional[int] = None) -> dict:
        return self.request(endpoint, "GET", timeout=timeout)

    def post(self, endpoint: str, data: dict, timeout: Optional[int] = None) -> dict:
        return self.request(endpoint, "POST", data, timeout=timeout)

    def is_available(self) -> bool:
        return "error" not in self.get("/system_stats")

    def get_object_info(self, node_type: Optional[str] = None) -> dict:
        """Node definitions, for one class_type or all of them."""
        return self.get(f"/object_info/{node_type}" if node_type else "/object_info")

    def queue_prompt(self, workflow: dict, client_id: Optional[str] = None) -> dict:
        """POST /prompt. Returns {"prompt_id", "number", "node_errors"} or an error dict."""
        return self.post("/prompt", {"prompt": workflow, "client_id": client_id or generate_client_id()})

    def get_history(self, prompt_id: str) -> dict:
        return self.get(f"/history/{prompt_id}")

    def get_queue(self) -> dict:
        """{"queue_running": [[number, prompt_id, ...]], "queue_pending": [...]}"""
        return self.get("/queue")

    def interrupt(self) -> dict:
        return self.post("/interrupt", {})

    def delete_queue_item(self, prompt_id: str) -> dict:
        return self.post("/queue", {"delete": [prompt_id]})

    def clear_queue(self) -> dict:
        return self.post("/queue", {"clear": True})


_client: Optional[ComfyUIClient] = None


def get_client() -> ComfyUIClient:
    """Process-wide client bound to the configured base URL."""
    global _client
    if _client is None:
        _client = ComfyUIClient()
    return _client


def reset_client() -> None:
    """Drop the cached client so the next get_client() rereads config."""
    global _client
    _client = None
