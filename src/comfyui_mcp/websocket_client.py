"""WebSocket Client for ComfyUI Execution Events.

Provides a synchronous wait_for_prompt_ws() used by wait_for_completion() so
one socket replaces repeated /history polling.
"""

import asyncio
import json
import logging
import threading
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import websockets

from .client import generate_client_id
from .config import get_config

logger = logging.getLogger("comfyui-mcp")

TERMINAL_STAGES = ("completed", "error")


@dataclass
class ProgressEvent:
    """Progress event from ComfyUI WebSocket."""

    prompt_id: str
    stage: str  # 'running', 'progress', 'completed', 'error'
    percent: float  # 0-100
    node_id: Optional[str] = None
    message: Optional[str] = None


def parse_message(message, target_prompt_id: str) -> Optional[ProgressEvent]:
    """Turn one WebSocket frame into a ProgressEvent for target_prompt_id, if relevant."""
    if not isinstance(message, str):
        return None  # binary preview frames
    try:
        data = json.loads(message)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None

    msg_type = data.get("type", "")
    payload = data.get("data") or {}
    if payload.get("prompt_id") != target_prompt_id:
        return None

    if msg_type == "execution_start":
        return ProgressEvent(target_prompt_id, "running", 0.0, message="Execution started")

    if msg_type == "executing":
        node_id = payload.get("node")
        # node=None marks the end of the prompt
        if node_id is None:
            return ProgressEvent(target_prompt_id, "completed", 100.0, message="All nodes executed")
        return ProgressEvent(target_prompt_id, "running", 0.0, node_id=node_id, message=f"Executing node {node_id}")

    if msg_type == "progress":
        value = payload.get("value", 0)
        max_val = payload.get("max", 100)
        percent = (value / max_val * 100) if max_val else 0.0
        return ProgressEvent(target_prompt_id, "progress", percent, message=f"Sampling {value}/{max_val}")

    if msg_type in ("execution_success", "execution_complete"):
        return ProgressEvent(target_prompt_id, "completed", 100.0, message="Execution completed")

    if msg_type == "execution_error":
        error_msg = payload.get("exception_message", payload.get("error", "Unknown error"))
        return ProgressEvent(target_prompt_id, "error", 0.0, message=f"Error: {error_msg}")

    if msg_type == "execution_interrupted":
        return ProgressEvent(target_prompt_id, "error", 0.0, message="Execution interrupted")

    return None


class ComfyUIWebSocketClient:
    """WebSocket client for ComfyUI execution events."""

    def __init__(self, ws_url: Optional[str] = None, client_id: Optional[str] = None):
        self.ws_url = ws_url or get_config().comfyui.websocket_url
        self.client_id = client_id or generate_client_id()
        self.ws = None

    @property
    def uri(self) -> str:
        separator = "&" if "?" in self.ws_url else "?"
        return f"{self.ws_url}{separator}clientId={self.client_id}"

    async def connect(self) -> bool:
        """Connect to ComfyUI WebSocket. Returns False if unreachable."""
        try:
            self.ws = await websockets.connect(self.uri)
            return True
        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.debug(f"WebSocket connect to {self.ws_url} failed: {e}")
            self.ws = None
            return False

    async def disconnect(self):
        if self.ws is not None:
            await self.ws.close()
            self.ws = None

    async def subscribe_progress(self, prompt_id: str) -> AsyncIterator[ProgressEvent]:
        """
        Yield ProgressEvents for prompt_id until it completes or fails.

        Example:
            async for event in client.subscribe_progress("prompt-123"):
                print(f"{event.percent}% - {event.stage}")
        """
        if self.ws is None and not await self.connect():
            raise ConnectionError(f"Cannot connect to ComfyUI WebSocket at {self.ws_url}")

        try:
            async for message in self.ws:
                event = parse_message(message, prompt_id)
                if event:
                    yield event
                    if event.stage in TERMINAL_STAGES:
                        break
        except websockets.exceptions.ConnectionClosed:
            logger.debug("WebSocket closed before prompt finished")


def wait_for_prompt_ws(
    prompt_id: str,
    timeout_seconds: float = 300,
    ws_url: Optional[str] = None,
) -> Optional[str]:
    """
    Wait for a prompt to finish via WebSocket (synchronous, blocking).

    The listener runs on its own event loop in a worker thread so it never
    blocks the MCP server's loop.

    Returns:
        "completed" or "error", or None on connection failure or timeout.
    """
    result = {"stage": None}

    async def _ws_wait():
        client = ComfyUIWebSocketClient(ws_url)
        if not await client.connect():
            return
        try:
            async for event in client.subscribe_progress(prompt_id):
                if event.stage in TERMINAL_STAGES:
                    result["stage"] = event.stage
                    break
        finally:
            await client.disconnect()

    def _run_in_thread():
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(asyncio.wait_for(_ws_wait(), timeout=timeout_seconds))
        except asyncio.TimeoutError:
            logger.debug(f"WebSocket wait for {prompt_id} timed out")
        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.debug(f"WebSocket wait error: {e}")
        finally:
            loop.close()

    thread = threading.Thread(target=_run_in_thread, daemon=True)
    thread.start()
    thread.join(timeout=timeout_seconds + 5)

    return result["stage"]
