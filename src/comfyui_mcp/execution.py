"""
Execution Tools

Submit workflows, track their status, and manage the ComfyUI queue.
"""

import time
from typing import Any, Dict, List, Optional

from .client import get_client
from .config import get_config
from .errors import format_connection_error, format_execution_error
from .mcp_utils import get_correlation_id, log_structured, validation_error

OUTPUT_KEYS = ("images", "gifs", "videos", "audio")


def _connection_failure(result: dict) -> Dict[str, Any]:
    return format_connection_error(get_client().base_url, str(result.get("error")))


def get_output_path(filename: str, subfolder: str = "") -> str:
    """Absolute path of a generated file in the configured output directory."""
    output_dir = get_config().output_dir
    return str(output_dir / subfolder / filename if subfolder else output_dir / filename)


def _extract_outputs(entry: dict) -> List[Dict[str, Any]]:
    """Flatten a /history entry's outputs into one record per output node."""
    outputs = []
    for node_id, output in (entry.get("outputs") or {}).items():
        for key in OUTPUT_KEYS:
            items = output.get(key)
            if not items:
                continue
            outputs.append(
                {
                    "node_id": node_id,
                    "type": key,
                    "files": [get_output_path(item.get("filename", ""), item.get("subfolder", "")) for item in items],
                    "filename": ", ".join(item.get("filename", "") for item in items),
                }
            )
    return outputs


def submit_workflow(workflow: dict, client_id: Optional[str] = None) -> dict:
    """
    Queue a workflow on ComfyUI.

    Args:
        workflow: API-format workflow dict.
        client_id: Optional client identifier (generated when omitted).

    Returns:
        {"prompt_id", "number", "status": "queued"} on success,
        {"status": "failed", "node_errors": {...}} when ComfyUI rejects nodes,
        or an error envelope when ComfyUI is unreachable.
    """
    result = get_client().queue_prompt(workflow, client_id)

    if "error" in result and not result.get("node_errors"):
        if "status_code" in result:
            return format_execution_error(str(result["error"]), {"status_code": result["status_code"]})
        return _connection_failure(result)

    node_errors = result.get("node_errors") or None
    if node_errors:
        log_structured(
            "warning",
            "workflow_rejected",
            node_count=len(workflow),
            failed_nodes=sorted(node_errors),
            correlation_id=get_correlation_id(),
        )
        return {
            "prompt_id": result.get("prompt_id"),
            "number": result.get("number"),
            "status": "failed",
            "message": "Workflow validation failed",
            "node_errors": node_errors,
        }

    log_structured(
        "info",
        "workflow_queued",
        prompt_id=result.get("prompt_id"),
        node_count=len(workflow),
        queue_position=result.get("number", 0),
        correlation_id=get_correlation_id(),
    )
    return {
        "prompt_id": result.get("prompt_id"),
        "number": result.get("number"),
        "status": "queued",
        "message": f"Workflow queued successfully at position {result.get('number')}",
    }


def _find_in_queue(queue: dict, prompt_id: str) -> Optional[Dict[str, Any]]:
    for state, key in (("executing", "queue_running"), ("queued", "queue_pending")):
        for item in queue.get(key, []):
            if len(item) > 1 and item[1] == prompt_id:
                return {"status": state, "queue_position": item[0]}
    return None


def get_status(prompt_id: Optional[str] = None, include_outputs: bool = True) -> dict:
    """
    Status of one prompt, or a queue overview when prompt_id is omitted.

    A prompt is "completed" (or "error") once it appears in /history,
    "executing" or "queued" while in the queue, and "not_found" otherwise.
    """
    client = get_client()

    if not prompt_id:
        queue = client.get_queue()
        if "error" in queue:
            return _connection_failure(queue)
        return {
            "queue_running": [{"prompt_id": i[1], "number": i[0]} for i in queue.get("queue_running", [])],
            "queue_pending": [{"prompt_id": i[1], "number": i[0]} for i in queue.get("queue_pending", [])],
        }

    history = client.get_history(prompt_id)
    if "error" in history:
        return _connection_failure(history)

    if prompt_id in history:
        entry = history[prompt_id]
        status_info = entry.get("status") or {}
        if status_info.get("status_str") == "error":
            return {"prompt_id": prompt_id, "status": "error", "error": status_info.get("messages", [])}
        result: Dict[str, Any] = {"prompt_id": prompt_id, "status": "completed"}
        outputs = _extract_outputs(entry) if include_outputs else []
        if outputs:
            result["outputs"] = outputs
        return result

    queue = client.get_queue()
    if "error" in queue:
        return _connection_failure(queue)
    found = _find_in_queue(queue, prompt_id)
    if found:
        return {"prompt_id": prompt_id, **found}
    return {"prompt_id": prompt_id, "status": "not_found", "message": "Prompt not found in queue or history"}


def wait_for_completion(
    prompt_id: str,
    timeout: Optional[float] = None,
    poll_interval: Optional[float] = None,
) -> dict:
    """
    Block until a prompt finishes.

    Uses the WebSocket event stream when available and falls back to polling
    /history. Running out of time is reported as status "timeout", not an error.

    Args:
        prompt_id: The prompt to wait for.
        timeout: Seconds to wait (defaults to comfyui.timeout).
        poll_interval: Seconds between polls in fallback mode (defaults to comfyui.poll_interval).
    """
    settings = get_config().comfyui
    timeout = timeout or settings.timeout
    poll_interval = poll_interval or settings.poll_interval
    start_time = time.time()
    cid = get_correlation_id()

    log_structured("info", "waiting_for_completion", prompt_id=prompt_id, timeout_seconds=timeout, correlation_id=cid)

    # A prompt that finished before we subscribed never emits another event
    status = get_status(prompt_id)
    if not _is_terminal(status):
        status = None
        ws_stage = _wait_via_websocket(prompt_id, timeout) if get_config().features.websocket_progress else None
    else:
        ws_stage = None
    if ws_stage is not None:
        log_structured("info", "ws_wait_complete", prompt_id=prompt_id, ws_stage=ws_stage, correlation_id=cid)
        status = get_status(prompt_id)
        # History can lag the final WebSocket event slightly
        if not _is_terminal(status):
            time.sleep(1.0)
            status = get_status(prompt_id)
        if not _is_terminal(status):
            status = None

    if status is None:
        status = _poll_for_completion(prompt_id, timeout, start_time, poll_interval)

    elapsed = round(time.time() - start_time, 1)
    if status is None:
        log_structured(
            "warning", "workflow_timeout", prompt_id=prompt_id, timeout_seconds=timeout, correlation_id=cid
        )
        return {
            "prompt_id": prompt_id,
            "status": "timeout",
            "execution_time": elapsed,
            "message": f"Timeout after {timeout} seconds",
        }

    if status.get("isError"):
        return status

    status["execution_time"] = elapsed
    status.setdefault("outputs", [])
    log_structured(
        "info" if status["status"] == "completed" else "error",
        "workflow_finished",
        prompt_id=prompt_id,
        status=status["status"],
        elapsed_seconds=elapsed,
        output_count=len(status["outputs"]),
        correlation_id=cid,
    )
    return status


def _wait_via_websocket(prompt_id: str, timeout_seconds: float) -> Optional[str]:
    """Terminal stage from the WebSocket, or None if it is unavailable."""
    from .websocket_client import wait_for_prompt_ws

    return wait_for_prompt_ws(prompt_id, timeout_seconds=timeout_seconds)


def _poll_for_completion(
    prompt_id: str,
    timeout_seconds: float,
    start_time: float,
    poll_interval: float,
) -> Optional[dict]:
    """Poll get_status() until a terminal state. Returns None on timeout.

    Always checks at least once, even when the deadline has already passed.
    """
    while True:
        status = get_status(prompt_id)
        if _is_terminal(status):
            return status
        if time.time() - start_time >= timeout_seconds:
            return None
        time.sleep(poll_interval)


def _is_terminal(status: dict) -> bool:
    return bool(status.get("isError")) or status.get("status") in ("completed", "error")


def get_queue() -> dict:
    """Running and pending prompts with a one-line summary."""
    queue = get_client().get_queue()
    if "error" in queue:
        return _connection_failure(queue)

    running = [{"prompt_id": i[1], "number": i[0]} for i in queue.get("queue_running", [])]
    pending = [{"prompt_id": i[1], "number": i[0]} for i in queue.get("queue_pending", [])]
    return {
        "running": running,
        "pending": pending,
        "summary": f"{len(running)} running, {len(pending)} pending",
    }


def cancel_generation(prompt_id: Optional[str] = None, delete_from_queue: bool = True) -> dict:
    """
    Interrupt the running generation; optionally also drop prompt_id from the queue.
    """
    client = get_client()

    if prompt_id and delete_from_queue:
        result = client.delete_queue_item(prompt_id)
        if "error" in result:
            return _connection_failure(result)

    result = client.interrupt()
    if "error" in result:
        return _connection_failure(result)

    log_structured("info", "execution_interrupted", prompt_id=prompt_id, correlation_id=get_correlation_id())

    if prompt_id:
        return {"cancelled": True, "prompt_id": prompt_id, "message": f"Generation {prompt_id} cancelled"}
    return {"cancelled": True, "message": "Current generation interrupted"}


def clear_queue(confirm: bool = False) -> dict:
    """Remove all pending prompts. Requires confirm=True."""
    if not confirm:
        return validation_error("Set confirm=true to clear the queue", field="confirm")

    client = get_client()
    queue = client.get_queue()
    if "error" in queue:
        return _connection_failure(queue)
    count = len(queue.get("queue_pending", []))

    result = client.clear_queue()
    if "error" in result:
        return _connection_failure(result)

    return {"cleared": True, "count": count, "message": f"Cleared {count} pending items from queue"}
