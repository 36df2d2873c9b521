"""
Tests for submission, status, waiting and queue management
"""

from unittest.mock import MagicMock, patch

import pytest

from comfyui_mcp import execution

PROMPT_ID = "abc-123"


@pytest.fixture
def mock_client(server_config):
    client = MagicMock()
    client.base_url = "http://127.0.0.1:8188"
    with patch("comfyui_mcp.execution.get_client", return_value=client):
        yield client


@pytest.fixture
def no_websocket():
    with patch("comfyui_mcp.execution._wait_via_websocket", return_value=None) as ws:
        yield ws


def completed_history(prompt_id=PROMPT_ID):
    return {
        prompt_id: {
            "status": {"status_str": "success", "completed": True},
            "outputs": {"9": {"images": [{"filename": "flux_00001_.png", "subfolder": "", "type": "output"}]}},
        }
    }


class TestSubmitWorkflow:
    def test_queued(self, mock_client, checkpoint_workflow):
        mock_client.queue_prompt.return_value = {"prompt_id": PROMPT_ID, "number": 2, "node_errors": {}}
        result = execution.submit_workflow(checkpoint_workflow)
        assert result["status"] == "queued"
        assert result["prompt_id"] == PROMPT_ID
        assert result["number"] == 2

    def test_node_errors(self, mock_client, checkpoint_workflow):
        mock_client.queue_prompt.return_value = {
            "error": "Prompt outputs failed validation",
            "node_errors": {"4": {"errors": [{"message": "ckpt not found"}]}},
            "status_code": 400,
        }
        result = execution.submit_workflow(checkpoint_workflow)
        assert result["status"] == "failed"
        assert "4" in result["node_errors"]

    def test_http_error(self, mock_client, checkpoint_workflow):
        mock_client.queue_prompt.return_value = {"error": "HTTP 500: Server Error", "status_code": 500}
        result = execution.submit_workflow(checkpoint_workflow)
        assert result["code"] == "EXECUTION_FAILED"

    def test_unreachable(self, mock_client, checkpoint_workflow):
        mock_client.queue_prompt.return_value = {"error": "<urlopen error Connection refused>"}
        result = execution.submit_workflow(checkpoint_workflow)
        assert result["code"] == "COMFYUI_NOT_RUNNING"
        assert result["isError"] is True

    def test_logs_queued(self, mock_client, checkpoint_workflow, capturing_logger):
        mock_client.queue_prompt.return_value = {"prompt_id": PROMPT_ID, "number": 1}
        execution.submit_workflow(checkpoint_workflow)
        logs = capturing_logger.get_json_logs()
        queued = [log for log in logs if log["message"] == "workflow_queued"]
        assert queued and queued[0]["prompt_id"] == PROMPT_ID
        assert queued[0]["node_count"] == len(checkpoint_workflow)


class TestGetStatus:
    def test_completed_with_outputs(self, mock_client, server_config):
        mock_client.get_history.return_value = completed_history()
        result = execution.get_status(PROMPT_ID)
        assert result["status"] == "completed"
        assert result["outputs"] == [
            {
                "node_id": "9",
                "type": "images",
                "files": [str(server_config.output_dir / "flux_00001_.png")],
                "filename": "flux_00001_.png",
            }
        ]

    def test_error_in_history(self, mock_client):
        mock_client.get_history.return_value = {
            PROMPT_ID: {"status": {"status_str": "error", "messages": [["execution_error", {}]]}, "outputs": {}}
        }
        assert execution.get_status(PROMPT_ID)["status"] == "error"

    def test_queued(self, mock_client):
        mock_client.get_history.return_value = {}
        mock_client.get_queue.return_value = {"queue_running": [[0, "other"]], "queue_pending": [[4, PROMPT_ID]]}
        assert execution.get_status(PROMPT_ID) == {"prompt_id": PROMPT_ID, "status": "queued", "queue_position": 4}

    def test_executing(self, mock_client):
        mock_client.get_history.return_value = {}
        mock_client.get_queue.return_value = {"queue_running": [[3, PROMPT_ID]], "queue_pending": []}
        assert execution.get_status(PROMPT_ID)["status"] == "executing"

    def test_not_found(self, mock_client):
        mock_client.get_history.return_value = {}
        mock_client.get_queue.return_value = {"queue_running": [], "queue_pending": []}
        assert execution.get_status(PROMPT_ID)["status"] == "not_found"

    def test_overview(self, mock_client):
        mock_client.get_queue.return_value = {"queue_running": [[1, "a"]], "queue_pending": [[2, "b"]]}
        assert execution.get_status() == {
            "queue_running": [{"prompt_id": "a", "number": 1}],
            "queue_pending": [{"prompt_id": "b", "number": 2}],
        }

    def test_unreachable(self, mock_client):
        mock_client.get_history.return_value = {"error": "Connection refused"}
        assert execution.get_status(PROMPT_ID)["code"] == "COMFYUI_NOT_RUNNING"


class TestWaitForCompletion:
    def test_polls_until_done(self, mock_client, no_websocket):
        mock_client.get_history.side_effect = [{}, completed_history()]
        mock_client.get_queue.return_value = {"queue_running": [[1, PROMPT_ID]], "queue_pending": []}
        with patch("comfyui_mcp.execution.time.sleep"):
            result = execution.wait_for_completion(PROMPT_ID, timeout=30, poll_interval=0.01)
        assert result["status"] == "completed"
        assert "execution_time" in result
        assert len(result["outputs"]) == 1

    def test_timeout_is_not_an_error(self, mock_client, no_websocket):
        mock_client.get_history.return_value = {}
        mock_client.get_queue.return_value = {"queue_running": [], "queue_pending": [[1, PROMPT_ID]]}
        result = execution.wait_for_completion(PROMPT_ID, timeout=0.05, poll_interval=0.01)
        assert result["status"] == "timeout"
        assert "isError" not in result
        assert result["message"] == "Timeout after 0.05 seconds"

    def test_websocket_path(self, mock_client):
        mock_client.get_history.side_effect = [{}, completed_history()]
        mock_client.get_queue.return_value = {"queue_running": [[1, PROMPT_ID]], "queue_pending": []}
        with patch("comfyui_mcp.execution._wait_via_websocket", return_value="completed") as ws:
            result = execution.wait_for_completion(PROMPT_ID, timeout=10)
        ws.assert_called_once_with(PROMPT_ID, 10)
        assert result["status"] == "completed"

    def test_already_finished_skips_websocket(self, mock_client):
        mock_client.get_history.return_value = completed_history()
        with patch("comfyui_mcp.execution._wait_via_websocket") as ws:
            result = execution.wait_for_completion(PROMPT_ID, timeout=10)
        ws.assert_not_called()
        assert result["status"] == "completed"
        assert len(result["outputs"]) == 1

    def test_finish_missed_by_websocket_is_still_found(self, mock_client):
        mock_client.get_history.side_effect = [{}, completed_history()]
        mock_client.get_queue.return_value = {"queue_running": [[1, PROMPT_ID]], "queue_pending": []}
        with patch("comfyui_mcp.execution._wait_via_websocket", return_value=None):
            result = execution.wait_for_completion(PROMPT_ID, timeout=0.01)
        assert result["status"] == "completed"

    def test_poll_checks_once_after_deadline(self, mock_client):
        mock_client.get_history.return_value = completed_history()
        result = execution._poll_for_completion(PROMPT_ID, 1, start_time=0, poll_interval=0.01)
        assert result["status"] == "completed"

    def test_websocket_disabled(self, mock_client, server_config):
        server_config.features.websocket_progress = False
        mock_client.get_history.return_value = completed_history()
        with patch("comfyui_mcp.execution._wait_via_websocket") as ws:
            result = execution.wait_for_completion(PROMPT_ID, timeout=10)
        ws.assert_not_called()
        assert result["status"] == "completed"

    def test_error_without_outputs(self, mock_client, no_websocket):
        mock_client.get_history.return_value = {PROMPT_ID: {"status": {"status_str": "error", "messages": []}}}
        result = execution.wait_for_completion(PROMPT_ID, timeout=10)
        assert result["status"] == "error"
        assert result["outputs"] == []


class TestQueueManagement:
    def test_get_queue(self, mock_client):
        mock_client.get_queue.return_value = {"queue_running": [[1, "a"]], "queue_pending": [[2, "b"], [3, "c"]]}
        assert execution.get_queue()["summary"] == "1 running, 2 pending"

    def test_cancel_specific_prompt(self, mock_client):
        mock_client.delete_queue_item.return_value = {}
        mock_client.interrupt.return_value = {}
        result = execution.cancel_generation(PROMPT_ID)
        mock_client.delete_queue_item.assert_called_once_with(PROMPT_ID)
        mock_client.interrupt.assert_called_once()
        assert result["cancelled"] is True

    def test_cancel_current(self, mock_client):
        mock_client.interrupt.return_value = {}
        result = execution.cancel_generation()
        mock_client.delete_queue_item.assert_not_called()
        assert result["message"] == "Current generation interrupted"

    def test_clear_requires_confirm(self, mock_client):
        assert execution.clear_queue()["code"] == "VALIDATION_ERROR"
        mock_client.clear_queue.assert_not_called()

    def test_clear(self, mock_client):
        mock_client.get_queue.return_value = {"queue_running": [], "queue_pending": [[1, "a"], [2, "b"]]}
        mock_client.clear_queue.return_value = {}
        assert execution.clear_queue(confirm=True) == {
            "cleared": True,
            "count": 2,
            "message": "Cleared 2 pending items from queue",
        }
