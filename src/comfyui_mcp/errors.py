"""Centralized Error Handling with Actionable Guidance.

Exceptions raised by the graph engine, plus MCP-compliant error envelopes
that the tool layer returns to the agent.

All envelopes follow the MCP convention:
- "isError": true
- "code" for error categorization
- "suggestion" for actionable guidance
- "details" for additional context
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class InvalidWorkflowError(ValueError):
    """Workflow JSON is malformed or structurally invalid."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


@dataclass
class RichMCPError:
    """
    MCP error response with suggestion and troubleshooting fields.

    The simpler mcp_error() in mcp_utils.py is used by @mcp_tool_wrapper;
    this class backs the format_* helpers below.
    """

    code: str = ""
    error: str = ""
    suggestion: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    troubleshooting: Optional[str | List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "isError": True,
            "code": self.code,
            "error": self.error,
            "suggestion": self.suggestion,
        }
        if self.details:
            result["details"] = self.details
        if self.troubleshooting:
            result["troubleshooting"] = self.troubleshooting
        return result


def format_connection_error(base_url: str, original_error: str) -> Dict[str, Any]:
    """ComfyUI is unreachable."""
    return RichMCPError(
        code="COMFYUI_NOT_RUNNING",
        error=f"Cannot connect to ComfyUI at {base_url}: {original_error}",
        suggestion="Is ComfyUI running? Start it and retry.",
        details={"base_url": base_url},
        troubleshooting=[
            "1. Ensure ComfyUI is running (python main.py or the portable launcher)",
            f"2. Test connection: curl {base_url}/system_stats",
            "3. Check COMFYUI_URL or comfyui.base_url in config.json",
            "4. Check if another application is using port 8188",
        ],
    ).to_dict()


def format_invalid_workflow(message: str, errors: Optional[List[str]] = None) -> Dict[str, Any]:
    """Workflow JSON failed structural validation."""
    details = {"errors": errors[:10]} if errors else {}
    return RichMCPError(
        code="INVALID_WORKFLOW",
        error=f"Workflow validation failed: {message}",
        suggestion="Export the workflow with 'Save (API Format)' and test it in the ComfyUI interface first.",
        details=details,
        troubleshooting=[
            "Check node connections in workflow JSON",
            "Every node needs class_type and inputs",
            "Links must be [node_id, output_slot]",
        ],
    ).to_dict()


def format_file_not_found(path: str) -> Dict[str, Any]:
    """A file or library entry does not exist."""
    return RichMCPError(
        code="FILE_NOT_FOUND",
        error=f"File not found: {path}",
        suggestion="Verify the path is correct and the file exists.",
        details={"path": path},
        troubleshooting="Ensure you have read permissions for the file.",
    ).to_dict()


def format_validation_error(message: str, field_name: Optional[str] = None) -> Dict[str, Any]:
    """Bad tool parameters."""
    return RichMCPError(
        code="VALIDATION_ERROR",
        error=message,
        suggestion="Check the provided parameters against the tool documentation.",
        details={"field": field_name} if field_name else {},
    ).to_dict()


def format_execution_error(message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """ComfyUI rejected or failed a workflow."""
    return RichMCPError(
        code="EXECUTION_FAILED",
        error=message,
        suggestion="Check the ComfyUI console for detailed error messages.",
        details=details or {},
        troubleshooting=[
            "Verify all required models are installed (comfy_list_models)",
            "Ensure sufficient VRAM is available",
        ],
    ).to_dict()
