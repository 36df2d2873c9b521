"""
Input Validation

Checks run at the tool boundary before anything reaches ComfyUI or disk.
Each validator returns a list of human-readable problems (empty when valid)
or a bool for simple name/extension checks.
"""

import re
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .graph import is_edge

WORKFLOW_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp", ".bmp")

# (min, max) inclusive
OVERRIDE_RANGES: Dict[str, Tuple[float, float]] = {
    "steps": (1, 150),
    "cfg": (0, 30),
    "width": (64, 8192),
    "height": (64, 8192),
    "denoise": (0, 1),
    "batch_size": (1, 100),
}


def validate_workflow_structure(workflow: Any) -> List[str]:
    """
    Validate the shape of an API-format workflow.

    Checks:
    - Workflow is a non-empty object
    - Every node is an object with class_type and inputs
    - List-valued inputs are edge references [node_id, slot]

    Returns:
        List of error messages (empty if valid).
    """
    if not isinstance(workflow, Mapping):
        return [f"Workflow must be an object, got {type(workflow).__name__}"]
    if not workflow:
        return ["Workflow has no nodes"]

    errors = []
    for node_id, node in workflow.items():
        if not isinstance(node, Mapping):
            errors.append(f"Node {node_id}: must be an object")
            continue
        class_type = node.get("class_type")
        if not isinstance(class_type, str) or not class_type:
            errors.append(f"Node {node_id}: missing class_type")
        inputs = node.get("inputs")
        if not isinstance(inputs, Mapping):
            errors.append(f"Node {node_id}: missing inputs")
            continue
        for input_name, value in inputs.items():
            if isinstance(value, list) and len(value) == 2 and not is_edge(value):
                errors.append(f"Node {node_id}: input '{input_name}' is not a valid link [node_id, slot]")
    return errors


def validate_workflow_name(name: str) -> bool:
    """Library names: letters, digits, dash and underscore."""
    return isinstance(name, str) and bool(WORKFLOW_NAME_PATTERN.match(name))


def validate_image_format(filename: str) -> bool:
    return filename.lower().endswith(IMAGE_EXTENSIONS)


def sanitize_filename(filename: str) -> str:
    return UNSAFE_FILENAME_CHARS.sub("_", filename)


def validate_override_ranges(overrides: Optional[Mapping[str, Any]]) -> List[str]:
    """
    Range-check numeric generation parameters.

    Args:
        overrides: Mapping of parameter name to value. None values are ignored.

    Returns:
        List of error messages (empty if valid).
    """
    errors = []
    for name, (low, high) in OVERRIDE_RANGES.items():
        value = (overrides or {}).get(name)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"{name} must be a number, got {type(value).__name__}")
        elif not low <= value <= high:
            errors.append(f"{name} must be between {low} and {high}, got {value}")
    return errors
