"""
Workflow Persistence

Save, load, and manage workflows in a local library. Each workflow is a JSON
file in the configured workflow_library directory:

    {"name", "description", "tags", "created_at", "updated_at", "workflow"}
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .config import get_config
from .mcp_utils import not_found_error, validation_error
from .errors import format_invalid_workflow
from .validation import validate_workflow_name, validate_workflow_structure

logger = logging.getLogger("comfyui-mcp")


def get_workflows_dir(library_dir: Optional[Path] = None) -> Path:
    """Get the workflow library directory, creating if needed."""
    base_dir = Path(library_dir) if library_dir is not None else get_config().workflow_library_dir
    base_dir.mkdir(parents=True, exist_ok=True)
    return base_dir


def get_workflow_path(name: str, library_dir: Optional[Path] = None) -> Path:
    return get_workflows_dir(library_dir) / f"{name}.json"


def save_workflow(
    name: str,
    workflow: dict,
    description: str = "",
    tags: Optional[List[str]] = None,
    overwrite: bool = False,
    library_dir: Optional[Path] = None,
) -> dict:
    """
    Save a workflow to the library.

    Args:
        name: Library name (letters, digits, dash, underscore).
        workflow: API-format workflow.
        description: Optional description.
        tags: Optional tags (e.g., ["flux", "portrait"]).
        overwrite: Replace an existing entry; its created_at is kept.

    Returns:
        Success status and file path, or an error envelope.
    """
    if not validate_workflow_name(name):
        return validation_error(
            f"Invalid workflow name '{name}': use only letters, numbers, dashes and underscores",
            field="name",
        )

    errors = validate_workflow_structure(workflow)
    if errors:
        return format_invalid_workflow(errors[0], errors)

    path = get_workflow_path(name, library_dir)
    now = datetime.now().isoformat()
    data = {
        "name": name,
        "description": description,
        "tags": tags or [],
        "created_at": now,
        "updated_at": now,
        "workflow": workflow,
    }

    if path.exists():
        if not overwrite:
            return validation_error(
                f"Workflow '{name}' already exists. Set overwrite=true to replace it.",
                field="name",
            )
        try:
            existing = json.loads(path.read_text(encoding="utf-8"))
            data["created_at"] = existing.get("created_at", now)
        except json.JSONDecodeError:
            logger.warning(f"Replacing unreadable library entry {path}")

    path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    return {
        "success": True,
        "name": name,
        "path": str(path),
        "message": f"Workflow '{name}' saved",
    }


def load_workflow(name: str, library_dir: Optional[Path] = None) -> dict:
    """
    Load a workflow from the library.

    Returns:
        The workflow with metadata, or an error envelope.
    """
    if not validate_workflow_name(name):
        return validation_error(f"Invalid workflow name '{name}'", field="name")

    path = get_workflow_path(name, library_dir)
    if not path.exists():
        return not_found_error("Workflow", name)

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        return format_invalid_workflow(f"Invalid JSON in workflow file: {e}")

    return {
        "name": data.get("name", name),
        "description": data.get("description", ""),
        "tags": data.get("tags", []),
        "created_at": data.get("created_at"),
        "updated_at": data.get("updated_at"),
        "workflow": data.get("workflow", {}),
    }


def list_workflows(
    filter: Optional[str] = None,
    tags: Optional[List[str]] = None,
    library_dir: Optional[Path] = None,
) -> dict:
    """
    List saved workflows.

    Args:
        filter: Substring matched against name or description.
        tags: Keep workflows carrying at least one of these tags.

    Returns:
        List of workflow summaries, newest update first.
    """
    workflows = []
    for path in sorted(get_workflows_dir(library_dir).glob("*.json")):
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            workflows.append({"name": path.stem, "description": "(invalid JSON)", "tags": [], "error": True})
            continue

        name = data.get("name", path.stem)
        description = data.get("description", "")
        workflow_tags = data.get("tags", [])

        if filter and filter not in name and filter not in description:
            continue
        if tags and not any(tag in workflow_tags for tag in tags):
            continue

        workflows.append(
            {
                "name": name,
                "description": description,
                "tags": workflow_tags,
                "created_at": data.get("created_at"),
                "updated_at": data.get("updated_at"),
                "size": path.stat().st_size,
            }
        )

    workflows.sort(key=lambda x: x.get("updated_at") or "", reverse=True)
    return {"workflows": workflows, "count": len(workflows)}


def delete_workflow(name: str, confirm: bool = False, library_dir: Optional[Path] = None) -> dict:
    """
    Delete a workflow from the library. Requires confirm=True.
    """
    if not confirm:
        return validation_error("Deletion requires confirm=true", field="confirm")
    if not validate_workflow_name(name):
        return validation_error(f"Invalid workflow name '{name}'", field="name")

    path = get_workflow_path(name, library_dir)
    if not path.exists():
        return not_found_error("Workflow", name)

    path.unlink()
    return {
        "success": True,
        "name": name,
        "message": f"Workflow '{name}' deleted",
    }
