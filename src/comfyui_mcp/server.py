"""ComfyUI MCP Server - Main entry point."""

import json
from typing import List, Optional

from mcp.server.fastmcp import FastMCP

from . import execution, filesystem, models, persistence
from .config import get_config
from .errors import (
    InvalidWorkflowError,
    format_file_not_found,
    format_invalid_workflow,
    format_validation_error,
)
from .graph import Workflow, parse_workflow, summarize_workflow
from .mcp_utils import configure_logging, is_error, log_structured, mcp_error, mcp_tool_wrapper, validation_error
from .models import MODEL_DIRECTORIES
from .overrides import apply_overrides_with_report
from .schemas import LoraInput, OverridesInput, WorkflowInput
from .templates import IMAGE_INPUT_TEMPLATES, TEMPLATE_BUILDERS, TemplateOptions, get_template_builder, list_templates
from .validation import validate_override_ranges, validate_workflow_structure

# Initialize MCP server
mcp = FastMCP(
    "comfyui-mcp",
    instructions=(
        "Drive a local ComfyUI instance: submit API-format workflows with overrides, "
        "generate from built-in templates, track the queue, and keep a workflow library."
    ),
)


def _to_mcp_response(result: dict) -> dict:
    """Convert result to MCP format with isError flag."""
    if isinstance(result, dict) and "error" in result and "isError" not in result:
        return {
            **result,
            "isError": True,
            "code": result.get("code", "TOOL_ERROR"),
        }
    return result


def _parse_workflow(workflow: WorkflowInput):
    """Workflow from a dict or JSON string, or an INVALID_WORKFLOW envelope."""
    try:
        raw = parse_workflow(workflow)
    except InvalidWorkflowError as e:
        return None, format_invalid_workflow(str(e), e.errors)
    # Validate what the caller sent; Workflow fills in defaults such as empty inputs
    errors = validate_workflow_structure(raw)
    if errors:
        return None, format_invalid_workflow(errors[0], errors)
    return Workflow.from_dict(raw), None


def _range_errors(params: dict) -> Optional[dict]:
    errors = validate_override_ranges(params)
    if errors:
        return format_validation_error("; ".join(errors))
    return None


# =============================================================================
# Generation Tools (2)
# =============================================================================


@mcp.tool()
@mcp_tool_wrapper
def comfy_submit_workflow(
    workflow: WorkflowInput,
    overrides: Optional[OverridesInput] = None,
    client_id: Optional[str] = None,
) -> dict:
    """Submit an API-format workflow, optionally applying overrides (prompts, sampler, model, LoRA, size)."""
    parsed, error = _parse_workflow(workflow)
    if error:
        return error

    overrides = dict(overrides or {})
    error = _range_errors(overrides)
    if error:
        return error

    try:
        modified, report = apply_overrides_with_report(parsed, overrides)
    except FileNotFoundError:
        return format_file_not_found(overrides.get("input_image", ""))
    except ValueError as e:
        return format_validation_error(str(e), "input_image")

    result = execution.submit_workflow(modified.to_dict(), client_id)
    if is_error(result):
        return _to_mcp_response(result)

    result["workflow_summary"] = summarize_workflow(modified)
    if overrides:
        result["overrides"] = report.to_dict()
    return result


@mcp.tool()
@mcp_tool_wrapper
def comfy_generate_simple(
    prompt: str,
    template: str,
    negative_prompt: Optional[str] = None,
    model: Optional[str] = None,
    input_image: Optional[str] = None,
    width: Optional[int] = None,
    height: Optional[int] = None,
    steps: Optional[int] = None,
    cfg: Optional[float] = None,
    seed: Optional[int] = None,
    sampler: Optional[str] = None,
    scheduler: Optional[str] = None,
    denoise: Optional[float] = None,
    batch_size: Optional[int] = None,
    variant: Optional[str] = None,
    lora: Optional[List[LoraInput]] = None,
) -> dict:
    """Generate from a template: flux_txt2img|sd15_txt2img|sdxl_txt2img|basic_img2img. seed -1 = random."""
    builder = get_template_builder(template)
    if builder is None:
        return validation_error(
            f"Unknown or disabled template: {template}. Available: {', '.join(TEMPLATE_BUILDERS)}",
            field="template",
        )

    params = {"width": width, "height": height, "steps": steps, "cfg": cfg, "denoise": denoise, "batch_size": batch_size}
    error = _range_errors(params)
    if error:
        return error

    if template in IMAGE_INPUT_TEMPLATES:
        if not input_image:
            return validation_error(f"input_image is required for {template}", field="input_image")
        try:
            input_image = filesystem.upload_image(input_image)["filename"]
        except FileNotFoundError:
            return format_file_not_found(input_image)
        except ValueError as e:
            return format_validation_error(str(e), "input_image")

    options = TemplateOptions.coerce(
        {
            "prompt": prompt,
            "negative_prompt": negative_prompt,
            "model": model,
            "input_image": input_image,
            "seed": seed,
            "sampler": sampler,
            "scheduler": scheduler,
            "variant": variant,
            "lora": lora,
            **params,
        }
    )
    workflow = builder(options)

    result = execution.submit_workflow(workflow.to_dict())
    if is_error(result):
        return _to_mcp_response(result)

    log_structured("info", "template_built", template=template, variant=variant, node_count=len(workflow))
    result["template_used"] = template
    result["workflow_summary"] = f"{template} generation: {prompt[:50]}..."
    return result


@mcp.tool()
@mcp_tool_wrapper
def comfy_list_templates() -> dict:
    """List generation templates, their variants and configured defaults."""
    templates = list_templates()
    return {"templates": templates, "count": len(templates)}


# =============================================================================
# Status Tools (2)
# =============================================================================


@mcp.tool()
@mcp_tool_wrapper
def comfy_get_status(prompt_id: Optional[str] = None, include_outputs: bool = True) -> dict:
    """Status of a prompt (completed|executing|queued|not_found), or the queue when prompt_id is omitted."""
    return _to_mcp_response(execution.get_status(prompt_id, include_outputs))


@mcp.tool()
@mcp_tool_wrapper
def comfy_wait_for_completion(
    prompt_id: str,
    timeout: Optional[float] = None,
    poll_interval: Optional[float] = None,
) -> dict:
    """Block until a prompt finishes. Returns outputs, or status "timeout"."""
    return _to_mcp_response(execution.wait_for_completion(prompt_id, timeout, poll_interval))


# =============================================================================
# Model Tools (1)
# =============================================================================


@mcp.tool()
@mcp_tool_wrapper
def comfy_list_models(type: str = "all", filter: Optional[str] = None, include_size: bool = False) -> dict:
    """List installed models. type: checkpoints|loras|vae|clip|unet|diffusion_models|...|all"""
    if type != "all" and type not in MODEL_DIRECTORIES:
        return validation_error(
            f"Unknown model type: {type}. Use: {'|'.join(MODEL_DIRECTORIES)}|all",
            field="type",
        )
    return models.list_models(type, filter, include_size)


# =============================================================================
# Workflow Library Tools (4)
# =============================================================================


def _library_disabled() -> Optional[dict]:
    if not get_config().features.workflow_library:
        return mcp_error("Workflow library is disabled in config", "FEATURE_DISABLED")
    return None


@mcp.tool()
@mcp_tool_wrapper
def comfy_save_workflow(
    name: str,
    workflow: WorkflowInput,
    description: str = "",
    tags: Optional[List[str]] = None,
    overwrite: bool = False,
) -> dict:
    """Save a workflow to the library. name: letters, digits, - and _."""
    disabled = _library_disabled()
    if disabled:
        return disabled
    if isinstance(workflow, str):
        try:
            workflow = json.loads(workflow)
        except json.JSONDecodeError as e:
            return format_invalid_workflow(f"Workflow is not valid JSON: {e}")
    return persistence.save_workflow(name, workflow, description, tags, overwrite)


@mcp.tool()
@mcp_tool_wrapper
def comfy_load_workflow(name: str) -> dict:
    """Load a workflow (with metadata) from the library."""
    return _library_disabled() or persistence.load_workflow(name)


@mcp.tool()
@mcp_tool_wrapper
def comfy_list_workflows(filter: Optional[str] = None, tags: Optional[List[str]] = None) -> dict:
    """List library workflows. filter matches name/description; tags match any."""
    return _library_disabled() or persistence.list_workflows(filter, tags)


@mcp.tool()
@mcp_tool_wrapper
def comfy_delete_workflow(name: str, confirm: bool = False) -> dict:
    """Delete a library workflow. Requires confirm=true."""
    return _library_disabled() or persistence.delete_workflow(name, confirm)


# =============================================================================
# Queue Tools (3)
# =============================================================================


@mcp.tool()
@mcp_tool_wrapper
def comfy_get_queue() -> dict:
    """Running and pending prompts."""
    return _to_mcp_response(execution.get_queue())


@mcp.tool()
@mcp_tool_wrapper
def comfy_cancel_generation(prompt_id: Optional[str] = None, delete_from_queue: bool = True) -> dict:
    """Interrupt the current generation; with prompt_id also remove it from the queue."""
    return _to_mcp_response(execution.cancel_generation(prompt_id, delete_from_queue))


@mcp.tool()
@mcp_tool_wrapper
def comfy_clear_queue(confirm: bool = False) -> dict:
    """Remove all pending prompts. Requires confirm=true."""
    return _to_mcp_response(execution.clear_queue(confirm))


# =============================================================================
# File Tools (2)
# =============================================================================


@mcp.tool()
@mcp_tool_wrapper
def comfy_upload_image(image_path: str, filename: Optional[str] = None, overwrite: bool = False) -> dict:
    """Copy a local image into ComfyUI's input folder. Returns the staged filename."""
    try:
        return filesystem.upload_image(image_path, filename, overwrite)
    except FileNotFoundError:
        return format_file_not_found(image_path)
    except ValueError as e:
        return format_validation_error(str(e), "filename")


@mcp.tool()
@mcp_tool_wrapper
def comfy_get_output_images(limit: int = 20, sort: str = "newest", filter: Optional[str] = None) -> dict:
    """List generated images. sort: newest|oldest|name"""
    if sort not in filesystem.SORT_ORDERS:
        return validation_error(f"sort must be one of {'|'.join(filesystem.SORT_ORDERS)}", field="sort")
    images = filesystem.get_output_images(limit, sort, filter)
    return {"images": images, "count": len(images)}


def main():
    """Entry point for the MCP server."""
    configure_logging()
    config = get_config()
    log_structured("info", "server_starting", base_url=config.comfyui.base_url)
    mcp.run()


if __name__ == "__main__":
    main()
