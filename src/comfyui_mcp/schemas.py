"""
Tool Input Types

TypedDicts used as MCP tool parameter annotations. FastMCP derives each
tool's JSON Schema from these, so agents see the field names and types.
"""

from typing import Any, Dict, List, Union

from typing_extensions import Required, TypedDict


# node_id -> {"class_type", "inputs", "_meta"?}, or the same as a JSON string.
# Nodes stay plain dicts so unknown keys such as _meta pass through validation.
WorkflowInput = Union[str, Dict[str, Dict[str, Any]]]


class LoraInput(TypedDict, total=False):
    """One LoRA in a chain. Strengths default to 1.0."""

    name: Required[str]
    strength_model: float
    strength_clip: float


class OverridesInput(TypedDict, total=False):
    """Sparse workflow overrides. Omitted fields leave the workflow unchanged."""

    positive_prompt: str
    negative_prompt: str
    seed: int
    steps: int
    cfg: float
    sampler_name: str
    scheduler: str
    width: int
    height: int
    denoise: float
    batch_size: int
    input_image: str
    model: str
    vae: str
    clip: str
    lora: List[LoraInput]
