"""
Workflow Overrides

Apply sparse, named overrides (prompts, sampler settings, model swaps, LoRA
chains, latent size) to an arbitrary API-format workflow.

Targets are located by role (see classifier.py). A missing target is a silent
no-op so one unmatched override never aborts the rest; upload failures for
``input_image`` propagate to the caller.
"""

import logging
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .classifier import (
    is_clip_loader_node,
    is_empty_latent_node,
    is_image_loader_node,
    is_lora_loader_node,
    is_model_loader_node,
    is_negative_prompt_node,
    is_positive_prompt_node,
    is_prompt_node,
    is_sampler_node,
    is_vae_loader_node,
)
from .graph import NodeIdAllocator, NodeKind, Node, Workflow, edge
from .filesystem import upload_image

logger = logging.getLogger("comfyui-mcp")

# Sampler inputs that move in lockstep across every sampler node
SAMPLER_FIELDS = ("seed", "steps", "cfg", "sampler_name", "scheduler", "denoise")

# Output slots
MODEL_SLOT = 0
LORA_CLIP_SLOT = 1
CHECKPOINT_CLIP_SLOT = 1
CLIP_LOADER_SLOT = 0

Uploader = Callable[[str], Dict[str, Any]]


@dataclass
class LoraSpec:
    """One LoRA in a chain."""

    name: str
    strength_model: float = 1.0
    strength_clip: float = 1.0

    @classmethod
    def from_dict(cls, data: Union["LoraSpec", Mapping[str, Any]]) -> "LoraSpec":
        if isinstance(data, LoraSpec):
            return data
        return cls(
            name=data["name"],
            strength_model=data.get("strength_model", 1.0),
            strength_clip=data.get("strength_clip", 1.0),
        )


@dataclass
class WorkflowOverrides:
    """Sparse override set. None means leave unchanged."""

    positive_prompt: Optional[str] = None
    negative_prompt: Optional[str] = None
    seed: Optional[int] = None
    steps: Optional[int] = None
    cfg: Optional[float] = None
    sampler_name: Optional[str] = None
    scheduler: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    denoise: Optional[float] = None
    batch_size: Optional[int] = None
    input_image: Optional[str] = None
    model: Optional[str] = None
    vae: Optional[str] = None
    clip: Optional[str] = None
    lora: Optional[List[LoraSpec]] = None

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "WorkflowOverrides":
        """Build from tool input. Unknown keys are ignored."""
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        if values.get("lora") is not None:
            values["lora"] = [LoraSpec.from_dict(item) for item in values["lora"]]
        return cls(**values)

    def present(self) -> List[str]:
        """Names of the fields that carry a value."""
        return [f.name for f in fields(self) if getattr(self, f.name) is not None]

    def is_empty(self) -> bool:
        return not self.present()


@dataclass
class OverrideReport:
    """Which overrides changed the graph and which found no target."""

    applied: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"applied": list(self.applied), "skipped": dict(self.skipped)}


def _set_first(wf: Workflow, predicate, report: OverrideReport, name: str, reason: str, **inputs) -> Workflow:
    node_id = wf.find_first(predicate)
    if node_id is None:
        report.skipped[name] = reason
        return wf
    report.applied.append(name)
    return wf.with_inputs(node_id, **inputs)


def _apply_prompts(wf: Workflow, ov: WorkflowOverrides, report: OverrideReport, uploader: Uploader) -> Workflow:
    if ov.positive_prompt is not None:
        wf = _set_first(
            wf, is_positive_prompt_node, report, "positive_prompt", "no positive prompt node", text=ov.positive_prompt
        )
    if ov.negative_prompt is not None:
        wf = _set_first(
            wf, is_negative_prompt_node, report, "negative_prompt", "no negative prompt node", text=ov.negative_prompt
        )
    return wf


def _apply_sampler_settings(
    wf: Workflow, ov: WorkflowOverrides, report: OverrideReport, uploader: Uploader
) -> Workflow:
    changes = {name: getattr(ov, name) for name in SAMPLER_FIELDS if getattr(ov, name) is not None}
    if not changes:
        return wf
    sampler_ids = wf.find_all(is_sampler_node)
    if not sampler_ids:
        for name in changes:
            report.skipped[name] = "no sampler node"
        return wf
    for node_id in sampler_ids:
        wf = wf.with_inputs(node_id, **changes)
    report.applied.extend(changes)
    return wf


def _apply_input_image(wf: Workflow, ov: WorkflowOverrides, report: OverrideReport, uploader: Uploader) -> Workflow:
    if ov.input_image is None:
        return wf
    # Stage the file first; failures here abort the whole override call.
    staged = uploader(ov.input_image)
    return _set_first(wf, is_image_loader_node, report, "input_image", "no image loader node", image=staged["filename"])


def _apply_model(wf: Workflow, ov: WorkflowOverrides, report: OverrideReport, uploader: Uploader) -> Workflow:
    if ov.model is None:
        return wf
    node_id = wf.find_first(is_model_loader_node)
    if node_id is None:
        report.skipped["model"] = "no model loader node"
        return wf
    kind = wf[node_id].kind
    if kind is NodeKind.CHECKPOINT_LOADER:
        wf = wf.with_inputs(node_id, ckpt_name=ov.model)
    elif kind is NodeKind.UNET_LOADER:
        wf = wf.with_inputs(node_id, unet_name=ov.model)
    report.applied.append("model")
    return wf


def _apply_vae(wf: Workflow, ov: WorkflowOverrides, report: OverrideReport, uploader: Uploader) -> Workflow:
    if ov.vae is None:
        return wf
    return _set_first(wf, is_vae_loader_node, report, "vae", "no VAE loader node", vae_name=ov.vae)


def _apply_clip(wf: Workflow, ov: WorkflowOverrides, report: OverrideReport, uploader: Uploader) -> Workflow:
    if ov.clip is None:
        return wf
    node_id = wf.find_first(is_clip_loader_node)
    if node_id is None:
        report.skipped["clip"] = "no CLIP loader node"
        return wf
    if wf[node_id].kind is NodeKind.DUAL_CLIP_LOADER:
        wf = wf.with_inputs(node_id, clip_name1=ov.clip)
    else:
        wf = wf.with_inputs(node_id, clip_name=ov.clip)
    report.applied.append("clip")
    return wf


def find_lora_sources(wf: Workflow) -> Optional[Tuple[List[Any], List[Any]]]:
    """
    Model and CLIP edges a LoRA chain should start from.

    The model comes from the first model loader, the CLIP from the first CLIP
    loader. Returns None when either loader is missing.
    """
    model_id = wf.find_first(is_model_loader_node)
    clip_id = wf.find_first(is_clip_loader_node)
    if model_id is None or clip_id is None:
        return None
    return edge(model_id, MODEL_SLOT), edge(clip_id, CLIP_LOADER_SLOT)


def chain_loras(
    wf: Workflow,
    loras: List[LoraSpec],
    model_source: List[Any],
    clip_source: List[Any],
    allocator: NodeIdAllocator,
) -> Tuple[Workflow, List[Any], List[Any]]:
    """
    Append a linear chain of LoraLoader nodes.

    Each node consumes the previous model/CLIP edges; the returned edges point
    at the last node's model (slot 0) and CLIP (slot 1) outputs.
    """
    model_out, clip_out = list(model_source), list(clip_source)
    for spec in loras:
        node_id = allocator.allocate()
        node = Node(
            "LoraLoader",
            {
                "lora_name": spec.name,
                "strength_model": spec.strength_model,
                "strength_clip": spec.strength_clip,
                "model": model_out,
                "clip": clip_out,
            },
            {"title": f"Load LoRA ({spec.name})"},
        )
        wf = wf.with_node(node_id, node)
        model_out, clip_out = edge(node_id, MODEL_SLOT), edge(node_id, LORA_CLIP_SLOT)
    return wf, model_out, clip_out


def rewire_to_chain(wf: Workflow, model_out: List[Any], clip_out: List[Any]) -> Workflow:
    """Point every sampler's model and every prompt encoder's clip at a LoRA chain's outputs."""
    for node_id in wf.find_all(is_sampler_node):
        wf = wf.with_inputs(node_id, model=model_out)
    for node_id in wf.find_all(is_prompt_node):
        wf = wf.with_inputs(node_id, clip=clip_out)
    return wf


def _apply_lora(wf: Workflow, ov: WorkflowOverrides, report: OverrideReport, uploader: Uploader) -> Workflow:
    if not ov.lora:
        return wf

    sources = find_lora_sources(wf)
    if sources is None:
        logger.debug("LoRA override skipped: workflow needs a model loader and a CLIP loader")
        report.skipped["lora"] = "no model loader or CLIP loader"
        return wf

    # Allocate against the original ids so new nodes never reuse a removed id
    allocator = NodeIdAllocator.for_workflow(wf)
    old_loras = wf.find_all(is_lora_loader_node)
    dangling = wf.references_to(old_loras)
    wf = wf.without_nodes(old_loras)

    wf, model_out, clip_out = chain_loras(wf, ov.lora, sources[0], sources[1], allocator)
    wf = rewire_to_chain(wf, model_out, clip_out)

    # Anything else that fed from a removed LoRA now feeds from the new chain
    removed = set(old_loras)
    for consumer_id, input_name, ref in dangling:
        if consumer_id in removed or consumer_id not in wf:
            continue
        if wf[consumer_id].inputs.get(input_name) != ref:
            continue
        replacement = clip_out if ref[1] == LORA_CLIP_SLOT else model_out
        wf = wf.with_inputs(consumer_id, **{input_name: replacement})

    report.applied.append("lora")
    return wf


def _apply_latent(wf: Workflow, ov: WorkflowOverrides, report: OverrideReport, uploader: Uploader) -> Workflow:
    changes = {
        name: getattr(ov, name) for name in ("width", "height", "batch_size") if getattr(ov, name) is not None
    }
    if not changes:
        return wf
    node_id = wf.find_first(is_empty_latent_node)
    if node_id is None:
        for name in changes:
            report.skipped[name] = "no EmptyLatentImage node"
        return wf
    report.applied.extend(changes)
    return wf.with_inputs(node_id, **changes)


OVERRIDE_PIPELINE = (
    _apply_prompts,
    _apply_sampler_settings,
    _apply_input_image,
    _apply_model,
    _apply_vae,
    _apply_clip,
    _apply_lora,
    _apply_latent,
)


def apply_overrides_with_report(
    workflow: Union[Workflow, Mapping[str, Any]],
    overrides: Union[WorkflowOverrides, Mapping[str, Any], None],
    uploader: Uploader = upload_image,
) -> Tuple[Workflow, OverrideReport]:
    """Like apply_overrides(), also returning which overrides found a target."""
    wf = Workflow.coerce(workflow)
    report = OverrideReport()
    if overrides is None:
        return wf, report
    if not isinstance(overrides, WorkflowOverrides):
        overrides = WorkflowOverrides.from_dict(overrides)
    if overrides.is_empty():
        return wf, report

    for step in OVERRIDE_PIPELINE:
        wf = step(wf, overrides, report, uploader)

    if report.skipped:
        logger.debug(f"Overrides without target: {report.skipped}")
    return wf, report


def apply_overrides(
    workflow: Union[Workflow, Mapping[str, Any]],
    overrides: Union[WorkflowOverrides, Mapping[str, Any], None],
    uploader: Uploader = upload_image,
) -> Workflow:
    """
    Apply overrides to a workflow, returning a new Workflow.

    The input is never modified. Overrides whose target node is absent are
    skipped silently.

    Args:
        workflow: Workflow or API-format dict.
        overrides: WorkflowOverrides or a dict with the same field names.
        uploader: Stages ``input_image`` files; must return {"filename": ...}.

    Returns:
        The transformed Workflow.

    Raises:
        InvalidWorkflowError: workflow is not a mapping of node objects.
        FileNotFoundError / ValueError: propagated from the uploader.
    """
    wf, _ = apply_overrides_with_report(workflow, overrides, uploader)
    return wf
