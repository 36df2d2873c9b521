"""
Node Classifier

Role predicates for workflow nodes. Each takes a single node (a graph.Node or
a raw API-format dict), returns a bool, and never raises.
"""

from typing import Any

from .graph import Node, NodeKind

POSITIVE_DEFAULT_TITLE = "clip text encode (positive prompt)"
NEGATIVE_DEFAULT_TITLE = "clip text encode (negative prompt)"


def _kind(node: Any) -> NodeKind:
    if isinstance(node, Node):
        return node.kind
    if isinstance(node, dict):
        return NodeKind.from_class_type(node.get("class_type"))
    return NodeKind.UNKNOWN


def _title(node: Any) -> str:
    if isinstance(node, Node):
        return node.title.lower()
    if isinstance(node, dict):
        meta = node.get("_meta")
        if isinstance(meta, dict) and isinstance(meta.get("title"), str):
            return meta["title"].lower()
    return ""


def is_positive_prompt_node(node: Any) -> bool:
    if _kind(node) is not NodeKind.TEXT_ENCODER:
        return False
    title = _title(node)
    return "positive" in title or title == POSITIVE_DEFAULT_TITLE


def is_negative_prompt_node(node: Any) -> bool:
    if _kind(node) is not NodeKind.TEXT_ENCODER:
        return False
    title = _title(node)
    return "negative" in title or title == NEGATIVE_DEFAULT_TITLE


def is_prompt_node(node: Any) -> bool:
    """Positive or negative prompt encoder."""
    return is_positive_prompt_node(node) or is_negative_prompt_node(node)


def is_sampler_node(node: Any) -> bool:
    return _kind(node) is NodeKind.SAMPLER


def is_image_loader_node(node: Any) -> bool:
    return _kind(node) is NodeKind.IMAGE_LOADER


def is_model_loader_node(node: Any) -> bool:
    return _kind(node) in (NodeKind.CHECKPOINT_LOADER, NodeKind.UNET_LOADER)


def is_checkpoint_loader_node(node: Any) -> bool:
    return _kind(node) is NodeKind.CHECKPOINT_LOADER


def is_vae_loader_node(node: Any) -> bool:
    return _kind(node) is NodeKind.VAE_LOADER


def is_clip_loader_node(node: Any) -> bool:
    return _kind(node) in (NodeKind.CLIP_LOADER, NodeKind.DUAL_CLIP_LOADER)


def is_lora_loader_node(node: Any) -> bool:
    return _kind(node) is NodeKind.LORA_LOADER


def is_empty_latent_node(node: Any) -> bool:
    return _kind(node) is NodeKind.EMPTY_LATENT
