"""
Workflow Graph Model

Immutable representation of a ComfyUI API-format workflow:

    {
        "1": {"class_type": "CheckpointLoaderSimple", "inputs": {"ckpt_name": "model.safetensors"}},
        "2": {"class_type": "CLIPTextEncode", "inputs": {"text": "a cat", "clip": ["1", 1]},
              "_meta": {"title": "CLIP Text Encode (Positive Prompt)"}},
    }

Input values are either plain scalars or edge references ``[producer_id, slot]``.
Every transformation returns a new Workflow; the JSON handed to ``from_dict``
is deep-copied and never touched again.
"""

import copy
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from .errors import InvalidWorkflowError


class NodeKind(Enum):
    """Known node kinds. Anything else is UNKNOWN and passes through untouched."""

    CHECKPOINT_LOADER = "checkpoint_loader"
    UNET_LOADER = "unet_loader"
    CLIP_LOADER = "clip_loader"
    DUAL_CLIP_LOADER = "dual_clip_loader"
    VAE_LOADER = "vae_loader"
    LORA_LOADER = "lora_loader"
    TEXT_ENCODER = "text_encoder"
    SAMPLER = "sampler"
    IMAGE_LOADER = "image_loader"
    EMPTY_LATENT = "empty_latent"
    UNKNOWN = "unknown"

    @classmethod
    def from_class_type(cls, class_type: Any) -> "NodeKind":
        return _CLASS_TYPE_KINDS.get(class_type, cls.UNKNOWN) if isinstance(class_type, str) else cls.UNKNOWN


_CLASS_TYPE_KINDS = {
    "CheckpointLoaderSimple": NodeKind.CHECKPOINT_LOADER,
    "CheckpointLoader": NodeKind.CHECKPOINT_LOADER,
    "UNETLoader": NodeKind.UNET_LOADER,
    "CLIPLoader": NodeKind.CLIP_LOADER,
    "DualCLIPLoader": NodeKind.DUAL_CLIP_LOADER,
    "VAELoader": NodeKind.VAE_LOADER,
    "LoraLoader": NodeKind.LORA_LOADER,
    "LoraLoaderModelOnly": NodeKind.LORA_LOADER,
    "CLIPTextEncode": NodeKind.TEXT_ENCODER,
    "KSampler": NodeKind.SAMPLER,
    "KSamplerAdvanced": NodeKind.SAMPLER,
    "SamplerCustom": NodeKind.SAMPLER,
    "LoadImage": NodeKind.IMAGE_LOADER,
    "LoadImageMask": NodeKind.IMAGE_LOADER,
    "EmptyLatentImage": NodeKind.EMPTY_LATENT,
}


def class_types_for(*kinds: NodeKind) -> Tuple[str, ...]:
    """All class_type tags that map to one of the given kinds."""
    return tuple(ct for ct, kind in _CLASS_TYPE_KINDS.items() if kind in kinds)


def edge(node_id: Union[str, int], slot: int) -> List[Any]:
    """Build an edge reference to output ``slot`` of ``node_id``."""
    return [str(node_id), slot]


def is_edge(value: Any) -> bool:
    """True if an input value is an edge reference ``[producer_id, slot]``."""
    return (
        isinstance(value, (list, tuple))
        and len(value) == 2
        and isinstance(value[0], (str, int))
        and not isinstance(value[0], bool)
        and isinstance(value[1], int)
        and not isinstance(value[1], bool)
    )


@dataclass(frozen=True)
class Node:
    """A single workflow node. Treat ``inputs`` and ``meta`` as read-only."""

    class_type: str
    inputs: Dict[str, Any] = field(default_factory=dict)
    meta: Optional[Dict[str, Any]] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> NodeKind:
        return NodeKind.from_class_type(self.class_type)

    @property
    def title(self) -> str:
        if isinstance(self.meta, dict):
            title = self.meta.get("title")
            if isinstance(title, str):
                return title
        return ""

    def with_inputs(self, **changes: Any) -> "Node":
        """Return a copy of this node with some inputs replaced."""
        inputs = copy.deepcopy(self.inputs)
        inputs.update(changes)
        return Node(self.class_type, inputs, copy.deepcopy(self.meta), copy.deepcopy(self.extra))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Node":
        data = copy.deepcopy(dict(data))
        class_type = data.pop("class_type", "")
        inputs = data.pop("inputs", {})
        meta = data.pop("_meta", None)
        return cls(class_type, inputs, meta, data)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"inputs": copy.deepcopy(self.inputs), "class_type": self.class_type}
        if self.meta is not None:
            result["_meta"] = copy.deepcopy(self.meta)
        result.update(copy.deepcopy(self.extra))
        return result


NodePredicate = Callable[[Node], bool]


class Workflow:
    """Ordered, immutable mapping of node id -> Node."""

    __slots__ = ("_nodes",)

    def __init__(self, nodes: Optional[Iterable[Tuple[str, Node]]] = None):
        self._nodes: Dict[str, Node] = {str(nid): node for nid, node in (nodes or [])}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Workflow":
        """Parse API-format JSON. Raises InvalidWorkflowError for non-dict nodes or inputs."""
        if not isinstance(data, Mapping):
            raise InvalidWorkflowError(f"Workflow must be a JSON object, got {type(data).__name__}")
        nodes = []
        for node_id, node_data in data.items():
            if not isinstance(node_data, Mapping):
                raise InvalidWorkflowError(f"Node '{node_id}' must be an object")
            if not isinstance(node_data.get("inputs", {}), Mapping):
                raise InvalidWorkflowError(f"Node '{node_id}' inputs must be an object")
            nodes.append((str(node_id), Node.from_dict(node_data)))
        return cls(nodes)

    @classmethod
    def coerce(cls, workflow: Union["Workflow", Mapping[str, Any], str]) -> "Workflow":
        """Accept a Workflow, a dict, or a JSON string."""
        if isinstance(workflow, Workflow):
            return workflow
        return cls.from_dict(parse_workflow(workflow))

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {nid: node.to_dict() for nid, node in self._nodes.items()}

    def __getitem__(self, node_id: str) -> Node:
        return self._nodes[str(node_id)]

    def __contains__(self, node_id: object) -> bool:
        return str(node_id) in self._nodes

    def __iter__(self) -> Iterator[str]:
        return iter(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Workflow):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return f"Workflow({len(self._nodes)} nodes)"

    def items(self) -> Iterator[Tuple[str, Node]]:
        return iter(list(self._nodes.items()))

    def find_first(self, predicate: NodePredicate) -> Optional[str]:
        """Id of the first node (in iteration order) matching predicate."""
        for node_id, node in self._nodes.items():
            if predicate(node):
                return node_id
        return None

    def find_all(self, predicate: NodePredicate) -> List[str]:
        return [node_id for node_id, node in self._nodes.items() if predicate(node)]

    def with_node(self, node_id: str, node: Node) -> "Workflow":
        """Replace (or append) a node, keeping position for existing ids."""
        nodes = dict(self._nodes)
        nodes[str(node_id)] = node
        return Workflow(nodes.items())

    def with_inputs(self, node_id: str, **changes: Any) -> "Workflow":
        return self.with_node(node_id, self[node_id].with_inputs(**changes))

    def without_nodes(self, node_ids: Iterable[str]) -> "Workflow":
        drop = {str(n) for n in node_ids}
        return Workflow((nid, node) for nid, node in self._nodes.items() if nid not in drop)

    def references_to(self, node_ids: Iterable[str]) -> List[Tuple[str, str, List[Any]]]:
        """All (consumer_id, input_name, edge) triples whose producer is in node_ids."""
        targets = {str(n) for n in node_ids}
        refs = []
        for consumer_id, node in self._nodes.items():
            for name, value in node.inputs.items():
                if is_edge(value) and str(value[0]) in targets:
                    refs.append((consumer_id, name, list(value)))
        return refs


class NodeIdAllocator:
    """
    Hands out node ids that are fresh with respect to a workflow.

    Ids are numeric strings counting up from the highest numeric id present;
    non-numeric ids are ignored for counting but still never reused.
    """

    def __init__(self, existing: Iterable[str] = (), start: Optional[int] = None):
        self._taken = {str(n) for n in existing}
        numeric = [int(n) for n in self._taken if n.isascii() and n.isdigit()]
        highest = max(numeric) if numeric else 0
        self._next = max(highest + 1, start if start is not None else 1)

    @classmethod
    def for_workflow(cls, workflow: Workflow) -> "NodeIdAllocator":
        return cls(workflow)

    def allocate(self) -> str:
        while str(self._next) in self._taken:
            self._next += 1
        node_id = str(self._next)
        self._taken.add(node_id)
        self._next += 1
        return node_id


def parse_workflow(workflow: Union[str, Mapping[str, Any]]) -> Dict[str, Any]:
    """Parse a workflow given as JSON text or a mapping."""
    if isinstance(workflow, str):
        try:
            data = json.loads(workflow)
        except json.JSONDecodeError as e:
            raise InvalidWorkflowError(f"Workflow is not valid JSON: {e}") from e
    else:
        data = workflow
    if not isinstance(data, Mapping):
        raise InvalidWorkflowError(f"Workflow must be a JSON object, got {type(data).__name__}")
    return dict(data)


def summarize_workflow(workflow: Union[Workflow, Mapping[str, Any]]) -> str:
    """Short human description of what a workflow does."""
    wf = Workflow.coerce(workflow)
    class_types = {node.class_type for _, node in wf.items()}

    parts = []
    if class_types & set(class_types_for(NodeKind.SAMPLER)):
        parts.append("generation")
    if class_types & set(class_types_for(NodeKind.IMAGE_LOADER)):
        parts.append("img2img")
    if "UNETLoader" in class_types:
        parts.append("custom model")
    if class_types & set(class_types_for(NodeKind.LORA_LOADER)):
        parts.append("with LoRA")
    return ", ".join(parts) if parts else "workflow"
