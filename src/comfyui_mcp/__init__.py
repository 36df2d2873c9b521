"""
ComfyUI MCP Server

A Model Context Protocol server that lets AI agents drive ComfyUI: submit
API-format workflows with semantic overrides, build graphs from templates,
track the queue, and keep a reusable workflow library.
"""

__version__ = "0.1.0"

from .server import mcp, main
from .graph import Node, NodeIdAllocator, NodeKind, Workflow
from .overrides import LoraSpec, OverrideReport, WorkflowOverrides, apply_overrides, apply_overrides_with_report
from .templates import TemplateOptions, get_template_builder, list_templates

__all__ = [
    "mcp",
    "main",
    "__version__",
    "Node",
    "NodeIdAllocator",
    "NodeKind",
    "Workflow",
    "LoraSpec",
    "OverrideReport",
    "WorkflowOverrides",
    "apply_overrides",
    "apply_overrides_with_report",
    "TemplateOptions",
    "get_template_builder",
    "list_templates",
]
