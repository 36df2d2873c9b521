"""
Model Discovery

Scan ComfyUI's models directory for installed checkpoints, LoRAs, VAEs and
the other model families the loaders can reference.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional

from .config import get_config

logger = logging.getLogger("comfyui-mcp")

# Model type -> subdirectory of the models directory
MODEL_DIRECTORIES = {
    "checkpoints": "checkpoints",
    "loras": "loras",
    "vae": "vae",
    "clip": "clip",
    "clip_vision": "clip_vision",
    "unet": "unet",
    "embeddings": "embeddings",
    "upscale_models": "upscale_models",
    "diffusion_models": "diffusion_models",
    "controlnet": "controlnet",
    "ipadapter": "ipadapter",
    "style_models": "style_models",
    "photomaker": "photomaker",
    "insightface": "insightface",
}

MODEL_EXTENSIONS = (".safetensors", ".ckpt", ".pt", ".pth", ".bin")


def scan_models_directory(model_type: str = "all", models_dir: Optional[Path] = None) -> List[Dict]:
    """
    Recursively list model files of one type (or all types).

    Args:
        model_type: A key of MODEL_DIRECTORIES, or "all". Unknown types yield [].
        models_dir: Override the configured models directory.

    Returns:
        [{"type", "name", "path" (relative to models dir), "size"}]
    """
    base = Path(models_dir) if models_dir is not None else get_config().models_dir

    if model_type == "all":
        dirs_to_check = MODEL_DIRECTORIES
    elif model_type in MODEL_DIRECTORIES:
        dirs_to_check = {model_type: MODEL_DIRECTORIES[model_type]}
    else:
        return []

    models = []
    for mtype, subdir in dirs_to_check.items():
        model_dir = base / subdir
        if not model_dir.is_dir():
            continue
        try:
            for f in sorted(model_dir.rglob("*")):
                if f.is_file() and f.suffix.lower() in MODEL_EXTENSIONS:
                    models.append(
                        {
                            "type": mtype,
                            "name": f.name,
                            "path": f.relative_to(base).as_posix(),
                            "size": f.stat().st_size,
                        }
                    )
        except OSError as e:
            logger.warning(f"Error scanning directory {model_dir}: {e}")
    return models


def list_models(
    model_type: str = "all",
    filter: Optional[str] = None,
    include_size: bool = False,
    models_dir: Optional[Path] = None,
) -> dict:
    """
    List installed models for the comfy_list_models tool.

    Args:
        model_type: Model family or "all".
        filter: Case-insensitive substring on the file name.
        include_size: Keep byte sizes in the result.

    Returns:
        {"models": [...], "total_count": N, "summary": "..."}
    """
    models = scan_models_directory(model_type, models_dir)

    if filter:
        needle = filter.lower()
        models = [m for m in models if needle in m["name"].lower()]

    if not include_size:
        models = [{k: v for k, v in m.items() if k != "size"} for m in models]

    summary = f"Found {len(models)} model(s)"
    if model_type != "all":
        summary += f" of type {model_type}"
    if filter:
        summary += f' matching "{filter}"'

    return {"models": models, "total_count": len(models), "summary": summary}
