"""
Filesystem Helpers

Stage input images into ComfyUI's input directory and list generated images
from its output directory. Paths come from config.py.
"""

import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from .config import get_config
from .validation import sanitize_filename, validate_image_format

logger = logging.getLogger("comfyui-mcp")

SORT_ORDERS = ("newest", "oldest", "name")


def _dedupe(directory: Path, filename: str) -> str:
    """First of name.ext, name_1.ext, name_2.ext... not present in directory."""
    if not (directory / filename).exists():
        return filename
    stem, suffix = Path(filename).stem, Path(filename).suffix
    counter = 1
    while (directory / f"{stem}_{counter}{suffix}").exists():
        counter += 1
    return f"{stem}_{counter}{suffix}"


def upload_image(
    source_path: str,
    filename: Optional[str] = None,
    overwrite: bool = False,
    input_dir: Optional[Path] = None,
) -> Dict:
    """
    Copy an image into ComfyUI's input directory.

    Args:
        source_path: Local file to stage.
        filename: Target name (defaults to the source name). Sanitized.
        overwrite: Replace an existing file instead of picking a free name.
        input_dir: Override the configured input directory.

    Returns:
        {"filename": staged name, "path": staged path, "size": bytes}

    Raises:
        FileNotFoundError: source_path does not exist.
        ValueError: target name does not have an image extension.
    """
    source = Path(source_path)
    if not source.is_file():
        raise FileNotFoundError(f"Source file not found: {source_path}")

    target_name = sanitize_filename(filename or source.name)
    if not validate_image_format(target_name):
        raise ValueError(f"Invalid image format: {target_name}")

    directory = Path(input_dir) if input_dir is not None else get_config().input_dir
    directory.mkdir(parents=True, exist_ok=True)
    if not overwrite:
        target_name = _dedupe(directory, target_name)

    target = directory / target_name
    shutil.copyfile(source, target)
    logger.debug(f"Staged {source} as {target}")

    return {"filename": target_name, "path": str(target), "size": target.stat().st_size}


def get_output_images(
    limit: int = 20,
    sort: str = "newest",
    filter: Optional[str] = None,
    output_dir: Optional[Path] = None,
) -> List[Dict]:
    """
    List images in the output directory.

    Args:
        limit: Maximum number of entries.
        sort: "newest", "oldest" or "name".
        filter: Only filenames containing this substring.
        output_dir: Override the configured output directory.

    Returns:
        List of {"filename", "path", "size", "created_at", "modified_at"}.
    """
    if sort not in SORT_ORDERS:
        raise ValueError(f"sort must be one of {', '.join(SORT_ORDERS)}")

    directory = Path(output_dir) if output_dir is not None else get_config().output_dir
    if not directory.is_dir():
        return []

    images = []
    for path in directory.iterdir():
        if filter and filter not in path.name:
            continue
        if not validate_image_format(path.name) or not path.is_file():
            continue
        stat = path.stat()
        created = getattr(stat, "st_birthtime", stat.st_mtime)
        images.append(
            {
                "filename": path.name,
                "path": str(path),
                "size": stat.st_size,
                "created_at": datetime.fromtimestamp(created).isoformat(),
                "modified_at": datetime.fromtimestamp(stat.st_mtime).isoformat(),
                "_created": created,
            }
        )

    if sort == "name":
        images.sort(key=lambda x: x["filename"])
    else:
        images.sort(key=lambda x: x["_created"], reverse=(sort == "newest"))

    for image in images:
        del image["_created"]
    return images[: max(limit, 0)]
