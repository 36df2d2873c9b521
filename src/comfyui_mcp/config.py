"""
Server Configuration

Settings come from three layers: built-in defaults, an optional JSON file
(COMFYUI_CONFIG or ./config.json), and environment variables:

    COMFYUI_URL          ComfyUI HTTP base URL
    COMFYUI_WS_URL       ComfyUI WebSocket URL
    COMFYUI_PATH         ComfyUI installation directory
    COMFYUI_OUTPUT_DIR   Output directory (absolute)

Example config.json:

    {
        "comfyui": {"base_url": "http://127.0.0.1:8188", "timeout": 600},
        "templates": {"sdxl_txt2img": {"enabled": false}},
        "features": {"websocket_progress": false}
    }
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger("comfyui-mcp")

DEFAULT_BASE_URL = "http://127.0.0.1:8188"
DEFAULT_WEBSOCKET_URL = "ws://127.0.0.1:8188/ws"


@dataclass
class ComfyUISettings:
    base_url: str = DEFAULT_BASE_URL
    websocket_url: str = DEFAULT_WEBSOCKET_URL
    installation_path: str = str(Path.home() / "ComfyUI")
    timeout: int = 300
    poll_interval: float = 2.0


@dataclass
class PathSettings:
    """Directories, relative to the installation path unless absolute."""

    models: str = "models"
    input: str = "input"
    output: str = "output"
    workflow_library: str = "user/default/workflows/mcp_library"


@dataclass
class TemplateConfig:
    """Static per-template defaults. None means "no opinion"."""

    enabled: bool = True
    default_model: Optional[str] = None
    default_steps: Optional[int] = None
    default_cfg: Optional[float] = None
    default_sampler: Optional[str] = None
    default_scheduler: Optional[str] = None
    default_denoise: Optional[float] = None


@dataclass
class FeatureFlags:
    workflow_library: bool = True
    websocket_progress: bool = True


def _default_templates() -> Dict[str, TemplateConfig]:
    return {
        "flux_txt2img": TemplateConfig(
            default_steps=20,
            default_cfg=3.5,
            default_sampler="euler",
            default_scheduler="simple",
        ),
        "sd15_txt2img": TemplateConfig(
            default_model="v1-5-pruned-emaonly.safetensors",
            default_steps=20,
            default_cfg=7.0,
            default_sampler="dpmpp_2m",
            default_scheduler="karras",
        ),
        "sdxl_txt2img": TemplateConfig(
            default_model="sd_xl_base_1.0.safetensors",
            default_steps=20,
            default_cfg=7.0,
            default_sampler="dpmpp_2m_sde",
            default_scheduler="karras",
        ),
        "basic_img2img": TemplateConfig(
            default_steps=20,
            default_cfg=7.0,
            default_sampler="dpmpp_2m",
            default_scheduler="karras",
            default_denoise=0.75,
        ),
    }


@dataclass
class ServerConfig:
    comfyui: ComfyUISettings = field(default_factory=ComfyUISettings)
    paths: PathSettings = field(default_factory=PathSettings)
    templates: Dict[str, TemplateConfig] = field(default_factory=_default_templates)
    features: FeatureFlags = field(default_factory=FeatureFlags)

    def template(self, name: str) -> Optional[TemplateConfig]:
        return self.templates.get(name)

    def full_path(self, relative: str) -> Path:
        """Resolve a configured path against the installation directory."""
        path = Path(relative)
        if path.is_absolute():
            return path
        return Path(self.comfyui.installation_path) / path

    @property
    def models_dir(self) -> Path:
        return self.full_path(self.paths.models)

    @property
    def input_dir(self) -> Path:
        return self.full_path(self.paths.input)

    @property
    def output_dir(self) -> Path:
        return self.full_path(self.paths.output)

    @property
    def workflow_library_dir(self) -> Path:
        return self.full_path(self.paths.workflow_library)


def _merge(cls, section: Any):
    """Build a settings dataclass from a JSON section, ignoring unknown keys."""
    if not isinstance(section, Mapping):
        return cls()
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in section.items() if k in known})


def config_from_dict(data: Mapping[str, Any]) -> ServerConfig:
    """Merge a parsed config.json over the defaults, section by section."""
    templates = _default_templates()
    for name, section in (data.get("templates") or {}).items():
        if not isinstance(section, Mapping):
            continue
        base = templates.get(name, TemplateConfig())
        merged = {f.name: getattr(base, f.name) for f in fields(TemplateConfig)}
        merged.update({k: v for k, v in section.items() if k in merged})
        templates[name] = TemplateConfig(**merged)

    return ServerConfig(
        comfyui=_merge(ComfyUISettings, data.get("comfyui")),
        paths=_merge(PathSettings, data.get("paths")),
        templates=templates,
        features=_merge(FeatureFlags, data.get("features")),
    )


def _apply_env(config: ServerConfig) -> ServerConfig:
    if os.environ.get("COMFYUI_URL"):
        config.comfyui.base_url = os.environ["COMFYUI_URL"].rstrip("/")
        if not os.environ.get("COMFYUI_WS_URL"):
            config.comfyui.websocket_url = _websocket_url_for(config.comfyui.base_url)
    if os.environ.get("COMFYUI_WS_URL"):
        config.comfyui.websocket_url = os.environ["COMFYUI_WS_URL"]
    if os.environ.get("COMFYUI_PATH"):
        config.comfyui.installation_path = os.environ["COMFYUI_PATH"]
    if os.environ.get("COMFYUI_OUTPUT_DIR"):
        config.paths.output = os.environ["COMFYUI_OUTPUT_DIR"]
    return config


def _websocket_url_for(base_url: str) -> str:
    if base_url.startswith("https://"):
        return "wss://" + base_url[len("https://") :] + "/ws"
    if base_url.startswith("http://"):
        return "ws://" + base_url[len("http://") :] + "/ws"
    return base_url + "/ws"


def load_config(path: Optional[str] = None) -> ServerConfig:
    """
    Load configuration from disk and environment.

    Args:
        path: Explicit config file. Defaults to COMFYUI_CONFIG or ./config.json.

    Returns:
        ServerConfig. A missing or unreadable file falls back to defaults.
    """
    config_path = Path(path or os.environ.get("COMFYUI_CONFIG") or Path.cwd() / "config.json")
    config = ServerConfig()
    if config_path.exists():
        try:
            data = json.loads(config_path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("top-level value must be an object")
            config = config_from_dict(data)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load config from {config_path}, using defaults: {e}")
    return _apply_env(config)


_config: Optional[ServerConfig] = None


def get_config() -> ServerConfig:
    """Get or load the process-wide configuration."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[ServerConfig]) -> None:
    """Replace the process-wide configuration (None forces a reload)."""
    global _config
    _config = config


def get_full_path(relative: str) -> Path:
    return get_config().full_path(relative)
