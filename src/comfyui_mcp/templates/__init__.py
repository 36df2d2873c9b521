"""
Workflow Templates

Builders for a fixed set of generation graphs. Each builder takes free-form
parameters and returns a complete, ready-to-submit Workflow.

Every parameter is resolved independently, highest precedence first:

    explicit parameter -> variant preset -> template config -> fallback

Templates:
- flux_txt2img: UNETLoader + DualCLIPLoader + VAELoader, with variant presets
  and LoRA chains inserted between the loaders and the sampler.
- sd15_txt2img, sdxl_txt2img: checkpoint text-to-image.
- basic_img2img: checkpoint image-to-image (LoadImage + VAEEncode, denoise).
"""

import functools
import logging
import random
from dataclasses import dataclass, fields
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from ..config import ServerConfig, TemplateConfig, get_config
from ..graph import Node, NodeIdAllocator, Workflow, edge
from ..overrides import CHECKPOINT_CLIP_SLOT, MODEL_SLOT, LoraSpec, chain_loras, rewire_to_chain

logger = logging.getLogger("comfyui-mcp")

SEED_MAX = 2**32 - 1
RANDOM_SEED = -1

DEFAULT_NEGATIVE = "low quality, blurry, distorted"


def resolve_param(*candidates: Any) -> Any:
    """First candidate that is not None (0, 0.0 and "" count as values)."""
    for value in candidates:
        if value is not None:
            return value
    return None


def resolve_seed(seed: Optional[int]) -> int:
    if seed is None or seed == RANDOM_SEED:
        return random.randint(0, SEED_MAX)
    return seed


@dataclass
class TemplateOptions:
    """Caller parameters for a template build. None means "use the default"."""

    prompt: str = ""
    negative_prompt: Optional[str] = None
    model: Optional[str] = None
    input_image: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    steps: Optional[int] = None
    cfg: Optional[float] = None
    seed: Optional[int] = None
    sampler: Optional[str] = None
    scheduler: Optional[str] = None
    denoise: Optional[float] = None
    batch_size: Optional[int] = None
    variant: Optional[str] = None
    lora: Optional[List[LoraSpec]] = None

    @classmethod
    def coerce(cls, options: Union["TemplateOptions", Mapping[str, Any], None]) -> "TemplateOptions":
        if isinstance(options, TemplateOptions):
            return options
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in (options or {}).items() if k in known}
        if values.get("lora") is not None:
            values["lora"] = [LoraSpec.from_dict(item) for item in values["lora"]]
        return cls(**values)


@dataclass(frozen=True)
class VariantPreset:
    """Named bundle of defaults layered between parameters and template config."""

    model: Optional[str] = None
    steps: Optional[int] = None
    cfg: Optional[float] = None
    sampler: Optional[str] = None
    scheduler: Optional[str] = None


NO_VARIANT = VariantPreset()

FLUX_VARIANTS: Dict[str, VariantPreset] = {
    "dev": VariantPreset("flux1-dev.safetensors", steps=20, cfg=3.5, sampler="euler", scheduler="beta"),
    "schnell": VariantPreset("flux1-schnell.safetensors", steps=4, cfg=1.0, sampler="euler", scheduler="simple"),
    "dev_fp8": VariantPreset("flux1-dev-fp8.safetensors", steps=20, cfg=3.5, sampler="euler", scheduler="simple"),
}

# Hard-coded fallbacks, the last resolution layer
FLUX_FALLBACKS = {
    "model": "flux1-dev.safetensors",
    "steps": 20,
    "cfg": 3.5,
    "sampler": "euler",
    "scheduler": "simple",
    "width": 1024,
    "height": 1024,
    "batch_size": 1,
    "negative_prompt": DEFAULT_NEGATIVE,
}

FLUX_TEXT_ENCODERS = ("t5xxl_fp16.safetensors", "clip_l.safetensors")
FLUX_VAE = "ae.safetensors"

SD15_FALLBACKS = {
    "model": "v1-5-pruned-emaonly.safetensors",
    "steps": 20,
    "cfg": 7.0,
    "sampler": "dpmpp_2m",
    "scheduler": "karras",
    "width": 512,
    "height": 512,
    "batch_size": 1,
    "negative_prompt": "low quality, blurry, distorted, ugly",
}

SDXL_FALLBACKS = {
    **SD15_FALLBACKS,
    "model": "sd_xl_base_1.0.safetensors",
    "sampler": "dpmpp_2m_sde",
    "width": 1024,
    "height": 1024,
    "negative_prompt": DEFAULT_NEGATIVE,
}

IMG2IMG_FALLBACKS = {
    **SD15_FALLBACKS,
    "denoise": 0.75,
    "input_image": "input.png",
    "negative_prompt": DEFAULT_NEGATIVE,
}


def _template_config(name: str, config: Optional[ServerConfig]) -> TemplateConfig:
    return (config or get_config()).template(name) or TemplateConfig()


def _variant(name: Optional[str], presets: Mapping[str, VariantPreset]) -> VariantPreset:
    if not name:
        return NO_VARIANT
    preset = presets.get(name)
    if preset is None:
        logger.debug(f"Unknown variant '{name}' ignored; known: {sorted(presets)}")
        return NO_VARIANT
    return preset


def _resolve_sampling(opts: TemplateOptions, variant: VariantPreset, tpl: TemplateConfig, fallbacks: dict) -> dict:
    return {
        "model": resolve_param(opts.model, variant.model, tpl.default_model, fallbacks["model"]),
        "steps": resolve_param(opts.steps, variant.steps, tpl.default_steps, fallbacks["steps"]),
        "cfg": resolve_param(opts.cfg, variant.cfg, tpl.default_cfg, fallbacks["cfg"]),
        "sampler": resolve_param(opts.sampler, variant.sampler, tpl.default_sampler, fallbacks["sampler"]),
        "scheduler": resolve_param(opts.scheduler, variant.scheduler, tpl.default_scheduler, fallbacks["scheduler"]),
    }


def _prompt_nodes(prompt: str, negative: str, clip: List[Any]) -> List[Node]:
    return [
        Node("CLIPTextEncode", {"text": prompt, "clip": clip}, {"title": "CLIP Text Encode (Positive Prompt)"}),
        Node("CLIPTextEncode", {"text": negative, "clip": clip}, {"title": "CLIP Text Encode (Negative Prompt)"}),
    ]


def _sampler_node(settings: dict, seed: int, denoise: float, model, positive, negative, latent) -> Node:
    return Node(
        "KSampler",
        {
            "seed": seed,
            "steps": settings["steps"],
            "cfg": settings["cfg"],
            "sampler_name": settings["sampler"],
            "scheduler": settings["scheduler"],
            "denoise": denoise,
            "model": model,
            "positive": positive,
            "negative": negative,
            "latent_image": latent,
        },
        {"title": "KSampler"},
    )


def _decode_and_save(wf: Workflow, samples_id: str, vae: List[Any], prefix: str, allocator: NodeIdAllocator) -> Workflow:
    decode_id = allocator.allocate()
    wf = wf.with_node(
        decode_id, Node("VAEDecode", {"samples": edge(samples_id, 0), "vae": vae}, {"title": "VAE Decode"})
    )
    save_id = allocator.allocate()
    return wf.with_node(
        save_id,
        Node("SaveImage", {"filename_prefix": prefix, "images": edge(decode_id, 0)}, {"title": "Save Image"}),
    )


def build_flux_txt2img(
    options: Union[TemplateOptions, Mapping[str, Any]], config: Optional[ServerConfig] = None
) -> Workflow:
    """
    Flux text-to-image.

    Nodes 1-6 are fixed (UNet, dual CLIP, VAE, two prompts, latent). LoRA
    nodes follow from 7, then sampler, decode and save take the next ids.
    """
    opts = TemplateOptions.coerce(options)
    tpl = _template_config("flux_txt2img", config)
    settings = _resolve_sampling(opts, _variant(opts.variant, FLUX_VARIANTS), tpl, FLUX_FALLBACKS)
    negative = resolve_param(opts.negative_prompt, FLUX_FALLBACKS["negative_prompt"])

    positive_node, negative_node = _prompt_nodes(opts.prompt, negative, edge("2", 0))
    wf = Workflow(
        [
            (
                "1",
                Node(
                    "UNETLoader",
                    {"unet_name": settings["model"], "weight_dtype": "default"},
                    {"title": "Load Diffusion Model"},
                ),
            ),
            (
                "2",
                Node(
                    "DualCLIPLoader",
                    {"clip_name1": FLUX_TEXT_ENCODERS[0], "clip_name2": FLUX_TEXT_ENCODERS[1], "type": "flux"},
                    {"title": "DualCLIPLoader"},
                ),
            ),
            ("3", Node("VAELoader", {"vae_name": FLUX_VAE}, {"title": "Load VAE"})),
            ("4", positive_node),
            ("5", negative_node),
            (
                "6",
                Node(
                    "EmptyLatentImage",
                    {
                        "width": resolve_param(opts.width, FLUX_FALLBACKS["width"]),
                        "height": resolve_param(opts.height, FLUX_FALLBACKS["height"]),
                        "batch_size": resolve_param(opts.batch_size, FLUX_FALLBACKS["batch_size"]),
                    },
                    {"title": "Empty Latent Image"},
                ),
            ),
        ]
    )

    allocator = NodeIdAllocator.for_workflow(wf)
    model_out, clip_out = edge("1", 0), edge("2", 0)
    if opts.lora:
        wf, model_out, clip_out = chain_loras(wf, opts.lora, model_out, clip_out, allocator)
        wf = wf.with_inputs("4", clip=clip_out).with_inputs("5", clip=clip_out)

    sampler_id = allocator.allocate()
    wf = wf.with_node(
        sampler_id,
        _sampler_node(settings, resolve_seed(opts.seed), 1.0, model_out, edge("4", 0), edge("5", 0), edge("6", 0)),
    )
    return _decode_and_save(wf, sampler_id, edge("3", 0), "flux_txt2img", allocator)


def _build_checkpoint_txt2img(
    name: str, fallbacks: dict, options: Union[TemplateOptions, Mapping[str, Any]], config: Optional[ServerConfig]
) -> Workflow:
    opts = TemplateOptions.coerce(options)
    if opts.variant:
        logger.debug(f"Template {name} has no variants; ignoring '{opts.variant}'")
    settings = _resolve_sampling(opts, NO_VARIANT, _template_config(name, config), fallbacks)
    negative = resolve_param(opts.negative_prompt, fallbacks["negative_prompt"])

    positive_node, negative_node = _prompt_nodes(opts.prompt, negative, edge("1", 1))
    wf = Workflow(
        [
            ("1", Node("CheckpointLoaderSimple", {"ckpt_name": settings["model"]}, {"title": "Load Checkpoint"})),
            ("2", positive_node),
            ("3", negative_node),
            (
                "4",
                Node(
                    "EmptyLatentImage",
                    {
                        "width": resolve_param(opts.width, fallbacks["width"]),
                        "height": resolve_param(opts.height, fallbacks["height"]),
                        "batch_size": resolve_param(opts.batch_size, fallbacks["batch_size"]),
                    },
                    {"title": "Empty Latent Image"},
                ),
            ),
            (
                "5",
                _sampler_node(
                    settings, resolve_seed(opts.seed), 1.0, edge("1", 0), edge("2", 0), edge("3", 0), edge("4", 0)
                ),
            ),
        ]
    )
    wf = _decode_and_save(wf, "5", edge("1", 2), name, NodeIdAllocator.for_workflow(wf))
    return _with_loras(wf, opts)


def _with_loras(wf: Workflow, opts: TemplateOptions) -> Workflow:
    """Chain LoRAs off the checkpoint in node 1, with ids after the save node."""
    if not opts.lora:
        return wf
    wf, model_out, clip_out = chain_loras(
        wf, opts.lora, edge("1", MODEL_SLOT), edge("1", CHECKPOINT_CLIP_SLOT), NodeIdAllocator.for_workflow(wf)
    )
    return rewire_to_chain(wf, model_out, clip_out)


def build_sd15_txt2img(
    options: Union[TemplateOptions, Mapping[str, Any]], config: Optional[ServerConfig] = None
) -> Workflow:
    """Stable Diffusion 1.5 text-to-image (512x512 by default)."""
    return _build_checkpoint_txt2img("sd15_txt2img", SD15_FALLBACKS, options, config)


def build_sdxl_txt2img(
    options: Union[TemplateOptions, Mapping[str, Any]], config: Optional[ServerConfig] = None
) -> Workflow:
    """SDXL text-to-image (1024x1024 by default)."""
    return _build_checkpoint_txt2img("sdxl_txt2img", SDXL_FALLBACKS, options, config)


def build_basic_img2img(
    options: Union[TemplateOptions, Mapping[str, Any]], config: Optional[ServerConfig] = None
) -> Workflow:
    """
    Checkpoint image-to-image.

    input_image must already be staged in ComfyUI's input directory; the
    builder only references it by name.
    """
    opts = TemplateOptions.coerce(options)
    tpl = _template_config("basic_img2img", config)
    settings = _resolve_sampling(opts, NO_VARIANT, tpl, IMG2IMG_FALLBACKS)
    negative = resolve_param(opts.negative_prompt, IMG2IMG_FALLBACKS["negative_prompt"])
    denoise = resolve_param(opts.denoise, tpl.default_denoise, IMG2IMG_FALLBACKS["denoise"])

    positive_node, negative_node = _prompt_nodes(opts.prompt, negative, edge("1", 1))
    wf = Workflow(
        [
            ("1", Node("CheckpointLoaderSimple", {"ckpt_name": settings["model"]}, {"title": "Load Checkpoint"})),
            ("2", positive_node),
            ("3", negative_node),
            (
                "4",
                Node(
                    "LoadImage",
                    {"image": resolve_param(opts.input_image, IMG2IMG_FALLBACKS["input_image"])},
                    {"title": "Load Image"},
                ),
            ),
            ("5", Node("VAEEncode", {"pixels": edge("4", 0), "vae": edge("1", 2)}, {"title": "VAE Encode"})),
            (
                "6",
                _sampler_node(
                    settings, resolve_seed(opts.seed), denoise, edge("1", 0), edge("2", 0), edge("3", 0), edge("5", 0)
                ),
            ),
        ]
    )
    wf = _decode_and_save(wf, "6", edge("1", 2), "basic_img2img", NodeIdAllocator.for_workflow(wf))
    return _with_loras(wf, opts)


TemplateBuilder = Callable[..., Workflow]

TEMPLATE_BUILDERS: Dict[str, TemplateBuilder] = {
    "flux_txt2img": build_flux_txt2img,
    "sd15_txt2img": build_sd15_txt2img,
    "sdxl_txt2img": build_sdxl_txt2img,
    "basic_img2img": build_basic_img2img,
}

TEMPLATE_DESCRIPTIONS = {
    "flux_txt2img": "Flux text-to-image (UNet + dual CLIP + VAE), supports variants and LoRA chains",
    "sd15_txt2img": "Stable Diffusion 1.5 text-to-image",
    "sdxl_txt2img": "SDXL text-to-image",
    "basic_img2img": "Checkpoint image-to-image with denoise strength",
}

TEMPLATE_VARIANTS: Dict[str, Dict[str, VariantPreset]] = {
    "flux_txt2img": FLUX_VARIANTS,
}

IMAGE_INPUT_TEMPLATES = frozenset({"basic_img2img"})


def get_template_builder(name: str, config: Optional[ServerConfig] = None) -> Optional[TemplateBuilder]:
    """
    Builder for a template, or None if the name is unknown or disabled in config.

    The returned callable takes TemplateOptions (or a dict of the same fields).
    """
    builder = TEMPLATE_BUILDERS.get(name) if isinstance(name, str) else None
    if builder is None:
        return None
    tpl = (config or get_config()).template(name)
    if tpl is not None and not tpl.enabled:
        return None
    return functools.partial(builder, config=config) if config is not None else builder


def list_templates(config: Optional[ServerConfig] = None) -> List[Dict[str, Any]]:
    """Known templates with their enabled flag, variants and configured defaults."""
    config = config or get_config()
    templates = []
    for name in TEMPLATE_BUILDERS:
        tpl = config.template(name) or TemplateConfig()
        templates.append(
            {
                "name": name,
                "description": TEMPLATE_DESCRIPTIONS[name],
                "enabled": tpl.enabled,
                "requires_input_image": name in IMAGE_INPUT_TEMPLATES,
                "variants": sorted(TEMPLATE_VARIANTS.get(name, {})),
                "defaults": {f.name: getattr(tpl, f.name) for f in fields(TemplateConfig) if f.name != "enabled"},
            }
        )
    return templates
