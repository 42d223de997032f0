# gguf_parser/estimation/stable_diffusion.py
"""
Resource estimator for running a diffusion GGUF file in stable-diffusion.cpp.

A diffusion file bundles up to three kinds of model: text encoders
(conditioners, ``cond_stage_model.*``), the VAE (autoencoder,
``first_stage_model.*``) and the diffusion model itself. Each gets its own
estimate so callers can see where the memory goes. Compute buffers of the
diffusion step come from per-family quadratic fits over the pixel count.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from gguf_parser.analysis.architecture import DiffusionArchitecture
from gguf_parser.estimation.options import RunConfig
from gguf_parser.model_formats.gguf.gguf_layers import item_bytes, item_elements
from gguf_parser.model_formats.gguf.gguf_quantization import (
    GGMLType,
    ggml_graph_overhead,
    ggml_tensor_overhead,
)
from gguf_parser.observability import Timer

if TYPE_CHECKING:
    from gguf_parser.file import GGUFFile

MiB = 1024 * 1024

_SD3_LARGE_PROBE = "model.diffusion_model.joint_blocks.37.x_block.attn.ln_k.weight"
_SD3_MEDIUM_PROBE = "model.diffusion_model.joint_blocks.23.x_block.attn.ln_k.weight"
_SDXL_REFINER_PROBE = "model.diffusion_model.output_blocks.8.1.transformer_blocks.1.attn1.to_v.weight"
_VAE_CONV_IN = ("first_stage_model.decoder.conv_in.weight", "decoder.conv_in.weight")

# polynomial coefficients (constant first) of compute bytes over width*height,
# as (without flash attention, with flash attention)
DIFFUSION_USAGE_COEFFICIENTS: Dict[str, Tuple[Tuple[float, ...], Tuple[float, ...]]] = {
    "sd1": (
        (7.8763685671743e06, 161.42301986333496, 0.007812489338703485),
        (7.8763685671743e06, 161.42301986333496, 0.007812489338703485),
    ),
    "sd2": (
        (-3.5504397905618614e08, -1193.3271458642232, 0.005402381760522009),
        (3.78068128077788e06, 513.2102510934714),
    ),
    "sdxl": (
        (5.554129038929968e07, 138.31961166554433, 0.0006109454572342757),
        (-5.95880278052181e06, 500.0687898914631),
    ),
    "sdxl-refiner": (
        (4.939599234485548e07, 155.2477810191175, 0.0007351735797614931),
        (7.0313433199802125e06, 599.4137437226634),
    ),
    "sd3-medium": (
        (1.6529921370035086e07, 234.66562477184195, 0.0014648995324747492),
        (1.6529921370035086e07, 234.66562477184195, 0.0014648995324747492),
    ),
    "sd3.5-medium": (
        (1.7441103472644456e07, 281.695681980568, 0.0014651233076620938),
        (1.7441103472644456e07, 281.695681980568, 0.0014651233076620938),
    ),
    "sd3.5-large": (
        (2.320436920291992e07, 410.3731196298318, 0.002319594715894278),
        (2.320436920291992e07, 410.3731196298318, 0.002319594715894278),
    ),
    "flux": (
        (4.651166867423782e07, 997.7758807792155, 0.001457339256095295),
        (4.651166867423782e07, 997.7758807792155, 0.001457339256095295),
    ),
}

_NORMALIZE_TABLE = str.maketrans({c: "_" for c in " .-/:"})


def normalize_architecture(name: str) -> str:
    """``"Stable Diffusion XL"`` -> ``"stable_diffusion_xl"``."""
    return name.translate(_NORMALIZE_TABLE).lower()


@dataclass
class StableDiffusionCppRunDeviceUsage:
    remote: bool = False
    position: int = 0
    endpoint: str = ""
    footprint: int = 0
    parameter: int = 0
    weight: int = 0
    computation: int = 0


@dataclass
class StableDiffusionCppRunEstimateMemory:
    remote: bool = False
    position: int = 0
    uma: int = 0
    non_uma: int = 0


@dataclass
class StableDiffusionCppRunEstimateSummaryItem:
    ram: StableDiffusionCppRunEstimateMemory = field(
        default_factory=StableDiffusionCppRunEstimateMemory
    )
    vrams: List[StableDiffusionCppRunEstimateMemory] = field(default_factory=list)


@dataclass
class StableDiffusionCppRunEstimateSummary:
    items: List[StableDiffusionCppRunEstimateSummaryItem]
    type: str
    architecture: str
    flash_attention: bool
    no_mmap: bool
    image_only: bool
    distributable: bool


@dataclass
class StableDiffusionCppRunEstimate:
    """Estimated usage of a stable-diffusion.cpp run.

    The top-level estimate covers the diffusion model; ``autoencoder`` and
    ``conditioners`` hold the VAE and text encoders on the same device list.
    """

    type: str
    architecture: str
    devices: List[StableDiffusionCppRunDeviceUsage]
    flash_attention: bool = False
    full_offloaded: bool = False
    no_mmap: bool = True
    image_only: bool = True
    distributable: bool = True
    autoencoder: Optional["StableDiffusionCppRunEstimate"] = None
    conditioners: List["StableDiffusionCppRunEstimate"] = field(default_factory=list)
    upscaler: Optional["StableDiffusionCppRunEstimate"] = None
    control_net: Optional["StableDiffusionCppRunEstimate"] = None

    def _own_item(
        self, non_uma_ram_footprint: int, non_uma_vram_footprint: int
    ) -> StableDiffusionCppRunEstimateSummaryItem:
        cpu = self.devices[0]
        uma = cpu.footprint + cpu.weight + cpu.computation
        item = StableDiffusionCppRunEstimateSummaryItem(
            ram=StableDiffusionCppRunEstimateMemory(
                uma=uma, non_uma=non_uma_ram_footprint + uma
            )
        )
        for d in self.devices[1:]:
            uma = d.footprint + d.weight
            if d.remote:
                uma += d.computation
            item.vrams.append(
                StableDiffusionCppRunEstimateMemory(
                    remote=d.remote,
                    position=d.position,
                    uma=uma,
                    non_uma=non_uma_vram_footprint + d.footprint + d.weight + d.computation,
                )
            )
        return item

    def summarize_item(
        self, non_uma_ram_footprint: int = 0, non_uma_vram_footprint: int = 0
    ) -> StableDiffusionCppRunEstimateSummaryItem:
        item = self._own_item(non_uma_ram_footprint, non_uma_vram_footprint)

        parts = ([self.autoencoder] if self.autoencoder is not None else []) + self.conditioners
        for part in parts:
            sub = part._own_item(0, 0)
            item.ram.uma += sub.ram.uma
            item.ram.non_uma += sub.ram.non_uma
            for mine, theirs in zip(item.vrams, sub.vrams):
                mine.uma += theirs.uma
                mine.non_uma += theirs.non_uma

        # extra models land on the first GPU when they were offloaded, otherwise in RAM
        for extra in (self.upscaler, self.control_net):
            if extra is None:
                continue
            sub = extra.summarize_item()
            item.ram.uma += sub.ram.uma
            item.ram.non_uma += sub.ram.non_uma
            vram_uma = sum(v.uma for v in sub.vrams)
            vram_non_uma = sum(v.non_uma for v in sub.vrams)
            if extra.full_offloaded and item.vrams:
                item.vrams[0].uma += vram_uma
                item.vrams[0].non_uma += vram_non_uma
            else:
                item.ram.uma += vram_uma
                item.ram.non_uma += vram_non_uma
        return item

    def summarize(
        self, non_uma_ram_footprint: int = 0, non_uma_vram_footprint: int = 0
    ) -> StableDiffusionCppRunEstimateSummary:
        return StableDiffusionCppRunEstimateSummary(
            items=[self.summarize_item(non_uma_ram_footprint, non_uma_vram_footprint)],
            type=self.type,
            architecture=self.architecture,
            flash_attention=self.flash_attention,
            no_mmap=self.no_mmap,
            image_only=self.image_only,
            distributable=self.distributable,
        )


def _new_devices(cfg: RunConfig) -> List[StableDiffusionCppRunDeviceUsage]:
    n_rpc = len(cfg.rpc_servers)
    devices = [StableDiffusionCppRunDeviceUsage()]
    for j in range(cfg.device_count):
        if j < n_rpc:
            devices.append(
                StableDiffusionCppRunDeviceUsage(remote=True, position=j, endpoint=cfg.rpc_servers[j])
            )
        else:
            devices.append(StableDiffusionCppRunDeviceUsage(position=j - n_rpc))
    return devices


def _text_encoder_shapes(name: str) -> List[Tuple[int, int]]:
    """Hidden-state shapes of the text encoders a family uses."""
    if name.startswith("FLUX"):
        return [(768, 77), (4096, 256)]
    if name.startswith("Stable Diffusion 3"):
        return [(768, 77), (1280, 77), (4096, 77)]
    if name.startswith("Stable Diffusion XL"):
        if name.endswith("Refiner"):
            return [(1280, 77)]
        return [(768, 77), (1280, 77)]
    return [(768, 77)]


def _diffusion_family(name: str, names: Sequence[str]) -> str:
    present = set(names)
    if name.startswith("FLUX"):
        return "flux"
    if name.startswith("Stable Diffusion 3"):
        if _SD3_LARGE_PROBE in present:
            return "sd3.5-large"
        if _SD3_MEDIUM_PROBE in present:
            return "sd3.5-medium"
        return "sd3-medium"
    if name.startswith("Stable Diffusion XL"):
        return "sdxl-refiner" if _SDXL_REFINER_PROBE in present else "sdxl"
    if name.startswith("Stable Diffusion 2"):
        return "sd2"
    return "sd1"


def diffusion_usage(family: str, width: int, height: int, flash_attention: bool) -> int:
    """Compute bytes of one diffusion step, clamped at zero.

    Raises:
        KeyError: ``family`` has no fitted coefficients.
    """
    coefficients = DIFFUSION_USAGE_COEFFICIENTS[family][1 if flash_attention else 0]
    x = width * height
    y = sum(c * x**i for i, c in enumerate(coefficients))
    return max(int(y), 0)


def estimate_stable_diffusion_run(
    gf: "GGUFFile", config: Optional[RunConfig] = None
) -> StableDiffusionCppRunEstimate:
    """Estimate the devices' usage when stable-diffusion.cpp runs ``gf``.

    Raises:
        ValueError: ``gf`` is not a diffusion model.
    """
    cfg = config or RunConfig()
    a = gf.architecture()
    if not isinstance(a, DiffusionArchitecture):
        raise ValueError(f"{a.architecture} is not a diffusion architecture")

    with Timer("estimate") as t:
        e = _estimate(gf, cfg, a)
    logger.debug(
        "Estimated stable-diffusion.cpp run of {arch} in {ms:.2f}ms",
        arch=e.architecture,
        ms=t.duration_ms,
    )
    return e


def _estimate(gf: "GGUFFile", cfg: RunConfig, a: DiffusionArchitecture) -> StableDiffusionCppRunEstimate:
    name = a.diffusion_architecture
    offload = cfg.sd_offload_layers is None or cfg.sd_offload_layers > 0
    flash_attention = cfg.flash_attention and not name.startswith("Stable Diffusion 3")

    def new(arch: str, full: bool) -> StableDiffusionCppRunEstimate:
        return StableDiffusionCppRunEstimate(
            type="model",
            architecture=arch,
            devices=_new_devices(cfg),
            flash_attention=flash_attention,
            full_offloaded=full,
        )

    e = new(normalize_architecture(name), offload)
    e.type = a.type
    if a.autoencoder is not None:
        e.autoencoder = new(f"{e.architecture}_vae", offload and cfg.sd_offload_autoencoder)
    e.conditioners = [
        new(normalize_architecture(c.architecture), offload and cfg.sd_offload_conditioner)
        for c in a.conditioners
    ]
    e.upscaler = cfg.sd_upscaler
    e.control_net = cfg.sd_control_net

    e.devices[0].footprint = 10 * MiB + (gf.size - gf.model_size)

    cd_layers, rest = gf.layers().cut(("cond_stage_model.*",))
    ae_layers, dm_layers = rest.cut(("first_stage_model.*", "decoder.*", "encoder.*"))

    n = len(e.devices)
    cd_idx = 1 if cfg.sd_offload_conditioner and offload else 0
    ae_idx = 0
    if cfg.sd_offload_autoencoder and offload:
        ae_idx = 2 if n > 3 else 1
    dm_idx = 0
    if offload:
        dm_idx = 3 if n > 3 else 2 if n > 2 else 1

    # one layer group per text encoder, in file order
    for cd, layer in zip(e.conditioners, cd_layers):
        cd.devices[cd_idx].weight = item_bytes(layer)
        cd.devices[cd_idx].parameter = item_elements(layer)
    if e.autoencoder is not None:
        e.autoencoder.devices[ae_idx].weight = ae_layers.bytes()
        e.autoencoder.devices[ae_idx].parameter = ae_layers.elements()
    e.devices[dm_idx].weight = dm_layers.bytes()
    e.devices[dm_idx].parameter = dm_layers.elements()

    max_nodes = 32768
    z_channels = 16 if a.diffusion_transformer else 4
    e.devices[0].computation = ggml_tensor_overhead() * max_nodes + ggml_graph_overhead(max_nodes)
    e.devices[0].computation += (
        128 * MiB + cfg.sd_width * cfg.sd_height * 3 * 4 * z_channels
    ) * cfg.sd_batch_count

    f32 = GGMLType.F32
    for cd, shape in zip(e.conditioners, _text_encoder_shapes(name)):
        cd.devices[cd_idx].computation += f32.row_size_of(list(shape)) * 2

    if not cfg.sd_free_compute_memory_immediately:
        family = _diffusion_family(name, [ti.name for ti in dm_layers.tensors()])
        e.devices[dm_idx].computation += diffusion_usage(
            family, cfg.sd_width, cfg.sd_height, flash_attention
        )

    if e.autoencoder is not None and len(ae_layers) and not cfg.sd_free_compute_memory_immediately:
        dev = e.autoencoder.devices[ae_idx]
        dev.footprint += 100 * MiB
        conv_dim = 0
        for key in _VAE_CONV_IN:
            ti = gf.tensor_infos.get(key)
            if ti is not None and ti.n_dims > 3:
                conv_dim = max(ti.dims[0], ti.dims[3])
                break
        if cfg.sd_autoencoder_tiling:
            dev.computation += 512 * 512 * 13 * conv_dim
        else:
            dev.computation += cfg.sd_width * cfg.sd_height * 13 * conv_dim

    return e
