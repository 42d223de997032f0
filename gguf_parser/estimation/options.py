# gguf_parser/estimation/options.py
"""
Run configuration shared by the llama.cpp and stable-diffusion.cpp estimators.

A :class:`RunConfig` is validated once at construction; the estimators then
treat it as trusted input and never raise for it again.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional, Tuple

from gguf_parser.model_formats.gguf.gguf_quantization import GGMLType

if TYPE_CHECKING:
    from gguf_parser.estimation.llamacpp import LLaMACppRunEstimate
    from gguf_parser.estimation.stable_diffusion import StableDiffusionCppRunEstimate

# element types llama.cpp accepts for the KV cache
CACHE_TYPES = frozenset(
    {
        GGMLType.F32,
        GGMLType.F16,
        GGMLType.BF16,
        GGMLType.Q8_0,
        GGMLType.Q4_0,
        GGMLType.Q4_1,
        GGMLType.IQ4_NL,
        GGMLType.Q5_0,
        GGMLType.Q5_1,
    }
)

ROPE_SCALING_TYPES = frozenset({"none", "linear", "yarn"})

MIN_LOGICAL_BATCH_SIZE = 32


class SplitMode(Enum):
    """How offloaded layers are spread over several GPUs."""

    LAYER = "layer"  # whole layers per device, by tensor-split fraction
    ROW = "row"  # weights split, KV cache and compute buffers on the main device
    NONE = "none"  # everything offloaded lives on the main device


@dataclass(frozen=True)
class RunConfig:
    """Knobs of an estimated run.

    Args:
        context_size: Context length; ``None`` uses the model's maximum.
        in_max_context_size: Clamp ``context_size`` to the model's maximum.
        logical_batch_size: Logical batch size (raised to at least 32).
        physical_batch_size: Physical batch size, at most the logical one.
        parallel_size: Number of parallel sequences.
        cache_key_type: Element type of the K cache.
        cache_value_type: Element type of the V cache.
        offload_kv_cache: Keep the KV cache of offloaded layers on their GPU.
        offload_layers: Layers to offload; ``None`` offloads every layer and
            the output layer, as does any value of at least the block count.
        split_mode: Multi-GPU split strategy.
        tensor_split: Cumulative per-GPU fractions; the last must be 1.
        main_gpu_index: Index into ``tensor_split`` of the main GPU.
        flash_attention: Enable flash attention.
        rpc_servers: Endpoints of remote devices; they take the first
            ``len(rpc_servers)`` GPU slots.
        full_size_swa_cache: Allocate full-context KV for sliding-window layers.
        rope_frequency_base: RoPE base override.
        rope_frequency_scale: RoPE scale override.
        rope_scaling_type: RoPE scaling override (``none``/``linear``/``yarn``).
        rope_scaling_original_context_size: YaRN original context override.
        visual_max_image_size: Largest image side for dynamic-resolution
            projectors (default 1024).
        max_projected_cache: Extra projected images kept in the cache.
        projector: Estimate of a multimodal projector to add to this run.
        drafter: Estimate of a speculative-decoding drafter.
        adapters: Estimates of LoRA / control-vector adapters.
        sd_offload_layers: stable-diffusion.cpp offload; ``None`` or any
            positive value offloads, 0 keeps everything on the CPU.
        sd_batch_count: Images per batch.
        sd_height: Image height in pixels.
        sd_width: Image width in pixels.
        sd_offload_conditioner: Offload the text encoders.
        sd_offload_autoencoder: Offload the VAE.
        sd_autoencoder_tiling: Decode with 512x512 VAE tiles.
        sd_free_compute_memory_immediately: Release compute buffers after each
            stage instead of keeping them for the whole run.
        sd_upscaler: Estimate of an upscaler model.
        sd_control_net: Estimate of a control-net model.

    Raises:
        ValueError: A knob is out of range.
    """

    context_size: Optional[int] = None
    in_max_context_size: bool = False
    logical_batch_size: int = 2048
    physical_batch_size: int = 512
    parallel_size: int = 1
    cache_key_type: GGMLType = GGMLType.F16
    cache_value_type: GGMLType = GGMLType.F16
    offload_kv_cache: bool = True
    offload_layers: Optional[int] = None
    split_mode: SplitMode = SplitMode.LAYER
    tensor_split: Tuple[float, ...] = (1.0,)
    main_gpu_index: int = 0
    flash_attention: bool = False
    rpc_servers: Tuple[str, ...] = ()
    full_size_swa_cache: bool = False
    rope_frequency_base: Optional[float] = None
    rope_frequency_scale: Optional[float] = None
    rope_scaling_type: Optional[str] = None
    rope_scaling_original_context_size: Optional[int] = None
    visual_max_image_size: Optional[int] = None
    max_projected_cache: Optional[int] = None
    projector: Optional["LLaMACppRunEstimate"] = None
    drafter: Optional["LLaMACppRunEstimate"] = None
    adapters: Tuple["LLaMACppRunEstimate", ...] = ()
    sd_offload_layers: Optional[int] = None
    sd_batch_count: int = 1
    sd_height: int = 1024
    sd_width: int = 1024
    sd_offload_conditioner: bool = True
    sd_offload_autoencoder: bool = True
    sd_autoencoder_tiling: bool = False
    sd_free_compute_memory_immediately: bool = False
    sd_upscaler: Optional["StableDiffusionCppRunEstimate"] = None
    sd_control_net: Optional["StableDiffusionCppRunEstimate"] = None

    def __post_init__(self) -> None:
        # callers may pass lists
        for name in ("tensor_split", "rpc_servers", "adapters"):
            object.__setattr__(self, name, tuple(getattr(self, name)))

        if self.context_size is not None and self.context_size <= 0:
            raise ValueError("context_size must be > 0")
        if self.logical_batch_size <= 0:
            raise ValueError("logical_batch_size must be > 0")
        if self.physical_batch_size <= 0:
            raise ValueError("physical_batch_size must be > 0")
        if self.physical_batch_size > self.effective_logical_batch_size:
            raise ValueError("physical_batch_size must not exceed logical_batch_size")
        if self.parallel_size <= 0:
            raise ValueError("parallel_size must be > 0")
        for name in ("cache_key_type", "cache_value_type"):
            t = getattr(self, name)
            if t not in CACHE_TYPES:
                raise ValueError(f"{name} {t!r} is not a supported cache type")
        if self.offload_layers is not None and self.offload_layers < 0:
            raise ValueError("offload_layers must be >= 0")

        split = self.tensor_split
        if not split:
            raise ValueError("tensor_split must not be empty")
        if any(f < 0 or f > 1 for f in split):
            raise ValueError("tensor_split fractions must lie in [0, 1]")
        if any(b < a for a, b in zip(split, split[1:])):
            raise ValueError("tensor_split fractions must be non-decreasing")
        if split[-1] != 1:
            raise ValueError("the last tensor_split fraction must be 1")
        if not 0 <= self.main_gpu_index < len(split):
            raise ValueError("main_gpu_index must index into tensor_split")
        if len(self.rpc_servers) > len(split):
            raise ValueError("more rpc_servers than tensor_split devices")

        if self.rope_frequency_base is not None and self.rope_frequency_base <= 0:
            raise ValueError("rope_frequency_base must be > 0")
        if self.rope_frequency_scale is not None and self.rope_frequency_scale <= 0:
            raise ValueError("rope_frequency_scale must be > 0")
        if self.rope_scaling_type is not None and self.rope_scaling_type not in ROPE_SCALING_TYPES:
            raise ValueError(f"rope_scaling_type must be one of {sorted(ROPE_SCALING_TYPES)}")
        if (
            self.rope_scaling_original_context_size is not None
            and self.rope_scaling_original_context_size <= 0
        ):
            raise ValueError("rope_scaling_original_context_size must be > 0")
        if self.visual_max_image_size is not None and self.visual_max_image_size <= 0:
            raise ValueError("visual_max_image_size must be > 0")
        if self.max_projected_cache is not None and self.max_projected_cache < 0:
            raise ValueError("max_projected_cache must be >= 0")

        if self.sd_offload_layers is not None and self.sd_offload_layers < 0:
            raise ValueError("sd_offload_layers must be >= 0")
        if self.sd_batch_count <= 0:
            raise ValueError("sd_batch_count must be > 0")
        if self.sd_height <= 0 or self.sd_width <= 0:
            raise ValueError("sd_height and sd_width must be > 0")

    @property
    def effective_logical_batch_size(self) -> int:
        return max(MIN_LOGICAL_BATCH_SIZE, self.logical_batch_size)

    @property
    def device_count(self) -> int:
        """GPU slots (local and remote); the CPU comes on top."""
        return len(self.tensor_split)
