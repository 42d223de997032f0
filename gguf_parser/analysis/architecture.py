# gguf_parser/analysis/architecture.py
"""
Architecture normalizer.

:func:`architecture_of` classifies a parsed file into exactly one family and
extracts its normalized hyper-parameters. Dispatch order, first match wins:

1. diffusion: a known generator signature tensor is present (or the file's
   metadata already resolves to ``diffusion``);
2. ``clip`` architecture: multimodal projector;
3. ``adapter`` type or ``controlvector`` architecture: LoRA / control vector;
4. ``imatrix`` type: importance matrix;
5. everything else: transformer, keyed by the architecture name as prefix
   (``<arch>.attention.head_count`` and so on).

Missing or oddly typed keys fall back to documented defaults; nothing here
raises for incomplete metadata.
"""
from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, List, Mapping, Optional, Sequence, Tuple, Union

from gguf_parser.analysis.metadata import CONTROL_VECTOR_HINT_KEY, type_and_architecture
from gguf_parser.model_formats.gguf.gguf import GGUFMetadataKVs, GGUFTensorInfos
from gguf_parser.model_formats.gguf.gguf_filetype import (
    GGUFFileType,
    count_tensor_types,
    guess_file_type,
)

if TYPE_CHECKING:
    from gguf_parser.file import GGUFFile

RECURRENT_ARCHITECTURES = frozenset({"mamba", "mamba2", "rwkv6", "rwkv6qwen2", "rwkv7", "arwkv7"})
HYBRID_ARCHITECTURES = frozenset(
    {"jamba", "falcon-h1", "granitehybrid", "lfm2", "nemotron_h", "plamo2"}
)

# architecture -> (default sliding window, sliding window pattern)
_SLIDING_WINDOW_OVERRIDES: Mapping[str, Tuple[Optional[int], int]] = MappingProxyType(
    {
        "gemma2": (4096, 2),
        "gemma3": (None, 6),
        "gemma3n": (None, 5),
        "cohere2": (None, 4),
        "exaone4": (None, 4),
        "llama4": (8192, 4),
        "gpt-oss": (None, 2),
    }
)


@dataclass(frozen=True)
class GGUFArchitecture:
    type: str
    architecture: str


@dataclass(frozen=True)
class TransformerArchitecture(GGUFArchitecture):
    """Causal / MoE / SSM / RWKV / hybrid language models and encoders.

    ``feed_forward_length`` holds one entry per block; a scalar declaration is
    broadcast. ``attention_head_count`` is the maximum when the file declares
    a per-layer array.
    """

    maximum_context_length: int = 0
    embedding_length: int = 0
    block_count: int = 0
    feed_forward_length: Tuple[int, ...] = ()
    expert_feed_forward_length: int = 0
    expert_shared_feed_forward_length: int = 0
    expert_count: int = 0
    expert_used_count: int = 0
    expert_shared_count: int = 0
    attention_head_count: int = 0
    attention_head_count_kv: int = 0
    attention_max_alibi_bias: float = 0.0
    attention_clamp_kqv: float = 0.0
    attention_layer_norm_epsilon: float = 0.0
    attention_layer_norm_rms_epsilon: float = 0.0
    attention_key_length: int = 0
    attention_value_length: int = 0
    attention_key_length_mla: int = 0
    attention_value_length_mla: int = 0
    attention_causal: bool = True
    attention_sliding_window: int = 0
    attention_sliding_window_pattern: int = 1
    attention_recurrent: bool = False
    attention_hybrid: bool = False
    rope_dimension_count: int = 0
    rope_frequency_base: float = 10000.0
    rope_frequency_scale: float = 1.0
    rope_scaling_type: str = ""
    rope_scaling_factor: float = 0.0
    rope_scaling_original_context_length: int = 0
    rope_scaling_finetuned: bool = False
    ssm_convolution_kernel: int = 0
    ssm_inner_size: int = 0
    ssm_state_size: int = 0
    ssm_time_step_rank: int = 0
    ssm_group_count: int = 0
    rwkv_head_size: int = 0
    rwkv_rescale_every_n_layers: int = 0
    rwkv_time_mix_extra_dimension: int = 0
    rwkv_time_decay_extra_dimension: int = 0
    rwkv_token_shift_count: int = 2
    vocabulary_length: int = 0
    embedding_key_gqa: int = 0
    embedding_value_gqa: int = 0
    embedding_gqa: int = 0


@dataclass(frozen=True)
class ClipArchitecture(GGUFArchitecture):
    """Vision / audio projector (``clip`` architecture)."""

    projector_type: str = "mlp"
    has_text_encoder: bool = False
    has_vision_encoder: bool = False
    has_audio_encoder: bool = False
    has_llava_projector: bool = False
    has_minicpmv_projector: bool = False
    minicpmv_version: int = 0
    has_qwen2vl_merger: bool = False
    vision_image_size: int = 0
    vision_patch_size: int = 0
    vision_projection_dim: int = 0
    vision_embedding_length: int = 0
    vision_block_count: int = 0
    vision_feed_forward_length: Tuple[int, ...] = ()
    vision_attention_head_count: int = 0
    vision_attention_layer_norm_epsilon: float = 0.0
    vision_mm_patch_merge_type: str = "flat"
    vision_projector_scale_factor: int = 1
    vision_spatial_merge_size: int = 0
    vision_window_attention_pattern: int = 0
    audio_embedding_length: int = 0
    audio_block_count: int = 0
    audio_feed_forward_length: Tuple[int, ...] = ()
    audio_attention_head_count: int = 0
    audio_attention_layer_norm_epsilon: float = 0.0
    audio_mel_bins: int = 0
    audio_projector_stack_factor: int = 0


@dataclass(frozen=True)
class AdapterArchitecture(GGUFArchitecture):
    adapter_type: str = "lora"
    adapter_lora_alpha: float = 0.0
    adapter_control_vector_layer_count: int = 0


@dataclass(frozen=True)
class IMatrixArchitecture(GGUFArchitecture):
    imatrix_chunk_count: int = 0
    imatrix_chunk_size: int = 0
    imatrix_dataset_count: int = 0


@dataclass(frozen=True)
class DiffusionComponent:
    """Conditioner (text encoder) or autoencoder bundled with a generator."""

    architecture: str
    file_type: GGUFFileType
    file_type_descriptor: str


@dataclass(frozen=True)
class DiffusionArchitecture(GGUFArchitecture):
    diffusion_architecture: str = ""
    diffusion_transformer: bool = False
    conditioners: Tuple[DiffusionComponent, ...] = ()
    autoencoder: Optional[DiffusionComponent] = None


Architecture = Union[
    DiffusionArchitecture,
    ClipArchitecture,
    AdapterArchitecture,
    IMatrixArchitecture,
    TransformerArchitecture,
]


def per_block(values: Optional[Sequence[int]], block_count: int) -> Tuple[int, ...]:
    """Normalize a scalar-or-array hyper-parameter to one entry per block.

    A single value is broadcast; a longer array is truncated and a shorter one
    padded with its last value. With no block count the array is kept as is.
    """
    if not values:
        return ()
    vals = [int(v) for v in values]
    if block_count <= 0:
        return tuple(vals)
    if len(vals) >= block_count:
        return tuple(vals[:block_count])
    return tuple(vals + [vals[-1]] * (block_count - len(vals)))


def _max_of(kvs: GGUFMetadataKVs, key: str, default: int = 0) -> int:
    vals = kvs.ints_value(key)
    return max(vals) if vals else default


def _transformer(kvs: GGUFMetadataKVs, gtype: str, arch: str) -> TransformerArchitecture:
    def k(suffix: str) -> str:
        return f"{arch}.{suffix}"

    embedding = kvs.int_value(k("embedding_length"))
    blocks = kvs.int_value(k("block_count"))
    heads = _max_of(kvs, k("attention.head_count"))
    heads_kv = _max_of(kvs, k("attention.head_count_kv"), heads)

    key_length = kvs.int_value(k("attention.key_length"), embedding // heads if heads else 0)
    value_length = kvs.int_value(k("attention.value_length"), embedding // heads if heads else 0)

    alibi = k("attention.max_alibi_bias")
    if alibi not in kvs:
        alibi = k("attention.alibi_bias_max")
    clamp = k("attention.clamp_kqv")
    if clamp not in kvs:
        clamp = k("attention.clip_kqv")

    window = kvs.int_value(k("attention.sliding_window"))
    pattern = kvs.int_value(k("attention.sliding_window_pattern"), 1)
    override = _SLIDING_WINDOW_OVERRIDES.get(arch)
    if override is not None:
        default_window, pattern = override
        if window == 0 and default_window is not None:
            window = default_window
    elif arch == "phi3":
        window, pattern = 0, 1

    rope_scaling_type = ""
    rope_factor = 0.0
    if k("rope.scale_linear") in kvs:
        rope_scaling_type = "linear"
        rope_factor = kvs.float_value(k("rope.scale_linear"))
    rope_scaling_type = kvs.str_value(k("rope.scaling.type"), rope_scaling_type)
    rope_factor = kvs.float_value(k("rope.scaling.factor"), rope_factor)
    rope_scale = 1.0 / rope_factor if rope_factor != 0 else 1.0

    hybrid = arch in HYBRID_ARCHITECTURES
    recurrent = hybrid or arch in RECURRENT_ARCHITECTURES

    ssm_conv = kvs.int_value(k("ssm.conv_kernel"))
    ssm_inner = kvs.int_value(k("ssm.inner_size"))
    ssm_state = kvs.int_value(k("ssm.state_size"))

    vocab = kvs.int_value(k("vocab_size"), -1)
    if vocab < 0:
        tokens = kvs.array("tokenizer.ggml.tokens")
        vocab = tokens.length if tokens is not None else 0

    key_gqa = value_gqa = 0
    if heads > 0:
        key_gqa = key_length * heads_kv
        value_gqa = value_length * heads_kv
    if arch in ("mamba", "mamba2"):
        key_gqa = max(ssm_conv - 1, 0) * ssm_inner
        value_gqa = ssm_state * ssm_inner

    return TransformerArchitecture(
        type=gtype,
        architecture=arch,
        maximum_context_length=kvs.int_value(k("context_length")),
        embedding_length=embedding,
        block_count=blocks,
        feed_forward_length=per_block(kvs.ints_value(k("feed_forward_length")), blocks),
        expert_feed_forward_length=kvs.int_value(k("expert_feed_forward_length")),
        expert_shared_feed_forward_length=kvs.int_value(k("expert_shared_feed_forward_length")),
        expert_count=kvs.int_value(k("expert_count")),
        expert_used_count=kvs.int_value(k("expert_used_count")),
        expert_shared_count=kvs.int_value(k("expert_shared_count")),
        attention_head_count=heads,
        attention_head_count_kv=heads_kv,
        attention_max_alibi_bias=kvs.float_value(alibi),
        attention_clamp_kqv=kvs.float_value(clamp),
        attention_layer_norm_epsilon=kvs.float_value(k("attention.layer_norm_epsilon")),
        attention_layer_norm_rms_epsilon=kvs.float_value(k("attention.layer_norm_rms_epsilon")),
        attention_key_length=key_length,
        attention_value_length=value_length,
        attention_key_length_mla=kvs.int_value(k("attention.key_length_mla")),
        attention_value_length_mla=kvs.int_value(k("attention.value_length_mla")),
        attention_causal=kvs.bool_value(k("attention.causal"), True),
        attention_sliding_window=window,
        attention_sliding_window_pattern=pattern,
        attention_recurrent=recurrent,
        attention_hybrid=hybrid,
        rope_dimension_count=kvs.int_value(k("rope.dimension_count")),
        rope_frequency_base=kvs.float_value(k("rope.freq_base"), 10000.0),
        rope_frequency_scale=rope_scale,
        rope_scaling_type=rope_scaling_type,
        rope_scaling_factor=rope_factor,
        rope_scaling_original_context_length=kvs.int_value(
            k("rope.scaling.original_context_length")
        ),
        rope_scaling_finetuned=kvs.bool_value(k("rope.scaling.finetuned")),
        ssm_convolution_kernel=ssm_conv,
        ssm_inner_size=ssm_inner,
        ssm_state_size=ssm_state,
        ssm_time_step_rank=kvs.int_value(k("ssm.time_step_rank")),
        ssm_group_count=kvs.int_value(k("ssm.group_count")),
        rwkv_head_size=kvs.int_value(k("wkv.head_size")),
        rwkv_rescale_every_n_layers=kvs.int_value(k("rescale_every_n_layers")),
        rwkv_time_mix_extra_dimension=kvs.int_value(k("time_mix_extra_dim")),
        rwkv_time_decay_extra_dimension=kvs.int_value(k("time_decay_extra_dim")),
        rwkv_token_shift_count=kvs.int_value(k("token_shift_count"), 2),
        vocabulary_length=vocab,
        embedding_key_gqa=key_gqa,
        embedding_value_gqa=value_gqa,
        embedding_gqa=value_gqa,
    )


def _clip(kvs: GGUFMetadataKVs, tensors: GGUFTensorInfos, gtype: str) -> ClipArchitecture:
    def has_stack(prefix: str) -> bool:
        return any(ti.name.startswith(prefix) for ti in tensors)

    projector_type = kvs.str_value("clip.projector_type")
    if not projector_type:
        projector_type = kvs.str_value("clip.vision.projector_type")
    if not projector_type:
        projector_type = kvs.str_value("clip.audio.projector_type", "mlp")

    vision_blocks = kvs.int_value("clip.vision.block_count")
    audio_blocks = kvs.int_value("clip.audio.block_count")
    return ClipArchitecture(
        type=gtype,
        architecture="clip",
        projector_type=projector_type,
        has_text_encoder=kvs.bool_value("clip.has_text_encoder", has_stack("t.")),
        has_vision_encoder=kvs.bool_value("clip.has_vision_encoder", has_stack("v.")),
        has_audio_encoder=kvs.bool_value("clip.has_audio_encoder", has_stack("a.")),
        has_llava_projector=kvs.bool_value("clip.has_llava_projector"),
        has_minicpmv_projector=kvs.bool_value("clip.has_minicpmv_projector"),
        minicpmv_version=kvs.int_value("clip.minicpmv_version"),
        has_qwen2vl_merger=kvs.bool_value("clip.has_qwen2vl_merger"),
        vision_image_size=kvs.int_value("clip.vision.image_size"),
        vision_patch_size=kvs.int_value("clip.vision.patch_size"),
        vision_projection_dim=kvs.int_value("clip.vision.projection_dim"),
        vision_embedding_length=kvs.int_value("clip.vision.embedding_length"),
        vision_block_count=vision_blocks,
        vision_feed_forward_length=per_block(
            kvs.ints_value("clip.vision.feed_forward_length"), vision_blocks
        ),
        vision_attention_head_count=kvs.int_value("clip.vision.attention.head_count"),
        vision_attention_layer_norm_epsilon=kvs.float_value(
            "clip.vision.attention.layer_norm_epsilon"
        ),
        vision_mm_patch_merge_type=kvs.str_value("clip.vision.mm_patch_merge_type", "flat"),
        vision_projector_scale_factor=kvs.int_value(
            "clip.vision.projector.scale_factor", 4 if projector_type == "gemma3" else 1
        ),
        vision_spatial_merge_size=kvs.int_value("clip.vision.spatial_merge_size"),
        vision_window_attention_pattern=kvs.int_value("clip.vision.n_wa_pattern"),
        audio_embedding_length=kvs.int_value("clip.audio.embedding_length"),
        audio_block_count=audio_blocks,
        audio_feed_forward_length=per_block(
            kvs.ints_value("clip.audio.feed_forward_length"), audio_blocks
        ),
        audio_attention_head_count=kvs.int_value("clip.audio.attention.head_count"),
        audio_attention_layer_norm_epsilon=kvs.float_value(
            "clip.audio.attention.layer_norm_epsilon"
        ),
        audio_mel_bins=kvs.int_value("clip.audio.num_mel_bins"),
        audio_projector_stack_factor=kvs.int_value("clip.audio.projector.stack_factor"),
    )


def _adapter(kvs: GGUFMetadataKVs, gtype: str) -> AdapterArchitecture:
    declared = kvs.str_value("general.architecture")
    arch = kvs.str_value(CONTROL_VECTOR_HINT_KEY) or declared or "llama"
    if declared == "controlvector":
        adapter_type = "control_vector"
    else:
        adapter_type = kvs.str_value("adapter.type", "lora")
    return AdapterArchitecture(
        type=gtype,
        architecture=arch,
        adapter_type=adapter_type,
        adapter_lora_alpha=kvs.float_value("adapter.lora.alpha"),
        adapter_control_vector_layer_count=kvs.int_value("controlvector.layer_count"),
    )


def _imatrix(kvs: GGUFMetadataKVs, gtype: str) -> IMatrixArchitecture:
    datasets = kvs.array("imatrix.datasets")
    return IMatrixArchitecture(
        type=gtype,
        architecture="imatrix",
        imatrix_chunk_count=kvs.int_value("imatrix.chunk_count"),
        imatrix_chunk_size=kvs.int_value("imatrix.chunk_size"),
        imatrix_dataset_count=datasets.length if datasets is not None else 0,
    )


# ---- diffusion ----

_DM = "model.diffusion_model."


def _diffusion_signature(tensors: GGUFTensorInfos) -> Optional[Tuple[str, bool]]:
    """(generator name, is transformer) or None when no signature tensor matches."""

    def inpaint(name: str) -> str:
        ti = tensors.get(_DM + "input_blocks.0.0.weight")
        return name + " InPaint" if ti is not None and len(ti.dims) > 2 and ti.dims[2] == 9 else name

    ti = tensors.get(_DM + "output_blocks.11.1.transformer_blocks.0.attn2.to_v.weight")
    if ti is not None:
        return inpaint("Stable Diffusion 2.x" if ti.dims[0] == 1024 else "Stable Diffusion 1.x"), False
    if _DM + "output_blocks.5.1.transformer_blocks.1.attn1.to_v.weight" in tensors:
        return inpaint("Stable Diffusion XL"), False
    if _DM + "output_blocks.8.1.transformer_blocks.1.attn1.to_v.weight" in tensors:
        return "Stable Diffusion XL Refiner", False
    if _DM + "joint_blocks.23.x_block.attn.proj.weight" in tensors:
        return "Stable Diffusion 3.x", True
    for prefix in (_DM, ""):
        if prefix + "double_blocks.0.txt_attn.proj.weight" in tensors:
            img_in = tensors.get(prefix + "img_in.weight")
            fill = img_in is not None and img_in.dims[0] == 384
            return ("FLUX.1 Fill" if fill else "FLUX.1"), True
    return None


def _component(tensors: GGUFTensorInfos, name: str, prefixes: Sequence[str]) -> DiffusionComponent:
    subset = [ti for ti in tensors if ti.name.startswith(tuple(prefixes))]
    ft = guess_file_type(count_tensor_types(subset, diffusion=True))
    return DiffusionComponent(architecture=name, file_type=ft, file_type_descriptor=ft.label)


def _conditioners(tensors: GGUFTensorInfos) -> List[DiffusionComponent]:
    out: List[DiffusionComponent] = []
    clip_l = "cond_stage_model.transformer.text_model.encoder.layers.{}.self_attn.k_proj.weight"
    if clip_l.format(11) in tensors:
        name = "OpenCLIP ViT-H/14" if clip_l.format(22) in tensors else "OpenAI CLIP ViT-L/14"
        out.append(_component(tensors, name, ("cond_stage_model.transformer.",)))
    if "cond_stage_model.1.transformer.text_model.encoder.layers.31.self_attn.k_proj.weight" in tensors:
        out.append(_component(tensors, "OpenCLIP ViT-G/14", ("cond_stage_model.1.",)))
    for idx in (1, 2):
        if f"cond_stage_model.{idx}.transformer.encoder.block.23.layer.0.SelfAttention.k.weight" in tensors:
            out.append(_component(tensors, "Google T5-xxl", (f"cond_stage_model.{idx}.",)))
            break
    return out


def _diffusion(tensors: GGUFTensorInfos, gtype: str, signature: Optional[Tuple[str, bool]]) -> DiffusionArchitecture:
    name, transformer = signature if signature is not None else ("", False)
    autoencoder = None
    if "first_stage_model.decoder.conv_in.weight" in tensors:
        autoencoder = _component(tensors, f"{name} VAE".strip(), ("first_stage_model.",))
    elif "decoder.conv_in.weight" in tensors:
        autoencoder = _component(tensors, f"{name} VAE".strip(), ("decoder.", "encoder."))
    return DiffusionArchitecture(
        type=gtype,
        architecture="diffusion",
        diffusion_architecture=name,
        diffusion_transformer=transformer,
        conditioners=tuple(_conditioners(tensors)),
        autoencoder=autoencoder,
    )


def architecture_of(gf: "GGUFFile") -> Architecture:
    """Normalize a parsed file into its architecture family."""
    kvs, tensors = gf.kvs, gf.tensor_infos
    gtype, arch = type_and_architecture(kvs, tensors)
    signature = _diffusion_signature(tensors)
    if signature is not None or arch == "diffusion":
        return _diffusion(tensors, gtype, signature)
    if arch == "clip":
        return _clip(kvs, tensors, gtype)
    if gtype == "adapter" or kvs.str_value("general.architecture") == "controlvector":
        return _adapter(kvs, gtype)
    if gtype == "imatrix":
        return _imatrix(kvs, gtype)
    return _transformer(kvs, gtype, arch)
