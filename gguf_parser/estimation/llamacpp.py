# gguf_parser/estimation/llamacpp.py
"""
Resource estimator for running a GGUF file in llama.cpp.

The estimate mirrors llama.cpp's allocation strategy rather than measuring
anything: devices are the CPU (index 0) followed by one slot per
tensor-split fraction, remote RPC devices first. Every device records the
layers it handles and its footprint, weight, KV-cache and computation bytes.

Layers are placed bottom-up. The first ``block_count - offload`` blocks stay
on the CPU; offloaded block ``i`` goes to GPU
``upper_bound(tensor_split, (i - offload_start) / offloaded) + 1``, where the
output layer counts as one more offloaded layer when the run is fully
offloaded. Transformer steps are serial, so compute buffers are sized after
the largest (last) block only.
"""
from __future__ import annotations

import bisect
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional, Tuple

from loguru import logger

from gguf_parser.analysis.architecture import (
    AdapterArchitecture,
    ClipArchitecture,
    IMatrixArchitecture,
    TransformerArchitecture,
)
from gguf_parser.estimation.options import RunConfig, SplitMode
from gguf_parser.model_formats.gguf.gguf_layers import (
    GGUFLayerTensorInfos,
    GGUFNamedTensorInfos,
    item_bytes,
    item_elements,
    item_search,
)
from gguf_parser.model_formats.gguf.gguf_quantization import (
    GGMLType,
    ggml_graph_overhead,
    ggml_padding,
    ggml_tensor_overhead,
)
from gguf_parser.observability import Timer

if TYPE_CHECKING:
    from gguf_parser.analysis.tokenizer import GGUFTokenizer
    from gguf_parser.file import GGUFFile

MiB = 1024 * 1024

_F32 = GGMLType.F32
_F16 = GGMLType.F16
_I32 = GGMLType.I32

_MODEL_IO_LAYERS = ("position_*", "token_*", "cls.*", "output.*", "output_*", "rope_factors_*")
_ADAPTER_IO_LAYERS = ("position_*", "token_*", "cls.*", "output.*", "output_*")
_INPUT_LAYERS = ("position_*", "token_*")

_PROJECTOR_IO_LAYERS = (
    "mm.*",
    "v.patch_embd.*",
    "v.class_embd",
    "v.position_embd.*",
    "v.pre_ln.*",
    "v.post_ln.*",
    "model.*",
    "resampler.*",
    "a.position_embd.*",
    "a.conv1d.*",
    "a.post_ln.*",
)
_PROJECTOR_INPUT_LAYERS = (
    "v.patch_embd.*",
    "v.class_embd",
    "v.position_embd.*",
    "v.pre_ln.*",
    "model.*",
    "a.position_embd.*",
    "a.conv1d.*",
)

_QWEN2VL_PROJECTORS = frozenset({"qwen2vl_merger", "qwen2.5vl_merger", "qwen2.5o"})

_RX_RWKV_ATTN = re.compile(r".*\.\d+\.(attn_norm|attn_norm_2)\.weight")
_RX_RWKV_TIME_MIX = re.compile(
    r".*\.\d+\.time_mix_(lerp_x|receptance|decay_w2|key|value|gate|w2|output)\.weight"
)
_RX_SSM_CONV = re.compile(r".*\.\d+\.(attn_norm|ssm_in|ssm_conv1d)\.weight")
_RX_SSM_SCAN = re.compile(r".*\.\d+\.ssm_(dt\.weight|a)")
_RX_ATTN = re.compile(r".*\.\d+\.attn_(norm|q|qkv|q_b)\.weight")
_RX_FFN = re.compile(r".*\.\d+\.(attn_norm|ffn_norm|ffn_gate|ffn_up)\.weight")


# ---- usage records ----


@dataclass
class LLaMACppParameterUsage:
    kv_cache: int = 0
    input: int = 0
    compute: int = 0
    output: int = 0


@dataclass
class LLaMACppWeightMemoryUsage:
    input: int = 0
    compute: int = 0
    output: int = 0

    def sum(self) -> int:
        return self.input + self.compute + self.output


@dataclass
class LLaMACppKVCacheMemoryUsage:
    key: int = 0
    value: int = 0

    def sum(self) -> int:
        return self.key + self.value


@dataclass
class LLaMACppComputationMemoryUsage:
    footprint: int = 0
    input: int = 0
    compute: int = 0
    output: int = 0

    def sum(self) -> int:
        # compute and output buffers are not alive at the same time
        return self.footprint + self.input + max(self.compute, self.output)


@dataclass
class LLaMACppRunDeviceUsage:
    """Usage of one device; index 0 of the device list is the CPU.

    Attributes:
        handle_layers: Blocks placed on this device.
        handle_swa_layers: Of those, blocks using sliding-window attention.
        handle_last_layer: Index of the last block placed here, -1 for none.
        handle_output_layer: Whether the output layer runs here.
        remote: RPC device.
        position: Index among remote devices when ``remote``, otherwise
            among local GPUs.
        endpoint: RPC endpoint of a remote device.
        footprint: Bootstrap bytes.
    """

    handle_layers: int = 0
    handle_swa_layers: int = 0
    handle_last_layer: int = -1
    handle_output_layer: bool = False
    remote: bool = False
    position: int = 0
    endpoint: str = ""
    footprint: int = 0
    parameter: LLaMACppParameterUsage = field(default_factory=LLaMACppParameterUsage)
    weight: LLaMACppWeightMemoryUsage = field(default_factory=LLaMACppWeightMemoryUsage)
    kv_cache: LLaMACppKVCacheMemoryUsage = field(default_factory=LLaMACppKVCacheMemoryUsage)
    computation: LLaMACppComputationMemoryUsage = field(
        default_factory=LLaMACppComputationMemoryUsage
    )


@dataclass
class LLaMACppRunEstimateMemory:
    handle_layers: int = 0
    handle_last_layer: int = -1
    handle_output_layer: bool = False
    remote: bool = False
    position: int = 0
    uma: int = 0
    non_uma: int = 0


@dataclass
class LLaMACppRunEstimateSummaryItem:
    offload_layers: int = 0
    full_offloaded: bool = False
    ram: LLaMACppRunEstimateMemory = field(default_factory=LLaMACppRunEstimateMemory)
    vrams: List[LLaMACppRunEstimateMemory] = field(default_factory=list)


@dataclass
class LLaMACppRunEstimateSummary:
    items: List[LLaMACppRunEstimateSummaryItem]
    type: str
    architecture: str
    clip_projector_type: str
    adapter_type: str
    context_size: int
    flash_attention: bool
    no_mmap: bool
    embedding_only: bool
    reranking: bool
    distributable: bool
    logical_batch_size: int
    physical_batch_size: int


@dataclass
class LLaMACppRunEstimate:
    """Estimated usage of running a GGUF file in llama.cpp."""

    type: str
    architecture: str
    devices: List[LLaMACppRunDeviceUsage]
    clip_projector_type: str = ""
    adapter_type: str = ""
    flash_attention: bool = False
    context_size: int = 0
    offload_layers: int = 0
    full_offloaded: bool = False
    no_mmap: bool = False
    embedding_only: bool = False
    reranking: bool = False
    distributable: bool = False
    logical_batch_size: int = 0
    physical_batch_size: int = 0
    split_mode: SplitMode = SplitMode.LAYER
    drafter: Optional["LLaMACppRunEstimate"] = None
    projector: Optional["LLaMACppRunEstimate"] = None
    adapters: Tuple["LLaMACppRunEstimate", ...] = ()

    def summarize_item(
        self, mmap: bool, non_uma_ram_footprint: int = 0, non_uma_vram_footprint: int = 0
    ) -> LLaMACppRunEstimateSummaryItem:
        """Collapse the per-device breakdown into RAM and per-GPU VRAM.

        Args:
            mmap: Weights are memory-mapped, so host RAM only holds what the
                CPU actually computes with.
            non_uma_ram_footprint: Extra host bytes on non-UMA systems.
            non_uma_vram_footprint: Extra bytes per GPU on non-UMA systems.
        """
        item = LLaMACppRunEstimateSummaryItem(
            offload_layers=self.offload_layers + (1 if self.full_offloaded else 0),
            full_offloaded=self.full_offloaded,
        )

        cpu = self.devices[0]
        fp, wg = cpu.footprint, cpu.weight.sum()
        kv, cp = cpu.kv_cache.sum(), cpu.computation.sum()
        uma = fp + wg + kv + cp
        if not self.no_mmap and (mmap or self.full_offloaded):
            uma -= wg
            if not mmap:
                uma += cpu.weight.output
        item.ram = LLaMACppRunEstimateMemory(
            handle_layers=cpu.handle_layers,
            handle_last_layer=cpu.handle_last_layer,
            handle_output_layer=cpu.handle_output_layer,
            uma=uma,
            non_uma=non_uma_ram_footprint + uma,
        )

        for d in self.devices[1:]:
            fp, wg = d.footprint, d.weight.sum()
            kv, cp = d.kv_cache.sum(), d.computation.sum()
            uma = fp + wg + kv
            if not self.no_mmap and mmap:
                keeps_weights = (
                    d.remote
                    or (d.position > 0 and d.handle_last_layer >= 0)
                    or self.type == "projector"
                )
                if not keeps_weights:
                    uma -= wg
            non_uma = non_uma_vram_footprint + fp + wg + kv + cp
            if not d.remote and d.position > 0 and d.handle_last_layer < 0:
                non_uma -= wg + cp
            item.vrams.append(
                LLaMACppRunEstimateMemory(
                    handle_layers=d.handle_layers,
                    handle_last_layer=d.handle_last_layer,
                    handle_output_layer=d.handle_output_layer,
                    remote=d.remote,
                    position=d.position,
                    uma=uma,
                    non_uma=non_uma,
                )
            )

        subs = [(s, mmap) for s in (self.drafter, self.projector) if s is not None]
        subs += [(s, False) for s in self.adapters]
        for sub, sub_mmap in subs:
            si = sub.summarize_item(sub_mmap)
            item.ram.uma += si.ram.uma
            item.ram.non_uma += si.ram.non_uma
            for mine, theirs in zip(item.vrams, si.vrams):
                mine.uma += theirs.uma
                mine.non_uma += theirs.non_uma
        return item

    def summarize(
        self, mmap: bool, non_uma_ram_footprint: int = 0, non_uma_vram_footprint: int = 0
    ) -> LLaMACppRunEstimateSummary:
        return LLaMACppRunEstimateSummary(
            items=[self.summarize_item(mmap, non_uma_ram_footprint, non_uma_vram_footprint)],
            type=self.type,
            architecture=self.architecture,
            clip_projector_type=self.clip_projector_type,
            adapter_type=self.adapter_type,
            context_size=self.context_size,
            flash_attention=self.flash_attention,
            no_mmap=self.no_mmap,
            embedding_only=self.embedding_only,
            reranking=self.reranking,
            distributable=self.distributable,
            logical_batch_size=self.logical_batch_size,
            physical_batch_size=self.physical_batch_size,
        )


# ---- placement ----


@dataclass
class _Placement:
    offload: int
    actual_offload: int
    load: int
    full: bool
    zero: bool
    output_device: int = 0
    swa_load: int = 0
    swa_offload: int = 0


def _new_devices(cfg: RunConfig) -> List[LLaMACppRunDeviceUsage]:
    n_rpc = len(cfg.rpc_servers)
    devices = [LLaMACppRunDeviceUsage()]
    for j in range(cfg.device_count):
        if j < n_rpc:
            devices.append(
                LLaMACppRunDeviceUsage(remote=True, position=j, endpoint=cfg.rpc_servers[j])
            )
        else:
            devices.append(LLaMACppRunDeviceUsage(position=j - n_rpc))
    return devices


def _resolve_offload(requested: Optional[int], blocks: int) -> _Placement:
    # asking for at least every block also offloads the output layer
    if requested is None or (requested > 0 and requested >= blocks):
        offload, output = blocks, True
    else:
        offload, output = requested, False
    load = blocks - offload
    return _Placement(
        offload=offload,
        actual_offload=offload + (1 if output else 0),
        load=load,
        full=load == 0 and output,
        zero=offload == 0,
    )


def _gpu_of(i: int, start: int, p: _Placement, cfg: RunConfig) -> int:
    """Device index of offloaded layer ``i``."""
    if cfg.split_mode is SplitMode.NONE:
        return cfg.main_gpu_index + 1
    x = (i - start) / p.actual_offload
    return min(bisect.bisect_right(cfg.tensor_split, x), cfg.device_count - 1) + 1


def _place(
    devices: List[LLaMACppRunDeviceUsage],
    p: _Placement,
    n_layers: int,
    cfg: RunConfig,
    swa_pattern: Optional[int] = None,
) -> None:
    """Assign ``n_layers`` blocks to devices and pick the output device."""
    start = n_layers - p.offload

    def is_swa(i: int) -> bool:
        return swa_pattern is not None and (swa_pattern == 0 or i % swa_pattern != 0)

    for i in range(n_layers):
        if i < p.load:
            d = devices[0]
            if is_swa(i):
                d.handle_swa_layers += 1
                p.swa_load += 1
        elif i >= start:
            idx = _gpu_of(i, start, p, cfg)
            d = devices[idx]
            if is_swa(i):
                d.handle_swa_layers += 1
                p.swa_offload += 1
            if p.full and i == n_layers - 1:
                p.output_device = idx
        else:
            continue
        d.handle_layers += 1
        d.handle_last_layer = i
    if p.full and n_layers == 0:
        p.output_device = _gpu_of(0, 0, p, cfg)
    devices[p.output_device].handle_output_layer = True


def _place_weights(
    devices: List[LLaMACppRunDeviceUsage],
    p: _Placement,
    tf: GGUFLayerTensorInfos,
    ip: GGUFLayerTensorInfos,
    op: GGUFLayerTensorInfos,
    cfg: RunConfig,
) -> None:
    start = max(len(tf) - p.offload, 0)
    for i, layer in enumerate(tf):
        idx = _gpu_of(i, start, p, cfg) if i >= start and p.offload > 0 else 0
        devices[idx].weight.compute += item_bytes(layer)
        devices[idx].parameter.compute += item_elements(layer)

    cpu = devices[0]
    cpu.weight.input = ip.bytes()
    cpu.parameter.input = ip.elements()
    if op.get("output.weight") is not None:
        wg, ps = op.bytes(), op.elements()
    else:
        # tied embeddings: the output projection reuses the input layer
        wg, ps = op.bytes() + cpu.weight.input, op.elements() + ip.elements()
    cpu.weight.output = wg
    if p.full:
        devices[p.output_device].weight.output = wg
        devices[p.output_device].parameter.output = ps
    else:
        cpu.parameter.output = ps


def _last_dim_row(ti, n: int) -> int:
    return _F32.row_size_of([ti.dims[-1], n])


def _collapse_to_main(devices: List[LLaMACppRunDeviceUsage], main: int) -> None:
    """Move KV cache and compute buffers of every other GPU onto ``main``."""
    target = devices[main]
    for i, d in enumerate(devices[1:], start=1):
        if i == main:
            continue
        target.kv_cache.key += d.kv_cache.key
        target.kv_cache.value += d.kv_cache.value
        target.parameter.kv_cache += d.parameter.kv_cache
        target.computation.output += d.computation.output
        d.kv_cache = LLaMACppKVCacheMemoryUsage()
        d.parameter.kv_cache = 0
        d.computation = LLaMACppComputationMemoryUsage()


# ---- model ----


def _estimate_model(
    gf: "GGUFFile",
    cfg: RunConfig,
    a: TransformerArchitecture,
    t: "GGUFTokenizer",
    e: LLaMACppRunEstimate,
) -> None:
    devices = e.devices
    io, tf = gf.layers().cut(_MODEL_IO_LAYERS)
    ip, op = io.cut(_INPUT_LAYERS)

    blocks = a.block_count or len(tf)
    using_swa = a.attention_sliding_window_pattern != 1 and not cfg.full_size_swa_cache

    p = _resolve_offload(cfg.offload_layers, blocks)
    e.full_offloaded, e.offload_layers = p.full, p.offload
    _place(devices, p, blocks, cfg, a.attention_sliding_window_pattern if using_swa else None)

    # grok cannot use flash attention; without it a quantized V cache falls back to F16
    flash_attention = cfg.flash_attention and a.architecture != "grok"
    cache_k, cache_v = cfg.cache_key_type, cfg.cache_value_type
    if cache_v.is_quantized and not flash_attention:
        cache_v = _F16
    e.flash_attention = flash_attention

    context_size = cfg.context_size
    logical_batch, physical_batch = cfg.effective_logical_batch_size, cfg.physical_batch_size
    if not a.attention_causal:
        base = cfg.rope_frequency_base if cfg.rope_frequency_base is not None else a.rope_frequency_base
        scale = (
            cfg.rope_frequency_scale
            if cfg.rope_frequency_scale is not None
            else a.rope_frequency_scale
        )
        scaling = cfg.rope_scaling_type if cfg.rope_scaling_type is not None else a.rope_scaling_type
        original = (
            cfg.rope_scaling_original_context_size
            if cfg.rope_scaling_original_context_size is not None
            else a.rope_scaling_original_context_length
        )
        customized = (
            base != a.rope_frequency_base
            or scale != a.rope_frequency_scale
            or scaling != a.rope_scaling_type
            or (scaling == "yarn" and original != a.rope_scaling_original_context_length)
        )
        e.embedding_only = True
        if context_size is None:
            context_size = a.maximum_context_length
        if not customized:
            context_size = min(a.maximum_context_length, context_size)
        logical_batch = physical_batch = context_size
        e.reranking = "cls.bias" in gf.tensor_infos or "cls.weight" in gf.tensor_infos

    e.distributable = True
    e.logical_batch_size, e.physical_batch_size = logical_batch, physical_batch

    padding_align = 256 if flash_attention else 32
    n_ctx = context_size if context_size is not None else a.maximum_context_length
    if cfg.in_max_context_size:
        n_ctx = min(n_ctx, a.maximum_context_length)
    n_ctx = ggml_padding(n_ctx, padding_align)
    n_tokens = min(n_ctx, physical_batch)
    n_batch = n_outputs = n_tokens
    n_seq = cfg.parallel_size
    n_kv = n_ctx
    e.context_size = n_ctx

    cpu = devices[0]

    # footprint: loader, metadata, vocabulary, output buffer
    cpu.footprint = 5 * MiB + (gf.size - gf.model_size)
    fp = t.tokens_length * (4 + 4)  # token type, score
    if t.model == "gpt2":
        fp += t.merges_length * (48 + 56)
    fp += t.tokens_length * (32 + (24 + 32))  # id->token vector, token->id map
    cpu.footprint += fp
    ob = a.embedding_length * n_outputs * 4
    if a.attention_causal:
        ob += a.vocabulary_length * n_outputs * 4
    devices[p.output_device if p.full else 0].footprint += ob

    _place_weights(devices, p, tf, ip, op, cfg)

    if a.attention_causal:
        _kv_cache(devices, p, a, cfg, cache_k, cache_v, n_kv, n_seq, logical_batch, padding_align, using_swa)

    _computation(
        gf, devices, p, a, cfg, tf, ip, op,
        cache_k=cache_k,
        cache_v=cache_v,
        flash_attention=flash_attention,
        blocks=blocks,
        n_tokens=n_tokens,
        n_batch=n_batch,
        n_outputs=n_outputs,
        n_seq=n_seq,
        n_kv=n_kv,
    )  # fmt: skip

    # row and none splits keep KV cache and compute buffers on the main GPU
    if cfg.split_mode is not SplitMode.LAYER and not p.zero:
        _collapse_to_main(devices, cfg.main_gpu_index + 1)


def _distribute(
    devices: List[LLaMACppRunDeviceUsage],
    p: _Placement,
    offload_kv: bool,
    per_layer: Tuple[int, int, int],
    per_swa_layer: Optional[Tuple[int, int, int]] = None,
) -> None:
    """Add (key bytes, value bytes, parameters) per handled layer to each device."""
    swa = per_swa_layer or per_layer

    def add(d: LLaMACppRunDeviceUsage, n_swa: int, n_full: int) -> None:
        d.kv_cache.key += swa[0] * n_swa + per_layer[0] * n_full
        d.kv_cache.value += swa[1] * n_swa + per_layer[1] * n_full
        d.parameter.kv_cache += swa[2] * n_swa + per_layer[2] * n_full

    if per_swa_layer is None:
        add(devices[0], 0, p.load)
        if not offload_kv:
            add(devices[0], 0, p.offload)
        elif not p.zero:
            for d in devices[1:]:
                add(d, 0, d.handle_layers)
        return

    add(devices[0], p.swa_load, p.load - p.swa_load)
    if not offload_kv:
        add(devices[0], p.swa_offload, p.offload - p.swa_offload)
    elif not p.zero:
        for d in devices[1:]:
            add(d, d.handle_swa_layers, d.handle_layers - d.handle_swa_layers)


def _recurrent_state(a: TransformerArchitecture) -> Tuple[int, int]:
    if a.rwkv_head_size > 0:
        return a.rwkv_token_shift_count * a.embedding_length, a.rwkv_head_size * a.embedding_length
    r = max(a.ssm_convolution_kernel - 1, 0) * (
        a.ssm_inner_size + 2 * a.ssm_group_count * a.ssm_state_size
    )
    return r, a.ssm_state_size * a.ssm_inner_size


def _kv_cache(
    devices: List[LLaMACppRunDeviceUsage],
    p: _Placement,
    a: TransformerArchitecture,
    cfg: RunConfig,
    cache_k: GGMLType,
    cache_v: GGMLType,
    n_kv: int,
    n_seq: int,
    logical_batch: int,
    padding_align: int,
    using_swa: bool,
) -> None:
    if a.attention_recurrent:
        r, s = _recurrent_state(a)
        rps, sps = r * n_seq, s * n_seq
        rrs, srs = _F32.row_size_of([rps]), _F32.row_size_of([sps])
        _distribute(devices, p, cfg.offload_kv_cache, (rrs, srs, rps + sps))
        if not a.attention_hybrid:
            return

    akl, avl = a.attention_key_length, a.attention_value_length
    if a.attention_key_length_mla > 0 and a.attention_value_length_mla > 0:
        akl, avl = a.attention_key_length_mla, a.attention_value_length_mla
    k_gqa, v_gqa = akl * a.attention_head_count_kv, avl * a.attention_head_count_kv
    kps, vps = k_gqa * n_kv, v_gqa * n_kv
    full = (cache_k.row_size_of([kps]), cache_v.row_size_of([vps]), kps + vps)
    if not using_swa:
        _distribute(devices, p, cfg.offload_kv_cache, full)
        return

    swa_size = min(n_kv, ggml_padding(a.attention_sliding_window * n_seq + logical_batch, padding_align))
    swa_kps, swa_vps = k_gqa * swa_size, v_gqa * swa_size
    swa = (cache_k.row_size_of([swa_kps]), cache_v.row_size_of([swa_vps]), swa_kps + swa_vps)
    _distribute(devices, p, cfg.offload_kv_cache, full, swa)


def _computation(
    gf: "GGUFFile",
    devices: List[LLaMACppRunDeviceUsage],
    p: _Placement,
    a: TransformerArchitecture,
    cfg: RunConfig,
    tf: GGUFLayerTensorInfos,
    ip: GGUFLayerTensorInfos,
    op: GGUFLayerTensorInfos,
    *,
    cache_k: GGMLType,
    cache_v: GGMLType,
    flash_attention: bool,
    blocks: int,
    n_tokens: int,
    n_batch: int,
    n_outputs: int,
    n_seq: int,
    n_kv: int,
) -> None:
    cpu, gpus = devices[0], devices[1:]
    n_tensors = len(gf.tensor_infos)
    overhead = ggml_tensor_overhead()

    max_nodes = max(1024, 8 * n_tensors)
    cpu.computation.footprint = overhead * max_nodes + ggml_graph_overhead(max_nodes)
    cpu.computation.footprint += 4 * MiB  # scheduler
    cpu.computation.footprint += 2 * overhead * (n_tensors + 1 + blocks * 3)

    inp_tokens = _I32.row_size_of([n_batch])
    inp_embd = _F32.row_size_of([a.embedding_length, n_batch])
    inp_pos = _I32.row_size_of([n_batch])
    inp_out_ids = _I32.row_size_of([n_outputs])
    inp_kq_mask = _F32.row_size_of([n_kv, n_batch])
    inp_s_mask = _F32.row_size_of([1, n_seq])
    inp_s_seq = _I32.row_size_of([n_seq, n_batch])

    if a.attention_recurrent:
        cpu.computation.input = inp_tokens + inp_embd + 2 * inp_s_mask + inp_s_seq + inp_out_ids
        gpu_input = inp_embd + inp_s_mask + inp_s_seq
    else:
        cpu.computation.input = inp_tokens + inp_embd + inp_pos + inp_kq_mask + inp_out_ids
        gpu_input = inp_embd + inp_pos + inp_kq_mask
    # pipeline parallelism keeps several copies of the inputs
    if not cfg.rpc_servers and cfg.device_count > 1 and cfg.split_mode is SplitMode.LAYER:
        gpu_input *= 2 if a.expert_count > 0 else 4
    for d in gpus:
        d.computation.input += gpu_input

    last = tf[len(tf) - 1] if len(tf) else None

    def search(rx: re.Pattern[str]) -> list:
        return item_search(last, rx) if last is not None else []

    if a.attention_recurrent and not a.attention_hybrid:
        if a.rwkv_head_size > 0:
            inc = sum(_last_dim_row(ti, n_batch) for ti in search(_RX_RWKV_ATTN))
            for ti in search(_RX_RWKV_TIME_MIX):
                if ti.name.endswith(".time_mix_w2.weight"):
                    inc += _F32.row_size_of([a.embedding_length, 1, n_tokens, ti.dims[-1]])
                elif ti.name.endswith(".time_mix_output.weight"):
                    inc += _F32.row_size_of([a.embedding_length, n_batch + a.rwkv_head_size * n_seq])
                else:
                    inc += _last_dim_row(ti, n_batch)
        else:
            r, _ = _recurrent_state(a)
            inc = _F32.row_size_of([r, n_seq])
            for ti in search(_RX_SSM_CONV):
                if ti.name.endswith(".ssm_conv1d.weight"):
                    inc += _F32.row_size_of(
                        [a.ssm_inner_size * n_tokens + a.ssm_convolution_kernel * a.ssm_inner_size * n_seq]
                    )
                else:
                    inc += _last_dim_row(ti, n_tokens)
            for ti in search(_RX_SSM_SCAN):
                if ti.name.endswith(".ssm_a"):
                    inc += _F32.row_size_of(
                        [a.ssm_inner_size * n_tokens + a.ssm_state_size * a.ssm_inner_size * n_seq]
                    )
                else:
                    inc += _last_dim_row(ti, n_tokens)
        for d in gpus:
            d.computation.compute = inc
    else:
        heads, heads_kv = a.attention_head_count, a.attention_head_count_kv
        load_attn = cache_k.row_size_of([a.attention_key_length, n_kv, heads_kv])
        load_attn += cache_v.row_size_of([a.attention_value_length, n_kv, heads_kv])
        partial = not p.zero and not p.full

        if flash_attention:
            offload_attn = _F16.row_size_of([n_kv, n_tokens])
            for ti in search(_RX_ATTN):
                if ti.name.endswith(".attn_norm.weight"):
                    offload_attn += _last_dim_row(ti, n_tokens)
                else:
                    offload_attn += ti.bytes
            offload_attn += load_attn
        else:
            offload_attn = 0
            for ti in search(_RX_ATTN):
                if ti.name.endswith(".attn_q.weight") or ti.name.endswith(".attn_qkv.weight"):
                    offload_attn += _F32.row_size_of([ti.dims[0], n_tokens]) * 2  # Qcur
                    offload_attn += _F32.row_size_of([n_kv, n_tokens, heads])  # kq
                    if ti.name.endswith(".attn_qkv.weight"):
                        offload_attn += _F32.row_size_of([a.embedding_length, a.embedding_length * 3])
                    if partial:
                        offload_attn += load_attn
                elif ti.name.endswith(".attn_q_b.weight"):
                    offload_attn += _last_dim_row(ti, n_tokens) * 2
                    offload_attn += _F32.row_size_of([n_kv, n_tokens, heads])
                else:
                    offload_attn += _last_dim_row(ti, n_tokens)

        ffn = sum(_last_dim_row(ti, n_tokens) for ti in search(_RX_FFN))
        if a.expert_count > 0 or a.expert_used_count > 0:
            ffn += _F32.row_size_of([a.expert_count, a.embedding_length])  # gate input
            ffn += _F32.row_size_of([a.expert_count, n_tokens])  # logits
            ffn += _F32.row_size_of([a.embedding_length, a.expert_used_count, n_tokens])  # down

        cpu.computation.compute = load_attn if p.zero else load_attn + ffn
        for d in gpus:
            d.computation.compute = max(offload_attn, ffn)
        if p.load > 1:
            for d in gpus:
                if not d.remote:
                    d.computation.compute += load_attn
                    break

    if a.attention_causal:
        out = inp_s_mask + inp_s_seq if a.attention_recurrent else 0
        ti = op.get("output_norm.weight")
        if ti is not None:
            out += _last_dim_row(ti, n_tokens)
        ti = op.get("output.weight") or ip.get("token_embd.weight")
        if ti is not None:
            out += _last_dim_row(ti, n_tokens)
        devices[p.output_device].computation.output += out


# ---- projector ----


def _stack_block_count(tf: GGUFLayerTensorInfos, name: str) -> int:
    if len(tf) == 1:
        only = tf[0]
        if isinstance(only, GGUFNamedTensorInfos) and only.name == name and len(only):
            return len(only)
    return len(tf)


def _estimate_projector(gf: "GGUFFile", cfg: RunConfig, a: ClipArchitecture, e: LLaMACppRunEstimate) -> None:
    devices = e.devices
    io, tf = gf.layers().cut(_PROJECTOR_IO_LAYERS)
    ip, op = io.cut(_PROJECTOR_INPUT_LAYERS)
    tensors = gf.tensor_infos
    overhead = ggml_tensor_overhead()

    vision_blocks = a.vision_block_count
    if a.has_vision_encoder and vision_blocks == 0:
        vision_blocks = _stack_block_count(tf, "v")
    audio_blocks = a.audio_block_count
    if a.has_audio_encoder and audio_blocks == 0:
        audio_blocks = _stack_block_count(tf, "a")

    # clip loads everything onto one backend: all or nothing
    e.full_offloaded = cfg.offload_layers is None or cfg.offload_layers != 0
    e.offload_layers = vision_blocks + audio_blocks if e.full_offloaded else 0

    cpu = devices[0]
    cpu.footprint = 5 * MiB + (gf.size - gf.model_size)

    idx = 0
    if e.full_offloaded:
        idx = next((i for i, d in enumerate(devices) if i > 0 and not d.remote), 0)
    target = devices[idx]
    target.handle_layers = e.offload_layers
    target.handle_last_layer = target.handle_layers - 1
    target.weight.compute = tf.bytes()
    target.parameter.compute = tf.elements()
    target.weight.input = ip.bytes()
    target.parameter.input = ip.elements()
    target.weight.output = op.bytes()
    target.parameter.output = op.elements()

    def graph_footprint(blocks: int) -> int:
        max_nodes = 8192
        fp = overhead * max_nodes + ggml_graph_overhead(max_nodes)
        fp += 4 * MiB
        fp += 2 * overhead * (len(tensors) + 1 + blocks * 3)
        return fp

    def dim(name: str, i: int) -> int:
        ti = tensors.get(name)
        return ti.dims[i] if ti is not None and len(ti.dims) > i else 0

    if a.has_vision_encoder:
        ptype = a.projector_type
        qwen2vl = a.has_qwen2vl_merger or ptype in _QWEN2VL_PROJECTORS
        height = width = a.vision_image_size
        if qwen2vl or ptype == "pixtral":
            height = width = cfg.visual_max_image_size or 1024
        patch = a.vision_patch_size
        scale = max(a.vision_projector_scale_factor, 1)
        n_patches = (height // patch) * (width // patch) if patch > 0 else 0

        patches_max = 1
        if a.has_llava_projector or ptype in ("mlp", "mlp_norm", "ldp", "ldpv2"):
            if a.vision_mm_patch_merge_type != "flat":
                patches_max = 6  # LLaVA 1.6 any-resolution tiles
        elif a.has_minicpmv_projector or ptype == "resampler":
            patches_max = 10
        elif ptype == "adapter":
            patches_max = 11
        if cfg.max_projected_cache is not None:
            patches_max += cfg.max_projected_cache

        proj_dim = 0
        if ptype == "ldp":
            n_patches //= 4
            proj_dim = dim("mm.model.mb_block.1.block.2.1.bias", 0)
        elif ptype == "ldpv2":
            n_patches //= 4
            proj_dim = dim("mm.model.peg.0.bias", 0)
        elif ptype == "mlp":
            proj_dim = dim("mm.2.bias", 0)
        elif ptype == "mlp_norm":
            proj_dim = dim("mm.3.bias", 0)
        elif ptype == "resampler":
            if "resampler.query" in tensors:
                n_patches = dim("resampler.query", 1)
                proj_dim = dim("resampler.query", 0)
        elif ptype == "adapter":
            n_patches = n_patches // 4 + 2
            proj_dim = dim("adapter.linear.dense_4h_to_h.weight", 1)
        elif ptype in _QWEN2VL_PROJECTORS:
            merged = patch * 2
            if merged > 0:
                n_patches = -(-height // merged) * -(-width // merged)
            proj_dim = dim("mm.2.bias", 0)
        elif ptype == "gemma3":
            per_side = (a.vision_image_size // patch) // scale if patch > 0 else 0
            n_patches = per_side * per_side
            proj_dim = dim("mm.input_projection.weight", 0)
        elif ptype in ("idefics3", "llama4"):
            n_patches //= scale * scale
            proj_dim = dim("mm.model.fc.weight", 1)
        elif ptype == "pixtral":
            hp = height // patch if patch > 0 else 0
            wp = width // patch if patch > 0 else 0
            if a.vision_spatial_merge_size > 0:
                hp //= a.vision_spatial_merge_size
                wp //= a.vision_spatial_merge_size
            n_patches = max(hp * wp + hp - 1, 0)  # one [IMG_BREAK] per row
            proj_dim = dim("mm.2.bias", 0)
        elif ptype == "internvl":
            n_patches //= scale * scale
            proj_dim = dim("mm.model.mlp.3.weight", 1)

        cpu.footprint += patches_max * n_patches * proj_dim * 4  # image embeddings
        cpu.computation.footprint += graph_footprint(vision_blocks)

        has_class_embd = ip.get("v.class_embd") is not None
        n_pos = n_patches + (1 if has_class_embd else 0)
        if qwen2vl:
            n_pos *= 4
        n_embd, n_head = a.vision_embedding_length, a.vision_attention_head_count

        inp = _F32.row_size_of([width, height, 3, 1])
        inp += _F32.row_size_of([n_patches, n_embd, 1])
        inp += _I32.row_size_of([n_pos])
        inp += _I32.row_size_of([n_patches])
        if a.has_minicpmv_projector or ptype == "resampler":
            inp += _F32.row_size_of([proj_dim, n_patches, 1])
        if has_class_embd:
            inp += _F32.row_size_of([n_embd, n_pos, 1])
        if a.vision_window_attention_pattern > 0:
            inp += _I32.row_size_of([n_patches]) + _I32.row_size_of([n_pos, n_pos])
        target.computation.input += inp

        comp = _F32.row_size_of([n_embd, n_pos]) * 2  # norm
        comp += _F32.row_size_of([n_embd, n_pos]) * 2  # K, V
        comp += _F32.row_size_of([n_pos, n_pos, n_head])  # KQ
        target.computation.compute += comp

    if a.has_audio_encoder:
        n_pos = dim("a.position_embd.weight", 1)
        n_embd, n_head = a.audio_embedding_length, a.audio_attention_head_count
        cpu.computation.footprint += graph_footprint(audio_blocks)
        target.computation.input += _F32.row_size_of([n_embd, n_pos, 1])
        comp = _F32.row_size_of([n_embd, n_pos]) * 3
        comp += _F32.row_size_of([n_pos, n_pos, n_head])
        target.computation.compute += comp


# ---- adapter / imatrix ----


def _estimate_adapter(gf: "GGUFFile", cfg: RunConfig, e: LLaMACppRunEstimate) -> None:
    devices = e.devices
    io, tf = gf.layers().cut(_ADAPTER_IO_LAYERS)
    ip, op = io.cut(_INPUT_LAYERS)

    n_layers = len(tf)
    p = _resolve_offload(cfg.offload_layers, n_layers)
    e.full_offloaded, e.offload_layers = p.full, p.offload
    _place(devices, p, n_layers, cfg)

    e.distributable = False
    devices[0].footprint = 5 * MiB + (gf.size - gf.model_size)
    _place_weights(devices, p, tf, ip, op, cfg)


def _estimate_imatrix(gf: "GGUFFile", e: LLaMACppRunEstimate) -> None:
    cpu = e.devices[0]
    ls = gf.layers()
    e.distributable = False
    cpu.footprint = 5 * MiB + (gf.size - gf.model_size)
    cpu.weight.compute = ls.bytes()
    cpu.parameter.compute = ls.elements()


def estimate_llamacpp_run(gf: "GGUFFile", config: Optional[RunConfig] = None) -> LLaMACppRunEstimate:
    """Estimate the devices' usage when llama.cpp runs ``gf``.

    Args:
        gf: Parsed file.
        config: Run configuration; defaults to :class:`RunConfig` defaults.

    Returns:
        A fresh estimate; sub-estimates from ``config`` are attached as given.
    """
    cfg = config or RunConfig()
    arch = gf.architecture()
    e = LLaMACppRunEstimate(
        type=arch.type,
        architecture=arch.architecture,
        devices=_new_devices(cfg),
        split_mode=cfg.split_mode,
    )
    with Timer("estimate") as t:
        if isinstance(arch, ClipArchitecture):
            e.clip_projector_type = arch.projector_type
            _estimate_projector(gf, cfg, arch, e)
        elif isinstance(arch, AdapterArchitecture):
            e.adapter_type = arch.adapter_type
            _estimate_adapter(gf, cfg, e)
        elif isinstance(arch, IMatrixArchitecture):
            _estimate_imatrix(gf, e)
        elif isinstance(arch, TransformerArchitecture):
            _estimate_model(gf, cfg, arch, gf.tokenizer(), e)
        else:
            logger.warning(
                "No llama.cpp estimate for {arch} files", arch=arch.architecture
            )
    e.drafter = cfg.drafter
    e.projector = cfg.projector
    e.adapters = cfg.adapters
    logger.debug(
        "Estimated llama.cpp run of {arch} ({type}) in {ms:.2f}ms",
        arch=e.architecture,
        type=e.type,
        ms=t.duration_ms,
    )
    return e
