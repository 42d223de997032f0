"""
Architecture normalization: dispatch by family and per-family defaults.
"""
import pytest

from conftest import GGUFWriter, llama_writer, parse_blob
from gguf_parser.analysis.architecture import (
    AdapterArchitecture,
    ClipArchitecture,
    DiffusionArchitecture,
    IMatrixArchitecture,
    TransformerArchitecture,
    per_block,
)
from gguf_parser.model_formats.gguf.gguf_quantization import GGMLType
from gguf_parser.model_formats.gguf.gguf_values import GGUFValueType as VT


class TestPerBlock:
    def test_broadcast(self) -> None:
        assert per_block([11008], 4) == (11008,) * 4

    def test_pad_with_last_and_truncate(self) -> None:
        assert per_block([1, 2], 4) == (1, 2, 2, 2)
        assert per_block([1, 2, 3, 4, 5], 3) == (1, 2, 3)

    def test_empty(self) -> None:
        assert per_block(None, 4) == ()
        assert per_block([3, 4], 0) == (3, 4)


class TestTransformer:
    def test_llama_defaults(self) -> None:
        arch = parse_blob(llama_writer(heads_kv=None, tensors=False).to_bytes()).architecture()
        assert isinstance(arch, TransformerArchitecture)
        assert arch.type == "model"
        assert arch.architecture == "llama"
        assert arch.attention_head_count == 32
        assert arch.attention_head_count_kv == 32
        assert arch.attention_key_length == 128
        assert arch.embedding_key_gqa == 128 * 32
        assert arch.feed_forward_length == (16384,) * 32
        assert arch.attention_causal
        assert arch.rope_frequency_base == 10000.0
        assert arch.attention_sliding_window_pattern == 1

    def test_grouped_query_attention(self) -> None:
        arch = parse_blob(llama_writer(heads_kv=8, tensors=False).to_bytes()).architecture()
        assert arch.attention_head_count_kv == 8
        assert arch.embedding_gqa == 128 * 8

    def test_per_layer_head_counts_take_the_maximum(self) -> None:
        w = GGUFWriter()
        w.add_string("general.architecture", "openelm")
        w.add_u32("openelm.block_count", 3)
        w.add_u32("openelm.embedding_length", 1280)
        w.add_array("openelm.attention.head_count", VT.INT32, [12, 16, 20])
        w.add_array("openelm.attention.head_count_kv", VT.INT32, [3, 4, 5])
        w.add_array("openelm.feed_forward_length", VT.INT32, [768, 1024])
        arch = parse_blob(w.to_bytes()).architecture()
        assert arch.attention_head_count == 20
        assert arch.attention_head_count_kv == 5
        assert arch.feed_forward_length == (768, 1024, 1024)

    def test_sliding_window_override(self) -> None:
        arch = parse_blob(llama_writer(arch="gemma2", tensors=False).to_bytes()).architecture()
        assert arch.attention_sliding_window == 4096
        assert arch.attention_sliding_window_pattern == 2

    def test_recurrent_families(self) -> None:
        w = GGUFWriter()
        w.add_string("general.architecture", "mamba")
        w.add_u32("mamba.block_count", 2)
        w.add_u32("mamba.embedding_length", 768)
        w.add_u32("mamba.ssm.conv_kernel", 4)
        w.add_u32("mamba.ssm.inner_size", 1536)
        w.add_u32("mamba.ssm.state_size", 16)
        arch = parse_blob(w.to_bytes()).architecture()
        assert arch.attention_recurrent
        assert not arch.attention_hybrid
        assert arch.embedding_key_gqa == 3 * 1536
        assert arch.embedding_value_gqa == 16 * 1536

    def test_vocabulary_from_tokens(self) -> None:
        arch = parse_blob(llama_writer(vocab=10, tensors=False).to_bytes()).architecture()
        assert arch.vocabulary_length == 10

    def test_rope_scaling(self) -> None:
        w = llama_writer(tensors=False)
        w.add_string("llama.rope.scaling.type", "linear")
        w.add_f32("llama.rope.scaling.factor", 4.0)
        arch = parse_blob(w.to_bytes()).architecture()
        assert arch.rope_scaling_type == "linear"
        assert arch.rope_frequency_scale == pytest.approx(0.25)

    def test_missing_metadata_never_raises(self) -> None:
        arch = parse_blob(GGUFWriter().to_bytes()).architecture()
        assert isinstance(arch, TransformerArchitecture)
        assert arch.architecture == "llama"
        assert arch.block_count == 0
        assert arch.attention_key_length == 0


class TestOtherFamilies:
    def test_clip_projector(self) -> None:
        w = GGUFWriter()
        w.add_string("general.architecture", "clip")
        w.add_u32("clip.vision.block_count", 2)
        w.add_tensor("v.blk.0.attn_q.weight", [64, 64])
        w.add_tensor("mm.0.weight", [64, 64])
        gf = parse_blob(w.to_bytes())
        arch = gf.architecture()
        assert isinstance(arch, ClipArchitecture)
        assert arch.type == "projector"
        assert arch.projector_type == "mlp"
        assert arch.has_vision_encoder
        assert not arch.has_audio_encoder
        assert arch.vision_mm_patch_merge_type == "flat"

    def test_clip_audio_projector_type(self) -> None:
        w = GGUFWriter()
        w.add_string("general.architecture", "clip")
        w.add_string("clip.audio.projector_type", "ultravox")
        assert parse_blob(w.to_bytes()).architecture().projector_type == "ultravox"

    def test_lora_adapter(self) -> None:
        w = GGUFWriter()
        w.add_string("general.type", "adapter")
        w.add_string("general.architecture", "llama")
        w.add_string("adapter.type", "lora")
        w.add_f32("adapter.lora.alpha", 16.0)
        arch = parse_blob(w.to_bytes()).architecture()
        assert isinstance(arch, AdapterArchitecture)
        assert arch.adapter_type == "lora"
        assert arch.adapter_lora_alpha == 16.0

    def test_control_vector(self) -> None:
        w = GGUFWriter()
        w.add_string("general.architecture", "controlvector")
        w.add_string("controlvector.model_hint", "mistral")
        w.add_u32("controlvector.layer_count", 31)
        arch = parse_blob(w.to_bytes()).architecture()
        assert isinstance(arch, AdapterArchitecture)
        assert arch.type == "adapter"
        assert arch.architecture == "mistral"
        assert arch.adapter_type == "control_vector"
        assert arch.adapter_control_vector_layer_count == 31

    def test_imatrix(self) -> None:
        w = GGUFWriter()
        w.add_string("general.type", "imatrix")
        w.add_u32("imatrix.chunk_count", 100)
        w.add_u32("imatrix.chunk_size", 512)
        w.add_array("imatrix.datasets", VT.STRING, ["wiki.train.raw"])
        arch = parse_blob(w.to_bytes()).architecture()
        assert isinstance(arch, IMatrixArchitecture)
        assert arch.imatrix_chunk_count == 100
        assert arch.imatrix_dataset_count == 1

    def test_diffusion_signature(self) -> None:
        w = GGUFWriter()
        dm = "model.diffusion_model."
        w.add_tensor(dm + "input_blocks.0.0.weight", [3, 3, 4, 320], GGMLType.F16)
        w.add_tensor(dm + "output_blocks.11.1.transformer_blocks.0.attn2.to_v.weight", [768, 320], GGMLType.F16)
        w.add_tensor("first_stage_model.decoder.conv_in.weight", [3, 3, 4, 512], GGMLType.F16)
        gf = parse_blob(w.to_bytes())
        arch = gf.architecture()
        assert isinstance(arch, DiffusionArchitecture)
        assert arch.architecture == "diffusion"
        assert arch.diffusion_architecture == "Stable Diffusion 1.x"
        assert not arch.diffusion_transformer
        assert arch.autoencoder is not None
        assert arch.autoencoder.architecture == "Stable Diffusion 1.x VAE"
        assert gf.metadata().architecture == "diffusion"

    def test_flux_signature_without_prefix(self) -> None:
        w = GGUFWriter()
        w.add_tensor("double_blocks.0.txt_attn.proj.weight", [64, 64])
        w.add_tensor("img_in.weight", [64, 3072])
        arch = parse_blob(w.to_bytes()).architecture()
        assert arch.diffusion_architecture == "FLUX.1"
        assert arch.diffusion_transformer
