"""
stable-diffusion.cpp run estimates.
"""
import pytest

from conftest import GGUFWriter, llama_writer, parse_blob
from gguf_parser.estimation.options import RunConfig
from gguf_parser.estimation.stable_diffusion import (
    diffusion_usage,
    estimate_stable_diffusion_run,
    normalize_architecture,
)
from gguf_parser.model_formats.gguf.gguf_quantization import GGMLType

F16 = GGMLType.F16
DM = "model.diffusion_model."

DM_BYTES = 3 * 3 * 4 * 320 * 2 + 768 * 320 * 2
CLIP_BYTES = 768 * 768 * 2
VAE_BYTES = 3 * 3 * 4 * 512 * 2
MiB = 1024 * 1024


@pytest.fixture(scope="module")
def sd1():
    w = GGUFWriter()
    w.add_tensor(DM + "input_blocks.0.0.weight", [3, 3, 4, 320], F16)
    w.add_tensor(DM + "output_blocks.11.1.transformer_blocks.0.attn2.to_v.weight", [768, 320], F16)
    w.add_tensor(
        "cond_stage_model.transformer.text_model.encoder.layers.11.self_attn.k_proj.weight",
        [768, 768],
        F16,
    )
    w.add_tensor("first_stage_model.decoder.conv_in.weight", [3, 3, 4, 512], F16)
    return parse_blob(w.to_bytes())


class TestHelpers:
    @pytest.mark.parametrize(
        "name, expected",
        [
            ("Stable Diffusion XL", "stable_diffusion_xl"),
            ("Stable Diffusion 3.x", "stable_diffusion_3_x"),
            ("FLUX.1 Fill", "flux_1_fill"),
            ("OpenCLIP ViT-H/14", "openclip_vit_h_14"),
        ],
    )
    def test_normalize_architecture(self, name: str, expected: str) -> None:
        assert normalize_architecture(name) == expected

    def test_usage_is_clamped_at_zero(self) -> None:
        assert diffusion_usage("sd2", 64, 64, False) == 0
        assert diffusion_usage("sd2", 64, 64, True) > 0

    def test_usage_grows_with_resolution(self) -> None:
        assert diffusion_usage("sdxl", 1024, 1024, False) > diffusion_usage("sdxl", 512, 512, False)

    def test_flux_ignores_flash_attention(self) -> None:
        assert diffusion_usage("flux", 1024, 1024, True) == diffusion_usage("flux", 1024, 1024, False)

    def test_unknown_family(self) -> None:
        with pytest.raises(KeyError):
            diffusion_usage("kandinsky", 512, 512, False)


class TestEstimate:
    def test_components_on_one_gpu(self, sd1) -> None:
        e = estimate_stable_diffusion_run(sd1)
        assert e.architecture == "stable_diffusion_1_x"
        assert e.image_only
        assert e.full_offloaded
        assert e.devices[1].weight == DM_BYTES
        assert e.devices[1].computation == diffusion_usage("sd1", 1024, 1024, False)
        assert e.devices[0].computation > 0

        assert len(e.conditioners) == 1
        cd = e.conditioners[0]
        assert cd.architecture == "openai_clip_vit_l_14"
        assert cd.devices[1].weight == CLIP_BYTES
        assert cd.devices[1].computation == 768 * 77 * 4 * 2

        ae = e.autoencoder
        assert ae is not None
        assert ae.architecture == "stable_diffusion_1_x_vae"
        assert ae.devices[1].weight == VAE_BYTES
        assert ae.devices[1].footprint == 100 * MiB
        assert ae.devices[1].computation == 1024 * 1024 * 13 * 512

    def test_vae_tiling(self, sd1) -> None:
        e = estimate_stable_diffusion_run(sd1, RunConfig(sd_autoencoder_tiling=True))
        assert e.autoencoder.devices[1].computation == 512 * 512 * 13 * 512

    def test_everything_on_cpu(self, sd1) -> None:
        e = estimate_stable_diffusion_run(sd1, RunConfig(sd_offload_layers=0))
        assert not e.full_offloaded
        assert e.devices[0].weight == DM_BYTES
        assert e.devices[1].weight == 0
        assert e.conditioners[0].devices[0].weight == CLIP_BYTES
        assert e.autoencoder.devices[0].weight == VAE_BYTES

    def test_keep_conditioner_on_cpu(self, sd1) -> None:
        e = estimate_stable_diffusion_run(sd1, RunConfig(sd_offload_conditioner=False))
        assert e.conditioners[0].devices[0].weight == CLIP_BYTES
        assert e.devices[1].weight == DM_BYTES

    def test_two_gpus(self, sd1) -> None:
        e = estimate_stable_diffusion_run(sd1, RunConfig(tensor_split=(0.5, 1.0)))
        assert e.devices[2].weight == DM_BYTES
        assert e.autoencoder.devices[1].weight == VAE_BYTES
        assert e.conditioners[0].devices[1].weight == CLIP_BYTES

    def test_free_compute_memory_immediately(self, sd1) -> None:
        e = estimate_stable_diffusion_run(sd1, RunConfig(sd_free_compute_memory_immediately=True))
        assert e.devices[1].computation == 0
        assert e.autoencoder.devices[1].computation == 0

    def test_summary_adds_components(self, sd1) -> None:
        e = sd1.estimate_stable_diffusion_run()
        s = e.summarize()
        item = s.items[0]
        assert s.image_only
        assert len(item.vrams) == 1
        vram = item.vrams[0]
        assert vram.non_uma >= DM_BYTES + CLIP_BYTES + VAE_BYTES
        assert vram.uma == DM_BYTES + CLIP_BYTES + VAE_BYTES + 100 * MiB
        assert item.ram.uma == e.devices[0].footprint + e.devices[0].computation

    def test_offloaded_upscaler_lands_on_the_first_gpu(self, sd1) -> None:
        upscaler = estimate_stable_diffusion_run(sd1)
        alone = estimate_stable_diffusion_run(sd1).summarize_item()
        with_upscaler = estimate_stable_diffusion_run(
            sd1, RunConfig(sd_upscaler=upscaler)
        ).summarize_item()
        assert with_upscaler.vrams[0].uma > alone.vrams[0].uma

    def test_rejects_language_models(self) -> None:
        gf = parse_blob(llama_writer(blocks=2, tensors=False).to_bytes())
        with pytest.raises(ValueError):
            estimate_stable_diffusion_run(gf)
