"""
Layer tree built from tensor names.
"""
from conftest import GGUFWriter, parse_blob
from gguf_parser.model_formats.gguf.gguf import GGUFTensorInfo
from gguf_parser.model_formats.gguf.gguf_layers import GGUFNamedTensorInfos


def _tree():
    w = GGUFWriter()
    w.add_tensor("token_embd.weight", [8, 4])
    for i in range(12):
        w.add_tensor(f"blk.{i}.attn_norm.weight", [8])
        w.add_tensor(f"blk.{i}.ffn_norm.weight", [8])
    w.add_tensor("output_norm.weight", [8])
    w.add_tensor("output.weight", [8, 4])
    return parse_blob(w.to_bytes()).layers()


class TestLayers:
    def test_blocks_are_grouped_in_numeric_order(self) -> None:
        layers = _tree()
        names = [it.name for it in layers]
        assert names[0] == "token_embd.weight"
        assert names[1:13] == [f"blk.{i}" for i in range(12)]
        assert names[13:] == ["output_norm.weight", "output.weight"]

    def test_group_contents(self) -> None:
        blk = _tree().group("blk.10")
        assert isinstance(blk, GGUFNamedTensorInfos)
        assert [ti.name for ti in blk.tensors()] == [
            "blk.10.attn_norm.weight",
            "blk.10.ffn_norm.weight",
        ]
        assert blk.bytes() == 2 * 8 * 4

    def test_cut_by_glob(self) -> None:
        io, rest = _tree().cut(["token_*", "output*"])
        assert [it.name for it in io] == ["token_embd.weight", "output_norm.weight", "output.weight"]
        assert len(rest) == 12
        assert all(isinstance(it, GGUFNamedTensorInfos) for it in rest)

    def test_totals_match_the_flat_table(self) -> None:
        layers = _tree()
        assert layers.elements() == 8 * 4 * 2 + 8 * 25
        assert len(layers.tensors()) == 27

    def test_lookup(self) -> None:
        layers = _tree()
        assert isinstance(layers.get("blk.3.ffn_norm.weight"), GGUFTensorInfo)
        assert layers.get("missing") is None
        assert len(layers.search(r"ffn_norm")) == 12
        assert set(layers.index(["output.weight", "nope"])) == {"output.weight"}

    def test_encoder_stacks(self) -> None:
        w = GGUFWriter()
        w.add_tensor("v.blk.0.attn_q.weight", [8])
        w.add_tensor("v.blk.1.attn_q.weight", [8])
        w.add_tensor("v.patch_embd.weight", [8])
        w.add_tensor("mm.0.weight", [8])
        layers = parse_blob(w.to_bytes()).layers()
        v = layers.group("v")
        assert v is not None
        assert [it.name for it in v] == ["v.blk.0", "v.blk.1"]
        assert layers.group("mm.0") is not None
        assert layers.get("v.patch_embd.weight") is not None
