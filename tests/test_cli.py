"""
Command-line entry point and the JSON report.
"""
import argparse
import json
import math
from dataclasses import dataclass
from enum import Enum

import pytest

from gguf_parser.cli import _tensor_split, main
from gguf_parser.observability import Timer, to_dict


class TestCommands:
    def test_version(self) -> None:
        assert main(["version"]) == 0

    def test_no_command_prints_help(self) -> None:
        assert main([]) == 1

    def test_inspect_local_file(self, small_file) -> None:
        assert main(["inspect", str(small_file)]) == 0

    def test_inspect_without_estimate(self, small_file) -> None:
        assert main(["inspect", str(small_file), "--no-estimate", "--no-mmap"]) == 0

    def test_json_report(self, small_file, tmp_path) -> None:
        out = tmp_path / "report.json"
        assert main(["inspect", str(small_file), "--ctx-size", "64", "--json-out", str(out)]) == 0
        report = json.loads(out.read_text(encoding="utf-8"))
        assert report["metadata"]["name"] == "tiny"
        assert report["metadata"]["architecture"] == "llama"
        assert report["architecture"]["block_count"] == 2
        assert report["tokenizer"]["tokens_length"] == 4
        assert report["tokenizer"]["bos_token_id"] == 0
        assert report["estimate"]["context_size"] == 64
        assert report["summary"]["items"][0]["full_offloaded"] is True

    def test_json_report_includes_conventional_filename(self, small_file, tmp_path) -> None:
        named = tmp_path / "Tiny-Llama-1.1B-chat-v1.0-Q4_K_M-00001-of-00002.gguf"
        named.write_bytes(small_file.read_bytes())
        out = tmp_path / "report.json"
        assert main(["inspect", str(named), "--no-estimate", "--json-out", str(out)]) == 0
        filename = json.loads(out.read_text(encoding="utf-8"))["filename"]
        assert filename["base_name"] == "Tiny Llama"
        assert filename["size_label"] == "1.1B"
        assert filename["fine_tune"] == "chat"
        assert filename["version"] == "v1.0"
        assert filename["encoding"] == "Q4_K_M"
        assert (filename["shard"], filename["shard_total"]) == (1, 2)

    def test_unconventional_filename_is_left_out(self, small_file, tmp_path) -> None:
        out = tmp_path / "report.json"
        assert main(["inspect", str(small_file), "--no-estimate", "--json-out", str(out)]) == 0
        assert "filename" not in json.loads(out.read_text(encoding="utf-8"))

    def test_missing_file(self, tmp_path) -> None:
        assert main(["inspect", str(tmp_path / "nope.gguf")]) == 2

    def test_missing_source(self) -> None:
        assert main(["inspect"]) == 2

    def test_hub_repo_needs_a_file(self) -> None:
        assert main(["inspect", "--hf-repo", "owner/repo"]) == 2

    def test_not_a_gguf_file(self, tmp_path) -> None:
        bad = tmp_path / "bad.gguf"
        bad.write_bytes(b"definitely not gguf data")
        assert main(["inspect", str(bad)]) == 1

    def test_invalid_run_option(self, small_file) -> None:
        assert main(["inspect", str(small_file), "--ubatch-size", "4096"]) == 2

    def test_invalid_tensor_split_is_an_argparse_error(self, small_file) -> None:
        with pytest.raises(SystemExit):
            main(["inspect", str(small_file), "--tensor-split", "a,b"])


class TestTensorSplit:
    def test_proportions_become_cumulative(self) -> None:
        assert _tensor_split("3,1") == [0.75, 1.0]
        assert _tensor_split("1") == [1.0]

    def test_rejects_zero_total(self) -> None:
        with pytest.raises(argparse.ArgumentTypeError):
            _tensor_split("0,0")


class _Color(Enum):
    RED = 1


@dataclass
class _Row:
    name: str
    color: _Color
    values: tuple
    ratio: float
    _owner: object = None


class TestObservability:
    def test_to_dict(self) -> None:
        row = _Row("a", _Color.RED, (1, 2), math.nan, _owner=object())
        assert to_dict(row) == {"name": "a", "color": "RED", "values": [1, 2], "ratio": None}

    def test_timer(self) -> None:
        with Timer("work") as t:
            sum(range(1000))
        assert t.duration_ms >= 0.0
