# gguf_parser/reporting/console.py
"""
Console reporting of a parsed GGUF file and its run estimates.
"""
from __future__ import annotations

from typing import Any, List, Optional

from rich import box
from rich.console import Console
from rich.table import Table

from gguf_parser.analysis.architecture import Architecture
from gguf_parser.analysis.metadata import GGUFMetadata
from gguf_parser.analysis.tokenizer import NO_TOKEN, GGUFTokenizer
from gguf_parser.estimation.llamacpp import LLaMACppRunEstimateSummary
from gguf_parser.estimation.stable_diffusion import StableDiffusionCppRunEstimateSummary
from gguf_parser.model_formats.gguf.gguf_filename import GGUFFilename
from gguf_parser.observability import to_dict
from gguf_parser.units import format_bpw, format_bytes, format_parameters

console = Console()


def _field_table(title: str) -> Table:
    t = Table(title=title, box=box.SIMPLE_HEAVY, title_style="bold magenta")
    t.add_column("Field", style="bold")
    t.add_column("Value")
    return t


def _yes_no(flag: bool) -> str:
    return "[green]Yes[/green]" if flag else "No"


def render_metadata(md: GGUFMetadata) -> None:
    """Render the descriptive metadata table."""
    t = _field_table("Metadata")
    t.add_row("Type", md.type)
    t.add_row("Architecture", md.architecture)
    if md.name:
        t.add_row("Name", md.name)
    t.add_row("Quantization Version", str(md.quantization_version))
    t.add_row("Alignment", str(md.alignment))
    t.add_row("Endianness", "Little" if md.little_endian else "Big")
    t.add_row("File Type", md.file_type_descriptor)
    t.add_row("File Size", format_bytes(md.file_size))
    t.add_row("Model Size", format_bytes(md.size))
    t.add_row("Parameters", format_parameters(md.parameters))
    t.add_row("Bits Per Weight", format_bpw(md.bits_per_weight))
    for label, value in (
        ("Author", md.author),
        ("License", md.license),
        ("Size Label", md.size_label),
        ("URL", md.url),
    ):
        if value:
            t.add_row(label, value)
    console.print(t)


def render_filename(fn: GGUFFilename) -> None:
    """Render the naming-convention fields of the source file name."""
    t = _field_table("Filename")
    t.add_row("Base Name", fn.base_name)
    for label, value in (
        ("Size Label", fn.size_label),
        ("Fine Tune", fn.fine_tune),
        ("Version", fn.version),
        ("Encoding", fn.encoding),
        ("Type", fn.type),
    ):
        if value:
            t.add_row(label, value)
    if fn.is_shard:
        t.add_row("Shard", f"{fn.shard} of {fn.shard_total}")
    console.print(t)


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return _yes_no(value)
    if isinstance(value, list):
        if value and all(isinstance(v, int) for v in value) and len(set(value)) == 1:
            # per-block values that are all the same
            return str(value[0])
        return ", ".join(_format_value(v) for v in value) or "-"
    if isinstance(value, dict):
        return " ".join(str(v) for v in value.values() if v)
    return str(value)


def render_architecture(arch: Architecture) -> None:
    """Render the normalized architecture, skipping zero/empty fields."""
    t = _field_table(f"Architecture ({arch.type})")
    for name, value in to_dict(arch).items():
        if name == "type" or value in (0, 0.0, "", None, []):
            continue
        t.add_row(name.replace("_", " ").title(), _format_value(value))
    console.print(t)


def render_tokenizer(tok: GGUFTokenizer) -> None:
    """Render tokenizer counts and special token ids."""
    t = _field_table("Tokenizer")
    t.add_row("Model", tok.model or "-")
    t.add_row("Tokens", f"{tok.tokens_length} ({format_bytes(tok.tokens_size)})")
    t.add_row("Merges", f"{tok.merges_length} ({format_bytes(tok.merges_size)})")
    t.add_row("Added Tokens", str(tok.added_tokens_length))
    for label, token_id in (
        ("BOS Token", tok.bos_token_id),
        ("EOS Token", tok.eos_token_id),
        ("EOT Token", tok.eot_token_id),
        ("EOM Token", tok.eom_token_id),
        ("Unknown Token", tok.unknown_token_id),
        ("Separator Token", tok.separator_token_id),
        ("Padding Token", tok.padding_token_id),
    ):
        t.add_row(label, "N/A" if token_id == NO_TOKEN else str(token_id))
    console.print(t)


def _layers_label(handle_layers: int, last: int, output: bool) -> str:
    if handle_layers == 0 and not output:
        return "-"
    label = f"{handle_layers} (last {last})" if handle_layers else "0"
    return label + (" + output" if output else "")


def render_llamacpp_summary(summary: LLaMACppRunEstimateSummary) -> None:
    """Render the llama.cpp estimate summary: one row per memory holder."""
    head = [
        f"arch={summary.architecture}",
        f"ctx={summary.context_size}",
        f"batch={summary.logical_batch_size}/{summary.physical_batch_size}",
        f"flash-attn={'on' if summary.flash_attention else 'off'}",
    ]
    if summary.embedding_only:
        head.append("reranking" if summary.reranking else "embedding")
    t = Table(
        title="llama.cpp Estimate",
        caption=", ".join(head),
        box=box.ROUNDED,
        title_style="bold green",
    )
    t.add_column("Device", style="cyan")
    t.add_column("Layers", justify="right")
    t.add_column("UMA", justify="right")
    t.add_column("Non-UMA", justify="right")

    for item in summary.items:
        ram = item.ram
        t.add_row(
            "RAM",
            _layers_label(ram.handle_layers, ram.handle_last_layer, ram.handle_output_layer),
            format_bytes(ram.uma),
            format_bytes(ram.non_uma),
        )
        for v in item.vrams:
            name = f"RPC {v.position}" if v.remote else f"GPU {v.position}"
            t.add_row(
                name,
                _layers_label(v.handle_layers, v.handle_last_layer, v.handle_output_layer),
                format_bytes(v.uma),
                format_bytes(v.non_uma),
            )
    console.print(t)


def render_stable_diffusion_summary(summary: StableDiffusionCppRunEstimateSummary) -> None:
    """Render the stable-diffusion.cpp estimate summary."""
    t = Table(
        title="stable-diffusion.cpp Estimate",
        caption=f"arch={summary.architecture}, flash-attn={'on' if summary.flash_attention else 'off'}",
        box=box.ROUNDED,
        title_style="bold green",
    )
    t.add_column("Device", style="cyan")
    t.add_column("UMA", justify="right")
    t.add_column("Non-UMA", justify="right")
    for item in summary.items:
        t.add_row("RAM", format_bytes(item.ram.uma), format_bytes(item.ram.non_uma))
        for v in item.vrams:
            name = f"RPC {v.position}" if v.remote else f"GPU {v.position}"
            t.add_row(name, format_bytes(v.uma), format_bytes(v.non_uma))
    console.print(t)


def render_report(
    md: GGUFMetadata,
    arch: Architecture,
    tok: Optional[GGUFTokenizer] = None,
    summaries: Optional[List[Any]] = None,
    filename: Optional[GGUFFilename] = None,
) -> None:
    """Render every table of an ``inspect`` run."""
    if filename is not None:
        render_filename(filename)
    render_metadata(md)
    render_architecture(arch)
    if tok is not None and tok.tokens_length:
        render_tokenizer(tok)
    for s in summaries or []:
        if isinstance(s, StableDiffusionCppRunEstimateSummary):
            render_stable_diffusion_summary(s)
        else:
            render_llamacpp_summary(s)
