# gguf_parser/cli.py
"""
cli.py

Rich console CLI:
- inspect: parse a local or remote GGUF file, print metadata, architecture,
           tokenizer and the estimated llama.cpp / stable-diffusion.cpp usage.
- version: show the package version.
"""
from __future__ import annotations

import argparse
import os
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from rich.console import Console
from rich.panel import Panel

from gguf_parser import __version__
from gguf_parser.analysis.architecture import DiffusionArchitecture
from gguf_parser.errors import GGUFError
from gguf_parser.estimation.options import RunConfig, SplitMode
from gguf_parser.file import (
    GGUFFile,
    ReadOptions,
    parse_gguf_file,
    parse_gguf_file_from_huggingface,
    parse_gguf_file_from_modelscope,
    parse_gguf_file_remote,
)
from gguf_parser.logging import configure_logging
from gguf_parser.model_formats.gguf.gguf_filename import parse_gguf_filename
from gguf_parser.model_formats.gguf.gguf_quantization import GGMLType
from gguf_parser.observability import Timer
from gguf_parser.reporting import console as console_reporter
from gguf_parser.reporting.json_reporter import write_json
from gguf_parser.units import format_bytes, parse_bytes, parse_size

console = Console()

CACHE_TYPE_CHOICES: List[str] = ["f32", "f16", "bf16", "q8_0", "q4_0", "q4_1", "iq4_nl", "q5_0", "q5_1"]


def _tensor_split(text: str) -> List[float]:
    """``"3,1"`` -> cumulative ``[0.75, 1.0]``."""
    try:
        parts = [float(x) for x in text.split(",") if x.strip()]
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid tensor split {text!r}") from exc
    total = sum(parts)
    if not parts or total <= 0 or any(p < 0 for p in parts):
        raise argparse.ArgumentTypeError(f"invalid tensor split {text!r}")
    out, acc = [], 0.0
    for p in parts:
        acc += p
        out.append(acc / total)
    out[-1] = 1.0
    return out


def _byte_size(text: str) -> int:
    try:
        return parse_bytes(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _buffer_size(text: str) -> int:
    try:
        return parse_size(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="gguf-parser",
        description="GGUF inspection and llama.cpp / stable-diffusion.cpp resource estimation.",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    sub = p.add_subparsers(dest="cmd", title="Available Commands", metavar="<command>")

    sp = sub.add_parser("inspect", help="Inspect a GGUF file (path, URL or hub repository)")
    sp.add_argument("source", nargs="?", help="Path or http(s) URL of a .gguf file")
    sp.add_argument("--hf-repo", help="HuggingFace repository, e.g. owner/name")
    sp.add_argument("--hf-file", help="File inside --hf-repo")
    sp.add_argument("--ms-repo", help="ModelScope repository")
    sp.add_argument("--ms-file", help="File inside --ms-repo")
    sp.add_argument("--token", default=os.environ.get("HF_TOKEN"), help="Bearer token for remote reads")
    sp.add_argument("--debug", action="store_true", help="Enable debug logging")
    sp.add_argument("--json-out", type=str, default=None, help="Write JSON report to this path")

    rd = sp.add_argument_group("reading")
    rd.add_argument("--no-mmap", action="store_true", help="Read local files without mmap")
    rd.add_argument("--approximate", action="store_true", help="Skip arrays and the tensor-info table")
    rd.add_argument(
        "--skip-large-metadata",
        type=_byte_size,
        default=None,
        metavar="BYTES",
        help="Skip metadata arrays larger than this, e.g. 1MiB",
    )
    rd.add_argument("--buffer-size", type=_buffer_size, default=None, help="Remote read-ahead, e.g. 4M")
    rd.add_argument("--timeout", type=float, default=30.0, help="Per-request timeout in seconds")
    rd.add_argument("--retries", type=int, default=3)
    rd.add_argument("--proxy", default=None)
    rd.add_argument("--skip-tls-verify", action="store_true")
    rd.add_argument("--skip-range-detection", action="store_true")

    es = sp.add_argument_group("estimate")
    es.add_argument("--no-estimate", action="store_true", help="Do not estimate run usage")
    es.add_argument("--ctx-size", type=int, default=None, help="Context size (default: model maximum)")
    es.add_argument("--in-max-ctx-size", action="store_true", help="Clamp --ctx-size to the model maximum")
    es.add_argument("--batch-size", type=int, default=2048, help="Logical batch size")
    es.add_argument("--ubatch-size", type=int, default=512, help="Physical batch size")
    es.add_argument("--parallel-size", type=int, default=1)
    es.add_argument("--cache-type-k", choices=CACHE_TYPE_CHOICES, default="f16")
    es.add_argument("--cache-type-v", choices=CACHE_TYPE_CHOICES, default="f16")
    es.add_argument("--no-kv-offload", action="store_true", help="Keep the KV cache on the CPU")
    es.add_argument("--gpu-layers", type=int, default=None, help="Layers to offload (default: all)")
    es.add_argument("--split-mode", choices=[m.value for m in SplitMode], default="layer")
    es.add_argument("--tensor-split", type=_tensor_split, default=None, help="Per-GPU proportions, e.g. 3,1")
    es.add_argument("--main-gpu", type=int, default=0)
    es.add_argument("--rpc", default="", help="Comma-separated RPC server endpoints")
    es.add_argument("--flash-attention", action="store_true")
    es.add_argument("--swa-full", action="store_true", help="Full-size KV cache for sliding-window layers")
    es.add_argument("--mmap", action=argparse.BooleanOptionalAction, default=True, help="Summarize with mmap")
    es.add_argument("--image-width", type=int, default=1024)
    es.add_argument("--image-height", type=int, default=1024)
    es.add_argument("--vae-tiling", action="store_true")

    sub.add_parser("version", help="Show the version of gguf-parser")
    return p


def _read_options(args: argparse.Namespace) -> ReadOptions:
    kwargs: Dict[str, Any] = dict(
        use_mmap=not args.no_mmap,
        approximate=args.approximate,
        skip_large_metadata=args.skip_large_metadata,
        timeout=args.timeout,
        retries=args.retries,
        proxy=args.proxy,
        skip_tls_verification=args.skip_tls_verify,
        skip_range_detection=args.skip_range_detection,
    )
    if args.buffer_size is not None:
        kwargs["buffer_size"] = args.buffer_size
    if args.token:
        kwargs["headers"] = {"Authorization": f"Bearer {args.token}"}
    return ReadOptions(**kwargs)


def _run_config(args: argparse.Namespace) -> RunConfig:
    rpc = [r.strip() for r in args.rpc.split(",") if r.strip()]
    split = args.tensor_split
    if split is None:
        split = _tensor_split(",".join(["1"] * max(len(rpc), 1)))
    return RunConfig(
        context_size=args.ctx_size,
        in_max_context_size=args.in_max_ctx_size,
        logical_batch_size=args.batch_size,
        physical_batch_size=args.ubatch_size,
        parallel_size=args.parallel_size,
        cache_key_type=GGMLType[args.cache_type_k.upper()],
        cache_value_type=GGMLType[args.cache_type_v.upper()],
        offload_kv_cache=not args.no_kv_offload,
        offload_layers=args.gpu_layers,
        split_mode=SplitMode(args.split_mode),
        tensor_split=split,
        main_gpu_index=args.main_gpu,
        flash_attention=args.flash_attention,
        rpc_servers=rpc,
        full_size_swa_cache=args.swa_full,
        sd_width=args.image_width,
        sd_height=args.image_height,
        sd_autoencoder_tiling=args.vae_tiling,
    )


def _parse(args: argparse.Namespace, options: ReadOptions) -> GGUFFile:
    if args.hf_repo:
        return parse_gguf_file_from_huggingface(args.hf_repo, args.hf_file, options)
    if args.ms_repo:
        return parse_gguf_file_from_modelscope(args.ms_repo, args.ms_file, options)
    if args.source.startswith(("http://", "https://")):
        return parse_gguf_file_remote(args.source, options)
    return parse_gguf_file(args.source, options)


def _source_name(args: argparse.Namespace) -> str:
    if args.hf_repo:
        return args.hf_file
    if args.ms_repo:
        return args.ms_file
    if args.source.startswith(("http://", "https://")):
        return urlsplit(args.source).path.rsplit("/", 1)[-1]
    return os.path.basename(args.source)


def _inspect(args: argparse.Namespace) -> int:
    configure_logging(debug=args.debug)

    if args.hf_repo or args.ms_repo:
        if not (args.hf_file if args.hf_repo else args.ms_file):
            console.print("[red]--hf-repo/--ms-repo need --hf-file/--ms-file[/red]")
            return 2
    elif not args.source:
        console.print("[red]A path, URL or hub repository is required[/red]")
        return 2
    elif not args.source.startswith(("http://", "https://")) and not os.path.exists(args.source):
        console.print(f"[red]File not found:[/red] {args.source}")
        return 2

    try:
        options = _read_options(args)
        config = None if args.no_estimate else _run_config(args)
    except ValueError as exc:
        console.print(f"[red]Invalid option:[/red] {exc}")
        return 2

    try:
        with Timer("parse") as t:
            gf = _parse(args, options)
    except GGUFError as exc:
        console.print(Panel(f"[bold]Result:[/bold] [red]FAILED[/red]\n{exc}", style="bold cyan"))
        return 1

    console.print(
        Panel(
            f"[bold]Result:[/bold] [green]OK[/green] "
            f"(GGUF v{gf.header.version}, {format_bytes(gf.size)}, {t.duration_ms:.0f} ms)",
            style="bold cyan",
        )
    )

    md, arch, tok = gf.metadata(), gf.architecture(), gf.tokenizer()
    filename = parse_gguf_filename(os.path.basename(_source_name(args)))
    report: Dict[str, Any] = {"metadata": md, "architecture": arch, "tokenizer": tok}
    if filename is not None:
        report["filename"] = filename
    summaries: List[Any] = []
    if config is not None:
        if isinstance(arch, DiffusionArchitecture):
            estimate = gf.estimate_stable_diffusion_run(config)
            summary = estimate.summarize()
        else:
            estimate = gf.estimate_llamacpp_run(config)
            summary = estimate.summarize(args.mmap)
        summaries.append(summary)
        report["estimate"] = estimate
        report["summary"] = summary

    console_reporter.render_report(md, arch, tok, summaries, filename)

    if args.json_out:
        write_json(report, args.json_out)
        console.print(f"[dim]Wrote JSON report to {args.json_out}[/dim]")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "version":
        console.print(f"gguf-parser version {__version__}")
        return 0

    if args.cmd == "inspect":
        return _inspect(args)

    parser.print_help()
    return 1
