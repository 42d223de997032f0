# gguf_parser/file.py
"""
Parsed GGUF file and the parse entry points.

``parse_gguf_file`` reads a local file (mmap or buffered),
``parse_gguf_file_remote`` any ranged-HTTP URL, and the HuggingFace /
ModelScope helpers build that URL from a repository and file name. All of
them return the same immutable :class:`GGUFFile`, from which every derived
view and estimate is computed on demand.
"""
from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field, replace
from typing import Mapping, Optional, Tuple

import requests
from loguru import logger

from gguf_parser.analysis.architecture import Architecture, architecture_of
from gguf_parser.analysis.metadata import GGUFMetadata, metadata_of, type_and_architecture
from gguf_parser.analysis.parameters import guess_parameters
from gguf_parser.analysis.tokenizer import GGUFTokenizer, tokenizer_of
from gguf_parser.estimation.llamacpp import LLaMACppRunEstimate, estimate_llamacpp_run
from gguf_parser.estimation.options import RunConfig
from gguf_parser.estimation.stable_diffusion import (
    StableDiffusionCppRunEstimate,
    estimate_stable_diffusion_run,
)
from gguf_parser.io.file_reader import ByteSource, LocalFileSource
from gguf_parser.io.remote_reader import DEFAULT_BUFFER_SIZE, MIN_BUFFER_SIZE, RemoteFileSource
from gguf_parser.model_formats.gguf.gguf import GGUFHeader, GGUFMetadataKVs, GGUFTensorInfos
from gguf_parser.model_formats.gguf.gguf_filetype import GGUFFileType, extract_file_type
from gguf_parser.model_formats.gguf.gguf_layers import GGUFLayerTensorInfos, build_layers
from gguf_parser.model_formats.gguf.gguf_versions import GGUFDecoded, decode_gguf

HUGGINGFACE_ENDPOINT = "https://huggingface.co"
MODELSCOPE_ENDPOINT = "https://modelscope.cn"


@dataclass(frozen=True)
class ReadOptions:
    """How a GGUF file is read.

    Attributes:
        use_mmap: Memory-map local files instead of using a buffered handle.
        approximate: Skip every array and the tensor-info table; model size
            and parameter count are then estimated.
        skip_large_metadata: Arrays larger than this many bytes are skipped
            (length and size are still reported).
        buffer_size: Remote read-ahead bound in bytes, at least 32 KiB.
        retries: Bounded retries for transient remote failures.
        backoff_factor: Exponential backoff base in seconds.
        timeout: Per-request timeout in seconds.
        deadline: ``time.monotonic()`` value after which reading aborts.
        cancel: Event that aborts reading once set.
        skip_range_detection: Size remote files with a ranged GET instead of
            HEAD (servers that answer HEAD badly).
        skip_tls_verification: Do not verify TLS certificates.
        proxy: Proxy URL for remote reads.
        skip_dns_cache: Do not share pooled HTTP sessions between reads.
        headers: Extra request headers, e.g. ``Authorization``.
        session: Pre-built HTTP session for remote reads.
    """

    use_mmap: bool = True
    approximate: bool = False
    skip_large_metadata: Optional[int] = None
    buffer_size: int = DEFAULT_BUFFER_SIZE
    retries: int = 3
    backoff_factor: float = 0.5
    timeout: Optional[float] = 30.0
    deadline: Optional[float] = None
    cancel: Optional[threading.Event] = field(default=None, compare=False)
    skip_range_detection: bool = False
    skip_tls_verification: bool = False
    proxy: Optional[str] = None
    skip_dns_cache: bool = False
    headers: Mapping[str, str] = field(default_factory=dict, compare=False)
    session: Optional[requests.Session] = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.skip_large_metadata is not None and self.skip_large_metadata < 0:
            raise ValueError("skip_large_metadata must be >= 0")
        if self.buffer_size < MIN_BUFFER_SIZE:
            raise ValueError(f"buffer_size must be at least {MIN_BUFFER_SIZE} bytes")
        if self.retries < 0:
            raise ValueError("retries must be >= 0")
        if self.backoff_factor < 0:
            raise ValueError("backoff_factor must be >= 0")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be > 0")


@dataclass(frozen=True)
class GGUFFile:
    """Immutable result of parsing a GGUF file.

    Attributes:
        header: Magic, version, byte order and record counts.
        kvs: Metadata key/value records in file order.
        tensor_infos: Tensor-info table (empty in approximate mode).
        alignment: Alignment of the tensor data section.
        padding: Bytes between the tensor-info table and the data section.
        tensor_data_start_offset: Absolute offset of the data section.
        size: File size in bytes.
        model_size: Bytes of tensor data.
        parameters: Number of model parameters.
        bits_per_weight: ``model_size * 8 / parameters``.
        approximate: Whether size and parameters are estimates.
    """

    header: GGUFHeader
    kvs: GGUFMetadataKVs
    tensor_infos: GGUFTensorInfos
    alignment: int
    padding: int
    tensor_data_start_offset: int
    size: int
    model_size: int
    parameters: int
    bits_per_weight: float
    approximate: bool = False

    @classmethod
    def from_decoded(cls, d: GGUFDecoded) -> "GGUFFile":
        if d.approximate:
            model_size = max(d.size - d.tensor_data_start_offset, 0)
            parameters = guess_parameters(d.metadata)
        else:
            model_size = d.tensor_infos.bytes()
            parameters = d.tensor_infos.elements()
        bpw = model_size * 8 / parameters if parameters > 0 else 0.0
        return cls(
            header=d.header,
            kvs=d.metadata,
            tensor_infos=d.tensor_infos,
            alignment=d.alignment,
            padding=d.padding,
            tensor_data_start_offset=d.tensor_data_start_offset,
            size=d.size,
            model_size=model_size,
            parameters=parameters,
            bits_per_weight=bpw,
            approximate=d.approximate,
        )

    def metadata(self) -> GGUFMetadata:
        return metadata_of(self)

    def architecture(self) -> Architecture:
        return architecture_of(self)

    def tokenizer(self) -> GGUFTokenizer:
        return tokenizer_of(self)

    def file_type(self) -> Tuple[GGUFFileType, str]:
        """Declared or guessed file type and its descriptor (e.g. ``Q4_K_M``)."""
        _, arch = type_and_architecture(self.kvs, self.tensor_infos)
        return extract_file_type(self.kvs, self.tensor_infos, diffusion=arch == "diffusion")

    def layers(self) -> GGUFLayerTensorInfos:
        return build_layers(self.tensor_infos)

    def estimate_llamacpp_run(self, config: Optional[RunConfig] = None) -> LLaMACppRunEstimate:
        return estimate_llamacpp_run(self, config or RunConfig())

    def estimate_stable_diffusion_run(
        self, config: Optional[RunConfig] = None
    ) -> StableDiffusionCppRunEstimate:
        return estimate_stable_diffusion_run(self, config or RunConfig())


def _decode(src: ByteSource, options: ReadOptions) -> GGUFFile:
    with src:
        decoded = decode_gguf(
            src,
            approximate=options.approximate,
            skip_large_metadata=options.skip_large_metadata,
            cancel=options.cancel,
            deadline=options.deadline,
        )
    return GGUFFile.from_decoded(decoded)


def parse_gguf_file(path: str | os.PathLike[str], options: Optional[ReadOptions] = None) -> GGUFFile:
    """Parse a local GGUF file.

    Args:
        path: File path.
        options: Read options; defaults to mmap with full decoding.

    Raises:
        GGUFParseError: The file is not a well-formed GGUF file.
        ReadCancelledError: The read was cancelled or ran past its deadline.
        OSError: The file cannot be opened.
    """
    options = options or ReadOptions()
    path = os.fspath(path)
    logger.debug("Parsing {path} (mmap={mmap})", path=path, mmap=options.use_mmap)
    return _decode(LocalFileSource(path, use_mmap=options.use_mmap).open(), options)


def parse_gguf_file_remote(url: str, options: Optional[ReadOptions] = None) -> GGUFFile:
    """Parse a GGUF file served over HTTP(S) with range support.

    Raises:
        NetworkError: The server could not be reached or refused the request.
        GGUFParseError: The file is not a well-formed GGUF file.
        ReadCancelledError: The read was cancelled or ran past its deadline.
    """
    options = options or ReadOptions()
    logger.debug("Parsing remote {url}", url=url)
    source = RemoteFileSource(
        url,
        buffer_size=options.buffer_size,
        timeout=options.timeout,
        retries=options.retries,
        backoff_factor=options.backoff_factor,
        headers=dict(options.headers),
        cancel=options.cancel,
        deadline=options.deadline,
        skip_range_detection=options.skip_range_detection,
        skip_tls_verification=options.skip_tls_verification,
        proxy=options.proxy,
        skip_dns_cache=options.skip_dns_cache,
        session=options.session,
    )
    return _decode(source.open(), options)


def huggingface_url(repo: str, file: str) -> str:
    endpoint = os.environ.get("HF_ENDPOINT") or HUGGINGFACE_ENDPOINT
    return f"{endpoint.rstrip('/')}/{repo}/resolve/main/{file}"


def modelscope_url(repo: str, file: str) -> str:
    endpoint = os.environ.get("MS_ENDPOINT") or MODELSCOPE_ENDPOINT
    return f"{endpoint.rstrip('/')}/models/{repo}/resolve/master/{file}"


def parse_gguf_file_from_huggingface(
    repo: str, file: str, options: Optional[ReadOptions] = None
) -> GGUFFile:
    """Parse ``file`` of the HuggingFace repository ``repo`` (``owner/name``).

    The endpoint can be overridden through ``HF_ENDPOINT``.
    """
    return parse_gguf_file_remote(huggingface_url(repo, file), options)


def parse_gguf_file_from_modelscope(
    repo: str, file: str, options: Optional[ReadOptions] = None
) -> GGUFFile:
    """Parse ``file`` of the ModelScope repository ``repo``.

    ModelScope does not answer HEAD requests usefully, so range detection is
    always skipped. The endpoint can be overridden through ``MS_ENDPOINT``.
    """
    options = options or ReadOptions()
    if not options.skip_range_detection:
        options = replace(options, skip_range_detection=True)
    return parse_gguf_file_remote(modelscope_url(repo, file), options)