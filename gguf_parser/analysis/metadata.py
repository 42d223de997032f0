# gguf_parser/analysis/metadata.py
"""
Descriptive metadata view of a GGUF file.

Besides the ``general.*`` keys this decides the file's type and architecture
name, which every other view dispatches on:

* ``general.type`` if present, ``adapter`` when only a control-vector model
  hint exists, else ``model``;
* the control-vector model hint, else ``general.architecture`` (``clip``
  turns the type into ``projector``) unless it names a diffusion family,
  else ``imatrix`` for importance-matrix files, else ``diffusion`` if any
  tensor looks like a diffusion model, else ``llama``.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Tuple

from gguf_parser.model_formats.gguf.gguf import GGUFMetadataKVs, GGUFTensorInfos
from gguf_parser.model_formats.gguf.gguf_filetype import GGUFFileType, extract_file_type
from gguf_parser.model_formats.gguf.gguf_versions import DEFAULT_ALIGNMENT

if TYPE_CHECKING:
    from gguf_parser.file import GGUFFile

# general.architecture values that all normalize to "diffusion"
DIFFUSION_ARCHITECTURE_NAMES = frozenset({"flux", "sd", "sd2.5", "sd3", "stable-diffusion"})

_DIFFUSION_TENSOR_PATTERNS: Tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"^model\.diffusion_model\.",
        r"^double_blocks\.",
        r"^joint_blocks\.",
        r"^decoder\.",
        r"^encoder\.",
        r"^text_model\.",
    )
)

CONTROL_VECTOR_HINT_KEY = "controlvector.model_hint"


@dataclass(frozen=True)
class GGUFMetadata:
    type: str
    architecture: str
    quantization_version: int
    alignment: int
    name: str
    author: str
    url: str
    description: str
    license: str
    basename: str
    finetune: str
    size_label: str
    file_type: GGUFFileType
    file_type_descriptor: str
    little_endian: bool
    file_size: int
    size: int
    parameters: int
    bits_per_weight: float


def _looks_like_diffusion(tensors: GGUFTensorInfos) -> bool:
    return any(rx.search(ti.name) for rx in _DIFFUSION_TENSOR_PATTERNS for ti in tensors)


def type_and_architecture(kvs: GGUFMetadataKVs, tensors: GGUFTensorInfos) -> Tuple[str, str]:
    """The (type, architecture) pair the file declares or implies."""
    if "general.type" in kvs:
        gtype = kvs.str_value("general.type", "model")
    elif CONTROL_VECTOR_HINT_KEY in kvs:
        gtype = "adapter"
    else:
        gtype = "model"

    declared = kvs.str_value("general.architecture")
    if CONTROL_VECTOR_HINT_KEY in kvs:
        arch = kvs.str_value(CONTROL_VECTOR_HINT_KEY)
    elif "general.architecture" in kvs and declared not in DIFFUSION_ARCHITECTURE_NAMES:
        arch = declared
        if arch == "clip":
            gtype = "projector"
    elif gtype == "imatrix":
        arch = "imatrix"
    else:
        arch = "diffusion" if _looks_like_diffusion(tensors) else "llama"
    return gtype, arch


def metadata_of(gf: "GGUFFile") -> GGUFMetadata:
    """Build the metadata view of a parsed file."""
    kvs = gf.kvs
    gtype, arch = type_and_architecture(kvs, gf.tensor_infos)
    file_type, descriptor = extract_file_type(
        kvs, gf.tensor_infos, diffusion=arch == "diffusion"
    )
    return GGUFMetadata(
        type=gtype,
        architecture=arch,
        quantization_version=kvs.int_value("general.quantization_version"),
        alignment=kvs.int_value("general.alignment", DEFAULT_ALIGNMENT),
        name=kvs.str_value("general.name"),
        author=kvs.str_value("general.author"),
        url=kvs.str_value("general.url"),
        description=kvs.str_value("general.description"),
        license=kvs.str_value("general.license"),
        basename=kvs.str_value("general.basename"),
        finetune=kvs.str_value("general.finetune"),
        size_label=kvs.str_value("general.size_label"),
        file_type=file_type,
        file_type_descriptor=descriptor,
        little_endian=gf.header.little_endian,
        file_size=gf.size,
        size=gf.model_size,
        parameters=gf.parameters,
        bits_per_weight=gf.bits_per_weight,
    )
