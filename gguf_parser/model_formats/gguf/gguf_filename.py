# gguf_parser/model_formats/gguf/gguf_filename.py
"""
GGUF naming convention: ``<BaseName>-<SizeLabel>-<FineTune>-<Version>-<Encoding>-<Type>-<Shard>.gguf``.

Only the base name is required. Dashes inside the base name stand for spaces.
See https://github.com/ggerganov/ggml/blob/master/docs/gguf.md#gguf-naming-convention.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

GGUF_FILENAME_RE = re.compile(
    r"^(?P<base_name>[A-Za-z\s][A-Za-z0-9._\s]*(?:(?:-(?:(?:[A-Za-z\s][A-Za-z0-9._\s]*)|(?:[0-9._\s]*)))*))"
    r"-(?:(?P<size_label>(?:\d+x)?(?:\d+\.)?\d+[A-Za-z](?:-[A-Za-z]+(\d+\.)?\d+[A-Za-z]+)?)"
    r"(?:-(?P<fine_tune>[A-Za-z][A-Za-z0-9\s_-]+[A-Za-z](?i:[^BFKIQ])))?)?"
    r"(?:-(?P<version>[vV]\d+(?:\.\d+)*))?"
    r"(?i:-(?P<encoding>(BF16|F32|F16|([KI]?Q[0-9][A-Z0-9_]*))))?"
    r"(?:-(?P<type>LoRA|vocab))?"
    r"(?:-(?P<shard>\d{5})-of-(?P<shard_total>\d{5}))?"
    r"\.gguf$"
)

SHARD_GGUF_FILENAME_RE = re.compile(
    r"^(?P<prefix>.*)-(?:(?P<shard>\d{5})-of-(?P<shard_total>\d{5}))\.gguf$"
)


def _with_suffix(name: str) -> str:
    return name if name.endswith(".gguf") else name + ".gguf"


@dataclass(frozen=True)
class GGUFFilename:
    """Fields of a conventional GGUF filename; empty strings when absent."""

    base_name: str
    size_label: str = ""
    fine_tune: str = ""
    version: str = ""
    encoding: str = ""
    type: str = ""
    shard: Optional[int] = None
    shard_total: Optional[int] = None

    @property
    def is_shard(self) -> bool:
        return (self.shard or 0) > 0 and (self.shard_total or 0) > 0

    def __str__(self) -> str:
        if not self.base_name:
            return ""
        parts = [self.base_name.replace(" ", "-")]
        parts += [
            p
            for p in (self.size_label, self.fine_tune, self.version, self.encoding, self.type)
            if p
        ]
        if self.is_shard:
            parts.append(f"{self.shard:05d}-of-{self.shard_total:05d}")
        return "-".join(parts) + ".gguf"


def parse_gguf_filename(name: str) -> Optional[GGUFFilename]:
    """Split ``name`` into its naming-convention fields.

    A missing ``.gguf`` suffix is added before matching.

    Returns:
        The parsed fields, or ``None`` when the name does not follow the
        convention.
    """
    m = GGUF_FILENAME_RE.match(_with_suffix(name))
    if m is None or not m.group("base_name"):
        return None
    shard, shard_total = m.group("shard"), m.group("shard_total")
    return GGUFFilename(
        base_name=m.group("base_name").replace("-", " "),
        size_label=m.group("size_label") or "",
        fine_tune=m.group("fine_tune") or "",
        version=m.group("version") or "",
        encoding=m.group("encoding") or "",
        type=m.group("type") or "",
        shard=int(shard) if shard else None,
        shard_total=int(shard_total) if shard_total else None,
    )


def is_shard_gguf_filename(name: str) -> bool:
    """True when ``name`` ends in ``-NNNNN-of-NNNNN.gguf`` with both numbers positive."""
    m = SHARD_GGUF_FILENAME_RE.match(_with_suffix(name))
    if m is None:
        return False
    return int(m.group("shard")) > 0 and int(m.group("shard_total")) > 0
