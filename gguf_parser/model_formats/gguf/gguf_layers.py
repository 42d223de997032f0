# gguf_parser/model_formats/gguf/gguf_layers.py
"""
Layer tree over the flat tensor-info table.

Tensor names are dotted paths. Blocks (``blk.N``), projector stages
(``mm.N``), encoder stacks (``v.blk.N``, ``a.blk.N``, ``t.blk.N``,
``encoder.blk.N``, ``decoder.blk.N``) and the stable-diffusion components
(``cond_stage_model.N``, ``first_stage_model.X``) become named groups; every
other tensor stays a top-level item. The estimators cut IO tensors off the
top level by glob and treat what remains as the ordered list of layers.
"""
from __future__ import annotations

import re
from fnmatch import fnmatchcase
from typing import Dict, Iterable, Iterator, List, Optional, Pattern, Tuple, Union

from gguf_parser.model_formats.gguf.gguf import GGUFTensorInfo

_ENCODER_STACKS = frozenset({"v", "a", "t", "encoder", "decoder"})
_GROUPED_PREFIXES = frozenset({"blk", "mm"})


class GGUFLayerTensorInfos:
    """Ordered sequence of tensors and named sub-groups."""

    __slots__ = ("_items",)

    def __init__(self, items: Iterable["LayerItem"] = ()):
        self._items: Tuple[LayerItem, ...] = tuple(items)

    def __iter__(self) -> Iterator["LayerItem"]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __getitem__(self, i: int) -> "LayerItem":
        return self._items[i]

    def __repr__(self) -> str:
        return f"{type(self).__name__}({len(self._items)} items)"

    def tensors(self) -> List[GGUFTensorInfo]:
        """All tensors of the tree, depth first."""
        out: List[GGUFTensorInfo] = []
        for it in self._items:
            if isinstance(it, GGUFTensorInfo):
                out.append(it)
            else:
                out.extend(it.tensors())
        return out

    def bytes(self) -> int:
        return sum(ti.bytes for ti in self.tensors())

    def elements(self) -> int:
        return sum(ti.elements for ti in self.tensors())

    def search(self, pattern: str | Pattern[str]) -> List[GGUFTensorInfo]:
        rx = re.compile(pattern) if isinstance(pattern, str) else pattern
        return [ti for ti in self.tensors() if rx.search(ti.name)]

    def get(self, name: str) -> Optional[GGUFTensorInfo]:
        for ti in self.tensors():
            if ti.name == name:
                return ti
        return None

    def index(self, names: Iterable[str]) -> Dict[str, GGUFTensorInfo]:
        wanted = set(names)
        return {ti.name: ti for ti in self.tensors() if ti.name in wanted}

    def group(self, name: str) -> Optional["GGUFNamedTensorInfos"]:
        """Top-level named group by exact name."""
        for it in self._items:
            if isinstance(it, GGUFNamedTensorInfos) and it.name == name:
                return it
        return None

    def cut(self, patterns: Iterable[str]) -> Tuple["GGUFLayerTensorInfos", "GGUFLayerTensorInfos"]:
        """Split top-level items into (matched, unmatched) by glob on their names.

        Args:
            patterns: ``fnmatch`` globs, e.g. ``"token_*"`` or ``"mm.*"``.
        """
        pats = list(patterns)
        matched: List[LayerItem] = []
        rest: List[LayerItem] = []
        for it in self._items:
            if any(fnmatchcase(it.name, p) for p in pats):
                matched.append(it)
            else:
                rest.append(it)
        return GGUFLayerTensorInfos(matched), GGUFLayerTensorInfos(rest)


class GGUFNamedTensorInfos(GGUFLayerTensorInfos):
    """A named group, e.g. ``blk.7`` or ``v``."""

    __slots__ = ("name",)

    def __init__(self, name: str, items: Iterable["LayerItem"] = ()):
        super().__init__(items)
        self.name = name

    def __repr__(self) -> str:
        return f"GGUFNamedTensorInfos({self.name!r}, {len(self)} items)"


LayerItem = Union[GGUFTensorInfo, GGUFNamedTensorInfos]


def item_bytes(item: LayerItem) -> int:
    return item.bytes if isinstance(item, GGUFTensorInfo) else item.bytes()


def item_elements(item: LayerItem) -> int:
    return item.elements if isinstance(item, GGUFTensorInfo) else item.elements()


def item_search(item: LayerItem, pattern: str | Pattern[str]) -> List[GGUFTensorInfo]:
    if isinstance(item, GGUFTensorInfo):
        rx = re.compile(pattern) if isinstance(pattern, str) else pattern
        return [item] if rx.search(item.name) else []
    return item.search(pattern)


def _group_path(name: str) -> Tuple[str, ...]:
    """Group names a tensor belongs to, outermost first; empty for top level."""
    ps = name.split(".")
    if len(ps) < 3:
        return ()
    head = ps[0]
    if head in _GROUPED_PREFIXES:
        return (f"{head}.{ps[1]}",)
    if head in _ENCODER_STACKS and ps[1] == "blk" and len(ps) > 3:
        return (head, f"{head}.blk.{ps[2]}")
    if head == "cond_stage_model":
        idx = ps[1] if ps[1].isdigit() else "0"
        return (f"cond_stage_model.{idx}",)
    if head == "first_stage_model":
        return (f"first_stage_model.{ps[1]}",)
    return ()


def _sort_key(name: str, rank: Dict[str, int]) -> Tuple[int, int]:
    base, _, tail = name.rpartition(".")
    if base and tail.isdigit():
        return rank[base], int(tail)
    return rank[name], 0


class _Builder:
    def __init__(self, name: Optional[str] = None):
        self.name = name
        self.items: List[Union[GGUFTensorInfo, _Builder]] = []
        self.groups: Dict[str, _Builder] = {}

    def child(self, name: str) -> "_Builder":
        b = self.groups.get(name)
        if b is None:
            b = self.groups[name] = _Builder(name)
            self.items.append(b)
        return b

    def build(self) -> List[LayerItem]:
        # numbered siblings (blk.0, blk.1, ... blk.10) ordered by index
        rank: Dict[str, int] = {}
        for it in self.items:
            name = it.name or ""
            base, _, tail = name.rpartition(".")
            rank.setdefault(base if base and tail.isdigit() else name, len(rank))
        out: List[LayerItem] = []
        for it in sorted(self.items, key=lambda x: _sort_key(x.name or "", rank)):
            if isinstance(it, _Builder):
                out.append(GGUFNamedTensorInfos(it.name or "", it.build()))
            else:
                out.append(it)
        return out


def build_layers(tensors: Iterable[GGUFTensorInfo]) -> GGUFLayerTensorInfos:
    """Group a tensor-info table into its layer tree."""
    root = _Builder()
    for ti in tensors:
        node = root
        for g in _group_path(ti.name):
            node = node.child(g)
        node.items.append(ti)
    return GGUFLayerTensorInfos(root.build())
