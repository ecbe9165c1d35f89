"""Hierarchical, symbol-aware chunking.

Turns a :class:`SymbolTree` plus the file text into size-bounded chunks
whose boundaries follow symbol boundaries:

1. Walk the tree depth-first.  Consecutive sibling subtrees are accumulated
   into one chunk until adding the next would exceed ``max_size``; the chunk
   is then closed, unless it is still below ``min_size``, in which case it
   keeps growing.
2. A symbol whose own span exceeds ``max_size`` is split along its children
   using the same rule.
3. A leaf symbol that exceeds ``max_size`` is cut into line-aligned windows,
   each carrying up to ``overlap`` bytes of the previous window.  These are
   the only chunks that split a symbol; they are flagged ``partial``.
4. Bytes between symbols (imports, comments, blank lines) go to the chunk of
   the symbol that follows them, so every byte of the file ends up in a chunk.

All sizes and ranges are byte offsets into the file: pass the raw bytes so
they stay exact even when the file is not valid UTF-8 (chunk text is decoded
with replacement characters).  IDs and content
hashes are computed only once boundaries are final, so chunking unchanged
text twice yields identical chunks.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from codeindex.config import ChunkingSettings

from .extractors import line_of, line_starts
from .fingerprint import chunk_id, content_hash
from .symbols import ROOT, SymbolTree

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChunkPolicy:
    """Chunk size bounds, in bytes."""

    min_size: int = 256
    max_size: int = 4096
    overlap: int = 256

    def __post_init__(self) -> None:
        if not 0 <= self.min_size <= self.max_size:
            raise ValueError("ChunkPolicy requires 0 <= min_size <= max_size")
        if self.max_size <= 0:
            raise ValueError("ChunkPolicy requires max_size > 0")
        if not 0 <= self.overlap < self.max_size:
            raise ValueError("ChunkPolicy requires 0 <= overlap < max_size")

    @classmethod
    def from_settings(cls, settings: ChunkingSettings) -> "ChunkPolicy":
        return cls(
            min_size=settings.min_size,
            max_size=settings.max_size,
            overlap=settings.overlap,
        )


@dataclass(frozen=True)
class Chunk:
    """A single chunk of a file, ready for embedding."""

    id: str
    file_path: str
    byte_range: Tuple[int, int]
    text: str
    symbol_path: Tuple[str, ...]
    sequence_index: int
    content_hash: str
    partial: bool = False
    start_line: int = 0
    end_line: int = 0
    language: str = ""

    @property
    def symbol_name(self) -> str:
        return self.symbol_path[-1] if self.symbol_path else ""


@dataclass
class _Span:
    start: int
    end: int
    anchor: int  # node whose path labels the chunk
    partial: bool = False


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def chunk_tree(
    tree: SymbolTree,
    text: Union[str, bytes],
    policy: Optional[ChunkPolicy] = None,
    file_path: str = "",
) -> List[Chunk]:
    """Split *text* into ordered chunks along the symbols in *tree*.

    Args:
        tree:      Symbol tree built from *text*.
        text:      Full file contents, preferably the raw bytes.
        policy:    Size bounds; defaults to ``ChunkPolicy()``.
        file_path: Project-relative path, part of every chunk ID.

    Returns:
        Chunks ordered by start offset with ``sequence_index`` 0..n-1.
    """
    policy = policy or ChunkPolicy()
    source = text if isinstance(text, bytes) else text.encode("utf-8")
    if not source:
        return []

    splitter = _Splitter(tree, source, policy)
    root = tree.root
    if root.children:
        splitter.accumulate(ROOT, 0, len(source))
    elif len(source) <= policy.max_size:
        splitter.emit(0, len(source), ROOT)
    else:
        splitter.windows(0, len(source), ROOT, policy.overlap, partial=True)

    starts = line_starts(source)
    chunks = [
        _finalize(span, seq, tree, source, starts, file_path)
        for seq, span in enumerate(splitter.spans)
    ]
    logger.debug(
        "[Chunker] %s: %d bytes → %d chunks (%d partial)",
        file_path or "<text>", len(source), len(chunks),
        sum(1 for c in chunks if c.partial),
    )
    return chunks


# ---------------------------------------------------------------------------
# Splitting
# ---------------------------------------------------------------------------

class _Splitter:
    """Collects chunk spans for one file."""

    def __init__(self, tree: SymbolTree, source: bytes, policy: ChunkPolicy) -> None:
        self.tree = tree
        self.source = source
        self.policy = policy
        self.spans: List[_Span] = []

    def emit(self, start: int, end: int, anchor: int, partial: bool = False) -> None:
        if end > start:
            self.spans.append(_Span(start, end, anchor, partial))

    def split_node(self, index: int, region_start: int) -> None:
        """Chunk an oversized node, with ``[region_start, node.start)`` as a prefix."""
        node = self.tree.nodes[index]
        if node.children:
            self.accumulate(index, region_start, node.end)
        else:
            self.windows(region_start, node.end, index, self.policy.overlap, partial=True)

    def accumulate(self, index: int, region_start: int, region_end: int) -> None:
        """Group the children of *index* into chunks covering the region."""
        max_size = self.policy.max_size
        min_size = self.policy.min_size
        node = self.tree.nodes[index]

        buf_start = buf_end = region_start
        members: List[int] = []

        def flush() -> None:
            anchor = members[0] if len(members) == 1 else index
            self.emit(buf_start, buf_end, anchor)

        for child_index in node.children:
            child = self.tree.nodes[child_index]
            buf_size = buf_end - buf_start

            if child.size > max_size:
                if buf_size >= min_size and buf_size > 0:
                    flush()
                    prefix_start = buf_end
                else:
                    # too small to stand alone: lead into the child's first chunk
                    prefix_start = buf_start
                self.split_node(child_index, prefix_start)
                buf_start = buf_end = child.end
                members = []
                continue

            if child.end - buf_start > max_size:
                if buf_size >= min_size and buf_size > 0:
                    flush()
                    buf_start = buf_end
                    members = []
                gap = child.start - buf_start
                if not members and child.end - buf_start > max_size and gap >= min_size and gap > 0:
                    # the gap in front of the child cannot share its chunk
                    self.windows(buf_start, child.start, index, 0)
                    buf_start = child.start

            buf_end = child.end
            members.append(child_index)

        # bytes after the last child stay with the preceding chunk
        if region_end > buf_end:
            buf_size = buf_end - buf_start
            if region_end - buf_start > max_size:
                if buf_size >= min_size and buf_size > 0:
                    flush()
                    self.windows(buf_end, region_end, index, 0)
                else:
                    self.windows(buf_start, region_end, index, 0)
                return
            buf_end = region_end
        if buf_end > buf_start:
            flush()

    def windows(self, start: int, end: int, anchor: int, overlap: int, partial: bool = False) -> None:
        """Cut ``[start, end)`` into line-aligned windows of at most ``max_size``."""
        source = self.source
        max_size = self.policy.max_size
        pos = start
        prev_cut = start
        while pos < end:
            limit = min(pos + max_size, end)
            if limit >= end:
                cut = end
            else:
                newline = source.rfind(b"\n", prev_cut, limit)
                if newline != -1 and newline + 1 > prev_cut:
                    cut = newline + 1
                else:
                    cut = _char_boundary(source, limit, floor=prev_cut + 1)
            self.emit(pos, cut, anchor, partial)
            if cut >= end:
                break
            prev_cut = cut
            pos = _overlap_start(source, pos, cut, overlap) if overlap else cut


def _char_boundary(source: bytes, offset: int, floor: int) -> int:
    """Step *offset* back so it does not land inside a UTF-8 sequence."""
    while offset > floor and (source[offset] & 0xC0) == 0x80:
        offset -= 1
    return offset


def _overlap_start(source: bytes, window_start: int, cut: int, overlap: int) -> int:
    """Start of the next window: whole lines before *cut* totalling <= *overlap*."""
    new_start = cut
    while True:
        newline = source.rfind(b"\n", window_start, new_start - 1)
        line_start = newline + 1 if newline != -1 else window_start
        if line_start <= window_start or cut - line_start > overlap:
            return new_start
        new_start = line_start


def _finalize(
    span: _Span, seq: int, tree: SymbolTree, source: bytes, starts: List[int], file_path: str,
) -> Chunk:
    data = source[span.start:span.end]
    digest = content_hash(data)
    byte_range = (span.start, span.end)
    return Chunk(
        id=chunk_id(file_path, byte_range, digest),
        file_path=file_path,
        byte_range=byte_range,
        text=data.decode("utf-8", errors="replace"),
        symbol_path=tuple(tree.path(span.anchor)),
        sequence_index=seq,
        content_hash=digest,
        partial=span.partial,
        start_line=line_of(source, span.start, starts),
        end_line=line_of(source, max(span.start, span.end - 1), starts),
        language=tree.language,
    )
