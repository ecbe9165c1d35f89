"""Symbol trees for source files.

A :class:`SymbolTree` stores its nodes in a flat list (the arena); parents and
children refer to each other by index, so the tree has no reference cycles.
Node 0 is always the root and spans the whole file.

Invariants enforced by :meth:`SymbolTree.add`:

* a child's byte range lies inside its parent's range;
* siblings are disjoint and ordered by start offset.

``extract()`` never raises on bad input: when a language's parser cannot
make sense of the text it falls back to a line-based scan, and when that
finds nothing it returns a single whole-file node of kind ``other``.
"""
import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Iterator, List, Optional, Tuple, Union

from codeindex.errors import ParseError

logger = logging.getLogger(__name__)

KIND_MODULE = "module"
KIND_CLASS = "class"
KIND_FUNCTION = "function"
KIND_OTHER = "other"

ROOT = 0

# Extension → language ID
_EXT_TO_LANG: dict[str, str] = {
    ".py":   "python",
    ".pyi":  "python",
    ".rs":   "rust",
    ".go":   "go",
    ".ts":   "typescript",
    ".tsx":  "tsx",
    ".js":   "javascript",
    ".jsx":  "javascript",
    ".mjs":  "javascript",
    ".cjs":  "javascript",
    ".java": "java",
}

SUPPORTED_LANGUAGES = frozenset(_EXT_TO_LANG.values())


def detect_language(file_path: str) -> str:
    """Return the language ID for *file_path*, or ``""`` when unsupported."""
    return _EXT_TO_LANG.get(PurePosixPath(file_path).suffix.lower(), "")


@dataclass
class SymbolNode:
    """One named structural unit, addressed by its index in the arena."""

    kind: str
    name: str
    start: int
    end: int
    parent: Optional[int] = None
    children: List[int] = field(default_factory=list)

    @property
    def byte_range(self) -> Tuple[int, int]:
        return (self.start, self.end)

    @property
    def size(self) -> int:
        return self.end - self.start


class SymbolTree:
    """Arena-backed symbol tree for one file.

    Args:
        length:    Size of the file in bytes; the root spans ``[0, length)``.
        language:  Language ID the tree was built for.
        root_name: Name given to the root node (usually the file path).
        root_kind: ``module`` for parsed files, ``other`` for the fallback.
    """

    def __init__(
        self,
        length: int,
        language: str = "",
        root_name: str = "",
        root_kind: str = KIND_MODULE,
    ) -> None:
        self.language = language
        self.partial = False
        self.nodes: List[SymbolNode] = [SymbolNode(root_kind, root_name, 0, length)]

    @classmethod
    def whole_file(cls, length: int, language: str = "", root_name: str = "") -> "SymbolTree":
        """The single-node fallback tree."""
        tree = cls(length, language=language, root_name=root_name, root_kind=KIND_OTHER)
        tree.partial = True
        return tree

    @property
    def root(self) -> SymbolNode:
        return self.nodes[ROOT]

    def __len__(self) -> int:
        return len(self.nodes)

    def node(self, index: int) -> SymbolNode:
        return self.nodes[index]

    def add(self, kind: str, name: str, start: int, end: int, parent: int = ROOT) -> int:
        """Append a child under *parent* and return its index.

        Raises:
            ValueError: If the range is empty, escapes the parent, or is not
                        after the parent's last child.
        """
        p = self.nodes[parent]
        if not (p.start <= start < end <= p.end):
            raise ValueError(
                f"symbol {name!r} [{start}, {end}) is not inside parent "
                f"{p.name!r} [{p.start}, {p.end})"
            )
        if p.children and self.nodes[p.children[-1]].end > start:
            raise ValueError(f"symbol {name!r} overlaps its preceding sibling")
        index = len(self.nodes)
        self.nodes.append(SymbolNode(kind, name, start, end, parent=parent))
        p.children.append(index)
        return index

    def children(self, index: int) -> List[SymbolNode]:
        return [self.nodes[i] for i in self.nodes[index].children]

    def parent(self, index: int) -> Optional[SymbolNode]:
        p = self.nodes[index].parent
        return None if p is None else self.nodes[p]

    def path(self, index: int) -> List[str]:
        """Names from the root down to *index*, skipping unnamed nodes."""
        names: List[str] = []
        current: Optional[int] = index
        while current is not None:
            node = self.nodes[current]
            if node.name:
                names.append(node.name)
            current = node.parent
        names.reverse()
        return names

    def walk(self, index: int = ROOT) -> Iterator[int]:
        """Pre-order traversal of node indices."""
        stack = [index]
        while stack:
            current = stack.pop()
            yield current
            stack.extend(reversed(self.nodes[current].children))


# ---------------------------------------------------------------------------
# Tree construction
# ---------------------------------------------------------------------------

RawSymbol = Tuple[str, str, int, int]  # (kind, name, start, end)


def _extend_to_line_end(source: bytes, end: int) -> int:
    """Move *end* past the newline if only whitespace follows on its line."""
    newline = source.find(b"\n", end)
    if newline == -1:
        rest = source[end:]
        return len(source) if not rest.strip() else end
    if source[end:newline].strip():
        return end
    return newline + 1


def build_tree(
    source: bytes,
    raw_symbols: List[RawSymbol],
    language: str = "",
    root_name: str = "",
) -> SymbolTree:
    """Nest flat ``(kind, name, start, end)`` ranges into a :class:`SymbolTree`.

    Ranges are nested by containment.  A range that overlaps an already
    placed sibling cannot be represented and is dropped.
    """
    tree = SymbolTree(len(source), language=language, root_name=root_name)
    ordered = sorted(raw_symbols, key=lambda s: (s[2], -s[3]))
    stack: List[int] = [ROOT]
    for kind, name, start, end in ordered:
        end = _extend_to_line_end(source, end)
        while len(stack) > 1 and tree.nodes[stack[-1]].end <= start:
            stack.pop()
        parent = stack[-1]
        end = min(end, tree.nodes[parent].end)
        try:
            index = tree.add(kind, name, start, end, parent=parent)
        except ValueError as exc:
            logger.debug("[symbols] dropping %s %r: %s", kind, name, exc)
            continue
        stack.append(index)
    return tree


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def _as_source(text: Union[str, bytes]) -> Tuple[str, bytes]:
    """Return ``(text, source)``; byte input is kept as-is for offsets."""
    if isinstance(text, bytes):
        return text.decode("utf-8", errors="replace"), text
    return text, text.encode("utf-8")


def extract_strict(language: str, text: Union[str, bytes], root_name: str = "") -> SymbolTree:
    """Parse *text* with the language's parser.

    *text* may be the raw file bytes; offsets always refer to those bytes.

    Raises:
        ParseError: If the parser cannot build a structure for *text* or the
                    language has no parser.
    """
    from .extractors import parse_symbols

    text, source = _as_source(text)
    raw = parse_symbols(language, text, source, root_name)
    return build_tree(source, raw, language=language, root_name=root_name)


def extract(language: str, text: Union[str, bytes], root_name: str = "") -> SymbolTree:
    """Build a symbol tree for *text*, degrading instead of failing.

    Order of attempts: the language's parser, then a line-based scan of
    definitions, then a single whole-file node of kind ``other``.
    Unsupported languages go straight to the whole-file node.
    """
    from .extractors import scan_symbols

    text, source = _as_source(text)
    if language not in SUPPORTED_LANGUAGES:
        logger.debug("[symbols] %s: unsupported language %r, whole-file node", root_name, language)
        return SymbolTree.whole_file(len(source), language=language, root_name=root_name)

    try:
        return extract_strict(language, source, root_name)
    except ParseError as exc:
        logger.warning("[symbols] %s; falling back to line scan", exc)
    except Exception as exc:
        logger.warning(
            "[symbols] %s: %s parser failed (%s: %s); falling back to line scan",
            root_name, language, type(exc).__name__, exc,
        )

    try:
        raw = scan_symbols(language, text, source)
        if raw:
            tree = build_tree(source, raw, language=language, root_name=root_name)
            tree.partial = True
            return tree
    except Exception as exc:
        logger.warning("[symbols] %s: line scan failed (%s), whole-file node", root_name, exc)
    return SymbolTree.whole_file(len(source), language=language, root_name=root_name)
