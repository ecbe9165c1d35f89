"""Per-language symbol extraction.

Two tiers:

1. ``parse_symbols``: a real parser, the stdlib ``ast`` module for Python
   and tree-sitter grammars for Rust, Go, TypeScript/JavaScript and Java.
   Nested symbols (methods in classes, items in ``impl``/``mod`` blocks) are
   reported too.  Raises :class:`ParseError` when the text does not parse.
2. ``scan_symbols``: a regex scan for definitions, used when the
   parser rejects the file.  Each symbol runs until the next one starts.

Both return flat ``(kind, name, start_byte, end_byte)`` tuples; nesting is
rebuilt by :func:`codeindex.index.symbols.build_tree`.
"""
import ast
import logging
import re
from bisect import bisect_right
from typing import Callable, Dict, List, Optional, Tuple

from codeindex.errors import ParseError

from .symbols import KIND_CLASS, KIND_FUNCTION, KIND_MODULE, KIND_OTHER, RawSymbol

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Byte offset helpers
# ---------------------------------------------------------------------------

_LINE_BREAK_RE = re.compile(rb"\r\n|\r|\n")


def line_starts(source: bytes) -> List[int]:
    """Byte offset at which each (0-based) line starts.

    ``\r\n``, ``\r`` and ``\n`` all end a line, matching how ``ast`` and
    tree-sitter number lines.
    """
    return [0] + [m.end() for m in _LINE_BREAK_RE.finditer(source)]


# ---------------------------------------------------------------------------
# Python (stdlib ast)
# ---------------------------------------------------------------------------

def _python_symbols(text: str, source: bytes, path: str) -> List[RawSymbol]:
    if text.encode("utf-8") != source:
        # ast offsets would not line up with the file bytes
        raise ParseError(path, "source is not valid UTF-8")
    try:
        tree = ast.parse(text)
    except (SyntaxError, ValueError) as exc:
        raise ParseError(path, str(exc)) from exc

    starts = line_starts(source)
    symbols: List[RawSymbol] = []

    def offset(lineno: int, col: int) -> int:
        # ast line numbers are 1-based, column offsets are UTF-8 byte offsets
        return starts[lineno - 1] + col

    for node in ast.walk(tree):
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            kind = KIND_FUNCTION
        elif isinstance(node, ast.ClassDef):
            kind = KIND_CLASS
        else:
            continue
        first = node.decorator_list[0] if node.decorator_list else node
        start = offset(first.lineno, first.col_offset)
        if node.decorator_list:
            # include the "@" that precedes the decorator expression
            start = source.rfind(b"@", starts[first.lineno - 1], start + 1)
        end = offset(node.end_lineno, node.end_col_offset)
        symbols.append((kind, node.name, start, end))
    return symbols


# ---------------------------------------------------------------------------
# tree-sitter grammars
# ---------------------------------------------------------------------------

_TS_PARSERS: dict = {}


def _get_ts_parser(language_key: str):
    """Return a cached tree-sitter ``Parser`` for *language_key*."""
    if language_key in _TS_PARSERS:
        return _TS_PARSERS[language_key]

    from tree_sitter import Language, Parser

    if language_key == "rust":
        import tree_sitter_rust as ts_rust
        lang_obj = Language(ts_rust.language())
    elif language_key == "go":
        import tree_sitter_go as ts_go
        lang_obj = Language(ts_go.language())
    elif language_key in ("typescript", "javascript"):
        # the TypeScript grammar is a superset of JavaScript
        import tree_sitter_typescript as ts_ts
        lang_obj = Language(ts_ts.language_typescript())
    elif language_key == "tsx":
        import tree_sitter_typescript as ts_ts
        lang_obj = Language(ts_ts.language_tsx())
    elif language_key == "java":
        import tree_sitter_java as ts_java
        lang_obj = Language(ts_java.language())
    else:
        raise ParseError("", f"no tree-sitter grammar for {language_key!r}")

    parser = Parser(lang_obj)
    _TS_PARSERS[language_key] = parser
    return parser


def _field_name(node, field: str = "name") -> Optional[str]:
    name_node = node.child_by_field_name(field)
    if name_node is None:
        return None
    return name_node.text.decode("utf-8", errors="replace")


def _rust_impl_name(node) -> Optional[str]:
    type_name = _field_name(node, "type")
    if type_name is None:
        return None
    trait_name = _field_name(node, "trait")
    return f"impl {trait_name} for {type_name}" if trait_name else f"impl {type_name}"


def _js_variable_function_name(node) -> Optional[str]:
    # const foo = async (...) => { ... }
    value = node.child_by_field_name("value")
    if value is None or value.type not in ("arrow_function", "function", "function_expression"):
        return None
    return _field_name(node)


# node type → (kind, name getter)
_NameGetter = Callable[[object], Optional[str]]

_TS_SYMBOL_TYPES: Dict[str, Dict[str, Tuple[str, _NameGetter]]] = {
    "rust": {
        "function_item":  (KIND_FUNCTION, _field_name),
        "struct_item":    (KIND_CLASS, _field_name),
        "enum_item":      (KIND_CLASS, _field_name),
        "union_item":     (KIND_CLASS, _field_name),
        "trait_item":     (KIND_CLASS, _field_name),
        "impl_item":      (KIND_CLASS, _rust_impl_name),
        "mod_item":       (KIND_MODULE, _field_name),
        "macro_definition": (KIND_FUNCTION, _field_name),
        "const_item":     (KIND_OTHER, _field_name),
        "static_item":    (KIND_OTHER, _field_name),
        "type_item":      (KIND_OTHER, _field_name),
    },
    "go": {
        "function_declaration": (KIND_FUNCTION, _field_name),
        "method_declaration":   (KIND_FUNCTION, _field_name),
        "type_spec":            (KIND_CLASS, _field_name),
    },
    "typescript": {
        "function_declaration":           (KIND_FUNCTION, _field_name),
        "generator_function_declaration": (KIND_FUNCTION, _field_name),
        "class_declaration":              (KIND_CLASS, _field_name),
        "abstract_class_declaration":     (KIND_CLASS, _field_name),
        "interface_declaration":          (KIND_CLASS, _field_name),
        "enum_declaration":               (KIND_CLASS, _field_name),
        "type_alias_declaration":         (KIND_OTHER, _field_name),
        "method_definition":              (KIND_FUNCTION, _field_name),
        "variable_declarator":            (KIND_FUNCTION, _js_variable_function_name),
    },
    "java": {
        "class_declaration":           (KIND_CLASS, _field_name),
        "interface_declaration":       (KIND_CLASS, _field_name),
        "enum_declaration":            (KIND_CLASS, _field_name),
        "record_declaration":          (KIND_CLASS, _field_name),
        "annotation_type_declaration": (KIND_CLASS, _field_name),
        "method_declaration":          (KIND_FUNCTION, _field_name),
        "constructor_declaration":     (KIND_FUNCTION, _field_name),
    },
}
_TS_SYMBOL_TYPES["javascript"] = _TS_SYMBOL_TYPES["typescript"]
_TS_SYMBOL_TYPES["tsx"] = _TS_SYMBOL_TYPES["typescript"]


def _tree_sitter_symbols(language: str, source: bytes, path: str) -> List[RawSymbol]:
    parser = _get_ts_parser(language)
    tree = parser.parse(source)
    root = tree.root_node
    if root.has_error:
        raise ParseError(path, f"{language} syntax errors in parse tree")

    wanted = _TS_SYMBOL_TYPES[language]
    symbols: List[RawSymbol] = []
    stack = [root]
    while stack:
        node = stack.pop()
        entry = wanted.get(node.type)
        if entry is not None:
            kind, get_name = entry
            name = get_name(node)
            if name:
                symbols.append((kind, name, node.start_byte, node.end_byte))
        stack.extend(reversed(node.children))
    return symbols


def parse_symbols(language: str, text: str, source: bytes, path: str = "") -> List[RawSymbol]:
    """Run the language's parser over *text*.

    Raises:
        ParseError: If the text does not parse or the language is unknown.
    """
    if language == "python":
        return _python_symbols(text, source, path)
    if language in _TS_SYMBOL_TYPES:
        return _tree_sitter_symbols(language, source, path)
    raise ParseError(path, f"unsupported language {language!r}")


# ---------------------------------------------------------------------------
# Regex scan (fallback)
# ---------------------------------------------------------------------------

_SCAN_PATTERNS: Dict[str, List[Tuple[re.Pattern, str]]] = {
    "python": [
        (re.compile(r"^(?:async\s+)?def\s+(\w+)"), KIND_FUNCTION),
        (re.compile(r"^class\s+(\w+)"), KIND_CLASS),
    ],
    "rust": [
        (re.compile(r"^(?:pub(?:\([^)]*\))?\s+)?(?:async\s+)?(?:unsafe\s+)?fn\s+(\w+)"), KIND_FUNCTION),
        (re.compile(r"^(?:pub(?:\([^)]*\))?\s+)?(?:struct|enum|trait|union)\s+(\w+)"), KIND_CLASS),
        (re.compile(r"^impl(?:<[^>]*>)?\s+([\w:<>, ]+?)\s*\{"), KIND_CLASS),
        (re.compile(r"^(?:pub(?:\([^)]*\))?\s+)?mod\s+(\w+)"), KIND_MODULE),
    ],
    "go": [
        (re.compile(r"^func\s+(?:\(\w+\s+\*?\w+\)\s+)?(\w+)"), KIND_FUNCTION),
        (re.compile(r"^type\s+(\w+)\s+(?:struct|interface)"), KIND_CLASS),
    ],
    "typescript": [
        (re.compile(r"^(?:export\s+)?(?:default\s+)?(?:async\s+)?function\s*\*?\s*(\w+)"), KIND_FUNCTION),
        (re.compile(r"^(?:export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+(\w+)"), KIND_CLASS),
        (re.compile(r"^(?:export\s+)?(?:const|let|var)\s+(\w+)\s*=\s*(?:async\s*)?\("), KIND_FUNCTION),
    ],
    "java": [
        (re.compile(
            r"^(?:public\s+|private\s+|protected\s+)?(?:abstract\s+|static\s+|final\s+)*"
            r"(?:class|interface|enum|record)\s+(\w+)"
        ), KIND_CLASS),
    ],
}
_SCAN_PATTERNS["javascript"] = _SCAN_PATTERNS["typescript"]
_SCAN_PATTERNS["tsx"] = _SCAN_PATTERNS["typescript"]

# Indented definitions worth keeping when a file only scans: Java methods
# always sit inside a type.
_SCAN_MEMBER_PATTERNS: Dict[str, List[Tuple[re.Pattern, str]]] = {
    "java": [
        (re.compile(
            r"^(?!(?:return|new|else|throw)\b)"
            r"(?:(?:public|private|protected|abstract|static|final|synchronized|native|default)\s+)*"
            r"(?:<[^>]*>\s+)?(?:[\w.]+(?:<[^;()]*>)?(?:\[\])*\s+)?"
            r"(?!(?:if|for|while|switch|catch|return|new|synchronized)\b)(\w+)\s*"
            r"\([^;]*\)\s*(?:throws\s+[\w.,\s]+)?\{?\s*$"
        ), KIND_FUNCTION),
    ],
}


def scan_symbols(language: str, text: str, source: bytes) -> List[RawSymbol]:
    """Find definitions line by line over the raw file bytes.

    Unindented lines are matched against the language's top-level patterns,
    indented ones against its member patterns (if any).  A top-level symbol
    extends to the start of the next top-level one; a member to the start of
    the next symbol of either kind; the last ones run to the end of the file.
    """
    patterns = _SCAN_PATTERNS.get(language)
    if not patterns:
        return []
    member_patterns = _SCAN_MEMBER_PATTERNS.get(language, [])

    starts = line_starts(source)
    bounds = starts[1:] + [len(source)]
    found: List[Tuple[str, str, int, bool]] = []
    for start, stop in zip(starts, bounds):
        line = source[start:stop].decode("utf-8", errors="replace").rstrip("\r\n")
        if not line.strip():
            continue
        member = line[0].isspace()
        candidates = member_patterns if member else patterns
        stripped = line.strip() if member else line
        for pattern, kind in candidates:
            m = pattern.match(stripped)
            if m:
                found.append((kind, m.group(1).strip(), start, member))
                break

    symbols: List[RawSymbol] = []
    for idx, (kind, name, start, member) in enumerate(found):
        end = len(source)
        for later in found[idx + 1:]:
            if member or not later[3]:
                end = later[2]
                break
        symbols.append((kind, name, start, end))
    return symbols


def line_of(source: bytes, offset: int, starts: Optional[List[int]] = None) -> int:
    """1-based line number containing byte *offset*.

    Pass *starts* from :func:`line_starts` when looking up many offsets in
    the same file.
    """
    if starts is None:
        starts = line_starts(source)
    return bisect_right(starts, offset)
