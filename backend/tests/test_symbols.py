"""Tests for symbol extraction and the arena-backed symbol tree."""
import pytest

from codeindex.errors import ParseError
from codeindex.index.extractors import line_of, line_starts, scan_symbols
from codeindex.index.symbols import (
    KIND_CLASS,
    KIND_FUNCTION,
    KIND_MODULE,
    KIND_OTHER,
    ROOT,
    SymbolTree,
    build_tree,
    detect_language,
    extract,
    extract_strict,
)


PY_SOURCE = '''import os


class Greeter:
    """Says hello."""

    def __init__(self, name):
        self.name = name

    @property
    def greeting(self):
        return f"hello {self.name}"


def main():
    print(Greeter("x").greeting)
'''


def _names(tree: SymbolTree, index: int = ROOT) -> list[str]:
    return [tree.node(i).name for i in tree.node(index).children]


def _assert_well_formed(tree: SymbolTree) -> None:
    for index in tree.walk():
        node = tree.node(index)
        prev_end = node.start
        for child_index in node.children:
            child = tree.node(child_index)
            assert node.start <= child.start < child.end <= node.end
            assert child.start >= prev_end
            prev_end = child.end


# ---------------------------------------------------------------------------
# Language detection
# ---------------------------------------------------------------------------

class TestDetectLanguage:
    @pytest.mark.parametrize("path,expected", [
        ("a.py", "python"),
        ("src/lib.rs", "rust"),
        ("cmd/main.go", "go"),
        ("web/app.ts", "typescript"),
        ("web/App.tsx", "tsx"),
        ("x.JS", "javascript"),
        ("Main.java", "java"),
        ("README.md", ""),
        ("Makefile", ""),
    ])
    def test_detect(self, path, expected):
        assert detect_language(path) == expected


# ---------------------------------------------------------------------------
# SymbolTree
# ---------------------------------------------------------------------------

class TestSymbolTree:
    def test_root_spans_file(self):
        tree = SymbolTree(100, language="python", root_name="a.py")
        assert tree.root.byte_range == (0, 100)
        assert tree.root.kind == KIND_MODULE
        assert len(tree) == 1

    def test_add_and_path(self):
        tree = SymbolTree(100, root_name="a.py")
        cls = tree.add(KIND_CLASS, "C", 10, 80)
        meth = tree.add(KIND_FUNCTION, "m", 20, 40, parent=cls)
        assert tree.path(meth) == ["a.py", "C", "m"]
        assert tree.parent(meth).name == "C"
        assert [n.name for n in tree.children(cls)] == ["m"]

    def test_add_rejects_range_outside_parent(self):
        tree = SymbolTree(100)
        cls = tree.add(KIND_CLASS, "C", 10, 50)
        with pytest.raises(ValueError):
            tree.add(KIND_FUNCTION, "m", 40, 60, parent=cls)

    def test_add_rejects_overlapping_sibling(self):
        tree = SymbolTree(100)
        tree.add(KIND_FUNCTION, "a", 0, 50)
        with pytest.raises(ValueError):
            tree.add(KIND_FUNCTION, "b", 40, 60)

    def test_walk_is_preorder(self):
        tree = SymbolTree(100, root_name="r")
        a = tree.add(KIND_CLASS, "a", 0, 50)
        tree.add(KIND_FUNCTION, "a1", 10, 20, parent=a)
        tree.add(KIND_FUNCTION, "b", 60, 90)
        assert [tree.node(i).name for i in tree.walk()] == ["r", "a", "a1", "b"]

    def test_whole_file(self):
        tree = SymbolTree.whole_file(42, language="markdown", root_name="x.md")
        assert tree.root.kind == KIND_OTHER
        assert tree.root.byte_range == (0, 42)
        assert tree.partial is True
        assert not tree.root.children


class TestBuildTree:
    def test_nests_by_containment(self):
        source = b"x" * 100
        tree = build_tree(source, [
            (KIND_FUNCTION, "inner", 20, 30),
            (KIND_CLASS, "outer", 10, 60),
            (KIND_FUNCTION, "after", 70, 90),
        ])
        assert _names(tree) == ["outer", "after"]
        outer = tree.root.children[0]
        assert _names(tree, outer) == ["inner"]
        _assert_well_formed(tree)

    def test_drops_partially_overlapping_symbol(self):
        source = b"x" * 100
        tree = build_tree(source, [
            (KIND_FUNCTION, "a", 0, 50),
            (KIND_FUNCTION, "b", 50, 80),
            (KIND_FUNCTION, "c", 40, 90),  # nested under "a", clamped; then "b" overlaps it
        ])
        _assert_well_formed(tree)

    def test_end_extended_past_trailing_newline(self):
        source = b"def f():\n    pass\n\nx = 1\n"
        tree = build_tree(source, [(KIND_FUNCTION, "f", 0, len(b"def f():\n    pass"))])
        f = tree.node(tree.root.children[0])
        assert source[f.end - 1:f.end] == b"\n"


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

class TestExtractPython:
    def test_classes_methods_functions(self):
        tree = extract("python", PY_SOURCE, root_name="greet.py")
        assert _names(tree) == ["Greeter", "main"]
        greeter = tree.root.children[0]
        assert _names(tree, greeter) == ["__init__", "greeting"]
        assert tree.partial is False
        _assert_well_formed(tree)

    def test_decorator_included_in_range(self):
        tree = extract("python", PY_SOURCE, root_name="greet.py")
        source = PY_SOURCE.encode()
        greeter = tree.root.children[0]
        greeting = tree.node(tree.node(greeter).children[1])
        assert source[greeting.start:].startswith(b"@property")

    def test_utf8_offsets_are_bytes(self):
        text = 's = "héllo wörld"\n\ndef f():\n    return 1\n'
        tree = extract("python", text, root_name="u.py")
        f = tree.node(tree.root.children[0])
        assert text.encode()[f.start:f.end].startswith(b"def f")

    def test_strict_raises_on_syntax_error(self):
        with pytest.raises(ParseError):
            extract_strict("python", "def broken(:\n    pass\n", root_name="b.py")

    def test_syntax_error_falls_back_to_scan(self):
        text = "def ok():\n    return 1\n\ndef broken(:\n    pass\n"
        tree = extract("python", text, root_name="b.py")
        assert tree.partial is True
        assert _names(tree) == ["ok", "broken"]
        assert tree.root.kind == KIND_MODULE

    def test_unparseable_without_definitions_is_whole_file(self):
        tree = extract("python", "))) (((\n", root_name="junk.py")
        assert tree.root.kind == KIND_OTHER
        assert not tree.root.children

    def test_unsupported_language_is_whole_file(self):
        tree = extract("cobol", "IDENTIFICATION DIVISION.\n", root_name="x.cbl")
        assert tree.root.kind == KIND_OTHER
        assert tree.partial is True

    def test_empty_file(self):
        tree = extract("python", "", root_name="empty.py")
        assert tree.root.byte_range == (0, 0)
        assert not tree.root.children


class TestExtractTreeSitter:
    def test_rust_impl_and_functions(self):
        text = (
            "struct Point { x: i32 }\n\n"
            "impl Point {\n"
            "    fn new(x: i32) -> Self { Point { x } }\n"
            "}\n\n"
            "fn main() {}\n"
        )
        tree = extract("rust", text, root_name="lib.rs")
        assert _names(tree) == ["Point", "impl Point", "main"]
        impl = tree.root.children[1]
        assert _names(tree, impl) == ["new"]
        _assert_well_formed(tree)

    def test_go_functions_and_types(self):
        text = (
            "package main\n\n"
            "type Server struct {\n\tport int\n}\n\n"
            "func (s *Server) Run() {}\n\n"
            "func main() {}\n"
        )
        tree = extract("go", text, root_name="main.go")
        assert _names(tree) == ["Server", "Run", "main"]

    def test_rust_syntax_error_falls_back(self):
        text = "fn ok() {}\n\nfn broken( {\n"
        tree = extract("rust", text, root_name="bad.rs")
        assert tree.partial is True
        assert "ok" in _names(tree)


class TestScanSymbols:
    def test_only_top_level_lines(self):
        text = "class A:\n    def m(self):\n        pass\ndef f():\n    pass\n"
        symbols = scan_symbols("python", text, text.encode())
        assert [(s[0], s[1]) for s in symbols] == [(KIND_CLASS, "A"), (KIND_FUNCTION, "f")]
        # each symbol runs to the start of the next
        assert symbols[0][3] == symbols[1][2]
        assert symbols[1][3] == len(text.encode())

    def test_java_methods_inside_types(self):
        text = (
            "public class Calc {\n"
            "    public int add(int a, int b) {\n"
            "        if (a > b) {\n"
            "            return a;\n"
            "        }\n"
            "        return helper(a, b);\n"
            "    }\n"
            "\n"
            "    private static <T> List<T> wrap(T x) throws IOException {\n"
            "        return null;\n"
            "    }\n"
            "}\n"
        )
        source = text.encode()
        symbols = scan_symbols("java", text, source)
        assert [(s[0], s[1]) for s in symbols] == [
            (KIND_CLASS, "Calc"), (KIND_FUNCTION, "add"), (KIND_FUNCTION, "wrap"),
        ]
        # the type spans its members
        assert symbols[0][3] == len(source)
        assert symbols[1][3] == symbols[2][2]

        tree = build_tree(source, symbols, language="java", root_name="Calc.java")
        assert _names(tree) == ["Calc"]
        assert _names(tree, tree.root.children[0]) == ["add", "wrap"]

    def test_offsets_are_into_raw_bytes(self):
        source = b"# caf\xe9\ndef f():\n    pass\n"
        symbols = scan_symbols("python", source.decode("utf-8", errors="replace"), source)
        assert symbols == [(KIND_FUNCTION, "f", source.index(b"def f"), len(source))]


class TestLineEndings:
    CR_ONLY = "def f():\r    return 1\r\rdef g():\r    return 2\r"

    def test_line_starts_count_every_break_style(self):
        assert line_starts(b"a\rb\r\nc\nd") == [0, 2, 5, 7]

    def test_cr_only_python_parses(self):
        tree = extract("python", self.CR_ONLY, root_name="mac.py")
        assert tree.partial is False
        assert _names(tree) == ["f", "g"]
        f, g = (tree.node(i) for i in tree.root.children)
        assert (f.start, f.end) == (0, len("def f():\r    return 1"))
        assert g.start == self.CR_ONLY.index("def g")
        _assert_well_formed(tree)

    def test_crlf_python_parses(self):
        text = "class A:\r\n    def m(self):\r\n        pass\r\n"
        tree = extract("python", text, root_name="win.py")
        assert _names(tree) == ["A"]
        method = tree.node(tree.node(tree.root.children[0]).children[0])
        assert method.start == text.index("def m")


class TestExtractFallbacks:
    def test_unexpected_parser_error_falls_back_to_scan(self, monkeypatch):
        def explode(*args, **kwargs):
            raise IndexError("list index out of range")

        monkeypatch.setattr("codeindex.index.extractors.parse_symbols", explode)
        tree = extract("python", "def f():\n    pass\n", root_name="m.py")
        assert tree.partial is True
        assert _names(tree) == ["f"]

    def test_non_utf8_python_uses_scan_with_byte_offsets(self):
        source = b"# caf\xe9\ndef f():\n    return 1\n"
        tree = extract("python", source, root_name="latin.py")
        assert tree.partial is True
        assert tree.node(ROOT).end == len(source)
        assert tree.node(tree.root.children[0]).start == source.index(b"def f")


def test_line_of():
    source = b"a\nbb\nccc\n"
    assert line_of(source, 0) == 1
    assert line_of(source, 2) == 2
    assert line_of(source, 5) == 3
    assert line_of(source, 5, line_starts(source)) == 3
