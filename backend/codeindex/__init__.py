"""codeindex: incremental semantic index of source code projects."""
__version__ = "0.1.0"
