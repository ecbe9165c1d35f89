"""Code index module.

Symbol-aware chunking, incremental sync of project files into a vector
store, and semantic retrieval over the stored chunks.
"""
