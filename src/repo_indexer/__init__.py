"""
Repository Indexer
Incremental repository indexing and embedding pipeline
"""

__version__ = "1.0.0"
