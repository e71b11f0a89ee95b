from .runtime import BackfillOptions, IndexerSettings, IndexingOptions

__all__ = ["BackfillOptions", "IndexerSettings", "IndexingOptions"]
