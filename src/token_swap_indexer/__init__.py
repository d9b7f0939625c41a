"""Token Swap Indexer - on-chain swap indexing and aggregation pipeline."""

__version__ = "0.1.0"
