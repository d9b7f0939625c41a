"""Test that the project setup is working correctly."""

import token_swap_indexer


def test_version() -> None:
    """Test that version is defined."""
    assert token_swap_indexer.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from token_swap_indexer import aggregation, cache, chain, indexer, pipeline, scheduler, storage

    assert aggregation is not None
    assert cache is not None
    assert chain is not None
    assert indexer is not None
    assert pipeline is not None
    assert scheduler is not None
    assert storage is not None
