"""Test that the project setup is working correctly."""

import transfer_sync


def test_version() -> None:
    """Test that version is defined."""
    assert transfer_sync.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from transfer_sync import api, chain, storage, sync

    # Just verify imports work
    assert api is not None
    assert chain is not None
    assert storage is not None
    assert sync is not None
