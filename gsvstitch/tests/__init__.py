"""
Test suite for the `gsvstitch` package.

This package contains unit and integration tests for `gsvstitch` functionality, including:

- `catalog` tests: supported zoom levels, grid sizes and tile enumeration.
- `imaging` tests: blank-tile detection, compositing, border cropping and wrap removal.
- `core` tests: fetching tiles, the worker pool, progress reporting, cancellation,
  end-to-end stitching and batch processing.
- `my_utils` tests: URL parsing, encoding, saving and argument parsing.
- Async tests use `pytest.mark.asyncio` and `unittest.mock` for patching.

Usage:

    # Run all tests in the package
    pytest gsvstitch/tests

    # Run a specific test file
    pytest gsvstitch/tests/test_core.py
"""
