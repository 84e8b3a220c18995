"""
Integration tests for the Labwatch alert pipeline.

These tests run readings through configuration, evaluation and SQLite
storage together, including file-backed databases that outlive a process.

Usage:
    pytest tests/integration/ -m integration
"""
