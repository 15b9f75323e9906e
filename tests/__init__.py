"""Test suite for litingest.

Unit tests cover normalization, deduplication, reference extraction, import
parsing, caches, stores and provider adapters; queue tests cover job state
and workers. Run `pytest` from the project root.
"""
