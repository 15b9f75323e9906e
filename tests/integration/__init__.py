"""Integration test package.

These tests run ingestion jobs end to end through the service, queue and
worker pool with in-process providers and stores; no network access is
needed.
"""
