"""Canonical address registry: matching, deduplication and merge optimization."""
