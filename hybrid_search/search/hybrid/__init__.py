"""Hybrid search orchestration and index maintenance."""
