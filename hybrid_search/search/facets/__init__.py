"""Facet aggregation over search hits."""
