"""Query understanding: tokenization and typo-tolerant correction."""
