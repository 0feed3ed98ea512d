"""Search ranking components.

Contents
- ``fusion``: weighted-sum fusion of keyword and semantic hits
- ``relevance``: multiplicative boost pipeline applied after fusion
"""
