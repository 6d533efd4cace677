"""
Incremental block extraction framework.

Turns an append-only, occasionally reorganized chain of blocks into
derived datasets through registered extractors, tracking progress per
(block, extractor) in a persisted status table.
"""

__version__ = "0.1.0"
