"""
Custom exceptions for the block extraction framework.
"""

from enum import Enum
from typing import Optional


class ExtractError(Exception):
    """Base exception for all extraction errors."""
    pass


class RetryableError(ExtractError):
    """
    Raised by an extractor to signal a transient failure.

    The blocks of the failed batch keep their 'new' status and are
    fetched again on a later scheduler pass.
    """
    pass


class StoreError(ExtractError):
    """
    Error raised by the status store layer.

    The original driver error (sqlite3, pyodbc) is available as __cause__.
    """
    pass


class ConstraintKind(str, Enum):
    """Kind of integrity constraint that was violated."""
    FOREIGN_KEY = "foreign_key"
    UNIQUE = "unique"
    CHECK = "check"
    OTHER = "other"


class ConstraintViolation(StoreError):
    """
    An integrity constraint was violated by a write.

    Raised when:
    - A referenced row (e.g. written by an upstream extractor) is not visible yet
    - A unique key is duplicated
    - A check constraint rejects a value
    """

    def __init__(self, message: str, kind: ConstraintKind = ConstraintKind.OTHER,
                 constraint: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.constraint = constraint

    @property
    def is_foreign_key(self) -> bool:
        return self.kind == ConstraintKind.FOREIGN_KEY


class ExtractorConfigError(ExtractError):
    """
    Error in the set of registered extractors.

    Raised when:
    - Two extractors share a name
    - An extractor depends on an unknown extractor or on itself
    - Dependencies form a cycle
    - An extractor reference cannot be imported
    """
    pass


class ExtractConfigError(ExtractError):
    """
    Error in framework configuration.

    Raised when:
    - Configuration file is missing or invalid
    - Configuration values are out of valid range
    """
    pass
