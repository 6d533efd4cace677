"""
Core abstractions for the block extraction framework.
"""

from .models import (
    Block, ExtractedBlock, ExtractionStatus, DependencyCondition, NetworkState
)
from .exceptions import (
    ExtractError, RetryableError, StoreError, ConstraintKind, ConstraintViolation,
    ExtractorConfigError, ExtractConfigError
)
from .extractor import BlockExtractor, ExtractorRegistry, load_extractor, load_extractors
from .services import Services, TransactionalServices, LocalServices
from .status_store import StatusStore

__all__ = [
    "Block",
    "ExtractedBlock",
    "ExtractionStatus",
    "DependencyCondition",
    "NetworkState",
    "ExtractError",
    "RetryableError",
    "StoreError",
    "ConstraintKind",
    "ConstraintViolation",
    "ExtractorConfigError",
    "ExtractConfigError",
    "BlockExtractor",
    "ExtractorRegistry",
    "load_extractor",
    "load_extractors",
    "Services",
    "TransactionalServices",
    "LocalServices",
    "StatusStore",
]
