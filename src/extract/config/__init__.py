"""
Configuration management for the extraction framework.
"""

from .config_loader import ExtractConfig

__all__ = ["ExtractConfig"]
