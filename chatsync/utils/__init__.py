"""Utility functions"""
from .text_processing import sanitize_file_name, ensure_identifier

__all__ = [
    "sanitize_file_name",
    "ensure_identifier",
]
