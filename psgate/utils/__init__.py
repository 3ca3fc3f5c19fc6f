"""Utility helpers for psgate."""

from psgate.utils.helpers import convert_to_camel, ensure_dir

__all__ = ["convert_to_camel", "ensure_dir"]
