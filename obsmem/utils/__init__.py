"""Utility functions for obsmem."""

from obsmem.utils.helpers import atomic_append_text, atomic_write_text, ensure_dir

__all__ = ["atomic_append_text", "atomic_write_text", "ensure_dir"]
