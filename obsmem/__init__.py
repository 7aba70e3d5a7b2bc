"""
obsmem - observational memory for long-running coding agent sessions.
"""

__version__ = "0.1.0"
