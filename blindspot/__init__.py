"""
blindspot — a user-space package manager for single static binaries.
"""

__version__ = "0.3.0"
