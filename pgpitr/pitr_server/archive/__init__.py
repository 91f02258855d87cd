"""
WAL archiving.
"""

from .archiver import WalArchiver

__all__ = ["WalArchiver"]
