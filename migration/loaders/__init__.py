"""Destination writers"""

from migration.loaders.sql_loader import SQLLoader

__all__ = ["SQLLoader"]
