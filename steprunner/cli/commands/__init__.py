"""CLI command handlers."""

from .run import run_document

__all__ = ['run_document']
