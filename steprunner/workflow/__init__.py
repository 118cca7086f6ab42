"""Workflow execution module."""

from .executor import DocumentExecutor, StepStatus

__all__ = ['DocumentExecutor', 'StepStatus']
