"""
Template rendering module.
Renders step strings against the global context and the ENV namespace.
"""

from .renderer import TemplateRenderer, snapshot_environment, ENV_NAMESPACE

__all__ = ['TemplateRenderer', 'snapshot_environment', 'ENV_NAMESPACE']
