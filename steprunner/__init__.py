"""
steprunner - run an ordered YAML document of shell, exec, conf and ssh steps.

Every user-supplied string is rendered with Jinja2 against the document's
globals plus the ENV namespace before use.
"""

from .loader import DocumentLoader
from .workflow.executor import DocumentExecutor

__version__ = "0.1.0"
__all__ = [
    "DocumentLoader",
    "DocumentExecutor",
]
