"""
Execution module for steprunner.
Handles rendering of operations, process execution and conf file writing.
"""

from .environment import merge_env
from .process import run_and_stream
from .retry import RetryPolicy
from .ssh import build_ssh_argv
from .step_executor import StepExecutor

__all__ = [
    "merge_env",
    "run_and_stream",
    "RetryPolicy",
    "build_ssh_argv",
    "StepExecutor",
]
