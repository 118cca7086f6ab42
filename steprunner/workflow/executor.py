"""
Document executor: strictly sequential, fail-fast step dispatch.
"""

import copy
import logging
from enum import Enum
from types import MappingProxyType
from typing import Any, List, Mapping, Optional

from ..document import Document, RenderedFile, Step
from ..exceptions import StepFailedError
from ..exec.retry import RetryPolicy
from ..exec.step_executor import StepExecutor
from ..templating.renderer import TemplateRenderer, snapshot_environment

logger = logging.getLogger(__name__)


class StepStatus(str, Enum):
    """Terminal states of a step."""
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"


def freeze_context(globals_: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    """Deep copy the globals into a read-only mapping."""
    return MappingProxyType(copy.deepcopy(dict(globals_ or {})))


def print_header(index: int, name: str, rendered: str) -> None:
    print(f"\n==[{index + 1}] {name} ==")
    print(f"-> {rendered}")


class DocumentExecutor:
    """
    Main step execution engine.
    Handles guards, dispatch to the operation handlers and preview mode.
    """

    def __init__(
        self,
        document: Document,
        dry_run: bool = False,
        verbose: bool = False,
        ambient: Optional[Mapping[str, str]] = None,
        retry_delay_ms: int = 1000,
    ):
        """
        Initialize document executor.

        Args:
            document: Loaded and validated document
            dry_run: Render and print only; no spawn, no file write
            verbose: Expanded logging of rendered commands
            ambient: Ambient environment snapshot (default: captured now)
            retry_delay_ms: Delay between retries of a failing command
        """
        self.document = document
        self.dry_run = dry_run
        self.verbose = verbose
        self.retry_delay_ms = retry_delay_ms

        self.ambient = ambient if ambient is not None else snapshot_environment()
        self.context = freeze_context(document.globals)
        self.renderer = TemplateRenderer(self.ambient)
        self.step_executor = StepExecutor(self.renderer, self.context, self.ambient)

    def execute(self) -> List[StepStatus]:
        """
        Run every step in order.

        Returns:
            Status per step that ran or was skipped

        Raises:
            StepFailedError: On the first failing step; later steps do not run
        """
        statuses = []
        for step in self.document.steps:
            statuses.append(self.run_step(step))

        executed = sum(1 for s in statuses if s == StepStatus.SUCCEEDED)
        logger.info(f"All steps completed ({executed} executed, {len(statuses) - executed} skipped)")
        return statuses

    def run_step(self, step: Step) -> StepStatus:
        """Run a single step, wrapping any failure with its index and name."""
        if step.when is False:
            logger.info(f"Step {step.index + 1} ({step.display_name}) skipped: when is false")
            return StepStatus.SKIPPED

        try:
            rendered = self.step_executor.prepare(step)
            print_header(step.index, step.display_name, rendered.label)

            if self.dry_run:
                if isinstance(rendered, RenderedFile):
                    print(f"Content preview:\n{rendered.content}")
                return StepStatus.SUCCEEDED

            if self.verbose and not isinstance(rendered, RenderedFile):
                logger.debug(f"Step {step.index + 1} argv: {rendered.argv!r} cwd: {rendered.cwd or '.'}")

            self.step_executor.launch(
                rendered,
                timeout_sec=step.timeout,
                retry_policy=RetryPolicy.for_step(step.retry, self.retry_delay_ms),
            )
        except Exception as e:
            raise StepFailedError(step.index, step.display_name, e) from e

        return StepStatus.SUCCEEDED
