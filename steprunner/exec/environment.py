"""
Environment layering for child processes.

Precedence, lowest to highest: ambient process environment, step-level env,
operation-level env. Override values are rendered before insertion.
"""

from typing import Any, Dict, Mapping, Optional

from ..templating.renderer import TemplateRenderer


def merge_env(
    ambient: Mapping[str, str],
    step_env: Optional[Mapping[str, str]],
    op_env: Optional[Mapping[str, str]],
    renderer: TemplateRenderer,
    context: Mapping[str, Any],
) -> Dict[str, str]:
    """
    Compose the environment for a child process.

    Args:
        ambient: Snapshot of the ambient environment (base layer)
        step_env: Step-level overrides (templated)
        op_env: Operation-level overrides (templated, win on conflicts)
        renderer: Renderer used for override values
        context: Global variables for rendering

    Returns:
        A fresh dict; callers may hand it to the launcher verbatim

    Raises:
        TemplateRenderError: If any override value fails to render
    """
    child_env = dict(ambient)

    if step_env:
        child_env.update(renderer.render_map(step_env, context))

    if op_env:
        child_env.update(renderer.render_map(op_env, context))

    return child_env

