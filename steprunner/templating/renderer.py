"""
Template rendering for every user-supplied string of a step.
Templates use Jinja2 syntax ({{ var }}, {{ var | default('x') }}, {% if %}).

The reserved ENV namespace exposes a read-only snapshot of the ambient
process environment inside every template.
"""

import logging
import os
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

import jinja2

from ..exceptions import TemplateRenderError

logger = logging.getLogger(__name__)

ENV_NAMESPACE = "ENV"


def snapshot_environment(environ: Optional[Mapping[str, str]] = None) -> Mapping[str, str]:
    """Capture the ambient environment once as a read-only mapping."""
    source = os.environ if environ is None else environ
    return MappingProxyType(dict(source))


class TemplateRenderer:
    """
    Renders strings and string mappings against a variable context.

    Rendering is stateless per call: every template is compiled from source
    and discarded, the environment has no file loader (include/import cannot
    reach the filesystem), autoescaping is off, and undefined variables raise.
    """

    def __init__(self, ambient: Optional[Mapping[str, str]] = None):
        """
        Initialize the renderer.

        Args:
            ambient: Environment snapshot exposed as ENV (default: os.environ now)
        """
        self.ambient = ambient if ambient is not None else snapshot_environment()
        self.environment = jinja2.Environment(
            loader=jinja2.DictLoader({}),
            undefined=jinja2.StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )

    def _variables(self, context: Mapping[str, Any]) -> Dict[str, Any]:
        variables = dict(context)
        if ENV_NAMESPACE in variables:
            logger.debug(f"Global '{ENV_NAMESPACE}' is shadowed by the reserved environment namespace")
        variables[ENV_NAMESPACE] = self.ambient
        return variables

    def render(self, text: str, context: Mapping[str, Any]) -> str:
        """
        Render a single template string.

        Args:
            text: Template source
            context: Global variables

        Returns:
            Rendered text

        Raises:
            TemplateRenderError: On syntax errors or undefined variables
        """
        try:
            template = self.environment.from_string(text)
            return template.render(self._variables(context))
        except jinja2.TemplateSyntaxError as e:
            raise TemplateRenderError(
                f"Template syntax error on line {e.lineno}: {e.message} in {text!r}", text
            ) from e
        except jinja2.TemplateError as e:
            raise TemplateRenderError(f"Failed to render {text!r}: {e}", text) from e

    def render_map(self, mapping: Mapping[str, str], context: Mapping[str, Any]) -> Dict[str, str]:
        """
        Render every value of a mapping, preserving keys and their order.

        Fails on the first value that does not render.
        """
        rendered = {}
        for key, value in mapping.items():
            rendered[key] = self.render(value, context)
        return rendered
