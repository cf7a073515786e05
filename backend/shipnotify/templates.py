"""Render notification subjects and bodies from event data."""

from jinja2 import ChainableUndefined
from jinja2.sandbox import SandboxedEnvironment


class TemplateRenderError(Exception):
    """Raised when a template cannot be compiled or rendered."""


# Missing variables, including nested chains like {{ previous.status }},
# render as empty strings instead of raising.
_env = SandboxedEnvironment(undefined=ChainableUndefined, autoescape=False)


def render_template(template: str, data: dict) -> str:
    """Render ``template`` against ``data``.

    Supports variable substitution (``{{ trackingNumber }}``, dotted
    lookups like ``{{ current.status }}``) and ``{% if %}`` blocks.

    Raises:
        TemplateRenderError: on syntax errors, sandbox violations, and any
            error raised while evaluating an expression (``{{ 1 // 0 }}``).
    """
    try:
        return _env.from_string(template).render(data or {})
    except Exception as e:
        raise TemplateRenderError(f"{type(e).__name__}: {e}") from e
