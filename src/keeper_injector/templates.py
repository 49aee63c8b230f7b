"""Jinja2 environment for user-authored secret templates.

Templates see every field by name (``{{ password }}``) and through the
``fields`` mapping for names that are not valid identifiers
(``{{ fields["api-key"] }}``). Undefined names are errors unless a
``default`` filter supplies a fallback.

Filters, on top of Jinja2's built-ins (``upper``, ``lower``, ``title``,
``trim``, ``default``, ``indent``, ``replace``, ``tojson``):

    b64enc / base64enc    base64-encode a string
    b64dec / base64dec    base64-decode to a string
    sha256sum, sha512sum  hex digests
    quote, squote         wrap in double or single quotes

Example:
    >>> render_template("postgres://{{ login }}:{{ password | urlencode }}@{{ host }}", fields)
    'postgres://admin:s3cr3t@db:5432'
"""

from __future__ import annotations

import base64
import binascii
import hashlib
from collections.abc import Mapping
from typing import Any

from jinja2 import Environment, StrictUndefined, TemplateError

from keeper_injector.errors import TemplateRenderError

_template_env: Environment | None = None


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def b64enc(value: Any) -> str:
    """Base64-encode a value's UTF-8 text."""
    return base64.b64encode(_text(value).encode("utf-8")).decode("ascii")


def b64dec(value: Any) -> str:
    """Decode base64 text into a UTF-8 string."""
    try:
        return base64.b64decode(_text(value), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ValueError(f"base64 decode failed: {e}") from e


def sha256sum(value: Any) -> str:
    """Return the hex SHA-256 digest of a value."""
    return hashlib.sha256(_text(value).encode("utf-8")).hexdigest()


def sha512sum(value: Any) -> str:
    """Return the hex SHA-512 digest of a value."""
    return hashlib.sha512(_text(value).encode("utf-8")).hexdigest()


def quote(value: Any) -> str:
    """Wrap in double quotes, escaping embedded ones."""
    escaped = _text(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def squote(value: Any) -> str:
    """Wrap in single quotes (shell style)."""
    escaped = _text(value).replace("'", "'\\''")
    return f"'{escaped}'"


FILTERS = {
    "b64enc": b64enc,
    "b64dec": b64dec,
    "base64enc": b64enc,
    "base64dec": b64dec,
    "sha256sum": sha256sum,
    "sha512sum": sha512sum,
    "quote": quote,
    "squote": squote,
}


def get_template_env() -> Environment:
    """Return the shared template environment."""
    global _template_env
    if _template_env is None:
        env = Environment(
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )
        env.filters.update(FILTERS)
        _template_env = env
    return _template_env


def render_template(source: str, fields: Mapping[str, Any]) -> str:
    """Render ``source`` with ``fields`` as context.

    Args:
        source: Jinja2 template source.
        fields: Field map of the resolved secret.

    Returns:
        The rendered text.

    Raises:
        TemplateRenderError: On syntax errors, undefined names or filter
            failures.
    """
    if not source:
        raise TemplateRenderError("template is empty")
    context: dict[str, Any] = dict(fields)
    context["fields"] = dict(fields)
    try:
        template = get_template_env().from_string(source)
        return template.render(context)
    except TemplateError as e:
        raise TemplateRenderError(f"template error: {e}") from e
    except (ValueError, TypeError) as e:
        raise TemplateRenderError(f"template function failed: {e}") from e


__all__ = ["FILTERS", "get_template_env", "render_template"]
