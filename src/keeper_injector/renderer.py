"""Render resolved secrets into output file contents.

``render`` is a pure function from a field map, a format and an optional
template to bytes. Attachments and other binary values are written
verbatim and never pass through a format or template.

Formats:
    json        2-space indented object, fields in record order
    env         ``KEY=value`` lines; keys upper-cased, values shell-quoted
    raw         the single selected value
    properties  ``key=value`` lines, sorted
    yaml        PyYAML ``safe_dump``
    ini         ``[secret]`` section, plus one section per ``section.key`` prefix
"""

from __future__ import annotations

import base64
import json
import re
from collections.abc import Mapping
from typing import Any

import yaml

from keeper_injector.errors import TemplateRenderError
from keeper_injector.models import ResolvedSecret, SecretFormat, SecretRef
from keeper_injector.templates import render_template

DEFAULT_INI_SECTION = "secret"

_ENV_KEY_UNSAFE = re.compile(r"[^A-Z0-9]")
_ENV_QUOTE_TRIGGERS = frozenset(" \n\t\"'=")


def value_to_text(value: Any) -> str:
    """Stringify a field value: text as-is, structured values as JSON."""
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return json.dumps(value)


def to_env_key(key: str) -> str:
    """Upper-case a field name and replace non-alphanumerics with ``_``.

    Example:
        >>> to_env_key("api-key.v2")
        'API_KEY_V2'
    """
    return _ENV_KEY_UNSAFE.sub("_", key.upper())


def escape_env_value(value: str) -> str:
    """Single-quote values containing whitespace, quotes or ``=``."""
    if not any(c in _ENV_QUOTE_TRIGGERS for c in value):
        return value
    return "'" + value.replace("'", "'\\''") + "'"


def _json_default(value: Any) -> Any:
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _render_json(fields: Mapping[str, Any]) -> bytes:
    return json.dumps(dict(fields), indent=2, default=_json_default).encode("utf-8")


def _render_env(fields: Mapping[str, Any]) -> bytes:
    lines = [f"{to_env_key(k)}={escape_env_value(value_to_text(v))}\n" for k, v in fields.items()]
    return "".join(lines).encode("utf-8")


def _render_properties(fields: Mapping[str, Any]) -> bytes:
    lines = [f"{k}={value_to_text(fields[k])}\n" for k in sorted(fields)]
    return "".join(lines).encode("utf-8")


def _render_ini(fields: Mapping[str, Any]) -> bytes:
    sections: dict[str, dict[str, Any]] = {DEFAULT_INI_SECTION: {}}
    for key, value in fields.items():
        section, dot, name = key.partition(".")
        if dot and section and name:
            sections.setdefault(section, {})[name] = value
        else:
            sections[DEFAULT_INI_SECTION][key] = value

    ordered = [DEFAULT_INI_SECTION] + sorted(s for s in sections if s != DEFAULT_INI_SECTION)
    blocks: list[str] = []
    for section in ordered:
        entries = sections[section]
        if section != DEFAULT_INI_SECTION and not entries:
            continue
        body = "".join(f"{k}={value_to_text(entries[k])}\n" for k in sorted(entries))
        blocks.append(f"[{section}]\n{body}")
    return "\n".join(blocks).encode("utf-8")


def _render_yaml(fields: Mapping[str, Any]) -> bytes:
    return yaml.safe_dump(dict(fields), default_flow_style=False, sort_keys=False).encode("utf-8")


def _render_raw(fields: Mapping[str, Any]) -> bytes:
    if len(fields) != 1:
        raise TemplateRenderError(f"raw format requires exactly one field, got {len(fields)}")
    value = next(iter(fields.values()))
    if isinstance(value, bytes):
        return value
    return value_to_text(value).encode("utf-8")


_RENDERERS = {
    SecretFormat.JSON: _render_json,
    SecretFormat.ENV: _render_env,
    SecretFormat.PROPERTIES: _render_properties,
    SecretFormat.INI: _render_ini,
    SecretFormat.YAML: _render_yaml,
    SecretFormat.RAW: _render_raw,
}


def render(
    fields: Mapping[str, Any],
    format: SecretFormat | str = SecretFormat.JSON,
    template: str | None = None,
) -> bytes:
    """Render a field map.

    Args:
        fields: Field name to value mapping.
        format: Output format; ignored when ``template`` is given.
        template: Optional Jinja2 template source.

    Returns:
        The file contents.

    Raises:
        TemplateRenderError: If the template fails, ``raw`` does not get
            exactly one field, or the format is unknown.
    """
    if template:
        return render_template(template, fields).encode("utf-8")
    try:
        fmt = SecretFormat(format)
    except ValueError as e:
        raise TemplateRenderError(f"unknown format '{format}'") from e
    try:
        return _RENDERERS[fmt](fields)
    except (TypeError, ValueError, yaml.YAMLError) as e:
        raise TemplateRenderError(f"cannot render {fmt.value}: {e}") from e


def render_secret(ref: SecretRef, resolved: ResolvedSecret) -> bytes:
    """Render a resolved secret for its reference.

    Attachment content is returned verbatim. Errors name the entry.
    """
    if resolved.file_content is not None:
        return resolved.file_content
    try:
        return render(resolved.fields, ref.format, ref.template)
    except TemplateRenderError as e:
        raise TemplateRenderError(e.message, entry=ref.display_name) from e


def render_folder_record(resolved: ResolvedSecret) -> bytes:
    """Render one folder record as indented JSON."""
    return render(resolved.fields, SecretFormat.JSON)


__all__ = [
    "escape_env_value",
    "render",
    "render_folder_record",
    "render_secret",
    "to_env_key",
    "value_to_text",
]
