"""keeper:// notation parsing.

The notation addresses a whole record or one facet of it::

    [keeper://]<record>[/<selector>[/<parameter>]][:<output path>]

``record`` is a record UID or title, optionally prefixed by a
``/``-separated folder path (``Production/Databases/mysql``). Selectors
are ``field``, ``custom_field`` and ``file`` (which take a parameter)
and ``type``, ``title`` and ``notes`` (which do not). A parameter may
carry an index and a property: ``phone[0][number]``, ``password[]``.

A trailing output path is only recognised when the last ``:`` is
immediately followed by ``/``, so colons inside record titles survive.

Example:
    >>> from keeper_injector.notation import parse_notation
    >>> n = parse_notation("keeper://ABC123/field/password:/app/secrets/db-pass")
    >>> n.record, n.selector.value, n.parameter, n.output_path
    ('ABC123', 'field', 'password', '/app/secrets/db-pass')
    >>> n.uri
    'keeper://ABC123/field/password'
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from enum import Enum

from keeper_injector.errors import NotationInvalidError

SCHEME = "keeper://"

_OUTPUT_SEPARATOR = ":/"
_PARAMETER_PATTERN = re.compile(
    r"^(?P<name>[^\[\]]+)(?:\[(?P<first>[^\[\]]*)\])?(?:\[(?P<second>[^\[\]]*)\])?$"
)


class Selector(str, Enum):
    """Facet of a record addressed by a notation."""

    RECORD = "record"
    FIELD = "field"
    CUSTOM_FIELD = "custom_field"
    FILE = "file"
    TYPE = "type"
    TITLE = "title"
    NOTES = "notes"

    @property
    def takes_parameter(self) -> bool:
        """Return True for selectors that require a parameter."""
        return self in _PARAMETERIZED


_PARAMETERIZED = frozenset({Selector.FIELD, Selector.CUSTOM_FIELD, Selector.FILE})
_KEYWORDS = {s.value: s for s in Selector if s is not Selector.RECORD}


@dataclass(frozen=True)
class Notation:
    """A parsed notation.

    Attributes:
        record: Record UID or title (last segment of the record locator).
        folder_path: Folder path preceding the record, or "".
        selector: Which facet of the record is addressed.
        parameter: Field label/type or file name for parameterised selectors.
        parameter_index: Index inside brackets, "" for ``[]``, None if absent.
        parameter_property: Property name for complex field values.
        output_path: Trailing output path, if one was given.
    """

    record: str
    selector: Selector = Selector.RECORD
    parameter: str | None = None
    parameter_index: str | None = None
    parameter_property: str | None = None
    folder_path: str = ""
    output_path: str | None = None

    @property
    def uri(self) -> str:
        """Return the canonical notation without the output path."""
        return render_notation(self, include_output=False)

    @property
    def record_locator(self) -> str:
        """Return the folder path and record joined by ``/``."""
        if self.folder_path:
            return f"{self.folder_path}/{self.record}"
        return self.record

    @property
    def is_file(self) -> bool:
        """Return True when the notation addresses a file attachment."""
        return self.selector is Selector.FILE

    def without_output(self) -> Notation:
        """Return a copy with the output path removed."""
        return replace(self, output_path=None)


def split_output_path(text: str) -> tuple[str, str | None]:
    """Split a trailing ``:/output/path`` from a notation.

    The scheme's own ``://`` is never treated as a separator.

    Args:
        text: Notation, with or without the ``keeper://`` scheme.

    Returns:
        Tuple of (notation, output path or None).

    Raises:
        NotationInvalidError: If the output path is just ``/``.
    """
    prefix = SCHEME if text.startswith(SCHEME) else ""
    body = text[len(prefix) :]
    cut = body.rfind(_OUTPUT_SEPARATOR)
    if cut <= 0:
        return text, None
    output_path = body[cut + 1 :]
    if output_path.strip("/") == "":
        raise NotationInvalidError(text, "output path is empty")
    return prefix + body[:cut], output_path


def _split_parameter(raw: str, text: str) -> tuple[str, str | None, str | None]:
    match = _PARAMETER_PATTERN.match(raw)
    if match is None:
        raise NotationInvalidError(text, f"malformed parameter '{raw}'")
    name = match.group("name")
    first = match.group("first")
    second = match.group("second")
    if first is None:
        return name, None, None
    if first == "" or first.isdigit():
        if second == "":
            raise NotationInvalidError(text, f"empty property in '{raw}'")
        return name, first, second
    if second is not None:
        raise NotationInvalidError(text, f"index must precede property in '{raw}'")
    return name, None, first


def parse_notation(text: str) -> Notation:
    """Parse a notation string.

    Args:
        text: Notation, with or without the ``keeper://`` scheme and with
            an optional trailing ``:/output/path``.

    Returns:
        The parsed Notation.

    Raises:
        NotationInvalidError: If the record is empty, a parameterised
            selector lacks its parameter, a parameterless selector has
            one, or extra segments follow the parameter.

    Example:
        >>> parse_notation("Production/Databases/mysql/field/password").folder_path
        'Production/Databases'
    """
    raw = text.strip()
    if not raw or raw == SCHEME:
        raise NotationInvalidError(text, "notation is empty")

    notation, output_path = split_output_path(raw)
    if notation.startswith(SCHEME):
        notation = notation[len(SCHEME) :]
    parts = [p for p in notation.strip("/").split("/") if p]
    if not parts:
        raise NotationInvalidError(text, "record is empty")

    selector_at = next((i for i, part in enumerate(parts) if part in _KEYWORDS), None)

    if selector_at is None:
        return Notation(
            record=parts[-1],
            folder_path="/".join(parts[:-1]),
            output_path=output_path,
        )

    if selector_at == 0:
        raise NotationInvalidError(text, "record is empty")

    selector = _KEYWORDS[parts[selector_at]]
    trailing = parts[selector_at + 1 :]
    record = parts[selector_at - 1]
    folder_path = "/".join(parts[: selector_at - 1])

    if not selector.takes_parameter:
        if trailing:
            raise NotationInvalidError(
                text, f"selector '{selector.value}' does not take a parameter"
            )
        return Notation(
            record=record,
            selector=selector,
            folder_path=folder_path,
            output_path=output_path,
        )

    if not trailing:
        raise NotationInvalidError(text, f"selector '{selector.value}' requires a parameter")
    if len(trailing) > 1:
        raise NotationInvalidError(
            text, f"unexpected segments after parameter: '{'/'.join(trailing[1:])}'"
        )

    name, index, prop = _split_parameter(trailing[0], text)
    return Notation(
        record=record,
        selector=selector,
        parameter=name,
        parameter_index=index,
        parameter_property=prop,
        folder_path=folder_path,
        output_path=output_path,
    )


def render_notation(notation: Notation, *, include_output: bool = True) -> str:
    """Render a Notation back to its ``keeper://`` string form.

    ``parse_notation(render_notation(n)) == n`` for every parsed notation.

    Args:
        notation: The notation to render.
        include_output: Append ``:<output_path>`` when one is set.

    Returns:
        The notation string, always with the ``keeper://`` scheme.
    """
    segments = [notation.record_locator]
    if notation.selector is not Selector.RECORD:
        segments.append(notation.selector.value)
    if notation.parameter is not None:
        parameter = notation.parameter
        if notation.parameter_index is not None:
            parameter += f"[{notation.parameter_index}]"
        if notation.parameter_property is not None:
            parameter += f"[{notation.parameter_property}]"
        segments.append(parameter)

    rendered = SCHEME + "/".join(segments)
    if include_output and notation.output_path:
        rendered += f":{notation.output_path}"
    return rendered


def is_notation(text: str) -> bool:
    """Classify an annotation value as notation.

    Values with the ``keeper://`` scheme always are. Scheme-less values
    count only when they parse and address a facet through a selector, so
    ``record:/path`` and ``/abs/path`` are not notations.
    """
    value = text.strip()
    if value.startswith(SCHEME):
        return True
    if not value or value.startswith("/"):
        return False
    try:
        parsed = parse_notation(value)
    except NotationInvalidError:
        return False
    return parsed.selector is not Selector.RECORD


__all__ = [
    "SCHEME",
    "Notation",
    "Selector",
    "is_notation",
    "parse_notation",
    "render_notation",
    "split_output_path",
]
