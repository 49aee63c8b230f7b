"""OpenTelemetry spans around Keeper, cloud and Kubernetes round trips.

Every call that leaves the process (record listing, file download,
locator lookups, Secret reconciliation) and every agent tick runs inside
a ``keeper.<operation>`` span.

Spans carry record titles, UIDs, Secret names and counts. They never
carry field values; exception messages are passed through
``sanitize_error_message`` before they are attached.

Example:
    >>> with secrets_span(get_tracer(), "get_records", provider="keeper") as span:
    ...     span.set_attribute(ATTR_COUNT, 3)
"""

from __future__ import annotations

import functools
import re
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

if TYPE_CHECKING:
    from collections.abc import Iterator

TRACER_NAME = "keeper_injector"
SPAN_PREFIX = "keeper."

ATTR_OPERATION = "keeper.operation"
ATTR_PROVIDER = "keeper.provider"
ATTR_TARGET = "keeper.target"
ATTR_COUNT = "keeper.record_count"
ATTR_NAMESPACE = "k8s.namespace.name"

_CREDENTIAL_ASSIGNMENT = re.compile(
    r"(?P<key>password|secret|private_key|client_key|token|api_key|authorization|credential)"
    r"(?P<sep>\s*[=:]\s*)\S+",
    re.IGNORECASE,
)
_URL_USERINFO = re.compile(r"://[^@/\s]+:[^@/\s]+@")


def sanitize_error_message(msg: str, max_length: int = 500) -> str:
    """Redact ``key=value`` credentials and URL user info, then truncate.

    Example:
        >>> sanitize_error_message("login failed: password=hunter2")
        'login failed: password=<REDACTED>'
    """
    redacted = _URL_USERINFO.sub("://<REDACTED>@", msg)
    redacted = _CREDENTIAL_ASSIGNMENT.sub(r"\g<key>\g<sep><REDACTED>", redacted)
    return redacted[:max_length]


@functools.lru_cache(maxsize=None)
def get_tracer(name: str = TRACER_NAME) -> trace.Tracer:
    """Return the tracer for ``name``, created once per process."""
    return trace.get_tracer(name)


def reset_tracer() -> None:
    """Forget cached tracers so a new global provider takes effect."""
    get_tracer.cache_clear()


@contextmanager
def secrets_span(
    tracer: trace.Tracer,
    operation: str,
    *,
    provider: str | None = None,
    target: str | None = None,
    extra_attributes: dict[str, Any] | None = None,
) -> Iterator[trace.Span]:
    """Run the body inside a ``keeper.<operation>`` span.

    The span ends OK when the body returns. On an exception it ends with
    ERROR status and the exception type and sanitized message, and the
    exception propagates.

    Args:
        tracer: Tracer to start the span on.
        operation: Short operation name, e.g. ``get_records``.
        provider: Where the call goes (``keeper``, ``kubernetes``, ``aws``, ...).
        target: Record title or UID, file name or Secret name. Never a value.
        extra_attributes: Further span attributes.

    Yields:
        The current span.
    """
    attributes: dict[str, Any] = {ATTR_OPERATION: operation}
    if provider is not None:
        attributes[ATTR_PROVIDER] = provider
    if target is not None:
        attributes[ATTR_TARGET] = target
    attributes.update(extra_attributes or {})

    with tracer.start_as_current_span(
        SPAN_PREFIX + operation,
        attributes=attributes,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        try:
            yield span
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, type(e).__name__))
            span.set_attribute("exception.type", type(e).__name__)
            span.set_attribute("exception.message", sanitize_error_message(str(e)))
            raise
        span.set_status(Status(StatusCode.OK))


__all__ = [
    "ATTR_COUNT",
    "ATTR_NAMESPACE",
    "ATTR_OPERATION",
    "ATTR_PROVIDER",
    "ATTR_TARGET",
    "SPAN_PREFIX",
    "TRACER_NAME",
    "get_tracer",
    "reset_tracer",
    "sanitize_error_message",
    "secrets_span",
]
