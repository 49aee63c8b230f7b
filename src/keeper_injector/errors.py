"""Custom exceptions for the Keeper injector.

Exception Hierarchy:
    InjectorError (base)
    ├── ConfigInvalidError (also ValueError)
    │   ├── NotationInvalidError
    │   └── OutputPathError
    ├── RecordNotFoundError
    │   └── FolderNotFoundError
    ├── FieldNotFoundError
    ├── AmbiguousTitleError
    ├── BackendUnavailableError (also ConnectionError)
    ├── BackendDataError
    ├── TemplateRenderError
    ├── SizeLimitExceededError
    ├── ConflictPolicyViolationError
    ├── CredentialLocatorError
    ├── KubernetesAPIError
    └── ResolutionFailedError

Parsing errors (ConfigInvalidError and subclasses) are never retried and
abort the whole injection plan. Fetch and render errors are scoped to a
single plan entry.

Example:
    >>> from keeper_injector.errors import RecordNotFoundError
    >>> raise RecordNotFoundError("db-creds")
    RecordNotFoundError: Record 'db-creds' not found
"""

from __future__ import annotations


class InjectorError(Exception):
    """Base exception for all injector errors.

    Attributes:
        message: Human-readable error message.

    Example:
        >>> try:
        ...     fetcher.get_secret("missing")
        ... except InjectorError as e:
        ...     print(f"Injection error: {e}")
    """

    def __init__(self, message: str) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error message.
        """
        self.message = message
        super().__init__(message)


class ConfigInvalidError(InjectorError, ValueError):
    """Raised when annotations or the structured config document are malformed.

    Attributes:
        key: The annotation key or document path that failed, if known.
    """

    def __init__(self, message: str, *, key: str = "") -> None:
        self.key = key
        if key:
            message = f"{key}: {message}"
        InjectorError.__init__(self, message)


class NotationInvalidError(ConfigInvalidError):
    """Raised when a keeper:// notation string cannot be parsed.

    Attributes:
        notation: The offending notation.
        reason: Why parsing failed.
    """

    def __init__(self, notation: str, reason: str) -> None:
        self.notation = notation
        self.reason = reason
        super().__init__(f"invalid notation '{notation}': {reason}")


class OutputPathError(ConfigInvalidError):
    """Raised when an output path escapes the shared secrets mount."""

    def __init__(self, path: str, mount_root: str) -> None:
        self.path = path
        self.mount_root = mount_root
        super().__init__(f"output path '{path}' is outside mount root '{mount_root}'")


class RecordNotFoundError(InjectorError):
    """Raised when no record matches a title or UID.

    Attributes:
        record: The record title or UID that was requested.
    """

    def __init__(self, record: str, *, detail: str = "") -> None:
        self.record = record
        message = f"Record '{record}' not found"
        if detail:
            message = f"{message} {detail}"
        super().__init__(message)


class FolderNotFoundError(RecordNotFoundError):
    """Raised when a folder UID or path does not exist."""

    def __init__(self, folder: str, *, detail: str = "") -> None:
        self.folder = folder
        self.record = folder
        message = f"Folder '{folder}' not found"
        if detail:
            message = f"{message}: {detail}"
        InjectorError.__init__(self, message)


class FieldNotFoundError(InjectorError):
    """Raised when a record lacks a requested field or file.

    Attributes:
        record: Record title or UID.
        field: Field label, type or file name.
    """

    def __init__(self, record: str, field: str) -> None:
        self.record = record
        self.field = field
        super().__init__(f"Field '{field}' not found in record '{record}'")


class AmbiguousTitleError(InjectorError):
    """Raised under strict lookup when several records share a title.

    Attributes:
        title: The ambiguous title.
        count: Number of matching records.
    """

    def __init__(self, title: str, count: int) -> None:
        self.title = title
        self.count = count
        super().__init__(
            f"{count} records found with title '{title}' (strict lookup enabled)"
        )


class BackendUnavailableError(InjectorError, ConnectionError):
    """Raised when the secrets backend cannot be reached or rejects our credentials.

    The retry helper retries it, along with raw ConnectionError and
    TimeoutError (see ``retry.RETRYABLE_EXCEPTIONS``).

    Attributes:
        reason: Additional context about the failure.
    """

    def __init__(self, *, reason: str = "") -> None:
        self.reason = reason
        message = "Keeper Secrets Manager unavailable"
        if reason:
            message = f"{message}: {reason}"
        InjectorError.__init__(self, message)


class BackendDataError(InjectorError):
    """Raised when the backend returns data we cannot interpret."""


class TemplateRenderError(InjectorError):
    """Raised when an output format or template cannot be rendered.

    Attributes:
        entry: Name of the plan entry being rendered.
    """

    def __init__(self, message: str, *, entry: str = "") -> None:
        self.entry = entry
        if entry:
            message = f"{entry}: {message}"
        super().__init__(message)


class SizeLimitExceededError(InjectorError):
    """Raised when a mirrored Kubernetes Secret would exceed the platform limit.

    Attributes:
        name: Secret name.
        size: Computed size in bytes.
        limit: Maximum allowed size in bytes.
    """

    def __init__(self, name: str, size: int, limit: int) -> None:
        self.name = name
        self.size = size
        self.limit = limit
        super().__init__(
            f"Secret '{name}' size {size} bytes exceeds maximum {limit} bytes"
        )


class ConflictPolicyViolationError(InjectorError):
    """Raised by the ``fail`` conflict policy when the target Secret exists."""

    def __init__(self, name: str, namespace: str) -> None:
        self.name = name
        self.namespace = namespace
        super().__init__(
            f"Secret '{name}' already exists in namespace '{namespace}' (mode: fail)"
        )


class CredentialLocatorError(InjectorError):
    """Raised when the backend's own credential cannot be located.

    Attributes:
        method: The locator method in use.
    """

    def __init__(self, method: str, reason: str) -> None:
        self.method = method
        self.reason = reason
        super().__init__(f"Failed to load Keeper config via '{method}': {reason}")


class KubernetesAPIError(InjectorError):
    """Raised when the Kubernetes API rejects a read or write.

    Attributes:
        status: HTTP status returned by the API server, or 0 if unknown.
        resource: The object being accessed, as ``namespace/name``.
    """

    def __init__(self, resource: str, *, status: int = 0, reason: str = "") -> None:
        self.resource = resource
        self.status = status
        if status == 403:
            message = f"Access denied to '{resource}'"
        else:
            message = f"Kubernetes API error for '{resource}'"
            if status:
                message = f"{message} (status {status})"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ResolutionFailedError(InjectorError):
    """Raised when entries failed with no usable cache and fail-on-error is set.

    Attributes:
        failures: Mapping of entry key to error message.
    """

    def __init__(self, failures: dict[str, str]) -> None:
        self.failures = dict(failures)
        summary = ", ".join(sorted(self.failures))
        super().__init__(f"Failed to resolve {len(self.failures)} entries: {summary}")


__all__ = [
    "AmbiguousTitleError",
    "BackendDataError",
    "BackendUnavailableError",
    "ConfigInvalidError",
    "ConflictPolicyViolationError",
    "CredentialLocatorError",
    "FieldNotFoundError",
    "FolderNotFoundError",
    "InjectorError",
    "KubernetesAPIError",
    "NotationInvalidError",
    "OutputPathError",
    "RecordNotFoundError",
    "ResolutionFailedError",
    "SizeLimitExceededError",
    "TemplateRenderError",
]
