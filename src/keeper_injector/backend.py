"""Secrets backend protocol and the Keeper Secrets Manager adapter.

The fetcher talks to the backend through the small SecretsBackend
protocol, so tests can substitute an in-memory implementation. The
production implementation, KeeperBackend, wraps
``keeper_secrets_manager_core.SecretsManager`` and converts SDK records
into plain BackendRecord values at the boundary.

Example:
    >>> backend = KeeperBackend.from_config(ksm_config_json)
    >>> records = backend.get_records()
    >>> records[0].field_map()
    {'login': 'admin', 'password': '...'}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import structlog
from keeper_secrets_manager_core import SecretsManager
from keeper_secrets_manager_core.exceptions import KeeperError
from keeper_secrets_manager_core.storage import InMemoryKeyValueStorage

from keeper_injector.errors import BackendDataError, BackendUnavailableError
from keeper_injector.tracing import ATTR_COUNT, get_tracer, secrets_span

logger = structlog.get_logger(__name__)

PROVIDER = "keeper"

# What the SDK raises on undecryptable or unparsable payloads.
_MALFORMED_ERRORS = (ValueError, TypeError, KeyError, AttributeError)


@dataclass(frozen=True)
class BackendField:
    """One typed field of a record.

    Attributes:
        type: Keeper field type (login, password, host, ...).
        label: User-visible label; may be empty.
        value: Raw value list as stored by Keeper.
        custom: True for fields from the record's custom section.
    """

    type: str
    label: str = ""
    value: tuple[Any, ...] = ()
    custom: bool = False

    @property
    def key(self) -> str:
        """Return the map key for this field: the label, else the type."""
        return self.label or self.type


@dataclass(frozen=True)
class BackendFile:
    """File attachment metadata plus an opaque handle for downloading."""

    uid: str
    name: str
    title: str = ""
    mime_type: str = ""
    size: int = 0
    handle: Any = field(default=None, compare=False, repr=False)

    def matches(self, name: str) -> bool:
        """Return True when ``name`` is the file's name or title."""
        return name in (self.name, self.title)


@dataclass(frozen=True)
class BackendRecord:
    """A record as seen by the fetcher.

    Attributes:
        uid: 22-character record UID.
        title: Record title; not unique.
        record_type: Keeper record type.
        fields: Standard fields followed by custom fields.
        notes: Free-form notes, or "".
        files: File attachments.
        folder_uid: Shared folder containing the record.
        inner_folder_uid: Sub-folder containing the record, if any.
    """

    uid: str
    title: str
    record_type: str = ""
    fields: tuple[BackendField, ...] = ()
    notes: str = ""
    files: tuple[BackendFile, ...] = ()
    folder_uid: str = ""
    inner_folder_uid: str = ""

    def in_folder(self, folder_uid: str) -> bool:
        """Return True when the record lives directly in ``folder_uid``."""
        return folder_uid in (self.folder_uid, self.inner_folder_uid)

    def field_map(self) -> dict[str, Any]:
        """Flatten fields into a mapping.

        Keys are the field label, falling back to the type. Single values
        are unwrapped; multi-value fields stay lists; empty fields are
        skipped. Notes are exposed under ``notes``. Later fields with the
        same key win.
        """
        result: dict[str, Any] = {}
        for item in self.fields:
            if not item.key or not item.value:
                continue
            if len(item.value) == 1:
                result[item.key] = item.value[0]
            else:
                result[item.key] = list(item.value)
        if self.notes:
            result["notes"] = self.notes
        return result

    def find_field(self, name: str, *, custom_only: bool = False) -> BackendField | None:
        """Find a field by type or label.

        Standard fields are matched by type first, then any field by its
        map key (label, else type). With ``custom_only`` only custom
        fields are searched.
        """
        if custom_only:
            candidates = [f for f in self.fields if f.custom]
        else:
            candidates = list(self.fields)
            standard = next((f for f in candidates if not f.custom and f.type == name), None)
            if standard is not None:
                return standard
        return next((f for f in candidates if f.key == name), None)

    def find_file(self, name: str) -> BackendFile | None:
        """Find an attachment by name or title."""
        return next((f for f in self.files if f.matches(name)), None)


@dataclass(frozen=True)
class BackendFolder:
    """One entry of the flat folder listing."""

    uid: str
    parent_uid: str = ""
    name: str = ""


@runtime_checkable
class SecretsBackend(Protocol):
    """The three backend round trips the fetcher needs."""

    def get_records(self, uids: list[str] | None = None) -> list[BackendRecord]:
        """Return records, all of them when ``uids`` is None."""
        ...

    def get_folders(self) -> list[BackendFolder]:
        """Return every folder visible to the application."""
        ...

    def download_file(self, file: BackendFile) -> bytes:
        """Download the content of an attachment."""
        ...


def _convert_fields(raw: Any, *, custom: bool) -> list[BackendField]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise BackendDataError(f"expected a list of fields, got {type(raw).__name__}")
    converted: list[BackendField] = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        value = entry.get("value") or []
        if not isinstance(value, list):
            value = [value]
        converted.append(
            BackendField(
                type=str(entry.get("type") or ""),
                label=str(entry.get("label") or ""),
                value=tuple(value),
                custom=custom,
            )
        )
    return converted


def convert_record(record: Any) -> BackendRecord:
    """Convert a ``keeper_secrets_manager_core`` Record into a BackendRecord.

    Args:
        record: SDK record object.

    Returns:
        The converted record.

    Raises:
        BackendDataError: If the record dictionary is malformed.
    """
    record_dict = getattr(record, "dict", None) or {}
    if not isinstance(record_dict, dict):
        raise BackendDataError(f"record {getattr(record, 'uid', '?')} has no field dictionary")

    fields = _convert_fields(record_dict.get("fields"), custom=False)
    fields += _convert_fields(record_dict.get("custom"), custom=True)

    files = tuple(
        BackendFile(
            uid=str(getattr(f, "f_uid", "") or getattr(f, "uid", "") or ""),
            name=str(getattr(f, "name", "") or ""),
            title=str(getattr(f, "title", "") or ""),
            mime_type=str(getattr(f, "type", "") or ""),
            size=int(getattr(f, "size", 0) or 0),
            handle=f,
        )
        for f in (getattr(record, "files", None) or [])
    )

    return BackendRecord(
        uid=str(getattr(record, "uid", "")),
        title=str(getattr(record, "title", "") or ""),
        record_type=str(getattr(record, "type", "") or ""),
        fields=tuple(fields),
        notes=str(record_dict.get("notes") or ""),
        files=files,
        folder_uid=str(getattr(record, "folder_uid", "") or ""),
        inner_folder_uid=str(getattr(record, "inner_folder_uid", "") or ""),
    )


class KeeperBackend:
    """SecretsBackend backed by the Keeper Secrets Manager SDK.

    Network and authentication failures surface as BackendUnavailableError
    so the retry helper can act on them; malformed records surface as
    BackendDataError.

    Args:
        client: A configured ``SecretsManager``.
    """

    def __init__(self, client: Any) -> None:
        self._client = client
        self._tracer = get_tracer()

    @classmethod
    def from_config(cls, config: str, *, verify_ssl_certs: bool = True) -> KeeperBackend:
        """Create a backend from a KSM config (JSON or base64 JSON).

        Args:
            config: Keeper Secrets Manager application config.
            verify_ssl_certs: Verify the backend's TLS certificate.

        Raises:
            BackendUnavailableError: If the SDK rejects the config.
        """
        try:
            client = SecretsManager(
                config=InMemoryKeyValueStorage(config),
                verify_ssl_certs=verify_ssl_certs,
            )
        except (KeeperError, ValueError) as e:
            raise BackendUnavailableError(reason=f"invalid KSM config: {e}") from e
        return cls(client)

    def get_records(self, uids: list[str] | None = None) -> list[BackendRecord]:
        """Fetch records from Keeper.

        Args:
            uids: Record UIDs to fetch; None fetches every shared record.

        Returns:
            Records in backend listing order.
        """
        with secrets_span(
            self._tracer,
            "get_records",
            provider=PROVIDER,
            extra_attributes={"keeper.uid_count": len(uids or [])},
        ) as span:
            try:
                raw = self._client.get_secrets(uids or None)
            except (KeeperError, OSError) as e:
                logger.error("backend.get_records_failed", error=str(e))
                raise BackendUnavailableError(reason=str(e)) from e
            except _MALFORMED_ERRORS as e:
                logger.error("backend.get_records_failed", error=str(e))
                raise BackendDataError(f"unreadable record listing: {e}") from e
            try:
                records = [convert_record(r) for r in raw or []]
            except _MALFORMED_ERRORS as e:
                logger.error("backend.record_conversion_failed", error=str(e))
                raise BackendDataError(f"malformed record: {e}") from e
            span.set_attribute(ATTR_COUNT, len(records))
            logger.debug("backend.records_fetched", count=len(records))
            return records

    def get_folders(self) -> list[BackendFolder]:
        """Fetch the flat folder listing."""
        with secrets_span(self._tracer, "get_folders", provider=PROVIDER) as span:
            try:
                raw = self._client.get_folders()
            except (KeeperError, OSError) as e:
                logger.error("backend.get_folders_failed", error=str(e))
                raise BackendUnavailableError(reason=str(e)) from e
            except _MALFORMED_ERRORS as e:
                logger.error("backend.get_folders_failed", error=str(e))
                raise BackendDataError(f"unreadable folder listing: {e}") from e
            folders = [
                BackendFolder(
                    uid=str(getattr(f, "folder_uid", "")),
                    parent_uid=str(getattr(f, "parent_uid", "") or ""),
                    name=str(getattr(f, "name", "") or ""),
                )
                for f in raw or []
            ]
            span.set_attribute(ATTR_COUNT, len(folders))
            return folders

    def download_file(self, file: BackendFile) -> bytes:
        """Download an attachment through its SDK handle."""
        if file.handle is None:
            raise BackendDataError(f"file '{file.name}' has no download handle")
        with secrets_span(self._tracer, "download_file", provider=PROVIDER, target=file.name):
            try:
                data = file.handle.get_file_data()
            except (KeeperError, OSError) as e:
                raise BackendUnavailableError(reason=str(e)) from e
            except _MALFORMED_ERRORS as e:
                raise BackendDataError(f"cannot decrypt file '{file.name}': {e}") from e
        if data is None:
            raise BackendDataError(f"failed to get file data for '{file.name}'")
        return bytes(data)


__all__ = [
    "BackendField",
    "BackendFile",
    "BackendFolder",
    "BackendRecord",
    "KeeperBackend",
    "SecretsBackend",
    "convert_record",
]
