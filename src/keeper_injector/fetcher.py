"""Secret resolution against the secrets backend.

SecretFetcher turns plan entries into ResolvedSecret values:

- Plain-name references are looked up in a single backend listing,
  however many of them a plan contains.
- Notation references are resolved individually and may walk the
  folder tree when the notation carries a folder path.
- File references download one attachment each.

Title lookups are not unique in Keeper. Under strict lookup an ambiguous
title is an error; otherwise the first record in listing order wins and
a warning is logged.

Example:
    >>> fetcher = SecretFetcher(KeeperBackend.from_config(config))
    >>> fetcher.get_secret("db-creds").fields["password"]
    '...'
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

import structlog

from keeper_injector.backend import BackendField, BackendRecord, SecretsBackend
from keeper_injector.errors import (
    AmbiguousTitleError,
    FieldNotFoundError,
    InjectorError,
    RecordNotFoundError,
)
from keeper_injector.folders import FolderTree
from keeper_injector.models import FolderRef, Resolution, ResolvedSecret, SecretRef
from keeper_injector.notation import Notation, Selector, parse_notation

logger = structlog.get_logger(__name__)

UID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{22}$")
NOTATION_VALUE_KEY = "value"

T = TypeVar("T")
Runner = Callable[[Callable[[], Any]], Any]


class _Identified(Protocol):
    @property
    def uid(self) -> str: ...

    @property
    def title(self) -> str: ...


RecordT = TypeVar("RecordT", bound=_Identified)


def looks_like_uid(name: str) -> bool:
    """Return True when ``name`` has the shape of a Keeper record UID."""
    return bool(UID_PATTERN.match(name))


def to_resolved(record: BackendRecord) -> ResolvedSecret:
    """Convert a backend record into a ResolvedSecret with all fields."""
    return ResolvedSecret(
        uid=record.uid,
        title=record.title,
        record_type=record.record_type,
        fields=record.field_map(),
    )


def value_to_bytes(value: Any) -> bytes:
    """Encode a selected value: text as UTF-8, anything else as JSON."""
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    return json.dumps(value).encode("utf-8")


def _direct(fn: Callable[[], T]) -> T:
    return fn()


@dataclass
class BatchResult:
    """Outcome of resolving several references in one pass.

    Attributes:
        resolved: Successfully resolved entries keyed by reference index.
        errors: Failures keyed by reference index.
        listing: The shared listing, for reuse by folder lookups.
        listing_error: Why the shared listing could not be fetched.
        listing_calls: Backend listing calls issued for this batch.
    """

    resolved: dict[int, ResolvedSecret] = field(default_factory=dict)
    errors: dict[int, Exception] = field(default_factory=dict)
    listing: Sequence[BackendRecord] | None = None
    listing_error: Exception | None = None
    listing_calls: int = 0

    @property
    def ok(self) -> bool:
        """Return True when no entry failed."""
        return not self.errors


class SecretFetcher:
    """Resolve plan entries against a SecretsBackend.

    Args:
        backend: Backend used for every round trip.
        strict_lookup: Fail on ambiguous titles instead of taking the
            first match.
    """

    def __init__(self, backend: SecretsBackend, *, strict_lookup: bool = False) -> None:
        self._backend = backend
        self.strict_lookup = strict_lookup

    @property
    def backend(self) -> SecretsBackend:
        """Return the underlying backend."""
        return self._backend

    # =========================================================================
    # Listing and lookup
    # =========================================================================

    def list_records(self) -> list[BackendRecord]:
        """Fetch every record with one backend call."""
        return self._backend.get_records()

    def list_all(self) -> list[ResolvedSecret]:
        """Fetch every record with one backend call, as ResolvedSecret values."""
        return [to_resolved(record) for record in self.list_records()]

    def find(self, records: Sequence[RecordT], name: str) -> RecordT:
        """Find a record by UID or title in an existing listing.

        UID-shaped names are matched against UIDs first and fall back to
        titles, since a title may look like a UID.

        Args:
            records: Listing to search, in backend order.
            name: Record UID or title.

        Returns:
            The matching record.

        Raises:
            RecordNotFoundError: If nothing matches.
            AmbiguousTitleError: If several titles match under strict lookup.
        """
        if looks_like_uid(name):
            for record in records:
                if record.uid == name:
                    return record

        matches = [record for record in records if record.title == name]
        if not matches:
            raise RecordNotFoundError(name)
        return self._pick(matches, name)

    def _pick(self, matches: Sequence[RecordT], name: str, **context: Any) -> RecordT:
        if len(matches) > 1:
            if self.strict_lookup:
                raise AmbiguousTitleError(name, len(matches))
            logger.warning(
                "fetcher.title_ambiguous",
                title=name,
                count=len(matches),
                chosen_uid=matches[0].uid,
                **context,
            )
        return matches[0]

    def _lookup(self, name: str, listing: Sequence[BackendRecord] | None = None) -> BackendRecord:
        if listing is not None:
            return self.find(listing, name)
        if looks_like_uid(name):
            records = self._backend.get_records([name])
            if records:
                return self.find(records, name)
        return self.find(self.list_records(), name)

    def get_secret(self, name: str) -> ResolvedSecret:
        """Fetch one record by UID or title with all of its fields."""
        return to_resolved(self._lookup(name))

    # =========================================================================
    # Per-reference resolution
    # =========================================================================

    def resolve_ref(
        self, ref: SecretRef, listing: Sequence[BackendRecord] | None = None
    ) -> ResolvedSecret:
        """Resolve one SecretRef.

        Args:
            ref: The reference to resolve.
            listing: Optional pre-fetched listing used for plain-name and
                file lookups. Notation references never use it.

        Returns:
            The resolved secret. File and file-notation references carry
            ``file_content``; others carry ``fields``.

        Raises:
            RecordNotFoundError: No record matches.
            FieldNotFoundError: A selected field or file is missing.
            AmbiguousTitleError: Ambiguous title under strict lookup.
            BackendUnavailableError: The backend could not be reached.
        """
        resolution = ref.resolution
        if resolution is Resolution.NOTATION:
            if not ref.notation:
                raise InjectorError(f"entry '{ref.display_name}' has no notation")
            return self.resolve_notation(parse_notation(ref.notation))

        record = self._lookup(ref.name, listing)

        if resolution is Resolution.FILE:
            if not ref.file_name:
                raise InjectorError(f"entry '{ref.display_name}' names no file")
            return ResolvedSecret(
                uid=record.uid,
                title=record.title,
                record_type=record.record_type,
                file_content=self._download(record, ref.file_name),
            )

        resolved = to_resolved(record)
        missing = [name for name in ref.fields if name not in resolved.fields]
        if missing:
            raise FieldNotFoundError(ref.name, missing[0])
        if not ref.fields:
            return resolved
        return resolved.model_copy(update={"fields": resolved.select(ref.fields)})

    def batch_resolve(
        self,
        refs: Sequence[SecretRef],
        *,
        listing: Sequence[BackendRecord] | None = None,
        runner: Runner | None = None,
    ) -> BatchResult:
        """Resolve many references with one shared listing call.

        Plain-name and file references are looked up in the shared listing;
        notation references and file downloads issue their own calls.
        Failures are collected per reference and never abort siblings.

        Args:
            refs: References to resolve, in plan order.
            listing: Pre-fetched listing; when given no listing call is made.
            runner: Wraps every backend-touching call, e.g. with retries.

        Returns:
            BatchResult keyed by position in ``refs``.
        """
        run: Runner = runner or _direct
        result = BatchResult(listing=listing)

        if listing is None:
            try:
                result.listing_calls += 1
                listing = run(self.list_records)
                result.listing = listing
            except (InjectorError, OSError) as e:
                result.listing_error = e
                logger.error("fetcher.listing_failed", error=str(e))

        for index, ref in enumerate(refs):
            if ref.resolution is not Resolution.NOTATION and listing is None:
                result.errors[index] = result.listing_error or InjectorError(
                    "record listing unavailable"
                )
                continue
            try:
                result.resolved[index] = run(lambda ref=ref: self.resolve_ref(ref, listing))
            except (InjectorError, OSError) as e:
                logger.error(
                    "fetcher.resolve_failed",
                    secret=ref.display_name,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                result.errors[index] = e
        return result

    # =========================================================================
    # Notation
    # =========================================================================

    def _locate(self, notation: Notation) -> BackendRecord:
        if not notation.folder_path:
            return self._lookup(notation.record)

        tree = self.build_folder_tree()
        folder_uid = tree.resolve_path(notation.folder_path)
        matches = [
            record
            for record in self.list_records()
            if record.in_folder(folder_uid)
            and notation.record in (record.title, record.uid)
        ]
        if not matches:
            raise RecordNotFoundError(
                notation.record, detail=f"in folder path '{notation.folder_path}'"
            )
        return self._pick(matches, notation.record, folder_path=notation.folder_path)

    def _select_value(self, record: BackendRecord, notation: Notation) -> Any:
        selector = notation.selector
        if selector is Selector.TYPE:
            return record.record_type
        if selector is Selector.TITLE:
            return record.title
        if selector is Selector.NOTES:
            return record.notes

        if not notation.parameter:
            raise InjectorError(f"notation '{notation.uri}' names no field")
        item = record.find_field(
            notation.parameter, custom_only=selector is Selector.CUSTOM_FIELD
        )
        if item is None or not item.value:
            raise FieldNotFoundError(notation.record_locator, notation.parameter)
        return _pick_value(item, notation)

    def resolve_notation(self, notation: Notation) -> ResolvedSecret:
        """Resolve a parsed notation into a ResolvedSecret.

        Whole-record notations yield every field; file notations yield the
        attachment bytes; every other selector yields a one-entry field map
        keyed by ``value``.
        """
        record = self._locate(notation)
        base = {"uid": record.uid, "title": record.title, "record_type": record.record_type}

        if notation.selector is Selector.RECORD:
            return to_resolved(record)
        if notation.selector is Selector.FILE:
            if not notation.parameter:
                raise InjectorError(f"notation '{notation.uri}' names no file")
            return ResolvedSecret(**base, file_content=self._download(record, notation.parameter))

        return ResolvedSecret(
            **base, fields={NOTATION_VALUE_KEY: self._select_value(record, notation)}
        )

    def get_by_notation(self, notation: str | Notation) -> bytes:
        """Resolve a notation to raw bytes.

        Args:
            notation: Notation string or parsed Notation.

        Returns:
            Attachment bytes, the selected value (text as UTF-8, structured
            values as JSON), or the whole record's field map as JSON.
        """
        parsed = parse_notation(notation) if isinstance(notation, str) else notation
        resolved = self.resolve_notation(parsed)
        if resolved.file_content is not None:
            return resolved.file_content
        if parsed.selector is Selector.RECORD:
            return value_to_bytes(resolved.fields)
        return value_to_bytes(next(iter(resolved.fields.values())))

    # =========================================================================
    # Files and folders
    # =========================================================================

    def _download(self, record: BackendRecord, file_name: str) -> bytes:
        attachment = record.find_file(file_name)
        if attachment is None:
            raise FieldNotFoundError(record.title or record.uid, file_name)
        return self._backend.download_file(attachment)

    def get_file_content(self, record: str, file_name: str) -> bytes:
        """Download an attachment by record UID/title and file name or title."""
        return self._download(self._lookup(record), file_name)

    def build_folder_tree(self) -> FolderTree:
        """Fetch the folder listing and link it into a tree."""
        return FolderTree.build(self._backend.get_folders())

    def folder_uid(self, folder_ref: FolderRef) -> str:
        """Return the folder UID for a FolderRef, walking the tree for paths."""
        if folder_ref.folder_uid:
            return folder_ref.folder_uid
        return self.build_folder_tree().resolve_path(folder_ref.folder_path)

    def list_folder_records(
        self, folder_ref: FolderRef, listing: Sequence[BackendRecord] | None = None
    ) -> list[BackendRecord]:
        """Return the backend records directly inside a folder."""
        uid = self.folder_uid(folder_ref)
        records = listing if listing is not None else self.list_records()
        return [record for record in records if record.in_folder(uid)]

    def list_folder(
        self, folder_ref: FolderRef, listing: Sequence[BackendRecord] | None = None
    ) -> list[ResolvedSecret]:
        """Return every record directly inside a folder.

        Args:
            folder_ref: Folder addressed by UID or path.
            listing: Optional pre-fetched listing to filter.

        Raises:
            FolderNotFoundError: If a folder path does not resolve.
        """
        return [to_resolved(r) for r in self.list_folder_records(folder_ref, listing)]


def _pick_value(item: BackendField, notation: Notation) -> Any:
    values = list(item.value)
    index = notation.parameter_index
    if index is None:
        value: Any = values[0] if len(values) == 1 or notation.parameter_property else values
    elif index == "":
        value = values
    else:
        position = int(index)
        if position >= len(values):
            raise FieldNotFoundError(notation.record_locator, f"{notation.parameter}[{index}]")
        value = values[position]

    prop = notation.parameter_property
    if prop is None:
        return value
    if not isinstance(value, dict) or prop not in value:
        raise FieldNotFoundError(notation.record_locator, f"{notation.parameter}[{prop}]")
    return value[prop]


__all__ = [
    "BatchResult",
    "SecretFetcher",
    "UID_PATTERN",
    "looks_like_uid",
    "to_resolved",
    "value_to_bytes",
]
