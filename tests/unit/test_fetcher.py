"""Unit tests for SecretFetcher against the in-memory backend."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import pytest

from keeper_injector.errors import (
    AmbiguousTitleError,
    BackendUnavailableError,
    FieldNotFoundError,
    FolderNotFoundError,
    InjectorError,
    RecordNotFoundError,
)
from keeper_injector.fetcher import SecretFetcher, looks_like_uid, value_to_bytes
from keeper_injector.models import FolderRef, SecretFormat, SecretRef
from keeper_injector.notation import Notation, Selector

DB_UID = "dbCredsUid000000000001"


def ref(name: str, **values: Any) -> SecretRef:
    """Plain-name SecretRef with a default output path."""
    return SecretRef(name=name, output_path=f"/keeper/secrets/{name}.json", **values)


def notation_ref(notation: str, **values: Any) -> SecretRef:
    """Notation SecretRef with a default output path."""
    return SecretRef(
        name="n",
        notation=notation,
        output_path="/keeper/secrets/n",
        format=SecretFormat.RAW,
        **values,
    )


class TestLookup:
    """Test record lookup by title and UID."""

    def test_get_secret_by_title(self, fetcher: SecretFetcher) -> None:
        """Test a title returns every field of the record."""
        resolved = fetcher.get_secret("db-creds")

        assert resolved.uid == DB_UID
        assert resolved.fields == {
            "login": "admin",
            "password": "s3cret",
            "host": "db.internal",
            "notes": "primary database",
        }

    def test_get_secret_by_uid(self, fetcher: SecretFetcher, fake_backend: Any) -> None:
        """Test UID-shaped names are fetched by UID without a full listing."""
        resolved = fetcher.get_secret(DB_UID)

        assert resolved.title == "db-creds"
        assert fake_backend.uid_calls == 1
        assert fake_backend.list_calls == 0

    def test_uid_shaped_title_falls_back(
        self, make_backend: Callable[..., Any], record_factory: Callable[..., Any]
    ) -> None:
        """Test a title that looks like a UID still matches by title."""
        title = "A" * 22
        backend = make_backend([record_factory("otherUid00000000000001", title, {"login": "x"})])

        resolved = SecretFetcher(backend).get_secret(title)

        assert resolved.fields == {"login": "x"}

    def test_not_found(self, fetcher: SecretFetcher) -> None:
        """Test unknown names raise RecordNotFoundError."""
        with pytest.raises(RecordNotFoundError, match="missing"):
            fetcher.get_secret("missing")

    def test_looks_like_uid(self) -> None:
        """Test the UID shape check."""
        assert looks_like_uid(DB_UID) is True
        assert looks_like_uid("db-creds") is False


class TestAmbiguousTitles:
    """Test two records titled 'database'."""

    @pytest.fixture
    def backend(
        self, make_backend: Callable[..., Any], record_factory: Callable[..., Any]
    ) -> Any:
        return make_backend(
            [
                record_factory("firstUid00000000000001", "database", {"password": "one"}),
                record_factory("secondUid0000000000002", "database", {"password": "two"}),
            ]
        )

    def test_strict_lookup_raises(self, backend: Any) -> None:
        """Test strict lookup refuses to guess."""
        fetcher = SecretFetcher(backend, strict_lookup=True)

        with pytest.raises(AmbiguousTitleError) as exc_info:
            fetcher.get_secret("database")

        assert exc_info.value.count == 2

    def test_non_strict_takes_first(self, backend: Any) -> None:
        """Test non-strict lookup resolves to the first listed record."""
        resolved = SecretFetcher(backend).get_secret("database")

        assert resolved.uid == "firstUid00000000000001"
        assert resolved.fields["password"] == "one"


class TestResolveRef:
    """Test resolve_ref for record and file references."""

    def test_field_subset_in_requested_order(self, fetcher: SecretFetcher) -> None:
        """Test selected fields are returned in the order requested."""
        resolved = fetcher.resolve_ref(ref("db-creds", fields=("password", "login")))

        assert list(resolved.fields) == ["password", "login"]

    def test_missing_field(self, fetcher: SecretFetcher) -> None:
        """Test a missing selected field raises FieldNotFoundError."""
        with pytest.raises(FieldNotFoundError) as exc_info:
            fetcher.resolve_ref(ref("db-creds", fields=("password", "port")))

        assert exc_info.value.field == "port"

    def test_file_reference(self, fetcher: SecretFetcher, fake_backend: Any) -> None:
        """Test file references download the attachment."""
        resolved = fetcher.resolve_ref(
            ref("tls-cert", is_file=True, file_name="cert.pem", format=SecretFormat.RAW)
        )

        assert resolved.file_content is not None
        assert resolved.file_content.startswith(b"-----BEGIN CERTIFICATE-----")
        assert fake_backend.download_calls == 1

    def test_file_by_title(self, fetcher: SecretFetcher) -> None:
        """Test attachments can be addressed by their title."""
        assert fetcher.get_file_content("tls-cert", "Server cert").startswith(b"-----BEGIN")

    def test_missing_file(self, fetcher: SecretFetcher) -> None:
        """Test unknown attachments raise FieldNotFoundError."""
        with pytest.raises(FieldNotFoundError, match="key.pem"):
            fetcher.get_file_content("tls-cert", "key.pem")


class TestBatchResolve:
    """Test batch resolution with one shared listing."""

    @pytest.mark.parametrize("count", [0, 1, 5, 50])
    def test_one_listing_call(
        self,
        count: int,
        make_backend: Callable[..., Any],
        record_factory: Callable[..., Any],
    ) -> None:
        """Test N plain-name references cost exactly one listing call."""
        records = [
            record_factory(f"uid{i:019d}", f"secret-{i}", {"password": f"pw-{i}"})
            for i in range(count)
        ]
        backend = make_backend(records)
        refs = [ref(f"secret-{i}") for i in range(count)]

        result = SecretFetcher(backend).batch_resolve(refs)

        assert result.ok
        assert len(result.resolved) == count
        assert result.listing_calls == 1
        assert backend.list_calls == 1
        assert backend.uid_calls == 0
        assert all(result.resolved[i].fields["password"] == f"pw-{i}" for i in range(count))

    def test_failures_do_not_abort_siblings(self, fetcher: SecretFetcher) -> None:
        """Test one missing record leaves the others resolved."""
        result = fetcher.batch_resolve([ref("db-creds"), ref("missing"), ref("api-keys")])

        assert set(result.resolved) == {0, 2}
        assert isinstance(result.errors[1], RecordNotFoundError)
        assert not result.ok

    def test_listing_failure(self, fetcher: SecretFetcher, fake_backend: Any) -> None:
        """Test a failed listing fails plain-name references but not notations."""
        fake_backend.fail_next()

        result = fetcher.batch_resolve(
            [ref("db-creds"), notation_ref("db-creds/field/password")]
        )

        assert isinstance(result.listing_error, BackendUnavailableError)
        assert result.errors[0] is result.listing_error
        assert result.resolved[1].fields == {"value": "s3cret"}

    def test_prefetched_listing(self, fetcher: SecretFetcher, fake_backend: Any) -> None:
        """Test a supplied listing is reused without another call."""
        listing = fetcher.list_records()

        result = fetcher.batch_resolve([ref("db-creds"), ref("api-keys")], listing=listing)

        assert result.ok
        assert result.listing_calls == 0
        assert fake_backend.list_calls == 1

    def test_runner_wraps_every_call(self, fetcher: SecretFetcher) -> None:
        """Test the runner sees the listing plus one call per reference."""
        calls: list[Any] = []

        def runner(fn: Callable[[], Any]) -> Any:
            calls.append(fn)
            return fn()

        fetcher.batch_resolve([ref("db-creds"), ref("api-keys")], runner=runner)

        assert len(calls) == 3


class TestNotation:
    """Test notation resolution."""

    @pytest.mark.parametrize(
        ("notation", "expected"),
        [
            ("db-creds/field/password", "s3cret"),
            (f"keeper://{DB_UID}/field/login", "admin"),
            ("api-keys/custom_field/api_key", "k-123"),
            ("api-keys/type", "general"),
            ("api-keys/title", "api-keys"),
            ("db-creds/notes", "primary database"),
            ("api-keys/field/phone[1][number]", "555-0199"),
            ("api-keys/field/phone[number]", "555-0100"),
            ("api-keys/field/phone[]", [{"number": "555-0100"}, {"number": "555-0199"}]),
            ("api-keys/field/phone", [{"number": "555-0100"}, {"number": "555-0199"}]),
            ("Production/Databases/mysql/field/password", "mysql-pw"),
        ],
    )
    def test_selectors(self, fetcher: SecretFetcher, notation: str, expected: Any) -> None:
        """Test each selector yields a one-entry map keyed 'value'."""
        resolved = fetcher.resolve_ref(notation_ref(notation))

        assert resolved.fields == {"value": expected}

    def test_whole_record(self, fetcher: SecretFetcher) -> None:
        """Test a whole-record notation yields every field."""
        resolved = fetcher.resolve_ref(notation_ref("keeper://db-creds"))

        assert resolved.fields["login"] == "admin"
        assert resolved.fields["password"] == "s3cret"

    def test_file(self, fetcher: SecretFetcher) -> None:
        """Test file notations yield attachment bytes."""
        content = fetcher.get_by_notation("keeper://tls-cert/file/cert.pem")

        assert content.startswith(b"-----BEGIN CERTIFICATE-----")

    def test_get_by_notation_bytes(self, fetcher: SecretFetcher) -> None:
        """Test values are encoded as UTF-8 text or JSON."""
        assert fetcher.get_by_notation("db-creds/field/password") == b"s3cret"
        assert json.loads(fetcher.get_by_notation("keeper://mysql")) == {"password": "mysql-pw"}

    @pytest.mark.parametrize(
        ("notation", "error"),
        [
            ("db-creds/field/port", FieldNotFoundError),
            ("api-keys/field/phone[5]", FieldNotFoundError),
            ("db-creds/custom_field/password", FieldNotFoundError),
            ("db-creds/field/login[number]", FieldNotFoundError),
            ("Production/Missing/mysql/field/password", FolderNotFoundError),
            ("Production/mysql/field/password", RecordNotFoundError),
            ("nobody/field/password", RecordNotFoundError),
        ],
    )
    def test_failures(self, fetcher: SecretFetcher, notation: str, error: type) -> None:
        """Test missing records, folders and fields."""
        with pytest.raises(error):
            fetcher.resolve_ref(notation_ref(notation))

    @pytest.mark.parametrize(
        ("selector", "message"),
        [(Selector.FIELD, "names no field"), (Selector.FILE, "names no file")],
    )
    def test_selector_without_parameter(
        self, fetcher: SecretFetcher, selector: Selector, message: str
    ) -> None:
        """Test a hand-built notation missing its parameter is rejected."""
        with pytest.raises(InjectorError, match=message):
            fetcher.resolve_notation(Notation(record="db-creds", selector=selector))


class TestFolders:
    """Test folder listing."""

    def test_list_folder_by_path(self, fetcher: SecretFetcher) -> None:
        """Test a folder path resolves through the tree."""
        records = fetcher.list_folder(FolderRef(folder_path="Production/Databases"))

        assert [r.title for r in records] == ["mysql"]

    def test_list_folder_by_uid(self, fetcher: SecretFetcher, fake_backend: Any) -> None:
        """Test a folder UID skips the folder listing."""
        records = fetcher.list_folder(FolderRef(folder_uid="folderDbs0000000000002"))

        assert [r.title for r in records] == ["mysql"]
        assert fake_backend.folder_calls == 0

    def test_unknown_folder(self, fetcher: SecretFetcher) -> None:
        """Test unknown folder paths raise FolderNotFoundError."""
        with pytest.raises(FolderNotFoundError):
            fetcher.list_folder(FolderRef(folder_path="Staging"))


class TestValueToBytes:
    """Test value_to_bytes."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [("text", b"text"), (b"\x00\x01", b"\x00\x01"), ([1, 2], b"[1, 2]"), (3, b"3")],
    )
    def test_encoding(self, value: Any, expected: bytes) -> None:
        """Test text, bytes and structured values."""
        assert value_to_bytes(value) == expected
