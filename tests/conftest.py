"""Pytest configuration for keeper-injector tests.

Fixtures:
    - fake_backend: In-memory SecretsBackend with call counters
    - fetcher: SecretFetcher over the fake backend
    - mock_core_api: Mocked kubernetes CoreV1Api
    - api_exception_404/403/500: Real kubernetes ApiException instances
    - base_plan: Minimal InjectionPlan using the ``secret`` locator
"""

from __future__ import annotations

from collections.abc import Callable, Generator
from typing import Any
from unittest.mock import MagicMock

import pytest
import structlog
from kubernetes.client.rest import ApiException

from keeper_injector.backend import BackendField, BackendFile, BackendFolder, BackendRecord
from keeper_injector.errors import BackendUnavailableError
from keeper_injector.fetcher import SecretFetcher
from keeper_injector.models import InjectionPlan, LocatorConfig

DB_UID = "dbCredsUid000000000001"
API_UID = "apiKeysUid000000000002"
CERT_UID = "tlsCertUid000000000003"
MYSQL_UID = "mysqlUid00000000000004"

PROD_FOLDER = "folderProd000000000001"
DB_FOLDER = "folderDbs0000000000002"

CERT_PEM = b"-----BEGIN CERTIFICATE-----\nMIIB\n-----END CERTIFICATE-----\n"


def make_record(
    uid: str,
    title: str,
    fields: dict[str, Any] | None = None,
    *,
    custom: dict[str, Any] | None = None,
    record_type: str = "login",
    notes: str = "",
    files: tuple[BackendFile, ...] = (),
    folder_uid: str = "",
) -> BackendRecord:
    """Build a BackendRecord whose fields are typed by their names."""
    standard = [
        BackendField(type=name, value=tuple(v if isinstance(v, list) else [v]))
        for name, v in (fields or {}).items()
    ]
    extra = [
        BackendField(type="text", label=name, value=(v,), custom=True)
        for name, v in (custom or {}).items()
    ]
    return BackendRecord(
        uid=uid,
        title=title,
        record_type=record_type,
        fields=tuple(standard + extra),
        notes=notes,
        files=files,
        folder_uid=folder_uid,
    )


class FakeBackend:
    """In-memory SecretsBackend that counts its round trips.

    Attributes:
        records: Records returned by a full listing, in order.
        folders: Flat folder listing.
        files: Attachment content by file UID.
        list_calls: Full listings served.
        uid_calls: UID-filtered fetches served.
        folder_calls: Folder listings served.
        download_calls: Attachment downloads served.
        failures: Errors raised by the next calls, one per call.
    """

    def __init__(
        self,
        records: list[BackendRecord] | None = None,
        folders: list[BackendFolder] | None = None,
        files: dict[str, bytes] | None = None,
    ) -> None:
        self.records = list(records or [])
        self.folders = list(folders or [])
        self.files = dict(files or {})
        self.list_calls = 0
        self.uid_calls = 0
        self.folder_calls = 0
        self.download_calls = 0
        self.failures: list[Exception] = []

    def _maybe_fail(self) -> None:
        if self.failures:
            raise self.failures.pop(0)

    def fail_next(self, times: int = 1, error: Exception | None = None) -> None:
        """Make the next ``times`` calls raise ``error`` (backend unavailable by default)."""
        for _ in range(times):
            self.failures.append(error or BackendUnavailableError(reason="connection refused"))

    def get_records(self, uids: list[str] | None = None) -> list[BackendRecord]:
        self._maybe_fail()
        if uids is None:
            self.list_calls += 1
            return list(self.records)
        self.uid_calls += 1
        return [r for r in self.records if r.uid in uids]

    def get_folders(self) -> list[BackendFolder]:
        self._maybe_fail()
        self.folder_calls += 1
        return list(self.folders)

    def download_file(self, file: BackendFile) -> bytes:
        self._maybe_fail()
        self.download_calls += 1
        return self.files[file.uid]

    def set_field(self, uid: str, name: str, value: Any) -> None:
        """Replace one standard field value of a stored record."""
        updated = []
        for record in self.records:
            if record.uid == uid:
                fields = tuple(
                    BackendField(type=f.type, label=f.label, value=(value,), custom=f.custom)
                    if f.key == name
                    else f
                    for f in record.fields
                )
                record = BackendRecord(
                    uid=record.uid,
                    title=record.title,
                    record_type=record.record_type,
                    fields=fields,
                    notes=record.notes,
                    files=record.files,
                    folder_uid=record.folder_uid,
                    inner_folder_uid=record.inner_folder_uid,
                )
            updated.append(record)
        self.records = updated


# =============================================================================
# Backend Fixtures
# =============================================================================


@pytest.fixture
def sample_records() -> list[BackendRecord]:
    """Records used across fetcher, agent and mirror tests."""
    return [
        make_record(
            DB_UID,
            "db-creds",
            {"login": "admin", "password": "s3cret", "host": "db.internal"},
            notes="primary database",
        ),
        make_record(
            API_UID,
            "api-keys",
            {"phone": [{"number": "555-0100"}, {"number": "555-0199"}]},
            custom={"api_key": "k-123"},
            record_type="general",
        ),
        make_record(
            CERT_UID,
            "tls-cert",
            {"login": "tls"},
            files=(BackendFile(uid="fileCert", name="cert.pem", title="Server cert"),),
        ),
        make_record(
            MYSQL_UID,
            "mysql",
            {"password": "mysql-pw"},
            record_type="databaseCredentials",
            folder_uid=DB_FOLDER,
        ),
    ]


@pytest.fixture
def sample_folders() -> list[BackendFolder]:
    """``Production/Databases`` folder hierarchy."""
    return [
        BackendFolder(uid=PROD_FOLDER, parent_uid="", name="Production"),
        BackendFolder(uid=DB_FOLDER, parent_uid=PROD_FOLDER, name="Databases"),
    ]


@pytest.fixture
def fake_backend(
    sample_records: list[BackendRecord], sample_folders: list[BackendFolder]
) -> FakeBackend:
    """In-memory backend seeded with the sample records and folders."""
    return FakeBackend(sample_records, sample_folders, {"fileCert": CERT_PEM})


@pytest.fixture
def fetcher(fake_backend: FakeBackend) -> SecretFetcher:
    """Non-strict fetcher over the fake backend."""
    return SecretFetcher(fake_backend)


@pytest.fixture
def make_backend() -> Callable[..., FakeBackend]:
    """Factory for backends with custom records."""
    return FakeBackend


@pytest.fixture
def record_factory() -> Callable[..., BackendRecord]:
    """Factory for records whose fields are typed by their names."""
    return make_record


# =============================================================================
# Plan Fixtures
# =============================================================================


@pytest.fixture
def base_plan() -> InjectionPlan:
    """Plan with the default locator and no entries."""
    return InjectionPlan(locator=LocatorConfig(auth_secret_name="keeper-auth"))


# =============================================================================
# Kubernetes Fixtures
# =============================================================================


@pytest.fixture
def mock_core_api() -> MagicMock:
    """Mocked CoreV1Api."""
    return MagicMock()


@pytest.fixture
def api_exception_404() -> ApiException:
    """404 Not Found API exception."""
    return ApiException(status=404, reason="Not Found")


@pytest.fixture
def api_exception_403() -> ApiException:
    """403 Forbidden API exception."""
    return ApiException(status=403, reason="Forbidden")


@pytest.fixture
def api_exception_500() -> ApiException:
    """500 Internal Server Error API exception."""
    return ApiException(status=500, reason="Internal Server Error")


# =============================================================================
# Logging Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_structlog() -> Generator[None, None, None]:
    """Restore structlog defaults after tests that configure logging."""
    yield
    structlog.reset_defaults()
