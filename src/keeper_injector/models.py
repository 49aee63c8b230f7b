"""Injection plan models.

Plain data structures describing one parsed injection plan: which secrets
and folders to fetch, where to write them, how to authenticate against
Keeper Secrets Manager and how the agent should behave. The models carry
no resolution logic; see ``keeper_injector.annotations`` for the parser
and ``keeper_injector.fetcher`` for resolution.

Example:
    >>> from keeper_injector.models import SecretRef
    >>> ref = SecretRef(name="db-creds", output_path="/keeper/secrets/db-creds.json")
    >>> ref.resolution
    <Resolution.RECORD: 'record'>
"""

from __future__ import annotations

from datetime import timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_SECRETS_PATH = "/keeper/secrets"
DEFAULT_REFRESH_INTERVAL = timedelta(minutes=5)
DEFAULT_CA_CERT_KEY = "ca.crt"


class SecretFormat(str, Enum):
    """Output encoding for a resolved secret."""

    JSON = "json"
    ENV = "env"
    RAW = "raw"
    PROPERTIES = "properties"
    YAML = "yaml"
    INI = "ini"


class ConflictPolicy(str, Enum):
    """How to reconcile a mirrored Secret against an existing object."""

    OVERWRITE = "overwrite"
    MERGE = "merge"
    SKIP_IF_EXISTS = "skip-if-exists"
    FAIL = "fail"


class LocatorMethod(str, Enum):
    """Where the agent obtains its own Keeper Secrets Manager config."""

    SECRET = "secret"
    AWS_SECRETS_MANAGER = "aws-secrets-manager"
    GCP_SECRET_MANAGER = "gcp-secret-manager"
    AZURE_KEY_VAULT = "azure-key-vault"


class Resolution(str, Enum):
    """Which route resolves a SecretRef."""

    RECORD = "record"
    NOTATION = "notation"
    FILE = "file"


class SecretRef(BaseModel):
    """One requested secret.

    Attributes:
        name: Record title or UID.
        output_path: File written by the agent. Never empty after parsing.
        fields: Fields to extract, in order. Empty means all fields.
        format: Output encoding.
        template: Optional Jinja2 template; overrides ``format``.
        notation: keeper:// notation. Takes precedence over name/fields.
        is_file: Whether this entry downloads a file attachment.
        file_name: Attachment name or title when ``is_file`` is set.
        inject_as_env_vars: Expose fields as container env vars.
        env_prefix: Prefix for env var names (inherited at parse time).
        inject_as_k8s_secret: Mirror into a Kubernetes Secret.
        k8s_secret_name: Target Secret name (inherited at parse time).
        k8s_secret_keys: Explicit record field to Secret key mapping.
        k8s_secret_type: Secret type, e.g. ``kubernetes.io/tls``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = ""
    output_path: str = Field(min_length=1)
    fields: tuple[str, ...] = ()
    format: SecretFormat = SecretFormat.JSON
    template: str | None = None
    notation: str | None = None
    is_file: bool = False
    file_name: str | None = None

    inject_as_env_vars: bool = False
    env_prefix: str = ""

    inject_as_k8s_secret: bool = False
    k8s_secret_name: str | None = None
    k8s_secret_keys: dict[str, str] = Field(default_factory=dict)
    k8s_secret_type: str | None = None

    @model_validator(mode="after")
    def _check_resolution(self) -> SecretRef:
        if not self.name and not self.notation:
            msg = "secret requires a record name or a notation"
            raise ValueError(msg)
        if self.is_file and not self.notation and not self.file_name:
            msg = f"file attachment for '{self.name}' requires a file name"
            raise ValueError(msg)
        return self

    @property
    def resolution(self) -> Resolution:
        """Return the route that resolves this entry."""
        if self.notation:
            return Resolution.NOTATION
        if self.is_file:
            return Resolution.FILE
        return Resolution.RECORD

    @property
    def display_name(self) -> str:
        """Return a log-friendly identifier (never a secret value)."""
        return self.name or self.notation or ""


class FolderRef(BaseModel):
    """A folder whose records are all fetched.

    Attributes:
        folder_uid: Folder UID.
        folder_path: Human-readable folder path, e.g. ``Production/Databases``.
        output_path: Directory receiving one JSON file per record.
        inject_as_k8s_secret: Mirror each record into a Kubernetes Secret.
        k8s_secret_name_prefix: Prefix for mirrored Secret names.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    folder_uid: str = ""
    folder_path: str = ""
    output_path: str = DEFAULT_SECRETS_PATH
    inject_as_k8s_secret: bool = False
    k8s_secret_name_prefix: str = ""

    @model_validator(mode="after")
    def _check_locator(self) -> FolderRef:
        if not self.folder_uid and not self.folder_path:
            msg = "folder requires a uid or a path"
            raise ValueError(msg)
        return self

    @property
    def display_name(self) -> str:
        """Return the folder UID, or its path when no UID is set."""
        return self.folder_uid or self.folder_path


class LocatorConfig(BaseModel):
    """How to locate the Keeper Secrets Manager config for this workload."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    method: LocatorMethod = LocatorMethod.SECRET
    auth_secret_name: str = ""
    aws_secret_id: str = ""
    aws_region: str = ""
    gcp_secret_id: str = ""
    azure_vault_name: str = ""
    azure_secret_name: str = ""

    @model_validator(mode="after")
    def _check_required(self) -> LocatorConfig:
        missing: list[str] = []
        if self.method is LocatorMethod.SECRET and not self.auth_secret_name:
            missing.append("auth-secret")
        elif self.method is LocatorMethod.AWS_SECRETS_MANAGER and not self.aws_secret_id:
            missing.append("aws-secret-id")
        elif self.method is LocatorMethod.GCP_SECRET_MANAGER and not self.gcp_secret_id:
            missing.append("gcp-secret-id")
        elif self.method is LocatorMethod.AZURE_KEY_VAULT:
            if not self.azure_vault_name:
                missing.append("azure-vault-name")
            if not self.azure_secret_name:
                missing.append("azure-secret-name")
        if missing:
            msg = f"auth method '{self.method.value}' requires {', '.join(missing)}"
            raise ValueError(msg)
        return self


class CACertSource(BaseModel):
    """Custom CA certificate location. Secret wins when both are set."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    secret_name: str = ""
    config_map_name: str = ""
    key: str = DEFAULT_CA_CERT_KEY

    @property
    def configured(self) -> bool:
        """Return True when either source is set."""
        return bool(self.secret_name or self.config_map_name)


class MirrorSettings(BaseModel):
    """Plan-wide Kubernetes Secret mirroring behaviour."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = False
    namespace: str = ""
    policy: ConflictPolicy = ConflictPolicy.OVERWRITE
    owner_ref: bool = True
    rotation: bool = False


class InjectionPlan(BaseModel):
    """The parsed injection configuration for one workload.

    Built once per admission event or agent start; immutable afterwards.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    secrets: tuple[SecretRef, ...] = ()
    folders: tuple[FolderRef, ...] = ()
    locator: LocatorConfig
    fail_on_error: bool = True
    strict_lookup: bool = False
    refresh_interval: timedelta = DEFAULT_REFRESH_INTERVAL
    signal: str | None = None
    init_only: bool = False
    ca_cert: CACertSource = Field(default_factory=CACertSource)
    mirror: MirrorSettings = Field(default_factory=MirrorSettings)

    @property
    def mirrored_secrets(self) -> tuple[SecretRef, ...]:
        """Return the secrets that are mirrored into Kubernetes Secrets."""
        return tuple(s for s in self.secrets if s.inject_as_k8s_secret)

    @property
    def mirrored_folders(self) -> tuple[FolderRef, ...]:
        """Return the folders whose records are mirrored."""
        return tuple(f for f in self.folders if f.inject_as_k8s_secret)


class ResolvedSecret(BaseModel):
    """A secret fetched from the backend.

    Ephemeral: lives only in the agent cache and the rendered output.

    Attributes:
        uid: Record UID, when known.
        title: Record title, when known.
        record_type: Keeper record type (login, databaseCredentials, ...).
        fields: Field map. Values are str, bytes or JSON-compatible values.
        file_content: Attachment bytes for file entries.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    uid: str = ""
    title: str = ""
    record_type: str = ""
    fields: dict[str, Any] = Field(default_factory=dict)
    file_content: bytes | None = None

    def same_content(self, other: ResolvedSecret | None) -> bool:
        """Compare field maps and attachment bytes by content."""
        if other is None:
            return False
        return self.fields == other.fields and self.file_content == other.file_content

    def select(self, names: tuple[str, ...] | list[str]) -> dict[str, Any]:
        """Return the subset of fields named, in the order given."""
        if not names:
            return dict(self.fields)
        return {name: self.fields[name] for name in names if name in self.fields}

    def __repr__(self) -> str:
        return (
            f"ResolvedSecret(uid={self.uid!r}, title={self.title!r}, "
            f"fields={sorted(self.fields)!r})"
        )


__all__ = [
    "CACertSource",
    "ConflictPolicy",
    "DEFAULT_CA_CERT_KEY",
    "DEFAULT_REFRESH_INTERVAL",
    "DEFAULT_SECRETS_PATH",
    "FolderRef",
    "InjectionPlan",
    "LocatorConfig",
    "LocatorMethod",
    "MirrorSettings",
    "Resolution",
    "ResolvedSecret",
    "SecretFormat",
    "SecretRef",
]
