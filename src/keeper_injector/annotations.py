"""Parse pod annotations into an InjectionPlan.

Secrets can be requested at six levels of detail, all of which may be
combined on one pod. Entries are appended in this order:

1. ``keeper.security/secret: db-creds``
2. ``keeper.security/secrets: db-creds, api-keys``
3. ``keeper.security/secret-<name>: /app/config/db.json`` or
   ``keeper.security/secret-<name>: db-creds:/app/config/db.json``
4. ``keeper.security/secret-<name>: db-creds[password]:/app/secrets/db-pass``
5. ``keeper.security/secret-<name>: keeper://ABC123/field/password:/app/pw``
   (the ``keeper://`` scheme is optional)
6. ``keeper.security/config``: a YAML document with ``secrets`` and
   ``folders`` lists

``keeper.security/file-<name>: record:cert.pem[:/path]`` (or a file
notation) downloads an attachment. Per-name keys are visited in sorted
order, so the plan depends only on the annotation set.

Plan-wide defaults (env prefix, Secret mirroring name/type/switch) are
copied into every entry here; nothing downstream reads them again.

Example:
    >>> plan = parse_annotations({
    ...     "keeper.security/inject": "true",
    ...     "keeper.security/auth-secret": "keeper-auth",
    ...     "keeper.security/secrets": "db-creds, api-keys",
    ... })
    >>> [s.output_path for s in plan.secrets]
    ['/keeper/secrets/db-creds.json', '/keeper/secrets/api-keys.json']
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Union

import structlog
import yaml
from pydantic import ValidationError

from keeper_injector.errors import ConfigInvalidError
from keeper_injector.models import (
    DEFAULT_CA_CERT_KEY,
    DEFAULT_REFRESH_INTERVAL,
    DEFAULT_SECRETS_PATH,
    CACertSource,
    ConflictPolicy,
    FolderRef,
    InjectionPlan,
    LocatorConfig,
    LocatorMethod,
    MirrorSettings,
    SecretFormat,
    SecretRef,
)
from keeper_injector.notation import SCHEME, Notation, Selector, is_notation, parse_notation
from keeper_injector.notify import parse_signal

logger = structlog.get_logger(__name__)

# =============================================================================
# Annotation keys
# =============================================================================

PREFIX = "keeper.security/"

INJECT = PREFIX + "inject"
SECRET = PREFIX + "secret"
SECRETS = PREFIX + "secrets"
SECRET_ENTRY_PREFIX = PREFIX + "secret-"
FILE_ENTRY_PREFIX = PREFIX + "file-"
CONFIG = PREFIX + "config"

FOLDER = PREFIX + "folder"
FOLDER_UID = PREFIX + "folder-uid"
FOLDER_PATH = PREFIX + "folder-path"

REFRESH_INTERVAL = PREFIX + "refresh-interval"
FAIL_ON_ERROR = PREFIX + "fail-on-error"
INIT_ONLY = PREFIX + "init-only"
STRICT_LOOKUP = PREFIX + "strict-lookup"
SIGNAL = PREFIX + "signal"

AUTH_SECRET = PREFIX + "auth-secret"
AUTH_METHOD = PREFIX + "auth-method"
AWS_SECRET_ID = PREFIX + "aws-secret-id"
AWS_REGION = PREFIX + "aws-region"
GCP_SECRET_ID = PREFIX + "gcp-secret-id"
AZURE_VAULT_NAME = PREFIX + "azure-vault-name"
AZURE_SECRET_NAME = PREFIX + "azure-secret-name"

CA_CERT_SECRET = PREFIX + "ca-cert-secret"
CA_CERT_CONFIGMAP = PREFIX + "ca-cert-configmap"
CA_CERT_KEY = PREFIX + "ca-cert-key"

INJECT_AS_K8S_SECRET = PREFIX + "inject-as-k8s-secret"
K8S_SECRET_NAME = PREFIX + "k8s-secret-name"
K8S_SECRET_NAMESPACE = PREFIX + "k8s-secret-namespace"
K8S_SECRET_MODE = PREFIX + "k8s-secret-mode"
K8S_SECRET_OWNER_REF = PREFIX + "k8s-secret-owner-ref"
K8S_SECRET_ROTATION = PREFIX + "k8s-secret-rotation"
K8S_SECRET_TYPE = PREFIX + "k8s-secret-type"

INJECT_ENV_VARS = PREFIX + "inject-env-vars"
ENV_PREFIX = PREFIX + "env-prefix"

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_SECRET_ITEM_KEYS = frozenset(
    {
        "record",
        "notation",
        "path",
        "fields",
        "format",
        "template",
        "file",
        "injectAsEnvVars",
        "envVarPrefix",
        "injectAsK8sSecret",
        "k8sSecretName",
        "k8sSecretKeys",
        "k8sSecretType",
    }
)
_FOLDER_ITEM_KEYS = frozenset(
    {
        "uid",
        "folderUid",
        "path",
        "folderPath",
        "outputPath",
        "injectAsK8sSecret",
        "k8sSecretNamePrefix",
    }
)


# =============================================================================
# Scalar helpers
# =============================================================================


def sanitize_name(name: str) -> str:
    """Lower-case a name and replace spaces and slashes with dashes.

    Example:
        >>> sanitize_name("Prod DB/Primary")
        'prod-db-primary'
    """
    return name.strip().lower().replace(" ", "-").replace("/", "-")


def parse_bool(value: str, key: str) -> bool:
    """Parse ``true``/``false`` (any case).

    Raises:
        ConfigInvalidError: For any other value.
    """
    text = value.strip().lower()
    if text == "true":
        return True
    if text == "false":
        return False
    raise ConfigInvalidError(f"expected 'true' or 'false', got '{value}'", key=key)


def parse_duration(value: str, key: str = REFRESH_INTERVAL) -> timedelta:
    """Parse a Go-style duration such as ``30s``, ``5m`` or ``1h30m``.

    Raises:
        ConfigInvalidError: If the text is malformed or not positive.
    """
    text = value.strip()
    position = 0
    seconds = 0.0
    while position < len(text):
        match = _DURATION_PART.match(text, position)
        if match is None:
            raise ConfigInvalidError(f"invalid duration '{value}'", key=key)
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if not text or seconds <= 0:
        raise ConfigInvalidError(f"duration must be positive, got '{value}'", key=key)
    return timedelta(seconds=seconds)


def parse_format(value: str, key: str) -> SecretFormat:
    """Parse an output format name."""
    try:
        return SecretFormat(value.strip().lower())
    except ValueError as e:
        allowed = ", ".join(f.value for f in SecretFormat)
        raise ConfigInvalidError(f"unknown format '{value}' (expected {allowed})", key=key) from e


def _enum_value(enum: Any, value: str, key: str) -> Any:
    try:
        return enum(value.strip().lower())
    except ValueError as e:
        allowed = ", ".join(member.value for member in enum)
        raise ConfigInvalidError(f"unknown value '{value}' (expected {allowed})", key=key) from e


def default_record_path(name: str) -> str:
    """Default output path for a whole-record entry."""
    return f"{DEFAULT_SECRETS_PATH}/{sanitize_name(name)}.json"


def default_notation_path(name: str) -> str:
    """Default output path for a notation entry."""
    return f"{DEFAULT_SECRETS_PATH}/{sanitize_name(name)}"


def default_file_path(file_name: str) -> str:
    """Default output path for a file attachment."""
    return f"{DEFAULT_SECRETS_PATH}/{file_name}"


# =============================================================================
# Value classification
# =============================================================================


@dataclass(frozen=True)
class PathValue:
    """``/abs/path``: the whole record named by the annotation suffix."""

    path: str


@dataclass(frozen=True)
class RecordPathValue:
    """``record:/abs/path``: the whole named record."""

    record: str
    path: str


@dataclass(frozen=True)
class FieldValue:
    """``record[field]:/abs/path``: one field as a raw value."""

    record: str
    field: str
    path: str


@dataclass(frozen=True)
class NotationValue:
    """A notation, optionally carrying its own output path."""

    notation: Notation


@dataclass(frozen=True)
class FileValue:
    """``record:file.pem[:/abs/path]``: one attachment."""

    record: str
    file_name: str
    path: str


SecretValue = Union[PathValue, RecordPathValue, FieldValue, NotationValue, FileValue]


def _field_value(value: str) -> FieldValue | None:
    head, sep, path = value.partition("]:")
    if not sep:
        return None
    record, bracket, field = head.partition("[")
    if not bracket or not record.strip() or "/" in record or not field:
        return None
    return FieldValue(record=record.strip(), field=field.strip(), path=path.strip())


def classify_secret_value(value: str, key: str = "") -> SecretValue:
    """Classify a ``secret-<name>`` annotation value.

    Args:
        value: Annotation value.
        key: Annotation key, for error messages.

    Returns:
        PathValue, RecordPathValue, FieldValue or NotationValue.

    Raises:
        ConfigInvalidError: If the value matches no known shape.
        NotationInvalidError: If a notation-shaped value is malformed.
    """
    text = value.strip()
    if not text:
        raise ConfigInvalidError("value is empty", key=key)
    if text.startswith(SCHEME):
        return NotationValue(parse_notation(text))

    field_value = _field_value(text)
    if field_value is not None:
        return field_value
    if text.startswith("/"):
        return PathValue(text)

    cut = text.rfind(":/")
    if cut > 0:
        record, path = text[:cut].strip(), text[cut + 1 :].strip()
        if is_notation(record):
            return NotationValue(parse_notation(text))
        return RecordPathValue(record=record, path=path)

    if is_notation(text):
        return NotationValue(parse_notation(text))
    raise ConfigInvalidError(
        f"cannot interpret '{text}' (expected /path, record:/path, record[field]:/path "
        "or a keeper:// notation)",
        key=key,
    )


def classify_file_value(value: str, name: str, key: str = "") -> SecretValue:
    """Classify a ``file-<name>`` annotation value.

    A bare file name downloads that attachment from the record named by
    the annotation suffix.

    Raises:
        ConfigInvalidError: If the value is empty or the notation does not
            address a file.
    """
    text = value.strip()
    if not text:
        raise ConfigInvalidError("value is empty", key=key)
    if text.startswith(SCHEME) or is_notation(text.split(":/", 1)[0]):
        notation = parse_notation(text)
        if not notation.is_file:
            raise ConfigInvalidError(f"notation '{text}' does not address a file", key=key)
        return NotationValue(notation)

    parts = [part.strip() for part in text.split(":", 2)]
    if len(parts) == 1:
        return FileValue(record=name, file_name=parts[0], path="")
    record, file_name = parts[0], parts[1]
    path = parts[2] if len(parts) == 3 else ""
    if not record or not file_name:
        raise ConfigInvalidError(f"expected record:file[:/path], got '{text}'", key=key)
    return FileValue(record=record, file_name=file_name, path=path)


# =============================================================================
# Entry construction
# =============================================================================


@dataclass(frozen=True)
class _Defaults:
    """Plan-wide settings copied into every entry."""

    env_vars: bool = False
    env_prefix: str = ""
    k8s_secret: bool = False
    k8s_secret_name: str | None = None
    k8s_secret_type: str | None = None


def _make_ref(key: str, **values: Any) -> SecretRef:
    try:
        return SecretRef(**values)
    except ValidationError as e:
        raise ConfigInvalidError(_validation_message(e), key=key) from e


def _validation_message(error: ValidationError) -> str:
    return "; ".join(str(item["msg"]) for item in error.errors())


def _notation_ref_values(notation: Notation, name: str) -> dict[str, Any]:
    values: dict[str, Any] = {
        "name": name,
        "notation": notation.uri,
        "output_path": notation.output_path or default_notation_path(name),
        "format": SecretFormat.JSON if notation.selector is Selector.RECORD else SecretFormat.RAW,
    }
    if notation.is_file:
        values["is_file"] = True
        values["file_name"] = notation.parameter
    return values


def _build_secret_ref(name: str, value: SecretValue, defaults: _Defaults, key: str) -> SecretRef:
    """Build the SecretRef for one classified flat annotation."""
    values: dict[str, Any]
    if isinstance(value, PathValue):
        values = {"name": name, "output_path": value.path}
    elif isinstance(value, RecordPathValue):
        values = {"name": value.record, "output_path": value.path}
    elif isinstance(value, FieldValue):
        values = {
            "name": value.record,
            "fields": (value.field,),
            "format": SecretFormat.RAW,
            "output_path": value.path or default_record_path(value.record),
        }
    elif isinstance(value, FileValue):
        values = {
            "name": value.record,
            "is_file": True,
            "file_name": value.file_name,
            "format": SecretFormat.RAW,
            "output_path": value.path or default_file_path(value.file_name),
        }
    else:
        values = _notation_ref_values(value.notation, name)

    return _make_ref(
        key,
        inject_as_env_vars=defaults.env_vars,
        env_prefix=defaults.env_prefix,
        inject_as_k8s_secret=defaults.k8s_secret,
        k8s_secret_name=defaults.k8s_secret_name,
        k8s_secret_type=defaults.k8s_secret_type,
        **values,
    )


def _plain_ref(name: str, defaults: _Defaults, key: str) -> SecretRef:
    return _make_ref(
        key,
        name=name,
        output_path=default_record_path(name),
        inject_as_env_vars=defaults.env_vars,
        env_prefix=defaults.env_prefix,
        inject_as_k8s_secret=defaults.k8s_secret,
        k8s_secret_name=defaults.k8s_secret_name,
        k8s_secret_type=defaults.k8s_secret_type,
    )


# =============================================================================
# Structured document
# =============================================================================


def _str(item: Mapping[str, Any], name: str, key: str) -> str:
    value = item.get(name)
    if value is None:
        return ""
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ConfigInvalidError(f"'{name}' must be a string", key=key)
    return str(value).strip()


def _bool(item: Mapping[str, Any], name: str, default: bool, key: str) -> bool:
    value = item.get(name)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return parse_bool(value, f"{key}.{name}")
    raise ConfigInvalidError(f"'{name}' must be a boolean", key=key)


def _fields(item: Mapping[str, Any], key: str) -> tuple[str, ...]:
    value = item.get("fields")
    if value is None:
        return ()
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigInvalidError("'fields' must be a list of strings", key=key)
    return tuple(v.strip() for v in value if v.strip())


def _secret_keys(item: Mapping[str, Any], key: str) -> dict[str, str]:
    value = item.get("k8sSecretKeys")
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigInvalidError("'k8sSecretKeys' must be a mapping", key=key)
    return {str(k): str(v) for k, v in value.items()}


def _check_keys(item: Any, allowed: frozenset[str], key: str) -> Mapping[str, Any]:
    if not isinstance(item, dict):
        raise ConfigInvalidError("entry must be a mapping", key=key)
    unknown = sorted(set(item) - allowed)
    if unknown:
        raise ConfigInvalidError(f"unknown keys: {', '.join(map(str, unknown))}", key=key)
    return item


def _document_secret(item: Any, defaults: _Defaults, key: str) -> SecretRef:
    entry = _check_keys(item, _SECRET_ITEM_KEYS, key)
    record = _str(entry, "record", key)
    notation_text = _str(entry, "notation", key)
    file_name = _str(entry, "file", key)
    path = _str(entry, "path", key)
    format_text = _str(entry, "format", key)
    template = entry.get("template")
    if template is not None and not isinstance(template, str):
        raise ConfigInvalidError("'template' must be a string", key=key)
    fields = _fields(entry, key)

    values: dict[str, Any]
    if notation_text:
        notation = parse_notation(notation_text)
        name = record or notation.record
        values = _notation_ref_values(notation, name)
        if path:
            values["output_path"] = path
    elif record:
        values = {"name": record}
        if file_name:
            values.update(is_file=True, file_name=file_name, format=SecretFormat.RAW)
            values["output_path"] = path or default_file_path(file_name)
        else:
            values["output_path"] = path or default_record_path(record)
            if len(fields) == 1:
                values["format"] = SecretFormat.RAW
    else:
        raise ConfigInvalidError("entry needs a 'record' or a 'notation'", key=key)

    if fields:
        values["fields"] = fields
    if format_text:
        values["format"] = parse_format(format_text, f"{key}.format")
    if template:
        values["template"] = template

    return _make_ref(
        key,
        inject_as_env_vars=_bool(entry, "injectAsEnvVars", defaults.env_vars, key),
        env_prefix=_str(entry, "envVarPrefix", key) or defaults.env_prefix,
        inject_as_k8s_secret=_bool(entry, "injectAsK8sSecret", defaults.k8s_secret, key),
        k8s_secret_name=_str(entry, "k8sSecretName", key) or defaults.k8s_secret_name,
        k8s_secret_keys=_secret_keys(entry, key),
        k8s_secret_type=_str(entry, "k8sSecretType", key) or defaults.k8s_secret_type,
        **values,
    )


def _document_folder(item: Any, defaults: _Defaults, key: str) -> FolderRef:
    entry = _check_keys(item, _FOLDER_ITEM_KEYS, key)
    try:
        return FolderRef(
            folder_uid=_str(entry, "uid", key) or _str(entry, "folderUid", key),
            folder_path=_str(entry, "path", key) or _str(entry, "folderPath", key),
            output_path=_str(entry, "outputPath", key) or DEFAULT_SECRETS_PATH,
            inject_as_k8s_secret=_bool(entry, "injectAsK8sSecret", defaults.k8s_secret, key),
            k8s_secret_name_prefix=_str(entry, "k8sSecretNamePrefix", key),
        )
    except ValidationError as e:
        raise ConfigInvalidError(_validation_message(e), key=key) from e


def parse_config_document(
    text: str, defaults: _Defaults | None = None
) -> tuple[list[SecretRef], list[FolderRef]]:
    """Parse the ``keeper.security/config`` YAML document.

    Args:
        text: YAML with optional ``secrets`` and ``folders`` lists.
        defaults: Plan-wide defaults to inherit.

    Returns:
        Tuple of (secrets, folders) in document order.

    Raises:
        ConfigInvalidError: On malformed YAML or entries.
    """
    defaults = defaults or _Defaults()
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigInvalidError(f"invalid YAML: {e}", key=CONFIG) from e
    if document is None:
        return [], []
    if not isinstance(document, dict):
        raise ConfigInvalidError("document must be a mapping", key=CONFIG)

    unknown = sorted(set(document) - {"secrets", "folders"})
    if unknown:
        raise ConfigInvalidError(f"unknown keys: {', '.join(map(str, unknown))}", key=CONFIG)

    secret_items = document.get("secrets") or []
    folder_items = document.get("folders") or []
    if not isinstance(secret_items, list) or not isinstance(folder_items, list):
        raise ConfigInvalidError("'secrets' and 'folders' must be lists", key=CONFIG)

    secrets = [
        _document_secret(item, defaults, f"{CONFIG}.secrets[{i}]")
        for i, item in enumerate(secret_items)
    ]
    folders = [
        _document_folder(item, defaults, f"{CONFIG}.folders[{i}]")
        for i, item in enumerate(folder_items)
    ]
    return secrets, folders


# =============================================================================
# Plan
# =============================================================================


def should_inject(annotations: Mapping[str, str] | None) -> bool:
    """Return True when ``keeper.security/inject`` is ``true`` (any case)."""
    if not annotations:
        return False
    return annotations.get(INJECT, "").strip().lower() == "true"


def _flag(annotations: Mapping[str, str], key: str, default: bool) -> bool:
    if key not in annotations:
        return default
    return parse_bool(annotations[key], key)


def _text(annotations: Mapping[str, str], key: str) -> str:
    return annotations.get(key, "").strip()


def _locator(annotations: Mapping[str, str]) -> LocatorConfig:
    method_text = _text(annotations, AUTH_METHOD) or LocatorMethod.SECRET.value
    method = _enum_value(LocatorMethod, method_text, AUTH_METHOD)
    try:
        return LocatorConfig(
            method=method,
            auth_secret_name=_text(annotations, AUTH_SECRET),
            aws_secret_id=_text(annotations, AWS_SECRET_ID),
            aws_region=_text(annotations, AWS_REGION),
            gcp_secret_id=_text(annotations, GCP_SECRET_ID),
            azure_vault_name=_text(annotations, AZURE_VAULT_NAME),
            azure_secret_name=_text(annotations, AZURE_SECRET_NAME),
        )
    except ValidationError as e:
        raise ConfigInvalidError(_validation_message(e), key=AUTH_METHOD) from e


def _defaults(annotations: Mapping[str, str]) -> _Defaults:
    return _Defaults(
        env_vars=_flag(annotations, INJECT_ENV_VARS, False),
        env_prefix=annotations.get(ENV_PREFIX, ""),
        k8s_secret=_flag(annotations, INJECT_AS_K8S_SECRET, False),
        k8s_secret_name=_text(annotations, K8S_SECRET_NAME) or None,
        k8s_secret_type=_text(annotations, K8S_SECRET_TYPE) or None,
    )


def _flat_secrets(annotations: Mapping[str, str], defaults: _Defaults) -> list[SecretRef]:
    secrets: list[SecretRef] = []

    single = _text(annotations, SECRET)
    if single:
        secrets.append(_plain_ref(single, defaults, SECRET))

    for name in annotations.get(SECRETS, "").split(","):
        if name.strip():
            secrets.append(_plain_ref(name.strip(), defaults, SECRETS))

    for key in sorted(k for k in annotations if k.startswith(SECRET_ENTRY_PREFIX)):
        name = key[len(SECRET_ENTRY_PREFIX) :]
        if not name:
            raise ConfigInvalidError("annotation has no entry name", key=key)
        value = classify_secret_value(annotations[key], key)
        secrets.append(_build_secret_ref(name, value, defaults, key))

    for key in sorted(k for k in annotations if k.startswith(FILE_ENTRY_PREFIX)):
        name = key[len(FILE_ENTRY_PREFIX) :]
        if not name:
            raise ConfigInvalidError("annotation has no entry name", key=key)
        value = classify_file_value(annotations[key], name, key)
        secrets.append(_build_secret_ref(name, value, defaults, key))

    return secrets


def _flat_folders(annotations: Mapping[str, str], defaults: _Defaults) -> list[FolderRef]:
    folder_path = _text(annotations, FOLDER)
    folder_uid = _text(annotations, FOLDER_UID)
    if not folder_path and not folder_uid:
        return []
    return [
        FolderRef(
            folder_uid=folder_uid,
            folder_path=folder_path,
            output_path=_text(annotations, FOLDER_PATH) or DEFAULT_SECRETS_PATH,
            inject_as_k8s_secret=defaults.k8s_secret,
        )
    ]


def parse_annotations(annotations: Mapping[str, str] | None) -> InjectionPlan | None:
    """Parse pod annotations into an injection plan.

    Args:
        annotations: Pod annotations. Keys outside ``keeper.security/``
            are ignored.

    Returns:
        The plan, or None when injection is not enabled.

    Raises:
        ConfigInvalidError: If any annotation is malformed, no entries
            are requested, or the locator lacks required settings.
    """
    if not should_inject(annotations):
        return None
    annotations = {k: v for k, v in (annotations or {}).items() if k.startswith(PREFIX)}

    defaults = _defaults(annotations)
    secrets = _flat_secrets(annotations, defaults)
    folders = _flat_folders(annotations, defaults)

    if CONFIG in annotations:
        doc_secrets, doc_folders = parse_config_document(annotations[CONFIG], defaults)
        secrets.extend(doc_secrets)
        folders.extend(doc_folders)

    if not secrets and not folders:
        raise ConfigInvalidError(
            "injection enabled but no secrets or folders requested", key=INJECT
        )

    signal = _text(annotations, SIGNAL) or None
    if signal is not None:
        parse_signal(signal)

    refresh = DEFAULT_REFRESH_INTERVAL
    if _text(annotations, REFRESH_INTERVAL):
        refresh = parse_duration(annotations[REFRESH_INTERVAL])

    mirror_enabled = defaults.k8s_secret or any(
        entry.inject_as_k8s_secret for entry in [*secrets, *folders]
    )
    mirror = MirrorSettings(
        enabled=mirror_enabled,
        namespace=_text(annotations, K8S_SECRET_NAMESPACE),
        policy=_enum_value(
            ConflictPolicy,
            _text(annotations, K8S_SECRET_MODE) or ConflictPolicy.OVERWRITE.value,
            K8S_SECRET_MODE,
        ),
        owner_ref=_flag(annotations, K8S_SECRET_OWNER_REF, True),
        rotation=_flag(annotations, K8S_SECRET_ROTATION, False),
    )

    plan = InjectionPlan(
        secrets=tuple(secrets),
        folders=tuple(folders),
        locator=_locator(annotations),
        fail_on_error=_flag(annotations, FAIL_ON_ERROR, True),
        strict_lookup=_flag(annotations, STRICT_LOOKUP, False),
        refresh_interval=refresh,
        signal=signal,
        init_only=_flag(annotations, INIT_ONLY, False),
        ca_cert=CACertSource(
            secret_name=_text(annotations, CA_CERT_SECRET),
            config_map_name=_text(annotations, CA_CERT_CONFIGMAP),
            key=_text(annotations, CA_CERT_KEY) or DEFAULT_CA_CERT_KEY,
        ),
        mirror=mirror,
    )
    logger.debug(
        "annotations.parsed",
        secrets=len(plan.secrets),
        folders=len(plan.folders),
        mirrored=len(plan.mirrored_secrets),
    )
    return plan


__all__ = [
    "FieldValue",
    "FileValue",
    "NotationValue",
    "PathValue",
    "RecordPathValue",
    "SecretValue",
    "classify_file_value",
    "classify_secret_value",
    "default_file_path",
    "default_notation_path",
    "default_record_path",
    "parse_annotations",
    "parse_bool",
    "parse_config_document",
    "parse_duration",
    "parse_format",
    "sanitize_name",
    "should_inject",
]
