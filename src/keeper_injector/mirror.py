"""Mirror resolved secrets into Kubernetes Secret objects.

Entries flagged ``inject_as_k8s_secret`` are published as native
Secrets so workloads can consume them through ``envFrom`` or volume
mounts. Folders flagged for mirroring publish one Secret per record,
named ``<prefix><sanitized-title>``.

Conflict policies (applied when the target Secret already exists):

    overwrite       replace data, labels and annotations
    merge           union of keys; new values win on collision
    skip-if-exists  leave the existing Secret untouched
    fail            raise ConflictPolicyViolationError

Example:
    >>> reconciler = K8sSecretReconciler(client.CoreV1Api())
    >>> report = mirror_plan(plan, fetcher, WorkloadRef("web-0", "prod", pod_uid), reconciler)
    >>> report.actions
    {'prod/db-secret': <ReconcileAction.CREATED: 'created'>}
"""

from __future__ import annotations

import base64
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog
from kubernetes import client
from kubernetes.client.rest import ApiException

from keeper_injector.backend import BackendRecord
from keeper_injector.errors import (
    ConfigInvalidError,
    ConflictPolicyViolationError,
    InjectorError,
    KubernetesAPIError,
    SizeLimitExceededError,
)
from keeper_injector.fetcher import Runner, SecretFetcher, to_resolved, value_to_bytes
from keeper_injector.models import (
    ConflictPolicy,
    FolderRef,
    InjectionPlan,
    MirrorSettings,
    ResolvedSecret,
    SecretRef,
)
from keeper_injector.tracing import ATTR_NAMESPACE, get_tracer, secrets_span

logger = structlog.get_logger(__name__)

MAX_SECRET_SIZE = 1024 * 1024
DEFAULT_SECRET_TYPE = "Opaque"
FILE_VALUE_KEY = "value"

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "keeper-injector"
INJECTED_LABEL = "keeper.security/injected"
SOURCE_POD_ANNOTATION = "keeper.security/source-pod"
SOURCE_RECORD_ANNOTATION = "keeper.security/source-record"

_DNS_UNSAFE = re.compile(r"[^a-z0-9.-]+")
_DNS_MAX_LENGTH = 253


@dataclass(frozen=True)
class WorkloadRef:
    """The pod whose injection plan is being mirrored.

    Attributes:
        name: Pod name.
        namespace: Pod namespace; the default target namespace.
        uid: Pod UID, needed for owner references.
    """

    name: str
    namespace: str
    uid: str = ""


class ReconcileAction(str, Enum):
    """What reconcile did to the target Secret."""

    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


def dns_safe_name(text: str) -> str:
    """Lower-case ``text`` and make it a valid Kubernetes object name.

    Example:
        >>> dns_safe_name("MySQL Prod_01")
        'mysql-prod-01'
    """
    name = _DNS_UNSAFE.sub("-", text.lower()).strip("-.")
    return name[:_DNS_MAX_LENGTH].rstrip("-.")


def _encode(data: Mapping[str, bytes]) -> dict[str, str]:
    return {key: base64.b64encode(value).decode("ascii") for key, value in data.items()}


def _select_data(ref: SecretRef, resolved: ResolvedSecret) -> dict[str, bytes]:
    if resolved.file_content is not None:
        return {ref.file_name or FILE_VALUE_KEY: resolved.file_content}
    fields = resolved.fields
    if ref.k8s_secret_keys:
        return {
            key: value_to_bytes(fields[name])
            for name, key in ref.k8s_secret_keys.items()
            if name in fields
        }
    if ref.fields:
        return {name: value_to_bytes(fields[name]) for name in ref.fields if name in fields}
    return {name: value_to_bytes(value) for name, value in fields.items()}


def _owner_references(
    workload: WorkloadRef, settings: MirrorSettings
) -> list[client.V1OwnerReference] | None:
    if not settings.owner_ref:
        return None
    if not workload.uid:
        logger.warning("mirror.owner_ref_skipped", pod=workload.name, reason="pod uid unknown")
        return None
    # Owners must live in the same namespace as their dependents.
    if settings.namespace and settings.namespace != workload.namespace:
        logger.warning(
            "mirror.owner_ref_skipped", pod=workload.name, reason="cross-namespace target"
        )
        return None
    return [
        client.V1OwnerReference(
            api_version="v1",
            kind="Pod",
            name=workload.name,
            uid=workload.uid,
            controller=True,
        )
    ]


def _secret_body(
    name: str,
    data: Mapping[str, bytes],
    *,
    source_record: str,
    secret_type: str | None,
    workload: WorkloadRef,
    settings: MirrorSettings,
) -> client.V1Secret:
    return client.V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=settings.namespace or workload.namespace,
            labels={MANAGED_BY_LABEL: MANAGED_BY_VALUE, INJECTED_LABEL: "true"},
            annotations={
                SOURCE_POD_ANNOTATION: workload.name,
                SOURCE_RECORD_ANNOTATION: source_record,
            },
            owner_references=_owner_references(workload, settings),
        ),
        type=secret_type or DEFAULT_SECRET_TYPE,
        data=_encode(data),
    )


def build_secret(
    ref: SecretRef,
    resolved: ResolvedSecret,
    workload: WorkloadRef,
    settings: MirrorSettings,
) -> client.V1Secret:
    """Build the Secret object mirroring one plan entry.

    Keys come from the explicit ``k8s_secret_keys`` mapping, else the
    selected fields, else every field. Attachments are stored under the
    file name.

    Args:
        ref: Plan entry; carries the inherited Secret name and type.
        resolved: Its resolved value.
        workload: Pod that owns the Secret.
        settings: Plan-wide mirroring settings.

    Returns:
        A V1Secret with base64-encoded data.

    Raises:
        ConfigInvalidError: If no Secret name was configured.
    """
    if not ref.k8s_secret_name:
        raise ConfigInvalidError(
            f"no Kubernetes Secret name for '{ref.display_name}'", key="k8s-secret-name"
        )
    return _secret_body(
        ref.k8s_secret_name,
        _select_data(ref, resolved),
        source_record=ref.name or resolved.uid,
        secret_type=ref.k8s_secret_type,
        workload=workload,
        settings=settings,
    )


def build_folder_secret(
    folder: FolderRef,
    resolved: ResolvedSecret,
    workload: WorkloadRef,
    settings: MirrorSettings,
) -> client.V1Secret:
    """Build the Secret for one record of a mirrored folder.

    Raises:
        ConfigInvalidError: If the record title yields an empty name.
    """
    suffix = dns_safe_name(resolved.title)
    if not suffix:
        raise ConfigInvalidError(
            f"record '{resolved.uid}' in folder '{folder.display_name}' has no usable title",
            key="k8s-secret-name-prefix",
        )
    data = {name: value_to_bytes(value) for name, value in resolved.fields.items()}
    return _secret_body(
        folder.k8s_secret_name_prefix + suffix,
        data,
        source_record=resolved.uid or resolved.title,
        secret_type=None,
        workload=workload,
        settings=settings,
    )


def secret_size(secret: client.V1Secret) -> int:
    """Return the decoded size of a Secret's data (keys plus values)."""
    data = secret.data or {}
    return sum(len(key) + len(base64.b64decode(value)) for key, value in data.items())


def validate_secret_size(secret: client.V1Secret, limit: int = MAX_SECRET_SIZE) -> None:
    """Reject Secrets over the API server's object size limit.

    Raises:
        SizeLimitExceededError: If keys plus values exceed ``limit`` bytes.
    """
    size = secret_size(secret)
    if size > limit:
        raise SizeLimitExceededError(secret.metadata.name, size, limit)


def _merge_into(target: dict[str, str] | None, source: Mapping[str, str] | None) -> dict[str, str]:
    merged = dict(target or {})
    merged.update(source or {})
    return merged


class K8sSecretReconciler:
    """Create or update Secrets according to a conflict policy.

    Args:
        core_api: ``kubernetes.client.CoreV1Api`` instance.
    """

    def __init__(self, core_api: Any) -> None:
        self._api = core_api

    def _read(self, name: str, namespace: str) -> client.V1Secret | None:
        try:
            return self._api.read_namespaced_secret(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise KubernetesAPIError(
                f"{namespace}/{name}", status=e.status or 0, reason=str(e.reason or "")
            ) from e

    def reconcile(
        self,
        secret: client.V1Secret,
        policy: ConflictPolicy = ConflictPolicy.OVERWRITE,
        *,
        owner_ref: bool = True,
    ) -> ReconcileAction:
        """Create ``secret`` or reconcile it against the existing object.

        Args:
            secret: Desired Secret.
            policy: Conflict policy when the Secret already exists.
            owner_ref: Whether owner references are carried over on update.

        Returns:
            The action taken.

        Raises:
            ConflictPolicyViolationError: Under ``fail`` when the Secret exists.
            KubernetesAPIError: If the API server rejects a call.
        """
        name = secret.metadata.name
        namespace = secret.metadata.namespace
        with secrets_span(
            get_tracer(),
            "reconcile_secret",
            provider="kubernetes",
            target=name,
            extra_attributes={ATTR_NAMESPACE: namespace, "keeper.conflict_policy": policy.value},
        ):
            return self._reconcile(secret, policy, owner_ref)

    def _reconcile(
        self, secret: client.V1Secret, policy: ConflictPolicy, owner_ref: bool
    ) -> ReconcileAction:
        name = secret.metadata.name
        namespace = secret.metadata.namespace
        resource = f"{namespace}/{name}"

        existing = self._read(name, namespace)
        try:
            if existing is None:
                self._api.create_namespaced_secret(namespace=namespace, body=secret)
                logger.info("mirror.secret_created", secret=resource, keys=len(secret.data or {}))
                return ReconcileAction.CREATED

            if policy is ConflictPolicy.FAIL:
                raise ConflictPolicyViolationError(name, namespace)
            if policy is ConflictPolicy.SKIP_IF_EXISTS:
                logger.info("mirror.secret_skipped", secret=resource)
                return ReconcileAction.SKIPPED

            meta = existing.metadata
            if policy is ConflictPolicy.MERGE:
                existing.data = _merge_into(existing.data, secret.data)
                meta.labels = _merge_into(meta.labels, secret.metadata.labels)
                meta.annotations = _merge_into(meta.annotations, secret.metadata.annotations)
                if owner_ref and secret.metadata.owner_references:
                    meta.owner_references = secret.metadata.owner_references
            else:
                existing.data = dict(secret.data or {})
                meta.labels = dict(secret.metadata.labels or {})
                meta.annotations = dict(secret.metadata.annotations or {})
                if owner_ref:
                    meta.owner_references = secret.metadata.owner_references

            self._api.replace_namespaced_secret(name=name, namespace=namespace, body=existing)
        except ApiException as e:
            raise KubernetesAPIError(
                resource, status=e.status or 0, reason=str(e.reason or "")
            ) from e

        logger.info(
            "mirror.secret_updated",
            secret=resource,
            policy=policy.value,
            keys=len(existing.data or {}),
        )
        return ReconcileAction.UPDATED


class SecretMirror:
    """Publish plan entries for one workload through a reconciler.

    Args:
        reconciler: Applies conflict policies against the API server.
        workload: Pod owning the mirrored Secrets.
        settings: Plan-wide mirroring settings.
    """

    def __init__(
        self,
        reconciler: K8sSecretReconciler,
        workload: WorkloadRef,
        settings: MirrorSettings,
    ) -> None:
        self.reconciler = reconciler
        self.workload = workload
        self.settings = settings

    @property
    def rotation_policy(self) -> ConflictPolicy:
        """Policy used when the agent rotates an already published Secret.

        Rotation must change the Secret, so only ``merge`` is honoured;
        everything else overwrites.
        """
        if self.settings.policy is ConflictPolicy.MERGE:
            return ConflictPolicy.MERGE
        return ConflictPolicy.OVERWRITE

    def publish(self, secret: client.V1Secret, policy: ConflictPolicy) -> ReconcileAction:
        """Validate the size of ``secret`` and reconcile it."""
        validate_secret_size(secret)
        return self.reconciler.reconcile(secret, policy, owner_ref=self.settings.owner_ref)

    def publish_secret(
        self, ref: SecretRef, resolved: ResolvedSecret, *, rotation: bool = False
    ) -> ReconcileAction:
        """Publish one plan entry."""
        policy = self.rotation_policy if rotation else self.settings.policy
        return self.publish(build_secret(ref, resolved, self.workload, self.settings), policy)

    def publish_folder_record(
        self, folder: FolderRef, resolved: ResolvedSecret, *, rotation: bool = False
    ) -> ReconcileAction:
        """Publish one record of a mirrored folder."""
        policy = self.rotation_policy if rotation else self.settings.policy
        secret = build_folder_secret(folder, resolved, self.workload, self.settings)
        return self.publish(secret, policy)


@dataclass
class MirrorReport:
    """Outcome of mirroring a plan.

    Attributes:
        actions: Reconcile action per ``namespace/name`` Secret.
        errors: Failures keyed by entry or Secret name.
        listing_calls: Backend listing calls issued.
    """

    actions: dict[str, ReconcileAction] = field(default_factory=dict)
    errors: dict[str, Exception] = field(default_factory=dict)
    listing_calls: int = 0

    @property
    def ok(self) -> bool:
        """Return True when every target was mirrored."""
        return not self.errors


def _direct(fn: Any) -> Any:
    return fn()


def mirror_plan(
    plan: InjectionPlan,
    fetcher: SecretFetcher,
    workload: WorkloadRef,
    reconciler: K8sSecretReconciler,
    *,
    runner: Runner | None = None,
) -> MirrorReport:
    """Mirror every flagged secret and folder of a plan.

    One listing call serves every plain-name entry and every folder.
    Without ``fail_on_error`` failing targets are logged and skipped.

    Args:
        plan: Parsed injection plan.
        fetcher: Resolves entries against the backend.
        workload: Pod owning the Secrets.
        reconciler: Applies the plan's conflict policy.
        runner: Wraps backend calls, e.g. with retries.

    Returns:
        MirrorReport with one action per published Secret.

    Raises:
        InjectorError: The first failure when ``fail_on_error`` is set.
    """
    run: Runner = runner or _direct
    report = MirrorReport()
    refs = plan.mirrored_secrets
    folders = plan.mirrored_folders
    if not refs and not folders:
        logger.debug("mirror.nothing_to_mirror", pod=workload.name)
        return report

    mirror = SecretMirror(reconciler, workload, plan.mirror)

    def fail(target: str, error: Exception) -> None:
        if plan.fail_on_error:
            raise error
        logger.error("mirror.target_failed", target=target, error=str(error))
        report.errors[target] = error

    report.listing_calls += 1
    try:
        listing: Sequence[BackendRecord] = run(fetcher.list_records)
    except InjectorError as e:
        fail("listing", e)
        return report

    batch = fetcher.batch_resolve(refs, listing=listing, runner=run)
    for index, ref in enumerate(refs):
        error = batch.errors.get(index)
        if error is not None:
            fail(ref.display_name, error)
            continue
        try:
            action = mirror.publish_secret(ref, batch.resolved[index])
        except InjectorError as e:
            fail(ref.display_name, e)
            continue
        report.actions[_resource(ref.k8s_secret_name or "", workload, plan.mirror)] = action

    for folder in folders:
        try:
            records = run(lambda folder=folder: fetcher.list_folder_records(folder, listing))
        except InjectorError as e:
            fail(folder.display_name, e)
            continue
        for record in records:
            resolved = to_resolved(record)
            try:
                secret = build_folder_secret(folder, resolved, workload, plan.mirror)
                action = mirror.publish(secret, plan.mirror.policy)
            except InjectorError as e:
                fail(f"{folder.display_name}/{record.title}", e)
                continue
            report.actions[_resource(secret.metadata.name, workload, plan.mirror)] = action

    logger.info(
        "mirror.plan_complete",
        pod=workload.name,
        published=len(report.actions),
        failed=len(report.errors),
    )
    return report


def _resource(name: str, workload: WorkloadRef, settings: MirrorSettings) -> str:
    return f"{settings.namespace or workload.namespace}/{name}"


__all__ = [
    "K8sSecretReconciler",
    "MAX_SECRET_SIZE",
    "MirrorReport",
    "ReconcileAction",
    "SecretMirror",
    "WorkloadRef",
    "build_folder_secret",
    "build_secret",
    "dns_safe_name",
    "mirror_plan",
    "secret_size",
    "validate_secret_size",
]
