"""Unit tests for Kubernetes Secret mirroring."""

from __future__ import annotations

import base64
from typing import Any
from unittest.mock import MagicMock

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from keeper_injector.errors import (
    ConfigInvalidError,
    ConflictPolicyViolationError,
    KubernetesAPIError,
    RecordNotFoundError,
    SizeLimitExceededError,
)
from keeper_injector.fetcher import SecretFetcher
from keeper_injector.mirror import (
    MAX_SECRET_SIZE,
    K8sSecretReconciler,
    ReconcileAction,
    SecretMirror,
    WorkloadRef,
    build_folder_secret,
    build_secret,
    dns_safe_name,
    mirror_plan,
    secret_size,
    validate_secret_size,
)
from keeper_injector.models import (
    ConflictPolicy,
    FolderRef,
    InjectionPlan,
    MirrorSettings,
    ResolvedSecret,
    SecretRef,
)

WORKLOAD = WorkloadRef(name="web-0", namespace="prod", uid="pod-uid-1")


def b64(text: str) -> str:
    return base64.b64encode(text.encode()).decode()


def decoded(secret: client.V1Secret) -> dict[str, str]:
    """Return a Secret's data as plain text."""
    return {k: base64.b64decode(v).decode() for k, v in (secret.data or {}).items()}


def desired(data: dict[str, str], name: str = "db-secret") -> client.V1Secret:
    """Secret built through build_secret from plain text data."""
    ref = SecretRef(
        name="db-creds",
        output_path="/keeper/secrets/db.json",
        inject_as_k8s_secret=True,
        k8s_secret_name=name,
    )
    return build_secret(ref, ResolvedSecret(fields=data), WORKLOAD, MirrorSettings(enabled=True))


def existing(data: dict[str, str], name: str = "db-secret") -> client.V1Secret:
    """Secret as returned by the API server."""
    return client.V1Secret(
        metadata=client.V1ObjectMeta(name=name, namespace="prod", labels={"team": "a"}),
        data={k: b64(v) for k, v in data.items()},
    )


class TestBuildSecret:
    """Test Secret construction."""

    def test_metadata(self) -> None:
        """Test labels, annotations and the owner reference."""
        secret = desired({"password": "s3cret"})

        assert secret.metadata.name == "db-secret"
        assert secret.metadata.namespace == "prod"
        assert secret.type == "Opaque"
        assert secret.metadata.labels == {
            "app.kubernetes.io/managed-by": "keeper-injector",
            "keeper.security/injected": "true",
        }
        assert secret.metadata.annotations["keeper.security/source-pod"] == "web-0"
        assert secret.metadata.annotations["keeper.security/source-record"] == "db-creds"
        owner = secret.metadata.owner_references[0]
        assert (owner.kind, owner.name, owner.uid) == ("Pod", "web-0", "pod-uid-1")

    def test_key_mapping(self) -> None:
        """Test explicit key mappings rename fields."""
        ref = SecretRef(
            name="db-creds",
            output_path="/x",
            k8s_secret_name="db",
            k8s_secret_keys={"login": "username", "password": "password"},
        )
        resolved = ResolvedSecret(fields={"login": "admin", "password": "pw", "host": "h"})

        secret = build_secret(ref, resolved, WORKLOAD, MirrorSettings())

        assert decoded(secret) == {"username": "admin", "password": "pw"}

    def test_selected_fields(self) -> None:
        """Test selected fields limit the keys."""
        ref = SecretRef(name="db", output_path="/x", fields=("password",), k8s_secret_name="db")
        resolved = ResolvedSecret(fields={"login": "admin", "password": "pw"})

        assert decoded(build_secret(ref, resolved, WORKLOAD, MirrorSettings())) == {
            "password": "pw"
        }

    def test_attachment_under_file_name(self) -> None:
        """Test attachments are stored under their file name with the Secret type."""
        ref = SecretRef(
            name="tls",
            output_path="/x/cert.pem",
            is_file=True,
            file_name="tls.crt",
            k8s_secret_name="tls",
            k8s_secret_type="kubernetes.io/tls",
        )

        secret = build_secret(ref, ResolvedSecret(file_content=b"PEM"), WORKLOAD, MirrorSettings())

        assert decoded(secret) == {"tls.crt": "PEM"}
        assert secret.type == "kubernetes.io/tls"

    def test_target_namespace_and_no_owner(self) -> None:
        """Test the namespace override and disabled owner references."""
        settings = MirrorSettings(enabled=True, namespace="shared", owner_ref=False)
        ref = SecretRef(name="db", output_path="/x", k8s_secret_name="db")

        secret = build_secret(ref, ResolvedSecret(fields={"a": "1"}), WORKLOAD, settings)

        assert secret.metadata.namespace == "shared"
        assert secret.metadata.owner_references is None

    def test_unknown_pod_uid_skips_owner(self) -> None:
        """Test owner references need the pod UID."""
        ref = SecretRef(name="db", output_path="/x", k8s_secret_name="db")
        workload = WorkloadRef(name="web-0", namespace="prod")

        secret = build_secret(ref, ResolvedSecret(fields={"a": "1"}), workload, MirrorSettings())

        assert secret.metadata.owner_references is None

    @pytest.mark.parametrize(("namespace", "owned"), [("prod", True), ("shared", False)])
    def test_owner_only_in_pod_namespace(self, namespace: str, owned: bool) -> None:
        """Test owner references are dropped for Secrets outside the pod namespace."""
        ref = SecretRef(name="db", output_path="/x", k8s_secret_name="db")
        settings = MirrorSettings(enabled=True, namespace=namespace)

        secret = build_secret(ref, ResolvedSecret(fields={"a": "1"}), WORKLOAD, settings)

        assert (secret.metadata.owner_references is not None) is owned

    def test_missing_name(self) -> None:
        """Test a missing Secret name is a config error."""
        ref = SecretRef(name="db", output_path="/x", inject_as_k8s_secret=True)

        with pytest.raises(ConfigInvalidError, match="k8s-secret-name"):
            build_secret(ref, ResolvedSecret(), WORKLOAD, MirrorSettings())

    def test_folder_secret_name(self) -> None:
        """Test folder records are named prefix plus sanitized title."""
        folder = FolderRef(folder_path="Production", k8s_secret_name_prefix="prod-")
        resolved = ResolvedSecret(uid="u1", title="MySQL Primary", fields={"password": "pw"})

        secret = build_folder_secret(folder, resolved, WORKLOAD, MirrorSettings())

        assert secret.metadata.name == "prod-mysql-primary"
        assert decoded(secret) == {"password": "pw"}

    @pytest.mark.parametrize(
        ("text", "expected"),
        [("MySQL Prod_01", "mysql-prod-01"), ("--a--", "a"), ("db.internal", "db.internal")],
    )
    def test_dns_safe_name(self, text: str, expected: str) -> None:
        """Test object name sanitisation."""
        assert dns_safe_name(text) == expected


class TestSizeLimit:
    """Test the 1 MiB Secret limit."""

    def test_size_counts_keys_and_values(self) -> None:
        """Test the size is keys plus decoded values."""
        assert secret_size(desired({"ab": "1234"})) == 6

    def test_over_limit(self) -> None:
        """Test oversized Secrets are rejected."""
        secret = desired({"blob": "x" * MAX_SECRET_SIZE})

        with pytest.raises(SizeLimitExceededError) as exc_info:
            validate_secret_size(secret)

        assert exc_info.value.limit == MAX_SECRET_SIZE


class TestReconcile:
    """Test conflict policies against an existing Secret {b: 2}."""

    @pytest.fixture
    def reconciler(self, mock_core_api: MagicMock) -> K8sSecretReconciler:
        mock_core_api.read_namespaced_secret.return_value = existing({"b": "2"})
        return K8sSecretReconciler(mock_core_api)

    def replaced(self, mock_core_api: MagicMock) -> client.V1Secret:
        return mock_core_api.replace_namespaced_secret.call_args.kwargs["body"]

    def test_create_when_missing(
        self, mock_core_api: MagicMock, api_exception_404: ApiException
    ) -> None:
        """Test a 404 on read creates the Secret."""
        mock_core_api.read_namespaced_secret.side_effect = api_exception_404

        action = K8sSecretReconciler(mock_core_api).reconcile(desired({"a": "1"}))

        assert action is ReconcileAction.CREATED
        mock_core_api.create_namespaced_secret.assert_called_once()
        assert mock_core_api.create_namespaced_secret.call_args.kwargs["namespace"] == "prod"

    def test_overwrite(self, reconciler: K8sSecretReconciler, mock_core_api: MagicMock) -> None:
        """Test overwrite replaces the data."""
        action = reconciler.reconcile(desired({"a": "1"}), ConflictPolicy.OVERWRITE)

        assert action is ReconcileAction.UPDATED
        body = self.replaced(mock_core_api)
        assert decoded(body) == {"a": "1"}
        assert "team" not in body.metadata.labels

    def test_merge(self, reconciler: K8sSecretReconciler, mock_core_api: MagicMock) -> None:
        """Test merge keeps existing keys and labels."""
        action = reconciler.reconcile(desired({"a": "1"}), ConflictPolicy.MERGE)

        assert action is ReconcileAction.UPDATED
        body = self.replaced(mock_core_api)
        assert decoded(body) == {"a": "1", "b": "2"}
        assert body.metadata.labels["team"] == "a"
        assert body.metadata.labels["keeper.security/injected"] == "true"

    def test_merge_new_value_wins(
        self, reconciler: K8sSecretReconciler, mock_core_api: MagicMock
    ) -> None:
        """Test colliding keys take the new value."""
        reconciler.reconcile(desired({"b": "3"}), ConflictPolicy.MERGE)

        assert decoded(self.replaced(mock_core_api)) == {"b": "3"}

    def test_skip_if_exists(
        self, reconciler: K8sSecretReconciler, mock_core_api: MagicMock
    ) -> None:
        """Test skip leaves the Secret untouched."""
        action = reconciler.reconcile(desired({"a": "1"}), ConflictPolicy.SKIP_IF_EXISTS)

        assert action is ReconcileAction.SKIPPED
        mock_core_api.replace_namespaced_secret.assert_not_called()

    def test_fail(self, reconciler: K8sSecretReconciler, mock_core_api: MagicMock) -> None:
        """Test fail raises and leaves the Secret untouched."""
        with pytest.raises(ConflictPolicyViolationError, match="already exists"):
            reconciler.reconcile(desired({"a": "1"}), ConflictPolicy.FAIL)

        mock_core_api.replace_namespaced_secret.assert_not_called()

    @pytest.mark.parametrize("fixture", ["api_exception_403", "api_exception_500"])
    def test_read_errors(
        self, mock_core_api: MagicMock, request: pytest.FixtureRequest, fixture: str
    ) -> None:
        """Test API errors other than 404 surface as KubernetesAPIError."""
        error = request.getfixturevalue(fixture)
        mock_core_api.read_namespaced_secret.side_effect = error

        with pytest.raises(KubernetesAPIError) as exc_info:
            K8sSecretReconciler(mock_core_api).reconcile(desired({"a": "1"}))

        assert exc_info.value.status == error.status
        assert exc_info.value.resource == "prod/db-secret"

    def test_write_errors(
        self,
        reconciler: K8sSecretReconciler,
        mock_core_api: MagicMock,
        api_exception_403: ApiException,
    ) -> None:
        """Test a rejected replace surfaces as access denied."""
        mock_core_api.replace_namespaced_secret.side_effect = api_exception_403

        with pytest.raises(KubernetesAPIError, match="Access denied"):
            reconciler.reconcile(desired({"a": "1"}))


class TestSecretMirror:
    """Test SecretMirror policies."""

    @pytest.mark.parametrize(
        ("policy", "expected"),
        [
            (ConflictPolicy.MERGE, ConflictPolicy.MERGE),
            (ConflictPolicy.OVERWRITE, ConflictPolicy.OVERWRITE),
            (ConflictPolicy.SKIP_IF_EXISTS, ConflictPolicy.OVERWRITE),
            (ConflictPolicy.FAIL, ConflictPolicy.OVERWRITE),
        ],
    )
    def test_rotation_policy(self, policy: ConflictPolicy, expected: ConflictPolicy) -> None:
        """Test rotation only honours merge."""
        mirror = SecretMirror(MagicMock(), WORKLOAD, MirrorSettings(policy=policy))

        assert mirror.rotation_policy is expected

    def test_publish_secret_rotation(self) -> None:
        """Test rotation publishes with the rotation policy."""
        reconciler = MagicMock()
        settings = MirrorSettings(enabled=True, policy=ConflictPolicy.SKIP_IF_EXISTS)
        mirror = SecretMirror(reconciler, WORKLOAD, settings)
        ref = SecretRef(name="db", output_path="/x", k8s_secret_name="db")

        mirror.publish_secret(ref, ResolvedSecret(fields={"a": "1"}), rotation=True)

        args = reconciler.reconcile.call_args
        assert args.args[1] is ConflictPolicy.OVERWRITE
        assert args.kwargs["owner_ref"] is True


class TestMirrorPlan:
    """Test mirror_plan over the fake backend."""

    @pytest.fixture
    def plan(self, base_plan: InjectionPlan) -> InjectionPlan:
        return InjectionPlan(
            secrets=(
                SecretRef(name="db-creds", output_path="/k/db.json", inject_as_k8s_secret=True,
                          k8s_secret_name="db-secret"),
                SecretRef(name="api-keys", output_path="/k/api.json", inject_as_k8s_secret=True,
                          k8s_secret_name="api-secret"),
                SecretRef(name="tls-cert", output_path="/k/tls.json"),
            ),
            folders=(
                FolderRef(folder_path="Production/Databases", inject_as_k8s_secret=True,
                          k8s_secret_name_prefix="dbs-"),
            ),
            locator=base_plan.locator,
            mirror=MirrorSettings(enabled=True),
        )

    def test_publishes_everything_with_one_listing(
        self,
        plan: InjectionPlan,
        fetcher: SecretFetcher,
        fake_backend: Any,
        mock_core_api: MagicMock,
        api_exception_404: ApiException,
    ) -> None:
        """Test every flagged entry and folder record is created from one listing."""
        mock_core_api.read_namespaced_secret.side_effect = api_exception_404

        report = mirror_plan(plan, fetcher, WORKLOAD, K8sSecretReconciler(mock_core_api))

        assert report.ok
        assert report.actions == {
            "prod/db-secret": ReconcileAction.CREATED,
            "prod/api-secret": ReconcileAction.CREATED,
            "prod/dbs-mysql": ReconcileAction.CREATED,
        }
        assert report.listing_calls == 1
        assert fake_backend.list_calls == 1

    def test_failures_collected(
        self,
        plan: InjectionPlan,
        fetcher: SecretFetcher,
        mock_core_api: MagicMock,
        api_exception_404: ApiException,
    ) -> None:
        """Test failures are reported without aborting other targets."""
        mock_core_api.read_namespaced_secret.side_effect = api_exception_404
        broken = plan.model_copy(
            update={
                "fail_on_error": False,
                "secrets": (
                    SecretRef(name="missing", output_path="/k/m.json", inject_as_k8s_secret=True,
                              k8s_secret_name="m"),
                    *plan.secrets,
                ),
            }
        )

        report = mirror_plan(broken, fetcher, WORKLOAD, K8sSecretReconciler(mock_core_api))

        assert not report.ok
        assert isinstance(report.errors["missing"], RecordNotFoundError)
        assert len(report.actions) == 3

    def test_fail_on_error_raises(
        self, plan: InjectionPlan, fetcher: SecretFetcher, fake_backend: Any
    ) -> None:
        """Test the first failure is raised under fail-on-error."""
        fake_backend.fail_next()

        with pytest.raises(ConnectionError):
            mirror_plan(plan, fetcher, WORKLOAD, K8sSecretReconciler(MagicMock()))

    def test_nothing_to_mirror(
        self, base_plan: InjectionPlan, fetcher: SecretFetcher, fake_backend: Any
    ) -> None:
        """Test plans without mirrored entries make no calls."""
        report = mirror_plan(base_plan, fetcher, WORKLOAD, K8sSecretReconciler(MagicMock()))

        assert report.actions == {}
        assert fake_backend.list_calls == 0
