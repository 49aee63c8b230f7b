"""Pytest configuration for integration tests.

Kubernetes tests need ``kubectl`` pointed at a disposable cluster (Kind
works). Keeper tests need a KSM application config in ``KSM_CONFIG`` and
the title of a readable login record in ``KSM_TEST_RECORD``. Tests skip
when their environment is missing.
"""

from __future__ import annotations

import os
import subprocess
import uuid
from typing import TYPE_CHECKING, Any

import pytest

from keeper_injector.backend import KeeperBackend
from keeper_injector.fetcher import SecretFetcher
from keeper_injector.kube import load_core_api

if TYPE_CHECKING:
    from collections.abc import Generator


def _kubectl_available() -> bool:
    """Check if kubectl is available and configured."""
    try:
        result = subprocess.run(
            ["kubectl", "cluster-info"],
            capture_output=True,
            text=True,
            timeout=10,
        )
        return result.returncode == 0
    except (subprocess.SubprocessError, FileNotFoundError):
        return False


@pytest.fixture
def kubectl_required() -> None:
    """Skip the test if no cluster is reachable."""
    if not _kubectl_available():
        pytest.skip("kubectl not available - start a Kind cluster first")


@pytest.fixture
def test_namespace(kubectl_required: None) -> Generator[str, None, None]:
    """Create and clean up a unique namespace.

    Yields:
        Name of the created namespace.
    """
    ns = f"keeper-test-{uuid.uuid4().hex[:8]}"
    subprocess.run(["kubectl", "create", "namespace", ns], capture_output=True, check=True)

    yield ns

    subprocess.run(
        ["kubectl", "delete", "namespace", ns, "--ignore-not-found", "--wait=false"],
        capture_output=True,
        check=False,
    )


@pytest.fixture
def core_api(kubectl_required: None) -> Any:
    """CoreV1Api for the current kubeconfig context."""
    return load_core_api()


@pytest.fixture
def ksm_fetcher() -> SecretFetcher:
    """Fetcher for the vault named by ``KSM_CONFIG``."""
    config = os.environ.get("KSM_CONFIG")
    if not config:
        pytest.skip("KSM_CONFIG not set")
    return SecretFetcher(KeeperBackend.from_config(config))


@pytest.fixture
def ksm_record_title() -> str:
    """Title of a login record shared with the test application."""
    title = os.environ.get("KSM_TEST_RECORD")
    if not title:
        pytest.skip("KSM_TEST_RECORD not set")
    return title
