"""Locate the Keeper Secrets Manager config and custom CA certificates.

The agent needs a KSM client config (base64 JSON) before it can fetch
anything. Depending on ``auth-method`` it is read from:

    secret               Kubernetes Secret, key ``config``
    aws-secrets-manager  AWS Secrets Manager (IRSA / default credentials)
    gcp-secret-manager   Google Secret Manager (Workload Identity)
    azure-key-vault      Azure Key Vault (DefaultAzureCredential)

Cloud SDK clients are imported on first use so a pod that only uses
Kubernetes Secrets never initialises them.

Example:
    >>> config = load_backend_config(plan.locator, "prod", client.CoreV1Api())
    >>> backend = KeeperBackend.from_config(config)
"""

from __future__ import annotations

import base64
import binascii
import os
from pathlib import Path
from typing import Any

import certifi
import structlog
from kubernetes.client.rest import ApiException

from keeper_injector.errors import CredentialLocatorError
from keeper_injector.models import CACertSource, LocatorConfig, LocatorMethod
from keeper_injector.tracing import ATTR_NAMESPACE, get_tracer, secrets_span

logger = structlog.get_logger(__name__)

CONFIG_KEY = "config"
AZURE_VAULT_URL = "https://{vault}.vault.azure.net/"


def _decode(value: str, what: str, method: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CredentialLocatorError(method, f"{what} is not valid base64") from e


# =============================================================================
# Kubernetes
# =============================================================================


def _read_secret_key(core_api: Any, name: str, namespace: str, key: str, method: str) -> bytes:
    try:
        secret = core_api.read_namespaced_secret(name=name, namespace=namespace)
    except ApiException as e:
        if e.status == 404:
            raise CredentialLocatorError(
                method, f"secret '{namespace}/{name}' not found"
            ) from e
        if e.status == 403:
            raise CredentialLocatorError(
                method, f"access denied to secret '{namespace}/{name}'"
            ) from e
        raise CredentialLocatorError(
            method, f"cannot read secret '{namespace}/{name}': {e.reason}"
        ) from e

    data = secret.data or {}
    if key not in data:
        raise CredentialLocatorError(method, f"secret '{namespace}/{name}' has no key '{key}'")
    return _decode(data[key], f"secret '{namespace}/{name}' key '{key}'", method)


def _from_kubernetes(locator: LocatorConfig, namespace: str, core_api: Any) -> str:
    raw = _read_secret_key(
        core_api, locator.auth_secret_name, namespace, CONFIG_KEY, locator.method.value
    )
    return raw.decode("utf-8")


# =============================================================================
# Cloud secret stores
# =============================================================================


def _from_aws(locator: LocatorConfig) -> str:
    import boto3
    from botocore.exceptions import BotoCoreError, ClientError

    method = locator.method.value
    try:
        session = boto3.session.Session(region_name=locator.aws_region or None)
        client = session.client("secretsmanager")
        result = client.get_secret_value(SecretId=locator.aws_secret_id)
    except (BotoCoreError, ClientError) as e:
        raise CredentialLocatorError(method, f"AWS Secrets Manager: {e}") from e

    value = result.get("SecretString")
    if value is None:
        raise CredentialLocatorError(
            method, f"secret '{locator.aws_secret_id}' has no string value"
        )
    return str(value)


def gcp_version_name(secret_id: str) -> str:
    """Return the version resource name for a GCP secret ID.

    Example:
        >>> gcp_version_name("projects/p/secrets/ksm-config")
        'projects/p/secrets/ksm-config/versions/latest'
    """
    if "/versions/" in secret_id:
        return secret_id
    return f"{secret_id.rstrip('/')}/versions/latest"


def _from_gcp(locator: LocatorConfig) -> str:
    from google.api_core.exceptions import GoogleAPIError
    from google.auth.exceptions import GoogleAuthError
    from google.cloud.secretmanager import SecretManagerServiceClient

    method = locator.method.value
    try:
        client = SecretManagerServiceClient()
        response = client.access_secret_version(
            request={"name": gcp_version_name(locator.gcp_secret_id)}
        )
    except (GoogleAPIError, GoogleAuthError) as e:
        raise CredentialLocatorError(method, f"Google Secret Manager: {e}") from e

    payload = response.payload.data if response.payload else b""
    if not payload:
        raise CredentialLocatorError(method, f"secret '{locator.gcp_secret_id}' has no payload")
    return payload.decode("utf-8")


def _from_azure(locator: LocatorConfig) -> str:
    from azure.core.exceptions import AzureError
    from azure.identity import DefaultAzureCredential
    from azure.keyvault.secrets import SecretClient

    method = locator.method.value
    try:
        client = SecretClient(
            vault_url=AZURE_VAULT_URL.format(vault=locator.azure_vault_name),
            credential=DefaultAzureCredential(),
        )
        secret = client.get_secret(locator.azure_secret_name)
    except AzureError as e:
        raise CredentialLocatorError(method, f"Azure Key Vault: {e}") from e

    if not secret.value:
        raise CredentialLocatorError(
            method,
            f"secret '{locator.azure_secret_name}' in vault "
            f"'{locator.azure_vault_name}' has no value",
        )
    return secret.value


# =============================================================================
# Public API
# =============================================================================


def load_backend_config(locator: LocatorConfig, namespace: str, core_api: Any = None) -> str:
    """Fetch the KSM client config the locator points at.

    Args:
        locator: Locator settings from the plan.
        namespace: Workload namespace, used for Kubernetes Secrets.
        core_api: ``CoreV1Api``; required for the ``secret`` method.

    Returns:
        The KSM config string (base64 JSON as issued by Keeper).

    Raises:
        CredentialLocatorError: If the config cannot be loaded.
    """
    method = locator.method
    with secrets_span(
        get_tracer(),
        "load_backend_config",
        provider=method.value,
        extra_attributes={ATTR_NAMESPACE: namespace},
    ):
        if method is LocatorMethod.SECRET:
            if core_api is None:
                raise CredentialLocatorError(method.value, "no Kubernetes client available")
            config = _from_kubernetes(locator, namespace, core_api)
        elif method is LocatorMethod.AWS_SECRETS_MANAGER:
            config = _from_aws(locator)
        elif method is LocatorMethod.GCP_SECRET_MANAGER:
            config = _from_gcp(locator)
        else:
            config = _from_azure(locator)

    if not config.strip():
        raise CredentialLocatorError(method.value, "config is empty")
    logger.info("locators.config_loaded", method=method.value, namespace=namespace)
    return config


def load_ca_certificate(source: CACertSource, namespace: str, core_api: Any) -> bytes | None:
    """Read a custom CA certificate from a Secret or ConfigMap.

    The Secret wins when both are configured. Content is returned
    verbatim.

    Args:
        source: CA location from the plan.
        namespace: Workload namespace.
        core_api: ``CoreV1Api`` instance.

    Returns:
        PEM bytes, or None when no CA source is configured.

    Raises:
        CredentialLocatorError: If the object or key is missing.
    """
    if not source.configured:
        return None

    if source.secret_name:
        cert = _read_secret_key(core_api, source.secret_name, namespace, source.key, "ca-cert")
        logger.info("locators.ca_loaded", kind="secret", name=source.secret_name)
        return cert

    name = source.config_map_name
    try:
        config_map = core_api.read_namespaced_config_map(name=name, namespace=namespace)
    except ApiException as e:
        raise CredentialLocatorError(
            "ca-cert", f"cannot read configmap '{namespace}/{name}': {e.reason}"
        ) from e

    if config_map.data and source.key in config_map.data:
        cert = config_map.data[source.key].encode("utf-8")
    elif config_map.binary_data and source.key in config_map.binary_data:
        cert = _decode(config_map.binary_data[source.key], f"configmap '{name}'", "ca-cert")
    else:
        raise CredentialLocatorError(
            "ca-cert", f"configmap '{namespace}/{name}' has no key '{source.key}'"
        )
    logger.info("locators.ca_loaded", kind="configmap", name=name)
    return cert


def install_ca_bundle(cert: bytes, path: str) -> str:
    """Write a CA bundle that trusts public CAs plus ``cert``.

    The bundle is certifi's CA store followed by the custom certificate,
    so Keeper endpoints signed by a public CA keep working. The Keeper
    SDK talks HTTPS through ``requests``, which honours
    ``REQUESTS_CA_BUNDLE``.

    Returns:
        The path written.
    """
    system = Path(certifi.where()).read_bytes()
    if not system.endswith(b"\n"):
        system += b"\n"

    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "wb") as handle:
        handle.write(system + cert)
    os.environ["REQUESTS_CA_BUNDLE"] = path
    logger.info("locators.ca_installed", path=path, custom_bytes=len(cert))
    return path


__all__ = [
    "CONFIG_KEY",
    "gcp_version_name",
    "install_ca_bundle",
    "load_backend_config",
    "load_ca_certificate",
]
