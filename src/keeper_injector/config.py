"""Process-level configuration for the agent and CLI.

The injection plan says *what* to inject; AgentConfig says how this
process runs: init or sidecar mode, where the secrets volume is
mounted, how long cached values stay usable and how to reach the
Kubernetes API. The CLI builds it from flags and ``KEEPER_``-prefixed
environment variables.

Example:
    >>> config = AgentConfig(mode="sidecar", mount_root="/keeper")
    >>> config.cache_max_age
    datetime.timedelta(days=1)
"""

from __future__ import annotations

from datetime import timedelta
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from keeper_injector.cache import DEFAULT_MAX_AGE
from keeper_injector.logging_config import LOG_LEVELS
from keeper_injector.models import DEFAULT_SECRETS_PATH
from keeper_injector.retry import RetryConfig

ENV_PREFIX = "KEEPER_"
DEFAULT_CA_BUNDLE_PATH = "/tmp/keeper-ca/ca.crt"


class AgentMode(str, Enum):
    """How long the agent runs."""

    INIT = "init"
    SIDECAR = "sidecar"


class AgentConfig(BaseModel):
    """Configuration for one agent process.

    Attributes:
        mode: ``init`` writes once and exits; ``sidecar`` keeps rotating.
        mount_root: Every output path must live below this directory.
        cache_max_age: How long a cached value may be served after failures.
        retry: Retry policy for backend calls.
        pid_file: File holding the workload PID for change signals.
        namespace: Workload namespace.
        pod_name: Workload pod name (owner of mirrored Secrets).
        pod_uid: Workload pod UID.
        kubeconfig: Explicit kubeconfig; None tries in-cluster first.
        context: Kubeconfig context.
        verify_ssl_certs: Verify the Keeper endpoint's TLS certificate.
        ca_bundle_path: Where a custom CA certificate is installed.
        log_level: Minimum log level.
        json_logs: Emit JSON log lines.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    mode: AgentMode = AgentMode.SIDECAR
    mount_root: str = Field(default=DEFAULT_SECRETS_PATH, min_length=1)
    cache_max_age: timedelta = DEFAULT_MAX_AGE
    retry: RetryConfig = Field(default_factory=RetryConfig)
    pid_file: str | None = None
    namespace: str = "default"
    pod_name: str = ""
    pod_uid: str = ""
    kubeconfig: str | None = None
    context: str | None = None
    verify_ssl_certs: bool = True
    ca_bundle_path: str = DEFAULT_CA_BUNDLE_PATH
    log_level: str = "INFO"
    json_logs: bool = True

    @field_validator("mount_root")
    @classmethod
    def _absolute_mount_root(cls, v: str) -> str:
        if not v.startswith("/"):
            msg = f"mount root must be absolute, got '{v}'"
            raise ValueError(msg)
        return v

    @field_validator("kubeconfig")
    @classmethod
    def _expand_kubeconfig(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return str(Path(v).expanduser())

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, v: str) -> str:
        level = v.upper()
        if level not in LOG_LEVELS:
            msg = f"log level must be one of {', '.join(LOG_LEVELS)}"
            raise ValueError(msg)
        return level

    @property
    def init_only(self) -> bool:
        """Return True in init mode."""
        return self.mode is AgentMode.INIT


__all__ = ["AgentConfig", "AgentMode", "DEFAULT_CA_BUNDLE_PATH", "ENV_PREFIX"]
