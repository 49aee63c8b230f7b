"""keeper-injector: Keeper Secrets Manager injection for Kubernetes.

Pods opt in with ``keeper.security/*`` annotations. An admission webhook
adds an agent container that fetches the requested records, renders
them and writes them to a shared volume (init mode), then keeps them
fresh (sidecar mode). Entries can also be mirrored into Kubernetes
Secrets or exposed as container env vars.

Example:
    >>> from keeper_injector import parse_annotations, SecretFetcher
    >>> plan = parse_annotations(pod.metadata.annotations)
    >>> fetcher = SecretFetcher(KeeperBackend.from_config(ksm_config))
    >>> fetcher.batch_resolve(plan.secrets).ok
    True
"""

from __future__ import annotations

__version__ = "0.1.0"

from keeper_injector.agent import EntryState, RotationLoop, TickReport
from keeper_injector.annotations import parse_annotations, should_inject
from keeper_injector.backend import KeeperBackend, SecretsBackend
from keeper_injector.cache import SecretCache
from keeper_injector.errors import (
    AmbiguousTitleError,
    BackendUnavailableError,
    ConfigInvalidError,
    InjectorError,
    NotationInvalidError,
    RecordNotFoundError,
)
from keeper_injector.fetcher import BatchResult, SecretFetcher
from keeper_injector.mirror import K8sSecretReconciler, SecretMirror, mirror_plan
from keeper_injector.models import (
    ConflictPolicy,
    FolderRef,
    InjectionPlan,
    ResolvedSecret,
    SecretFormat,
    SecretRef,
)
from keeper_injector.notation import Notation, parse_notation, render_notation
from keeper_injector.renderer import render, render_secret

__all__ = [
    "__version__",
    # Plan
    "ConflictPolicy",
    "FolderRef",
    "InjectionPlan",
    "SecretFormat",
    "SecretRef",
    "parse_annotations",
    "should_inject",
    # Notation
    "Notation",
    "parse_notation",
    "render_notation",
    # Resolution
    "BatchResult",
    "KeeperBackend",
    "ResolvedSecret",
    "SecretFetcher",
    "SecretsBackend",
    # Agent
    "EntryState",
    "RotationLoop",
    "SecretCache",
    "TickReport",
    "render",
    "render_secret",
    # Mirroring
    "K8sSecretReconciler",
    "SecretMirror",
    "mirror_plan",
    # Errors
    "AmbiguousTitleError",
    "BackendUnavailableError",
    "ConfigInvalidError",
    "InjectorError",
    "NotationInvalidError",
    "RecordNotFoundError",
]
