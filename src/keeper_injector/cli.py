"""Command-line entry point for the injector.

Commands:
    keeper-injector parse   Parse annotations and print the plan (no secrets).
    keeper-injector agent   Run the init container or sidecar agent.
    keeper-injector mirror  Mirror flagged entries into Kubernetes Secrets.
    keeper-injector env     Print the env vars an admission webhook would add.

Annotations are read from a Kubernetes downward-API file (one
``key="value"`` line per annotation) or from a YAML/JSON mapping. Every
option also reads a ``KEEPER_``-prefixed environment variable.

Example:
    $ keeper-injector parse --annotations /etc/podinfo/annotations
    $ keeper-injector agent --mode init --annotations /etc/podinfo/annotations
"""

from __future__ import annotations

import json
import re
import signal
import sys
import threading
from dataclasses import dataclass
from datetime import timedelta
from enum import IntEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
import structlog
import yaml
from pydantic import ValidationError

from keeper_injector import __version__
from keeper_injector.agent import RotationLoop
from keeper_injector.annotations import parse_annotations
from keeper_injector.backend import KeeperBackend
from keeper_injector.cache import SecretCache
from keeper_injector.config import ENV_PREFIX, AgentConfig, AgentMode
from keeper_injector.envvars import plan_env_vars
from keeper_injector.errors import ConfigInvalidError, InjectorError
from keeper_injector.fetcher import SecretFetcher
from keeper_injector.kube import current_namespace, load_core_api
from keeper_injector.locators import install_ca_bundle, load_backend_config, load_ca_certificate
from keeper_injector.logging_config import LOG_LEVELS, configure_logging
from keeper_injector.mirror import K8sSecretReconciler, SecretMirror, WorkloadRef, mirror_plan
from keeper_injector.models import DEFAULT_SECRETS_PATH, InjectionPlan, LocatorMethod
from keeper_injector.notify import SignalNotifier
from keeper_injector.retry import with_retry
from keeper_injector.writer import SecretWriter

if TYPE_CHECKING:
    from typing import NoReturn

logger = structlog.get_logger(__name__)

_DOWNWARD_LINE = re.compile(r'^(?P<key>[^=\s]+)=(?P<value>".*")$')


class ExitCode(IntEnum):
    """Process exit codes."""

    SUCCESS = 0
    """Command completed successfully."""

    GENERAL_ERROR = 1
    """Injection failed (configuration, backend or Kubernetes error)."""

    USAGE_ERROR = 2
    """Invalid usage (bad arguments, missing required options)."""


def error_exit(message: str, exit_code: ExitCode = ExitCode.GENERAL_ERROR) -> NoReturn:
    """Print an error message to stderr and exit."""
    click.echo(f"Error: {message}", err=True)
    sys.exit(exit_code)


# =============================================================================
# Annotation input
# =============================================================================


def parse_downward_api(text: str) -> dict[str, str] | None:
    """Parse the downward-API annotations file format.

    Each line is ``key="value"`` with the value quoted and escaped.

    Returns:
        The annotations, or None when the text is not in this format.

    Raises:
        ConfigInvalidError: If a quoted value cannot be unescaped.
    """
    lines = [line for line in text.splitlines() if line.strip()]
    if not lines:
        return None
    annotations: dict[str, str] = {}
    for line in lines:
        match = _DOWNWARD_LINE.match(line.strip())
        if match is None:
            return None
        key = match.group("key")
        try:
            annotations[key] = json.loads(match.group("value"))
        except json.JSONDecodeError as e:
            raise ConfigInvalidError(f"cannot unescape value: {e.msg}", key=key) from e
    return annotations


def read_annotations(path: str | Path) -> dict[str, str]:
    """Read annotations from a downward-API file or a YAML/JSON mapping.

    Raises:
        ConfigInvalidError: If the file is not a string mapping.
        OSError: If the file cannot be read.
    """
    text = Path(path).read_text(encoding="utf-8")
    downward = parse_downward_api(text)
    if downward is not None:
        return downward

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigInvalidError(f"invalid annotations file: {e}", key=str(path)) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigInvalidError("annotations file must contain a mapping", key=str(path))
    return {str(k): "" if v is None else str(v) for k, v in data.items()}


def load_plan(path: str | Path) -> InjectionPlan | None:
    """Read and parse an annotations file."""
    return parse_annotations(read_annotations(path))


# =============================================================================
# Runtime wiring
# =============================================================================


@dataclass
class Runtime:
    """Clients shared by the agent, mirror and env commands."""

    fetcher: SecretFetcher
    core_api: Any


def _needs_kubernetes(plan: InjectionPlan) -> bool:
    return (
        plan.locator.method is LocatorMethod.SECRET
        or plan.ca_cert.configured
        or plan.mirror.enabled
    )


def bootstrap(plan: InjectionPlan, config: AgentConfig, *, kubernetes: bool = False) -> Runtime:
    """Connect to Kubernetes (when needed) and to Keeper.

    Args:
        plan: Parsed injection plan.
        config: Process configuration.
        kubernetes: Force a Kubernetes client even if the plan needs none.

    Raises:
        InjectorError: If a client, the CA or the KSM config cannot be loaded.
    """
    core_api = None
    if kubernetes or _needs_kubernetes(plan):
        core_api = load_core_api(config.kubeconfig, config.context)

    cert = load_ca_certificate(plan.ca_cert, config.namespace, core_api)
    if cert is not None:
        install_ca_bundle(cert, config.ca_bundle_path)

    ksm_config = load_backend_config(plan.locator, config.namespace, core_api)
    backend = KeeperBackend.from_config(ksm_config, verify_ssl_certs=config.verify_ssl_certs)
    return Runtime(
        fetcher=SecretFetcher(backend, strict_lookup=plan.strict_lookup),
        core_api=core_api,
    )


def workload_ref(config: AgentConfig) -> WorkloadRef:
    """Return the workload that owns mirrored Secrets."""
    return WorkloadRef(name=config.pod_name, namespace=config.namespace, uid=config.pod_uid)


def install_signal_handlers(cancel: threading.Event) -> None:
    """Set ``cancel`` on SIGTERM and SIGINT."""

    def handler(signum: int, frame: Any) -> None:  # noqa: ARG001
        logger.info("cli.signal_received", signal=signal.Signals(signum).name)
        cancel.set()

    signal.signal(signal.SIGTERM, handler)
    signal.signal(signal.SIGINT, handler)


def _build_config(**values: Any) -> AgentConfig:
    try:
        return AgentConfig(**{k: v for k, v in values.items() if v is not None})
    except ValidationError as e:
        raise click.UsageError(str(e)) from e


def _require_plan(annotations: str) -> InjectionPlan:
    plan = load_plan(annotations)
    if plan is None:
        raise ConfigInvalidError("injection is not enabled", key="keeper.security/inject")
    return plan


# =============================================================================
# Commands
# =============================================================================


_annotations_option = click.option(
    "--annotations",
    "annotations",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    envvar=f"{ENV_PREFIX}ANNOTATIONS",
    help="Downward-API annotations file or YAML/JSON mapping.",
)
_namespace_option = click.option(
    "--namespace",
    envvar=f"{ENV_PREFIX}NAMESPACE",
    default=None,
    help="Workload namespace (default: service account namespace).",
)
_kubeconfig_option = click.option(
    "--kubeconfig",
    envvar=f"{ENV_PREFIX}KUBECONFIG",
    default=None,
    help="Kubeconfig file; in-cluster config is tried first when omitted.",
)
_context_option = click.option(
    "--context", envvar=f"{ENV_PREFIX}CONTEXT", default=None, help="Kubeconfig context."
)
_verify_option = click.option(
    "--verify-ssl/--no-verify-ssl",
    "verify_ssl_certs",
    envvar=f"{ENV_PREFIX}VERIFY_SSL",
    default=True,
    help="Verify the Keeper endpoint's TLS certificate.",
)
_pod_options = [
    click.option("--pod-name", envvar=f"{ENV_PREFIX}POD_NAME", default=None, help="Pod name."),
    click.option("--pod-uid", envvar=f"{ENV_PREFIX}POD_UID", default=None, help="Pod UID."),
]


def _with_options(options: list[Any]) -> Any:
    def decorate(fn: Any) -> Any:
        for option in reversed(options):
            fn = option(fn)
        return fn

    return decorate


@click.group(
    name="keeper-injector",
    help="Inject Keeper Secrets Manager secrets into Kubernetes workloads.",
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.version_option(version=__version__, prog_name="keeper-injector")
@click.option(
    "--log-level",
    envvar=f"{ENV_PREFIX}LOG_LEVEL",
    default="INFO",
    show_default=True,
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
)
@click.option(
    "--json-logs/--console-logs",
    envvar=f"{ENV_PREFIX}JSON_LOGS",
    default=True,
    help="Emit JSON log lines.",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str, json_logs: bool) -> None:
    """Root command group."""
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level.upper()
    ctx.obj["json_logs"] = json_logs
    configure_logging(log_level, json_output=json_logs)


@cli.command("parse")
@_annotations_option
@click.option(
    "--output",
    "output_format",
    type=click.Choice(["json", "yaml"]),
    default="json",
    show_default=True,
)
def parse_command(annotations: str, output_format: str) -> None:
    """Parse annotations and print the injection plan."""
    try:
        plan = load_plan(annotations)
    except (InjectorError, OSError) as e:
        error_exit(str(e))

    if plan is None:
        click.echo("injection not enabled", err=True)
        return
    data = plan.model_dump(mode="json")
    if output_format == "yaml":
        click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False), nl=False)
    else:
        click.echo(json.dumps(data, indent=2))


@cli.command("agent")
@_annotations_option
@click.option(
    "--mode",
    type=click.Choice([m.value for m in AgentMode]),
    envvar=f"{ENV_PREFIX}MODE",
    default=AgentMode.SIDECAR.value,
    show_default=True,
    help="init writes once and exits; sidecar keeps rotating.",
)
@click.option(
    "--mount-root",
    envvar=f"{ENV_PREFIX}MOUNT_ROOT",
    default=DEFAULT_SECRETS_PATH,
    show_default=True,
    help="Every output path must live below this directory.",
)
@click.option(
    "--cache-max-age",
    type=click.IntRange(min=1),
    envvar=f"{ENV_PREFIX}CACHE_MAX_AGE",
    default=None,
    help="Seconds a cached value may be served after failures (default 24h).",
)
@click.option(
    "--pid-file",
    envvar=f"{ENV_PREFIX}PID_FILE",
    default=None,
    help="File holding the workload PID to signal on change.",
)
@click.option(
    "--ca-bundle-path",
    envvar=f"{ENV_PREFIX}CA_BUNDLE_PATH",
    default=None,
    help="Where a custom CA certificate is installed.",
)
@_namespace_option
@_with_options(_pod_options)
@_kubeconfig_option
@_context_option
@_verify_option
def agent_command(
    annotations: str,
    mode: str,
    mount_root: str,
    cache_max_age: int | None,
    pid_file: str | None,
    ca_bundle_path: str | None,
    namespace: str | None,
    pod_name: str | None,
    pod_uid: str | None,
    kubeconfig: str | None,
    context: str | None,
    verify_ssl_certs: bool,
) -> None:
    """Fetch secrets into the shared volume, then keep them fresh."""
    config = _build_config(
        mode=mode,
        mount_root=mount_root,
        cache_max_age=timedelta(seconds=cache_max_age) if cache_max_age else None,
        pid_file=pid_file,
        ca_bundle_path=ca_bundle_path,
        namespace=namespace or current_namespace(),
        pod_name=pod_name,
        pod_uid=pod_uid,
        kubeconfig=kubeconfig,
        context=context,
        verify_ssl_certs=verify_ssl_certs,
    )
    try:
        plan = _require_plan(annotations)
        if config.init_only and not plan.init_only:
            plan = plan.model_copy(update={"init_only": True})
        runtime = bootstrap(plan, config)

        notifier = None
        if plan.signal and config.pid_file:
            notifier = SignalNotifier(plan.signal, config.pid_file)
        mirror = None
        if plan.mirror.rotation and plan.mirror.enabled and runtime.core_api is not None:
            mirror = SecretMirror(
                K8sSecretReconciler(runtime.core_api), workload_ref(config), plan.mirror
            )

        loop = RotationLoop(
            plan,
            runtime.fetcher,
            SecretWriter(config.mount_root),
            cache=SecretCache(config.cache_max_age),
            notifier=notifier,
            mirror=mirror,
            retry_config=config.retry,
        )
        cancel = threading.Event()
        install_signal_handlers(cancel)
        loop.run(cancel)
    except (InjectorError, OSError) as e:
        logger.error("cli.agent_failed", error=str(e), error_type=type(e).__name__)
        error_exit(str(e))


@cli.command("mirror")
@_annotations_option
@_namespace_option
@_with_options(_pod_options)
@_kubeconfig_option
@_context_option
@_verify_option
def mirror_command(
    annotations: str,
    namespace: str | None,
    pod_name: str | None,
    pod_uid: str | None,
    kubeconfig: str | None,
    context: str | None,
    verify_ssl_certs: bool,
) -> None:
    """Mirror flagged secrets and folders into Kubernetes Secrets."""
    config = _build_config(
        namespace=namespace or current_namespace(),
        pod_name=pod_name,
        pod_uid=pod_uid,
        kubeconfig=kubeconfig,
        context=context,
        verify_ssl_certs=verify_ssl_certs,
    )
    try:
        plan = _require_plan(annotations)
        runtime = bootstrap(plan, config, kubernetes=True)
        cancel = threading.Event()
        install_signal_handlers(cancel)
        report = mirror_plan(
            plan,
            runtime.fetcher,
            workload_ref(config),
            K8sSecretReconciler(runtime.core_api),
            runner=lambda fn: with_retry(fn, config.retry, cancel),
        )
    except (InjectorError, OSError) as e:
        logger.error("cli.mirror_failed", error=str(e), error_type=type(e).__name__)
        error_exit(str(e))

    for secret, action in sorted(report.actions.items()):
        click.echo(f"{action.value}\t{secret}")
    for target, error in sorted(report.errors.items()):
        click.echo(f"failed\t{target}\t{error}", err=True)
    if not report.ok:
        sys.exit(ExitCode.GENERAL_ERROR)


@cli.command("env")
@_annotations_option
@_namespace_option
@_kubeconfig_option
@_context_option
@_verify_option
def env_command(
    annotations: str,
    namespace: str | None,
    kubeconfig: str | None,
    context: str | None,
    verify_ssl_certs: bool,
) -> None:
    """Print the container env vars for entries injected as env vars (JSON)."""
    config = _build_config(
        namespace=namespace or current_namespace(),
        kubeconfig=kubeconfig,
        context=context,
        verify_ssl_certs=verify_ssl_certs,
    )
    try:
        plan = _require_plan(annotations)
        runtime = bootstrap(plan, config)
        env = plan_env_vars(plan, runtime.fetcher)
    except (InjectorError, OSError) as e:
        logger.error("cli.env_failed", error=str(e), error_type=type(e).__name__)
        error_exit(str(e))

    click.echo(json.dumps([{"name": var.name, "value": var.value} for var in env], indent=2))


def main(argv: list[str] | None = None) -> None:
    """Console entry point.

    Args:
        argv: Command-line arguments (uses sys.argv if None).
    """
    try:
        cli(args=argv, standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(ExitCode.USAGE_ERROR)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(ExitCode.GENERAL_ERROR)


if __name__ == "__main__":
    main()


__all__ = [
    "ExitCode",
    "Runtime",
    "bootstrap",
    "cli",
    "load_plan",
    "main",
    "parse_downward_api",
    "read_annotations",
]
