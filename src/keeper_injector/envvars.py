"""Environment-variable injection.

Secrets flagged ``inject_as_env_vars`` are exposed to containers as
plain env vars instead of (or as well as) files. Names are the field
names with the entry's prefix, upper-cased, with every non-alphanumeric
character replaced by ``_``. The prefix was inherited from the global
``env-prefix`` annotation at parse time.
"""

from __future__ import annotations

import json
from typing import Any

import structlog
from kubernetes import client

from keeper_injector.errors import InjectorError
from keeper_injector.fetcher import SecretFetcher
from keeper_injector.models import InjectionPlan, Resolution, ResolvedSecret, SecretRef
from keeper_injector.renderer import to_env_key

logger = structlog.get_logger(__name__)


def value_to_string(value: Any) -> str:
    """Stringify a field value for an env var.

    Text is used as-is, bytes are decoded, and other values are JSON
    encoded with surrounding quotes stripped from JSON strings.
    """
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    encoded = json.dumps(value)
    if len(encoded) >= 2 and encoded.startswith('"') and encoded.endswith('"'):
        return encoded[1:-1]
    return encoded


def build_env_vars(ref: SecretRef, resolved: ResolvedSecret) -> list[client.V1EnvVar]:
    """Build env vars for one resolved entry.

    Notation entries produce a single variable named after the entry;
    other entries produce one variable per field. Attachments produce none.

    Args:
        ref: The entry, carrying its inherited env prefix.
        resolved: Its resolved value.

    Returns:
        Env vars in field order.
    """
    if ref.is_file or resolved.file_content is not None:
        return []

    if ref.resolution is Resolution.NOTATION:
        if len(resolved.fields) == 1:
            value = value_to_string(next(iter(resolved.fields.values())))
        else:
            value = json.dumps(resolved.fields)
        return [client.V1EnvVar(name=to_env_key(ref.env_prefix + ref.name), value=value)]

    return [
        client.V1EnvVar(name=to_env_key(ref.env_prefix + key), value=value_to_string(value))
        for key, value in resolved.fields.items()
    ]


def env_var_refs(plan: InjectionPlan) -> list[SecretRef]:
    """Return the entries that are injected as env vars (attachments excluded)."""
    return [s for s in plan.secrets if s.inject_as_env_vars and not s.is_file]


def plan_env_vars(plan: InjectionPlan, fetcher: SecretFetcher) -> list[client.V1EnvVar]:
    """Resolve every env-var entry of a plan with one shared listing.

    Failed entries are skipped with a warning, or raised when the plan
    sets ``fail_on_error``.

    Raises:
        InjectorError: The first entry failure under ``fail_on_error``.
    """
    refs = env_var_refs(plan)
    if not refs:
        return []

    batch = fetcher.batch_resolve(refs)
    env: list[client.V1EnvVar] = []
    for index, ref in enumerate(refs):
        error = batch.errors.get(index)
        if error is not None:
            if plan.fail_on_error:
                if isinstance(error, InjectorError):
                    raise error
                raise InjectorError(f"env vars for '{ref.display_name}': {error}") from error
            logger.warning("envvars.entry_skipped", secret=ref.display_name, error=str(error))
            continue
        env.extend(build_env_vars(ref, batch.resolved[index]))

    logger.info("envvars.built", entries=len(refs), variables=len(env))
    return env


__all__ = ["build_env_vars", "env_var_refs", "plan_env_vars", "value_to_string"]
