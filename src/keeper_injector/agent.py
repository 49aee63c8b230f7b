"""Rotation loop: keep written secrets in sync with the backend.

The agent runs either once (init container) or forever (sidecar). Each
tick resolves the whole plan with a single listing call, writes changed
files atomically and, after the first tick, tells the workload about
changes and rotates mirrored Kubernetes Secrets.

Per-entry states::

    UNINITIALIZED --ok--> FRESH --fetch fails, cache valid--> STALE
                                 --fetch fails, no cache---> FAILED
    STALE / FAILED --ok--> FRESH

A STALE entry keeps serving the last known good value until it ages out
of the cache. The first tick is the only one that can fail the process;
later failures are logged and retried on the next tick.

Example:
    >>> loop = RotationLoop(plan, fetcher, SecretWriter("/keeper"))
    >>> loop.run(threading.Event())
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from keeper_injector.backend import BackendRecord
from keeper_injector.cache import SecretCache
from keeper_injector.errors import InjectorError, ResolutionFailedError
from keeper_injector.fetcher import BatchResult, SecretFetcher, to_resolved
from keeper_injector.mirror import SecretMirror
from keeper_injector.models import FolderRef, InjectionPlan, ResolvedSecret, SecretRef
from keeper_injector.notify import SignalNotifier
from keeper_injector.renderer import render_folder_record, render_secret
from keeper_injector.retry import CancelledError, RetryConfig, with_retry
from keeper_injector.tracing import ATTR_COUNT, get_tracer, secrets_span
from keeper_injector.writer import SecretWriter, folder_output_paths

logger = structlog.get_logger(__name__)


class EntryState(str, Enum):
    """Freshness of one plan entry."""

    UNINITIALIZED = "uninitialized"
    FRESH = "fresh"
    STALE = "stale"
    FAILED = "failed"


@dataclass
class TickReport:
    """What one tick did.

    Attributes:
        tick: 1-based tick number.
        written: Output paths rewritten because their content changed.
        unchanged: Output paths whose content was already current.
        stale: Entries served from the cache.
        failed: Entry key to error message, for entries with nothing to serve.
        mirrored: Kubernetes Secrets rotated during this tick.
        notified: Whether the workload was signalled.
        listing_calls: Backend listing calls issued.
    """

    tick: int
    written: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    stale: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    mirrored: list[str] = field(default_factory=list)
    notified: bool = False
    listing_calls: int = 0

    @property
    def changed(self) -> bool:
        """Return True when any file was rewritten."""
        return bool(self.written)

    @property
    def ok(self) -> bool:
        """Return True when no entry failed outright."""
        return not self.failed


def secret_key(index: int, ref: SecretRef) -> str:
    """Cache and state key for a secret entry."""
    return f"secret:{index}:{ref.display_name}"


def folder_key(index: int, folder: FolderRef) -> str:
    """Cache and state key prefix for a folder entry."""
    return f"folder:{index}:{folder.display_name}"


class RotationLoop:
    """Resolve, render and write an injection plan on a timer.

    Args:
        plan: Parsed injection plan.
        fetcher: Resolves entries against the backend.
        writer: Writes rendered files under the secrets mount.
        cache: Last-known-good fallback; a 24 hour cache by default.
        notifier: Signals the workload after a change.
        mirror: Rotates mirrored Kubernetes Secrets when the plan asks for it.
        retry_config: Retry policy for every backend call.
    """

    def __init__(
        self,
        plan: InjectionPlan,
        fetcher: SecretFetcher,
        writer: SecretWriter,
        *,
        cache: SecretCache | None = None,
        notifier: SignalNotifier | None = None,
        mirror: SecretMirror | None = None,
        retry_config: RetryConfig | None = None,
    ) -> None:
        self.plan = plan
        self.fetcher = fetcher
        self.writer = writer
        self.cache = cache or SecretCache()
        self.notifier = notifier
        self.mirror = mirror
        self.retry_config = retry_config or RetryConfig()

        self.ticks = 0
        self.ready = False
        self._states: dict[str, EntryState] = {}
        self._written: dict[str, bytes] = {}
        self._folder_members: dict[str, list[str]] = {}

    @property
    def states(self) -> dict[str, EntryState]:
        """Return a snapshot of every entry's state."""
        states = {
            secret_key(i, ref): EntryState.UNINITIALIZED for i, ref in enumerate(self.plan.secrets)
        }
        states.update(
            {folder_key(i, f): EntryState.UNINITIALIZED for i, f in enumerate(self.plan.folders)}
        )
        states.update(self._states)
        return states

    @property
    def rotates_mirrors(self) -> bool:
        """Return True when mirrored Secrets are updated on change."""
        return self.mirror is not None and self.plan.mirror.rotation

    # =========================================================================
    # Ticking
    # =========================================================================

    def _runner(self, cancel: threading.Event) -> Callable[[Callable[[], Any]], Any]:
        def run(fn: Callable[[], Any]) -> Any:
            return with_retry(fn, self.retry_config, cancel)

        return run

    def tick(self, cancel: threading.Event | None = None) -> TickReport:
        """Resolve and write the whole plan once.

        Args:
            cancel: Aborts pending retry backoffs.

        Returns:
            TickReport for this tick.

        Raises:
            CancelledError: If ``cancel`` fires during a retry backoff.
        """
        cancel = cancel or threading.Event()
        self.ticks += 1
        report = TickReport(tick=self.ticks)

        with secrets_span(
            get_tracer(),
            "agent_tick",
            provider="keeper",
            extra_attributes={ATTR_COUNT: len(self.plan.secrets), "keeper.tick": self.ticks},
        ):
            run = self._runner(cancel)
            batch = self.fetcher.batch_resolve(self.plan.secrets, runner=run)
            report.listing_calls = batch.listing_calls

            for index, ref in enumerate(self.plan.secrets):
                self._apply_secret(index, ref, batch, report)
            for index, folder in enumerate(self.plan.folders):
                self._apply_folder(index, folder, batch, run, report)

        if report.changed and self.ticks > 1 and self.notifier is not None:
            report.notified = self.notifier.notify()

        logger.info(
            "agent.tick_complete",
            tick=report.tick,
            written=len(report.written),
            unchanged=len(report.unchanged),
            stale=len(report.stale),
            failed=len(report.failed),
            mirrored=len(report.mirrored),
        )
        return report

    def _fallback(self, key: str, error: Exception, report: TickReport) -> ResolvedSecret | None:
        entry = self.cache.get(key)
        if entry is None:
            self._states[key] = EntryState.FAILED
            report.failed[key] = str(error)
            logger.error("agent.entry_failed", entry=key, error=str(error))
            return None
        self._states[key] = EntryState.STALE
        report.stale.append(key)
        logger.warning(
            "agent.cache_fallback",
            entry=key,
            cache_age_seconds=round(self.cache.age(key).total_seconds()),
            error=str(error),
        )
        return entry.resolved

    def _write(self, path: str, data: bytes, report: TickReport) -> bool:
        if self._written.get(path) == data:
            report.unchanged.append(path)
            return False
        self.writer.write(path, data)
        self._written[path] = data
        report.written.append(path)
        return True

    def _apply_secret(
        self, index: int, ref: SecretRef, batch: BatchResult, report: TickReport
    ) -> None:
        key = secret_key(index, ref)
        error = batch.errors.get(index)
        if error is None:
            resolved: ResolvedSecret | None = batch.resolved[index]
            self.cache.set(key, batch.resolved[index])
            self._states[key] = EntryState.FRESH
        else:
            resolved = self._fallback(key, error, report)
        if resolved is None:
            return

        try:
            changed = self._write(ref.output_path, render_secret(ref, resolved), report)
        except (InjectorError, OSError) as e:
            self._states[key] = EntryState.FAILED
            report.failed[key] = str(e)
            logger.error("agent.write_failed", entry=key, path=ref.output_path, error=str(e))
            return

        if changed and ref.inject_as_k8s_secret:
            self._rotate(
                key, report, lambda: self._mirror().publish_secret(ref, resolved, rotation=True)
            )

    def _folder_records(
        self,
        folder: FolderRef,
        listing: Sequence[BackendRecord],
        run: Callable[[Callable[[], Any]], Any],
    ) -> list[ResolvedSecret]:
        records = run(lambda: self.fetcher.list_folder_records(folder, listing))
        return [to_resolved(record) for record in records]

    def _apply_folder(
        self,
        index: int,
        folder: FolderRef,
        batch: BatchResult,
        run: Callable[[Callable[[], Any]], Any],
        report: TickReport,
    ) -> None:
        key = folder_key(index, folder)
        members: list[ResolvedSecret] | None = None
        error: Exception | None = batch.listing_error
        if batch.listing is not None:
            try:
                members = self._folder_records(folder, batch.listing, run)
            except (InjectorError, OSError) as e:
                error = e

        if members is not None:
            self._folder_members[key] = [m.uid for m in members]
            for member in members:
                self.cache.set(f"{key}:{member.uid}", member)
            self._states[key] = EntryState.FRESH
        else:
            members = self._folder_fallback(
                key, error or InjectorError("folder listing unavailable"), report
            )

        paths = folder_output_paths(folder.output_path, [(m.uid, m.title) for m in members])
        for member in members:
            path = paths[member.uid]
            try:
                changed = self._write(path, render_folder_record(member), report)
            except (InjectorError, OSError) as e:
                report.failed[f"{key}:{member.uid}"] = str(e)
                logger.warning("agent.folder_record_failed", entry=key, path=path, error=str(e))
                continue
            if changed and folder.inject_as_k8s_secret:
                self._rotate(
                    key,
                    report,
                    lambda m=member: self._mirror().publish_folder_record(folder, m, rotation=True),
                )

    def _folder_fallback(
        self, key: str, error: Exception, report: TickReport
    ) -> list[ResolvedSecret]:
        uids = self._folder_members.get(key)
        entries = [self.cache.get(f"{key}:{uid}") for uid in uids or []]
        if uids is None or any(entry is None for entry in entries):
            self._states[key] = EntryState.FAILED
            report.failed[key] = str(error)
            logger.error("agent.entry_failed", entry=key, error=str(error))
            return []
        self._states[key] = EntryState.STALE
        report.stale.append(key)
        logger.warning("agent.cache_fallback", entry=key, records=len(entries), error=str(error))
        return [entry.resolved for entry in entries if entry is not None]

    def _mirror(self) -> SecretMirror:
        if self.mirror is None:
            raise InjectorError("Secret mirroring is not configured")
        return self.mirror

    def _rotate(self, key: str, report: TickReport, publish: Callable[[], Any]) -> None:
        if self.ticks <= 1 or not self.rotates_mirrors:
            return
        try:
            publish()
        except InjectorError as e:
            logger.error("agent.mirror_failed", entry=key, error=str(e))
            return
        report.mirrored.append(key)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def run(self, cancel: threading.Event) -> TickReport | None:
        """Run the first tick, then keep ticking until ``cancel`` is set.

        Args:
            cancel: Set to stop the loop (e.g. from a SIGTERM handler).

        Returns:
            The first tick's report, or None if cancelled before it finished.

        Raises:
            ResolutionFailedError: If the first tick left entries with nothing
                to serve and the plan sets ``fail_on_error``.
        """
        try:
            first = self.tick(cancel)
        except CancelledError:
            logger.info("agent.cancelled", tick=self.ticks)
            return None

        if first.failed:
            if self.plan.fail_on_error:
                raise ResolutionFailedError(first.failed)
            logger.error("agent.initial_fetch_degraded", failed=sorted(first.failed))
        self.ready = True

        if self.plan.init_only:
            logger.info("agent.init_complete", written=len(first.written))
            return first

        interval = self.plan.refresh_interval.total_seconds()
        logger.info("agent.sidecar_started", refresh_interval_seconds=interval)
        while not cancel.wait(interval):
            try:
                self.tick(cancel)
            except CancelledError:
                break
            except (InjectorError, OSError) as e:
                logger.error("agent.tick_failed", tick=self.ticks, error=str(e))
            except Exception:
                # Later ticks never stop the sidecar.
                logger.exception("agent.tick_failed", tick=self.ticks)
        logger.info("agent.stopped", ticks=self.ticks)
        return first


__all__ = [
    "EntryState",
    "RotationLoop",
    "TickReport",
    "folder_key",
    "secret_key",
]
