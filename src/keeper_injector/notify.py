"""Change notification for the workload process.

When the agent rewrites a secret it can signal the application (for
example ``SIGHUP``) so it reloads configuration. The target PID is read
from a pid file on a volume shared with the application container; the
pod must share its process namespace for the signal to be deliverable.
"""

from __future__ import annotations

import os
import signal
from pathlib import Path

import structlog

from keeper_injector.errors import ConfigInvalidError

logger = structlog.get_logger(__name__)


def parse_signal(name: str) -> signal.Signals:
    """Resolve a signal name such as ``SIGHUP``, ``HUP`` or ``1``.

    Raises:
        ConfigInvalidError: If the name does not denote a known signal.
    """
    text = name.strip().upper()
    if text.isdigit():
        try:
            return signal.Signals(int(text))
        except ValueError as e:
            raise ConfigInvalidError(f"unknown signal '{name}'", key="signal") from e
    if not text.startswith("SIG"):
        text = f"SIG{text}"
    try:
        return signal.Signals[text]
    except KeyError as e:
        raise ConfigInvalidError(f"unknown signal '{name}'", key="signal") from e


class SignalNotifier:
    """Send a signal to the process named by a pid file.

    Args:
        signal_name: Signal to send, e.g. ``SIGHUP``.
        pid_file: File holding the target PID.
    """

    def __init__(self, signal_name: str, pid_file: str | Path) -> None:
        self.signal = parse_signal(signal_name)
        self.pid_file = Path(pid_file)

    def _read_pid(self) -> int:
        raw = self.pid_file.read_text(encoding="utf-8").strip()
        pid = int(raw)
        if pid <= 0:
            raise ValueError(f"invalid pid {pid}")
        return pid

    def notify(self) -> bool:
        """Send the signal. Failures are logged, never raised.

        Returns:
            True if the signal was delivered.
        """
        try:
            pid = self._read_pid()
            os.kill(pid, self.signal)
        except (OSError, ValueError) as e:
            logger.error(
                "notify.signal_failed",
                signal=self.signal.name,
                pid_file=str(self.pid_file),
                error=str(e),
            )
            return False
        logger.info("notify.signal_sent", signal=self.signal.name, pid=pid)
        return True


__all__ = ["SignalNotifier", "parse_signal"]
