"""Ordered application of reconciliation actions."""

import logging
from typing import Callable, Iterable

from pvefleet.inspector import Channel
from pvefleet.models import (
    Action,
    CommandMode,
    ExecutionMode,
    ExecutionReport,
    RemoteCommandError,
)

logger = logging.getLogger(__name__)


class ActionExecutor:
    """Runs actions for one VM strictly in order through a channel."""

    def __init__(
        self,
        channel: Channel,
        mode: ExecutionMode = ExecutionMode.APPLY,
        echo: Callable[[str], None] = print,
    ) -> None:
        """
        Args:
            channel: Remote command channel
            mode: APPLY runs mutations, PLAN only prints them
            echo: Sink for '[PLAN] <command>' lines
        """
        self.channel = channel
        self.mode = mode
        self.echo = echo

    def apply(self, vmid: int, actions: Iterable[Action]) -> ExecutionReport:
        """Apply actions in order.

        A failed structural action (clone, create, initial disk, destroy)
        aborts the rest; other failures are recorded and skipped over.
        """
        report = ExecutionReport(vmid=vmid, mode=self.mode)

        for action in actions:
            if self.mode is ExecutionMode.PLAN:
                self.echo(f"[PLAN] {action.command}")
            else:
                logger.info(f"  -> VM {vmid}: {action.command}")

            try:
                result = self.channel.execute(action.command, CommandMode.MUTATE, self.mode)
            except RemoteCommandError as e:
                if action.kind.best_effort:
                    logger.warning(f"⚠️  VM {vmid}: ignoring failed {action.describe()}: {e}")
                    report.ignored.append(action)
                    continue

                logger.error(f"❌ VM {vmid}: {action.describe()} failed: {e}")
                report.failed.append((action, e))
                if action.kind.structural:
                    logger.error(f"❌ VM {vmid}: aborting remaining actions")
                    report.aborted = True
                    break
                continue

            if result.planned:
                report.planned.append(action)
            else:
                report.executed.append(action)

        return report
