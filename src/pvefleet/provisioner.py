#!/usr/bin/env python3
"""
Batch driver for declarative VM provisioning.

Runs apply or delete over a list of desired-state records. Each record is
inspected, reconciled and applied on its own; a failure is recorded and the
batch moves on to the next record. Only losing the connection to the node
stops the whole batch.

Usage:
    from pvefleet.provisioner import FleetProvisioner

    with FleetProvisioner(config) as provisioner:
        report = provisioner.apply(records, ExecutionMode.PLAN)
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional

from pvefleet.config import ProvisionConfig
from pvefleet.executor import ActionExecutor
from pvefleet.inspector import Channel, VMInspector
from pvefleet.models import (
    BatchReport,
    ExecutionMode,
    ExecutionReport,
    HypervisorConnectionError,
    Operation,
    ProvisionError,
    ReconcileState,
    RecordResult,
    RemoteCommandError,
    VMSpec,
)
from pvefleet.pool_manager import PoolMembershipReconciler
from pvefleet.reconciler import plan_delete, reconcile
from pvefleet.remote_executor import RemoteChannel

logger = logging.getLogger(__name__)

RecordHandler = Callable[[VMSpec, ExecutionMode], RecordResult]


class FleetProvisioner:
    """Reconciles a fleet of VM records against one Proxmox node."""

    def __init__(
        self,
        config: ProvisionConfig,
        channel: Optional[Channel] = None,
        max_workers: Optional[int] = None,
        echo: Callable[[str], None] = print,
    ) -> None:
        """
        Initialize the provisioner.

        Args:
            config: Run configuration
            channel: Command channel; an SSH channel is built from the config if omitted
            max_workers: Records processed in parallel (defaults to config.max_workers)
            echo: Sink for plan-mode output lines
        """
        self.config = config
        self._owns_channel = channel is None
        self.channel: Channel = channel if channel is not None else RemoteChannel(config.connection)
        self.inspector = VMInspector(self.channel)
        self.pools = PoolMembershipReconciler(self.channel)
        self.max_workers = max(1, max_workers or config.max_workers)
        self.echo = echo
        self._cancel = threading.Event()

    def __enter__(self) -> "FleetProvisioner":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_channel and isinstance(self.channel, RemoteChannel):
            self.channel.close()

    def cancel(self) -> None:
        """Stop after the records currently in progress."""
        if not self._cancel.is_set():
            logger.warning("⏹️  Cancellation requested; finishing current record(s)")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def apply(self, records: Iterable[VMSpec], mode: ExecutionMode = ExecutionMode.APPLY) -> BatchReport:
        return self.run(records, Operation.APPLY, mode)

    def delete(self, records: Iterable[VMSpec], mode: ExecutionMode = ExecutionMode.APPLY) -> BatchReport:
        return self.run(records, Operation.DELETE, mode)

    def run(self, records: Iterable[VMSpec], operation: Operation, mode: ExecutionMode) -> BatchReport:
        """Process every record and collect per-record results.

        Raises:
            HypervisorConnectionError: If the node cannot be reached
        """
        records = list(records)
        report = BatchReport(operation=operation, mode=mode)
        handler: RecordHandler = self.apply_record if operation is Operation.APPLY else self.delete_record

        verb = "Planning" if mode is ExecutionMode.PLAN else "Running"
        logger.info(f"{verb} {operation.value.upper()} for {len(records)} VM(s)")

        if self.max_workers == 1 or len(records) <= 1:
            for spec in records:
                report.results.append(self._run_one(handler, spec, operation, mode))
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="pvefleet") as pool:
                futures = [pool.submit(self._run_one, handler, spec, operation, mode) for spec in records]
                try:
                    for future in futures:
                        report.results.append(future.result())
                except HypervisorConnectionError:
                    self._cancel.set()
                    raise

        report.cancelled = self.cancelled

        summary: Dict[str, int] = {}
        for result in report.results:
            key = "skipped" if result.skipped else ("ok" if result.success else "failed")
            summary[key] = summary.get(key, 0) + 1
        logger.info(f"✅ {operation.value.capitalize()} complete: {summary}")

        return report

    def _run_one(
        self, handler: RecordHandler, spec: VMSpec, operation: Operation, mode: ExecutionMode
    ) -> RecordResult:
        if self._cancel.is_set():
            logger.info(f"  Skipping VM {spec.label}: batch cancelled")
            return RecordResult(spec.vmid, spec.name, operation, skipped=True)

        try:
            return handler(spec, mode)
        except HypervisorConnectionError:
            raise
        except ProvisionError as e:
            logger.error(f"❌ Failed to reconcile VM {spec.label}: {e}")
            return RecordResult(
                spec.vmid,
                spec.name,
                operation,
                success=False,
                error=str(e),
                failing_command=e.command if isinstance(e, RemoteCommandError) else None,
            )
        except Exception as e:
            logger.error(f"❌ Unexpected error on VM {spec.label}: {e}", exc_info=True)
            return RecordResult(spec.vmid, spec.name, operation, success=False, error=str(e))

    def apply_record(self, spec: VMSpec, mode: ExecutionMode = ExecutionMode.APPLY) -> RecordResult:
        """Create or update one VM."""
        executor = ActionExecutor(self.channel, mode, self.echo)
        logger.info(f"Processing VM {spec.label}...")

        exists = self.inspector.exists(spec.vmid)
        observed = self.inspector.observe(spec.vmid, spec.disk.slot) if exists else None
        if exists:
            logger.info(f"  -> VM {spec.vmid} exists. Checking for updates.")
        else:
            logger.info(f"  -> VM {spec.vmid} does not exist. Planning creation.")

        plan = reconcile(spec, observed, exists, self.config.cloud_init)
        execution = executor.apply(spec.vmid, plan.actions)

        followup_error: Optional[ProvisionError] = None
        if plan.state is ReconcileState.CREATING and spec.is_clone and mode is ExecutionMode.APPLY and not execution.aborted:
            try:
                execution.merge(self._converge_clone(spec, executor))
            except HypervisorConnectionError:
                raise
            except ProvisionError as e:
                logger.error(f"❌ VM {spec.label}: follow-up after clone failed: {e}")
                followup_error = e

        if not execution.aborted:
            execution.merge(self.pools.ensure_membership(spec.vmid, spec.pool, executor))

        result = RecordResult(spec.vmid, spec.name, Operation.APPLY, state=plan.state, actions=execution.applied)
        return self._finish(spec, result, execution, followup_error)

    def _converge_clone(self, spec: VMSpec, executor: ActionExecutor) -> ExecutionReport:
        """Second pass over a fresh clone for what the template decided (disk size, controller)."""
        observed = self.inspector.observe(spec.vmid, spec.disk.slot)
        followup = reconcile(spec, observed, True, self.config.cloud_init)
        if followup.drift:
            logger.info(f"  -> VM {spec.vmid}: {len(followup.drift)} follow-up action(s) after clone")
        return executor.apply(spec.vmid, followup.drift)

    def delete_record(self, spec: VMSpec, mode: ExecutionMode = ExecutionMode.APPLY) -> RecordResult:
        """Stop and destroy one VM if it exists."""
        logger.info(f"Processing delete for VM {spec.label}...")

        exists = self.inspector.exists(spec.vmid)
        if not exists:
            logger.info(f"  -> VM {spec.vmid} does not exist. Skipping.")
            return RecordResult(spec.vmid, spec.name, Operation.DELETE, state=ReconcileState.ABSENT)

        executor = ActionExecutor(self.channel, mode, self.echo)
        execution = executor.apply(spec.vmid, plan_delete(spec.vmid, exists))
        result = RecordResult(
            spec.vmid,
            spec.name,
            Operation.DELETE,
            state=ReconcileState.ABSENT if execution.succeeded else None,
            actions=execution.applied,
        )
        return self._finish(spec, result, execution)

    def _finish(
        self,
        spec: VMSpec,
        result: RecordResult,
        execution: ExecutionReport,
        error: Optional[ProvisionError] = None,
    ) -> RecordResult:
        verb = "Planned" if execution.mode is ExecutionMode.PLAN else "Applied"
        if execution.failed:
            action, failure = execution.failed[0]
            result.success = False
            result.error = str(failure)
            result.failing_command = action.command
            logger.error(
                f"❌ VM {spec.label}: {len(execution.failed)} action(s) failed; first: {action.command}"
            )
        elif error is not None:
            result.success = False
            result.error = str(error)
            result.failing_command = error.command if isinstance(error, RemoteCommandError) else None
            logger.error(f"❌ VM {spec.label}: {len(result.actions)} action(s) applied before: {error}")
        elif result.actions:
            logger.info(f"✅ {verb} {len(result.actions)} action(s) for VM {spec.label}.")
        else:
            logger.info(f"✅ VM {spec.label} already matches desired state.")
        return result


def failed_labels(results: List[RecordResult]) -> List[str]:
    return [f"{r.vmid} ({r.name})" for r in results if not r.success]
