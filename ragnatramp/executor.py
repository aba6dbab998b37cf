from __future__ import annotations

import logging
from pathlib import Path

from .commands import CreateVMParams
from .control_plane import ControlPlane
from .errors import ControlPlaneError, DuplicateCheckpoint, RagnatrampError, StateCorrupt
from .schemas import (
    Action,
    ActionOutcome,
    ActionStatus,
    ActionType,
    ApplyReport,
    CheckpointDetails,
    CheckpointState,
    CreateDetails,
    DestroyDetails,
    LiveResource,
    ResolvedConfig,
    RestoreDetails,
    StartDetails,
    StateFile,
    StopDetails,
    VMState,
)
from .state import StateStore, add_checkpoint, get_checkpoint, get_vm, new_state, now_iso, remove_vm, upsert_vm
from .verifier import require_owned

_ALWAYS_VERIFIED = {ActionType.destroy, ActionType.restore}
_VERIFIED_UNLESS_NEW = {ActionType.start, ActionType.stop, ActionType.checkpoint}


class Executor:
    """Applies planned actions one at a time, committing the ledger after each."""

    def __init__(
        self,
        control_plane: ControlPlane,
        store: StateStore | str | Path,
        config: ResolvedConfig,
        *,
        shutdown_timeout_s: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.cp = control_plane
        self.store = StateStore(store) if isinstance(store, (str, Path)) else store
        self.config = config
        self.shutdown_timeout_s = shutdown_timeout_s
        self.log = logger or logging.getLogger(__name__)
        self.state: StateFile | None = None
        self._created: set[str] = set()

    def apply(self, actions: list[Action], state: StateFile | None = None, dry_run: bool = False) -> ApplyReport:
        self.state = state
        self._created = set()
        report = ApplyReport(dry_run=dry_run)
        for action in actions:
            outcome = ActionOutcome(action=action)
            outcome.transition(ActionStatus.pending)
            report.outcomes.append(outcome)
            if dry_run:
                outcome.transition(ActionStatus.skipped)
                continue
            try:
                self._run_one(outcome)
            except StateCorrupt as exc:
                exc.report = report
                raise
        return report

    def _needs_verification(self, action: Action) -> bool:
        if action.type in _ALWAYS_VERIFIED:
            return True
        return action.type in _VERIFIED_UNLESS_NEW and action.machine_name not in self._created

    def _run_one(self, outcome: ActionOutcome) -> None:
        action = outcome.action
        try:
            live = None
            if self._needs_verification(action):
                outcome.transition(ActionStatus.verifying)
                live = self.cp.get_vm(action.target_name)
                require_owned(
                    action.target_name,
                    self.state,
                    live,
                    self.config.config_path,
                    project=self.config.project,
                    machine=action.machine_name,
                )
            outcome.transition(ActionStatus.executing)
            done = self._dispatch(action, live)
        except StateCorrupt as exc:
            outcome.transition(ActionStatus.failed)
            outcome.error = exc.message
            outcome.exit_code = exc.exit_code
            outcome.error_kind = type(exc).__name__
            raise
        except RagnatrampError as exc:
            outcome.transition(ActionStatus.failed)
            outcome.error = exc.message
            outcome.exit_code = exc.exit_code
            outcome.error_kind = exc.kind.value if isinstance(exc, ControlPlaneError) else type(exc).__name__
            self.log.warning("%s %s failed: %s", action.type.value, action.target_name, exc.message)
            return
        if done:
            outcome.transition(ActionStatus.completed)
            self.log.info("%s %s completed", action.type.value, action.target_name)
        else:
            outcome.transition(ActionStatus.skipped)
            self.log.info("%s %s skipped", action.type.value, action.target_name)

    def _dispatch(self, action: Action, live: LiveResource | None) -> bool:
        d = action.details
        if isinstance(d, CreateDetails):
            return self._create(action, d)
        if isinstance(d, StartDetails):
            return self._start(action, d, live)
        if isinstance(d, StopDetails):
            return self._stop(d, live)
        if isinstance(d, DestroyDetails):
            return self._destroy(action, d)
        if isinstance(d, CheckpointDetails):
            return self._checkpoint(action, d)
        if isinstance(d, RestoreDetails):
            self.cp.restore_checkpoint(d.vm_id, d.checkpoint_id)
            return True
        raise RagnatrampError(f"Unsupported action type: {action.type}")

    def _save(self) -> None:
        if self.state is not None:
            self.store.save(self.state)

    def _create(self, action: Action, d: CreateDetails) -> bool:
        created = self.cp.create_vm(CreateVMParams(
            name=action.target_name,
            cpu=d.cpu,
            memory_mb=d.memory_mb,
            base_image=d.base_image,
            disk_path=d.disk_path,
            notes=d.notes,
            differencing=d.differencing,
        ))
        if self.state is None:
            self.state = new_state(self.config.project, self.config.config_path, self.config.config_hash)
        upsert_vm(self.state, action.machine_name, VMState(
            id=created.id,
            name=created.name,
            machine_name=action.machine_name,
            disk_path=d.disk_path,
            created_at=now_iso(),
        ))
        try:
            self._save()
        except StateCorrupt as exc:
            self.log.error(
                "VM %s (%s) was created but could not be recorded in %s; remove it manually",
                created.name,
                created.id,
                exc.state_path,
            )
            raise
        self._created.add(action.machine_name)
        return True

    def _start(self, action: Action, d: StartDetails, live: LiveResource | None) -> bool:
        vm_id = d.vm_id
        if vm_id is None:
            vm = get_vm(self.state, action.machine_name)
            if vm is None or action.machine_name not in self._created:
                raise RagnatrampError(f"Cannot start {action.target_name}: VM was not created")
            vm_id = vm.id
        if live is not None and live.is_running:
            return False
        self.cp.start_vm(vm_id)
        return True

    def _stop(self, d: StopDetails, live: LiveResource | None) -> bool:
        if live is None:
            live = self.cp.get_vm_by_id(d.vm_id)
        if live is not None and live.is_off:
            return False
        if d.force:
            self.cp.stop_vm(d.vm_id)
        else:
            self.cp.graceful_stop_vm(d.vm_id, self.shutdown_timeout_s)
        return True

    def _destroy(self, action: Action, d: DestroyDetails) -> bool:
        try:
            self.cp.graceful_stop_vm(d.vm_id, self.shutdown_timeout_s)
        except ControlPlaneError as exc:
            # remove_vm turns the VM off anyway
            self.log.debug("graceful stop of %s failed: %s", action.target_name, exc.message)
        self.cp.remove_vm(d.vm_id)
        try:
            self.cp.delete_file(d.disk_path)
        except ControlPlaneError as exc:
            self.log.warning("could not delete disk %s: %s", d.disk_path, exc.message)
        if self.state is not None:
            remove_vm(self.state, action.machine_name)
        self._save()
        return True

    def _checkpoint(self, action: Action, d: CheckpointDetails) -> bool:
        if get_checkpoint(self.state, action.machine_name, d.checkpoint_name) is not None:
            raise DuplicateCheckpoint(d.checkpoint_name, action.machine_name)
        snap = self.cp.checkpoint_vm(d.vm_id, d.checkpoint_name)
        if self.state is not None and get_vm(self.state, action.machine_name) is not None:
            add_checkpoint(self.state, action.machine_name, CheckpointState(
                id=snap.id,
                name=snap.name,
                created_at=now_iso(),
            ))
            self._save()
        return True
