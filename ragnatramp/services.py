from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from .config import EngineConfig
from .control_plane import ControlPlane
from .errors import ControlPlaneError, ControlPlaneErrorKind
from .executor import Executor
from .planner import (
    compute_plan,
    plan_checkpoint,
    plan_destroy,
    plan_halt,
    plan_restore,
    select_machines,
    summarize,
)
from .preflight import PreflightReport, assert_preflight_passed, run_preflight
from .schemas import ApplyReport, LiveResource, PlanResult, ResolvedConfig, StateFile
from .state import StateStore, remove_vm

log = logging.getLogger(__name__)


class CommandResult(BaseModel):
    command: str
    plan: PlanResult = Field(default_factory=PlanResult)
    report: ApplyReport | None = None
    preflight: PreflightReport | None = None
    messages: list[str] = Field(default_factory=list)
    exit_code: int = 0

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class MachineStatus(BaseModel):
    machine_name: str
    vm_name: str
    state: str
    cpu: int = 0
    memory_mb: int = 0
    missing: bool = False


class DriftReport(BaseModel):
    config_changed: bool = False
    vanished: list[str] = Field(default_factory=list)
    stale_ids: list[str] = Field(default_factory=list)
    untracked: list[str] = Field(default_factory=list)

    @property
    def has_drift(self) -> bool:
        return self.config_changed or bool(self.vanished or self.stale_ids)


class StatusReport(BaseModel):
    project: str
    hypervisor_available: bool = True
    machines: list[MachineStatus] = Field(default_factory=list)
    drift: DriftReport = Field(default_factory=DriftReport)


class Workflows:
    """Command-level workflows over one resolved configuration."""

    def __init__(
        self,
        config: ResolvedConfig,
        control_plane: ControlPlane,
        engine: EngineConfig | None = None,
        store: StateStore | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.cp = control_plane
        self.engine = engine
        self.store = store or StateStore.for_config(config.config_path)
        self.log = logger or log

    def _executor(self) -> Executor:
        timeout = self.engine.shutdown_timeout_s if self.engine else 30
        return Executor(self.cp, self.store, self.config, shutdown_timeout_s=timeout, logger=self.log)

    def _warn_on_drift(self, state: StateFile | None, result: CommandResult) -> None:
        if state is not None and state.config_hash != self.config.config_hash:
            msg = "Configuration changed since the state file was written"
            self.log.warning("%s (%s -> %s)", msg, state.config_hash, self.config.config_hash)
            result.messages.append(msg)

    def _apply(self, result: CommandResult, state: StateFile | None, dry_run: bool) -> StateFile | None:
        if not result.plan.has_actions:
            result.messages.append(summarize(result.plan))
            return state
        executor = self._executor()
        result.report = executor.apply(result.plan.actions, state, dry_run=dry_run)
        result.exit_code = max(result.exit_code, result.report.exit_code)
        return executor.state

    def plan(self, machines: list[str] | None = None) -> CommandResult:
        state = self.store.load()
        result = CommandResult(command="plan")
        self._warn_on_drift(state, result)
        result.plan = compute_plan(self.config, state, self.cp.list_vms(), machines)
        result.messages.extend(a.describe() for a in result.plan.actions)
        result.messages.append(summarize(result.plan))
        return result

    def up(self, machines: list[str] | None = None, dry_run: bool = False) -> CommandResult:
        select_machines(self.config, machines)
        result = CommandResult(command="up")
        result.preflight = run_preflight(self.cp, self.config)
        assert_preflight_passed(result.preflight)

        state = self.store.load()
        self._warn_on_drift(state, result)
        result.plan = compute_plan(self.config, state, self.cp.list_vms(), machines)
        self._apply(result, state, dry_run)
        return result

    def halt(self, machines: list[str] | None = None, force: bool = False, dry_run: bool = False) -> CommandResult:
        result = CommandResult(command="halt")
        state = self.store.load()
        if state is None or not state.vms:
            result.messages.append("No VMs are currently managed.")
            return result
        result.plan = plan_halt(self.config, state, self.cp.list_vms(), machines, force)
        for name in result.plan.missing:
            result.messages.append(f"{name}: VM not found in Hyper-V, skipping")
        self._apply(result, state, dry_run)
        return result

    def destroy(self, machines: list[str] | None = None, dry_run: bool = False) -> CommandResult:
        result = CommandResult(command="destroy")
        state = self.store.load()
        if state is None:
            result.messages.append("Nothing to destroy.")
            return result

        result.plan = plan_destroy(self.config, state, self.cp.list_vms(), machines)
        for refusal in result.plan.rejected:
            result.messages.append(f"Refusing to destroy {refusal.target_name}: {refusal.reason}")
        if result.plan.rejected:
            result.exit_code = 1

        state = self._apply(result, state, dry_run)
        if dry_run or state is None:
            return result

        # entries whose VM is already gone only need the ledger cleaned up
        if result.plan.missing:
            for name in result.plan.missing:
                remove_vm(state, name)
                result.messages.append(f"{name}: VM already deleted, removed from state")
            self.store.save(state)

        if not state.vms:
            self.store.delete()
            result.messages.append("All VMs destroyed; state file removed.")
        return result

    def checkpoint(self, name: str, machines: list[str] | None = None, dry_run: bool = False) -> CommandResult:
        result = CommandResult(command="checkpoint")
        state = self.store.load()
        if state is None or not state.vms:
            result.messages.append("No VMs are currently managed.")
            return result
        result.plan = plan_checkpoint(name, self.config, state, self.cp.list_vms(), machines)
        for missing in result.plan.missing:
            result.messages.append(f"{missing}: VM not found in Hyper-V, skipping")
        self._apply(result, state, dry_run)
        return result

    def restore(self, name: str, machines: list[str] | None = None, dry_run: bool = False) -> CommandResult:
        result = CommandResult(command="restore")
        state = self.store.load()
        if state is None or not state.vms:
            result.messages.append("No VMs are currently managed.")
            return result
        result.plan = plan_restore(name, self.config, state, self.cp.list_vms(), machines)
        for refusal in result.plan.rejected:
            result.messages.append(f"Refusing to restore {refusal.target_name}: {refusal.reason}")
        if result.plan.rejected:
            result.exit_code = 1
        for missing in result.plan.missing:
            result.messages.append(f"{missing}: VM not found in Hyper-V, skipping")
        self._apply(result, state, dry_run)
        return result

    def status(self) -> StatusReport:
        report = StatusReport(project=self.config.project)
        state = self.store.load()
        if state is None:
            report.drift.untracked = self.config.machine_names()
            return report

        report.drift.config_changed = state.config_hash != self.config.config_hash
        report.drift.untracked = [m for m in self.config.machine_names() if m not in state.vms]

        inventory: list[LiveResource] = []
        try:
            inventory = self.cp.list_vms()
        except ControlPlaneError as exc:
            if exc.kind != ControlPlaneErrorKind.hypervisor_unavailable:
                raise
            report.hypervisor_available = False
            self.log.warning("Hyper-V unavailable: %s", exc.message)

        live = {vm.name: vm for vm in inventory}
        for machine_name, vm in state.vms.items():
            if not report.hypervisor_available:
                report.machines.append(MachineStatus(machine_name=machine_name, vm_name=vm.name, state="Unknown"))
                continue
            current = live.get(vm.name)
            if current is None:
                report.drift.vanished.append(machine_name)
                report.machines.append(MachineStatus(
                    machine_name=machine_name, vm_name=vm.name, state="Missing", missing=True,
                ))
                continue
            if current.id != vm.id:
                report.drift.stale_ids.append(machine_name)
            report.machines.append(MachineStatus(
                machine_name=machine_name,
                vm_name=current.name,
                state=current.power_state,
                cpu=current.cpu_count,
                memory_mb=current.memory_mb,
            ))
        return report
