from __future__ import annotations

import os

from .errors import CheckpointNotFound, DuplicateCheckpoint, NoSuchMachine
from .naming import generate_marker, generate_name
from .schemas import (
    Action,
    ActionType,
    CheckpointDetails,
    CreateDetails,
    DestroyDetails,
    DiskStrategy,
    LiveResource,
    OwnershipRefusal,
    PlanResult,
    ResolvedConfig,
    ResolvedMachine,
    RestoreDetails,
    StartDetails,
    StateFile,
    StopDetails,
    VMState,
)
from .state import get_checkpoint, get_vm
from .verifier import verify


def disk_path_for(artifact_path: str, machine_name: str) -> str:
    return os.path.join(artifact_path, f"{machine_name}.vhdx")


def _by_name(inventory: list[LiveResource]) -> dict[str, LiveResource]:
    return {vm.name: vm for vm in inventory}


def select_machines(config: ResolvedConfig, names: list[str] | None = None) -> list[ResolvedMachine]:
    """Machines named on the command line, in config order. Unknown names fail before planning."""
    if not names:
        return list(config.machines)
    known = config.machine_names()
    for name in names:
        if name not in known:
            raise NoSuchMachine(name, known)
    wanted = set(names)
    return [m for m in config.machines if m.name in wanted]


def _ledger_entries(state: StateFile | None, machines: list[str] | None) -> list[tuple[str, VMState]]:
    if state is None:
        return []
    if machines is None:
        return list(state.vms.items())
    return [(name, state.vms[name]) for name in machines if name in state.vms]


def plan(
    desired: list[ResolvedMachine],
    state: StateFile | None,
    inventory: list[LiveResource],
    auto_start: bool,
    *,
    project: str,
    config_path: str,
    artifact_path: str,
) -> PlanResult:
    """Diff desired machines against the live inventory.

    Emits create (followed by start when auto_start) for machines with no live
    VM, and start for tracked VMs that are Off. Live VMs that the ledger does
    not know about are left alone. Never emits destroy.
    """
    live = _by_name(inventory)
    marker = generate_marker(config_path)
    result = PlanResult()

    for machine in desired:
        vm_name = generate_name(project, machine.name, config_path)
        existing = live.get(vm_name)

        if existing is None:
            result.actions.append(Action(
                type=ActionType.create,
                machine_name=machine.name,
                target_name=vm_name,
                details=CreateDetails(
                    cpu=machine.cpu,
                    memory_mb=machine.memory_mb,
                    base_image=machine.base_image,
                    disk_path=disk_path_for(artifact_path, machine.name),
                    differencing=machine.disk_strategy == DiskStrategy.differencing,
                    notes=marker,
                ),
            ))
            if auto_start:
                # vm id is resolved from the ledger once create has run
                result.actions.append(Action(
                    type=ActionType.start,
                    machine_name=machine.name,
                    target_name=vm_name,
                    details=StartDetails(vm_id=None),
                ))
            continue

        if get_vm(state, machine.name) is None:
            # not ours, never adopt
            result.unchanged += 1
            continue

        if auto_start and existing.is_off:
            result.actions.append(Action(
                type=ActionType.start,
                machine_name=machine.name,
                target_name=vm_name,
                details=StartDetails(vm_id=existing.id),
            ))
        else:
            result.unchanged += 1

    return result


def compute_plan(config: ResolvedConfig, state: StateFile | None, inventory: list[LiveResource],
                 machines: list[str] | None = None) -> PlanResult:
    return plan(
        select_machines(config, machines),
        state,
        inventory,
        config.auto_start,
        project=config.project,
        config_path=config.config_path,
        artifact_path=config.artifact_path,
    )


def plan_halt(
    config: ResolvedConfig,
    state: StateFile | None,
    inventory: list[LiveResource],
    machines: list[str] | None = None,
    force: bool = False,
) -> PlanResult:
    selected = [m.name for m in select_machines(config, machines)]
    live = _by_name(inventory)
    result = PlanResult()
    for machine_name in selected:
        vm = get_vm(state, machine_name)
        if vm is None:
            continue
        existing = live.get(vm.name)
        if existing is None:
            result.missing.append(machine_name)
            continue
        if not existing.is_running:
            result.unchanged += 1
            continue
        result.actions.append(Action(
            type=ActionType.stop,
            machine_name=machine_name,
            target_name=vm.name,
            details=StopDetails(vm_id=existing.id, force=force),
        ))
    return result


def plan_destroy(
    config: ResolvedConfig,
    state: StateFile | None,
    inventory: list[LiveResource],
    machines: list[str] | None = None,
) -> PlanResult:
    """Destroy actions for tracked VMs that still exist and pass every ownership check.

    Machines are selected from the ledger rather than the config, so a machine
    dropped from the config can still be torn down.
    """
    if machines:
        known = sorted(state.vms) if state is not None else []
        for name in machines:
            if name not in known:
                raise NoSuchMachine(name, known)
    selected = machines or None
    live = _by_name(inventory)
    result = PlanResult()
    for machine_name, vm in _ledger_entries(state, selected):
        existing = live.get(vm.name)
        if existing is None:
            result.missing.append(machine_name)
            continue
        ownership = verify(vm.name, state, existing, config.config_path, project=config.project, machine=machine_name)
        if not ownership.owned:
            result.rejected.append(OwnershipRefusal(
                machine_name=machine_name,
                target_name=vm.name,
                checks=ownership.checks,
                reason=ownership.reason or "",
            ))
            continue
        result.actions.append(Action(
            type=ActionType.destroy,
            machine_name=machine_name,
            target_name=vm.name,
            details=DestroyDetails(vm_id=existing.id, disk_path=vm.disk_path),
        ))
    return result


def plan_checkpoint(
    name: str,
    config: ResolvedConfig,
    state: StateFile | None,
    inventory: list[LiveResource],
    machines: list[str] | None = None,
) -> PlanResult:
    selected = [m.name for m in select_machines(config, machines)] if machines else None
    entries = _ledger_entries(state, selected)
    for machine_name, _ in entries:
        if get_checkpoint(state, machine_name, name) is not None:
            raise DuplicateCheckpoint(name, machine_name)

    live = _by_name(inventory)
    result = PlanResult()
    for machine_name, vm in entries:
        existing = live.get(vm.name)
        if existing is None:
            result.missing.append(machine_name)
            continue
        result.actions.append(Action(
            type=ActionType.checkpoint,
            machine_name=machine_name,
            target_name=vm.name,
            details=CheckpointDetails(vm_id=existing.id, checkpoint_name=name),
        ))
    return result


def plan_restore(
    name: str,
    config: ResolvedConfig,
    state: StateFile | None,
    inventory: list[LiveResource],
    machines: list[str] | None = None,
) -> PlanResult:
    selected = [m.name for m in select_machines(config, machines)] if machines else None
    entries = _ledger_entries(state, selected)
    lacking = [machine_name for machine_name, _ in entries if get_checkpoint(state, machine_name, name) is None]
    if lacking:
        raise CheckpointNotFound(name, lacking)

    live = _by_name(inventory)
    result = PlanResult()
    for machine_name, vm in entries:
        existing = live.get(vm.name)
        if existing is None:
            result.missing.append(machine_name)
            continue
        ownership = verify(vm.name, state, existing, config.config_path, project=config.project, machine=machine_name)
        if not ownership.owned:
            result.rejected.append(OwnershipRefusal(
                machine_name=machine_name,
                target_name=vm.name,
                checks=ownership.checks,
                reason=ownership.reason or "",
            ))
            continue
        checkpoint = get_checkpoint(state, machine_name, name)
        result.actions.append(Action(
            type=ActionType.restore,
            machine_name=machine_name,
            target_name=vm.name,
            details=RestoreDetails(vm_id=existing.id, checkpoint_id=checkpoint.id, checkpoint_name=name),
        ))
    return result


_SUMMARY_LABELS = [
    (ActionType.create, "to create"),
    (ActionType.start, "to start"),
    (ActionType.stop, "to stop"),
    (ActionType.destroy, "to destroy"),
    (ActionType.checkpoint, "to checkpoint"),
    (ActionType.restore, "to restore"),
]


def summarize(result: PlanResult) -> str:
    counts = result.summary
    parts = [f"{counts[t.value]} {label}" for t, label in _SUMMARY_LABELS if counts[t.value]]
    if not parts:
        return "No changes needed"
    return ", ".join(parts)
