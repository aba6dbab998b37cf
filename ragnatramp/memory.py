from __future__ import annotations

import itertools

from .commands import CreateVMParams
from .control_plane import Availability, ControlPlane, CreatedResource
from .errors import ControlPlaneError, ControlPlaneErrorKind
from .schemas import LiveCheckpoint, LiveResource, PowerState


class InMemoryControlPlane(ControlPlane):
    """Control plane backed by dicts, for offline runs and tests.

    Failures are injected per operation with fail(); a failure keyed on a VM
    name only fires for that VM.
    """

    def __init__(self, available: bool = True, default_switch: bool = True) -> None:
        self.available = available
        self.default_switch = default_switch
        self.vms: dict[str, LiveResource] = {}
        self.checkpoints: dict[str, list[LiveCheckpoint]] = {}
        self.files: set[str] = set()
        self.calls: list[tuple[str, str | None]] = []
        self._failures: dict[tuple[str, str | None], ControlPlaneError] = {}
        self._ids = itertools.count(1)

    def add_vm(self, name: str, state: str = PowerState.off.value, notes: str | None = None,
               vm_id: str | None = None, cpu: int = 2, memory_mb: int = 2048) -> LiveResource:
        vm = LiveResource(
            id=vm_id or f"vm-{next(self._ids)}",
            name=name,
            power_state=state,
            notes=notes,
            cpu_count=cpu,
            memory_mb=memory_mb,
        )
        self.vms[vm.id] = vm
        return vm

    def fail(self, op: str, target: str | None = None, error: ControlPlaneError | None = None) -> None:
        self._failures[(op, target)] = error or ControlPlaneError(
            f"{op} failed", ControlPlaneErrorKind.execution_failed, 1
        )

    def clear_failures(self) -> None:
        self._failures.clear()

    def _check(self, op: str, target: str | None = None) -> None:
        self.calls.append((op, target))
        err = self._failures.get((op, target)) or self._failures.get((op, None))
        if err is not None:
            raise err

    def _require(self, vm_id: str) -> LiveResource:
        vm = self.vms.get(vm_id)
        if vm is None:
            raise ControlPlaneError(
                f"Hyper-V was unable to find a virtual machine with id '{vm_id}'",
                ControlPlaneErrorKind.not_found,
                1,
            )
        return vm

    def _name_of(self, vm_id: str) -> str | None:
        vm = self.vms.get(vm_id)
        return vm.name if vm is not None else None

    def list_vms(self) -> list[LiveResource]:
        self._check("list_vms")
        return [vm.model_copy() for vm in self.vms.values()]

    def get_vm(self, name: str) -> LiveResource | None:
        self._check("get_vm", name)
        for vm in self.vms.values():
            if vm.name == name:
                return vm.model_copy()
        return None

    def get_vm_by_id(self, vm_id: str) -> LiveResource | None:
        self._check("get_vm_by_id", self._name_of(vm_id))
        vm = self.vms.get(vm_id)
        return vm.model_copy() if vm is not None else None

    def create_vm(self, params: CreateVMParams) -> CreatedResource:
        self._check("create_vm", params.name)
        if any(vm.name == params.name for vm in self.vms.values()):
            raise ControlPlaneError(
                f"New-VM : A virtual machine named '{params.name}' already exists",
                ControlPlaneErrorKind.execution_failed,
                1,
            )
        state = PowerState.running.value if params.auto_start else PowerState.off.value
        vm = self.add_vm(params.name, state, params.notes, cpu=params.cpu, memory_mb=params.memory_mb)
        self.files.add(params.disk_path)
        return CreatedResource(id=vm.id, name=vm.name)

    def start_vm(self, vm_id: str) -> None:
        self._check("start_vm", self._name_of(vm_id))
        self._require(vm_id).power_state = PowerState.running.value

    def stop_vm(self, vm_id: str) -> None:
        self._check("stop_vm", self._name_of(vm_id))
        self._require(vm_id).power_state = PowerState.off.value

    def graceful_stop_vm(self, vm_id: str, timeout_s: int = 30) -> None:
        self._check("graceful_stop_vm", self._name_of(vm_id))
        self._require(vm_id).power_state = PowerState.off.value

    def remove_vm(self, vm_id: str) -> None:
        self._check("remove_vm", self._name_of(vm_id))
        self.vms.pop(vm_id, None)
        self.checkpoints.pop(vm_id, None)

    def checkpoint_vm(self, vm_id: str, name: str) -> LiveCheckpoint:
        self._check("checkpoint_vm", self._name_of(vm_id))
        vm = self._require(vm_id)
        snap = LiveCheckpoint(id=f"cp-{next(self._ids)}", name=name, vm_id=vm_id, vm_name=vm.name)
        self.checkpoints.setdefault(vm_id, []).append(snap)
        return snap

    def restore_checkpoint(self, vm_id: str, checkpoint_id: str) -> None:
        self._check("restore_checkpoint", self._name_of(vm_id))
        vm = self._require(vm_id)
        if not any(cp.id == checkpoint_id for cp in self.checkpoints.get(vm_id, [])):
            raise ControlPlaneError(
                f"Snapshot not found: {checkpoint_id}", ControlPlaneErrorKind.not_found, 1
            )
        vm.power_state = PowerState.off.value

    def list_checkpoints(self, vm_id: str) -> list[LiveCheckpoint]:
        self._check("list_checkpoints", self._name_of(vm_id))
        return list(self.checkpoints.get(vm_id, []))

    def delete_checkpoint(self, vm_id: str, checkpoint_id: str) -> None:
        self._check("delete_checkpoint", self._name_of(vm_id))
        self.checkpoints[vm_id] = [cp for cp in self.checkpoints.get(vm_id, []) if cp.id != checkpoint_id]

    def check_available(self) -> Availability:
        self._check("check_available")
        if self.available:
            return Availability(available=True)
        return Availability(available=False, message="Hyper-V Virtual Machine Management service (vmms) is not running")

    def check_default_switch(self) -> bool:
        self._check("check_default_switch")
        return self.default_switch

    def file_exists(self, path: str) -> bool:
        self._check("file_exists", path)
        return path in self.files

    def delete_file(self, path: str) -> None:
        self._check("delete_file", path)
        self.files.discard(path)
