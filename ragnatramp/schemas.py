from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


STATE_VERSION = 1


class DiskStrategy(str, Enum):
    differencing = "differencing"
    copy = "copy"


class ResolvedMachine(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, max_length=16)
    cpu: int = Field(ge=1)
    memory_mb: int = Field(ge=512)
    base_image: str
    disk_strategy: DiskStrategy = DiskStrategy.differencing


class ResolvedConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    project: str
    machines: list[ResolvedMachine]
    artifact_path: str
    auto_start: bool = True
    config_path: str
    config_hash: str

    def machine_names(self) -> list[str]:
        return [m.name for m in self.machines]


# Ledger models keep the camelCase keys of the on-disk JSON.
class CheckpointState(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    created_at: str = Field(alias="createdAt")


class VMState(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    machine_name: str = Field(alias="machineName")
    disk_path: str = Field(alias="diskPath")
    created_at: str = Field(alias="createdAt")
    checkpoints: list[CheckpointState] = Field(default_factory=list)


class StateFile(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    version: int = STATE_VERSION
    config_hash: str = Field(alias="configHash")
    config_path: str = Field(alias="configPath")
    project: str
    created_at: str = Field(alias="createdAt")
    updated_at: str = Field(alias="updatedAt")
    vms: dict[str, VMState] = Field(default_factory=dict)


class PowerState(str, Enum):
    running = "Running"
    off = "Off"
    saved = "Saved"
    paused = "Paused"
    starting = "Starting"
    stopping = "Stopping"
    saving = "Saving"
    resuming = "Resuming"
    reset = "Reset"
    other = "Other"


# Live records keep the PascalCase keys emitted by the control plane.
class LiveResource(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="Id")
    name: str = Field(alias="Name")
    power_state: str = Field(default=PowerState.other.value, alias="State")
    notes: str | None = Field(default=None, alias="Notes")
    memory_mb: int = Field(default=0, alias="MemoryMB")
    cpu_count: int = Field(default=0, alias="CPUCount")

    @property
    def is_running(self) -> bool:
        return self.power_state == PowerState.running.value

    @property
    def is_off(self) -> bool:
        return self.power_state == PowerState.off.value


class LiveCheckpoint(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="Id")
    name: str = Field(alias="Name")
    vm_id: str | None = Field(default=None, alias="VMId")
    vm_name: str | None = Field(default=None, alias="VMName")
    creation_time: str | None = Field(default=None, alias="CreationTime")


class ActionType(str, Enum):
    create = "create"
    start = "start"
    stop = "stop"
    destroy = "destroy"
    checkpoint = "checkpoint"
    restore = "restore"


class CreateDetails(BaseModel):
    type: Literal["create"] = "create"
    cpu: int
    memory_mb: int
    base_image: str
    disk_path: str
    differencing: bool
    notes: str


class StartDetails(BaseModel):
    type: Literal["start"] = "start"
    vm_id: str | None = None


class StopDetails(BaseModel):
    type: Literal["stop"] = "stop"
    vm_id: str
    force: bool = False


class DestroyDetails(BaseModel):
    type: Literal["destroy"] = "destroy"
    vm_id: str
    disk_path: str


class CheckpointDetails(BaseModel):
    type: Literal["checkpoint"] = "checkpoint"
    vm_id: str
    checkpoint_name: str


class RestoreDetails(BaseModel):
    type: Literal["restore"] = "restore"
    vm_id: str
    checkpoint_id: str
    checkpoint_name: str


ActionDetails = Annotated[
    Union[CreateDetails, StartDetails, StopDetails, DestroyDetails, CheckpointDetails, RestoreDetails],
    Field(discriminator="type"),
]


class Action(BaseModel):
    type: ActionType
    machine_name: str
    target_name: str
    details: ActionDetails

    def describe(self) -> str:
        d = self.details
        if isinstance(d, CreateDetails):
            strategy = "differencing" if d.differencing else "copy"
            return (
                f"Create VM: {self.target_name}\n"
                f"  CPU: {d.cpu}, Memory: {d.memory_mb} MB\n"
                f"  Disk: {d.disk_path} ({strategy})"
            )
        if isinstance(d, StopDetails):
            return f"Stop VM: {self.target_name}{' (force)' if d.force else ''}"
        if isinstance(d, DestroyDetails):
            return f"Destroy VM: {self.target_name}\n  Delete disk: {d.disk_path}"
        if isinstance(d, CheckpointDetails):
            return f"Checkpoint VM: {self.target_name}\n  Name: {d.checkpoint_name}"
        if isinstance(d, RestoreDetails):
            return f"Restore VM: {self.target_name}\n  Checkpoint: {d.checkpoint_name}"
        return f"Start VM: {self.target_name}"


class OwnershipChecks(BaseModel):
    in_ledger: bool = False
    marker_valid: bool = False
    name_matches_pattern: bool = False


class OwnershipResult(BaseModel):
    owned: bool
    checks: OwnershipChecks
    reason: str | None = None


class OwnershipRefusal(BaseModel):
    machine_name: str
    target_name: str
    checks: OwnershipChecks
    reason: str


class PlanResult(BaseModel):
    actions: list[Action] = Field(default_factory=list)
    unchanged: int = 0
    rejected: list[OwnershipRefusal] = Field(default_factory=list)
    missing: list[str] = Field(default_factory=list)

    def count(self, action_type: ActionType) -> int:
        return sum(1 for a in self.actions if a.type == action_type)

    @property
    def summary(self) -> dict[str, int]:
        out = {t.value: self.count(t) for t in ActionType}
        out["unchanged"] = self.unchanged
        return out

    @property
    def has_actions(self) -> bool:
        return bool(self.actions)


class ActionStatus(str, Enum):
    pending = "pending"
    verifying = "verifying"
    executing = "executing"
    completed = "completed"
    failed = "failed"
    skipped = "skipped"


class ActionOutcome(BaseModel):
    action: Action
    status: ActionStatus = ActionStatus.pending
    error: str | None = None
    error_kind: str | None = None
    exit_code: int | None = None
    history: list[ActionStatus] = Field(default_factory=list)

    def transition(self, status: ActionStatus) -> None:
        self.history.append(status)
        self.status = status

    def to_report(self) -> dict[str, str | None]:
        return {
            "action": self.action.type.value,
            "machine": self.action.machine_name,
            "target": self.action.target_name,
            "status": self.status.value,
            "error": self.error,
        }


class ApplyReport(BaseModel):
    outcomes: list[ActionOutcome] = Field(default_factory=list)
    dry_run: bool = False

    def _with(self, status: ActionStatus) -> list[ActionOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def completed(self) -> list[ActionOutcome]:
        return self._with(ActionStatus.completed)

    @property
    def failed(self) -> list[ActionOutcome]:
        return self._with(ActionStatus.failed)

    @property
    def skipped(self) -> list[ActionOutcome]:
        return self._with(ActionStatus.skipped)

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def partial(self) -> bool:
        return bool(self.failed) and bool(self.completed)

    @property
    def exit_code(self) -> int:
        codes = [o.exit_code or 2 for o in self.failed]
        return max(codes) if codes else 0

    def to_report(self) -> dict:
        return {
            "success": self.success,
            "dry_run": self.dry_run,
            "summary": {
                "completed": len(self.completed),
                "failed": len(self.failed),
                "skipped": len(self.skipped),
            },
            "results": [o.to_report() for o in self.outcomes],
        }
