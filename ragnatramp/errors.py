from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .schemas import ApplyReport, OwnershipChecks


class RagnatrampError(RuntimeError):
    exit_code = 2

    def __init__(self, message: str, suggestion: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion

    def format(self) -> str:
        out = f"Error: {self.message}"
        if self.suggestion:
            out += f"\n\nFix: {self.suggestion}"
        return out


class ConfigResolutionError(RagnatrampError):
    exit_code = 1


class NoSuchMachine(RagnatrampError):
    exit_code = 1

    def __init__(self, machine_name: str, known: list[str] | None = None) -> None:
        known = known or []
        hint = f"Known machines: {', '.join(known)}" if known else None
        super().__init__(f"Machine '{machine_name}' not found", hint)
        self.machine_name = machine_name
        self.known = known


class StateCorrupt(RagnatrampError):
    exit_code = 2

    def __init__(self, message: str, state_path: str | None = None) -> None:
        super().__init__(
            message,
            "Inspect or remove the state file; VMs it tracked must then be cleaned up manually.",
        )
        self.state_path = state_path
        self.report: ApplyReport | None = None


class OwnershipVerificationFailed(RagnatrampError):
    exit_code = 1

    def __init__(self, vm_name: str, checks: OwnershipChecks, reason: str) -> None:
        super().__init__(
            f"{vm_name}: {reason}",
            "This VM was not created by ragnatramp or belongs to a different configuration. "
            "Manual deletion via Hyper-V Manager may be required.",
        )
        self.vm_name = vm_name
        self.checks = checks
        self.reason = reason


class CheckpointNotFound(RagnatrampError):
    exit_code = 1

    def __init__(self, checkpoint_name: str, machines: list[str]) -> None:
        super().__init__(
            f"Checkpoint '{checkpoint_name}' not found for machine(s): {', '.join(machines)}",
            "Create the checkpoint first.",
        )
        self.checkpoint_name = checkpoint_name
        self.machines = machines


class DuplicateCheckpoint(RagnatrampError):
    exit_code = 1

    def __init__(self, checkpoint_name: str, machine_name: str) -> None:
        super().__init__(
            f"Checkpoint '{checkpoint_name}' already exists for machine '{machine_name}'",
            "Use a different checkpoint name or delete the existing checkpoint.",
        )
        self.checkpoint_name = checkpoint_name
        self.machine_name = machine_name


class PreflightFailed(RagnatrampError):
    exit_code = 2

    def __init__(self, message: str, suggestion: str | None = None, missing: list[str] | None = None) -> None:
        super().__init__(message, suggestion)
        self.missing = missing or []


class ControlPlaneErrorKind(str, Enum):
    access_denied = "ACCESS_DENIED"
    not_found = "NOT_FOUND"
    invalid_response = "INVALID_RESPONSE"
    hypervisor_unavailable = "HYPERVISOR_UNAVAILABLE"
    execution_failed = "EXECUTION_FAILED"


class ControlPlaneError(RagnatrampError):
    exit_code = 2

    def __init__(
        self,
        message: str,
        kind: ControlPlaneErrorKind = ControlPlaneErrorKind.execution_failed,
        process_exit_code: int | None = None,
        stderr: str = "",
        script: str = "",
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.process_exit_code = process_exit_code
        self.stderr = stderr
        self.script = script


def exit_code_for(error: BaseException) -> int:
    if isinstance(error, RagnatrampError):
        return error.exit_code
    return 2
