from __future__ import annotations

import json
import logging
import re
import subprocess
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from . import commands
from .commands import CreateVMParams
from .config import EngineConfig
from .errors import ControlPlaneError, ControlPlaneErrorKind
from .schemas import LiveCheckpoint, LiveResource
from .verbose import VerboseWriter

_ANSI = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")

_ACCESS_DENIED = ("access denied", "access is denied", "permission denied", "not have permission", "unauthorized")
_NOT_FOUND = ("not found", "does not exist", "cannot find", "unable to find")
_UNAVAILABLE = ("hyper-v", "vmms", "virtualization")


class CreatedResource(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="Id")
    name: str = Field(alias="Name")


class Availability(BaseModel):
    available: bool = False
    message: str | None = None


def classify_error(stderr: str, exit_code: int | None = None) -> ControlPlaneErrorKind:
    text = (stderr or "").lower()
    if any(s in text for s in _ACCESS_DENIED):
        return ControlPlaneErrorKind.access_denied
    if any(s in text for s in _NOT_FOUND):
        return ControlPlaneErrorKind.not_found
    if any(s in text for s in _UNAVAILABLE):
        return ControlPlaneErrorKind.hypervisor_unavailable
    return ControlPlaneErrorKind.execution_failed


def format_error_message(stderr: str, exit_code: int | None) -> str:
    clean = _ANSI.sub("", stderr or "").replace("\r", "")
    lines = [line.strip() for line in clean.strip().split("\n") if line.strip()]
    if not lines:
        return f"PowerShell exited with code {exit_code}"
    # cmdlet errors look like "New-VM : Cannot create a file..."
    for line in lines:
        if any(k in line for k in ("Error", "Exception", "Cannot", "Unable", " : ")):
            if len(line) < 30 and len(lines) > 1:
                return " | ".join(lines[:3])
            return line
    return " | ".join(lines[:3])


def parse_output(stdout: str, script: str = "", exit_code: int | None = 0) -> Any:
    out = (stdout or "").strip()
    if out in ("", "null"):
        return None
    try:
        return json.loads(out)
    except json.JSONDecodeError as exc:
        raise ControlPlaneError(
            f"Invalid JSON response from PowerShell: {out[:200]}",
            ControlPlaneErrorKind.invalid_response,
            exit_code,
            "",
            script,
        ) from exc


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _model(model: type[BaseModel], payload: Any, script: str = "") -> Any:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ControlPlaneError(
            f"Unexpected response shape for {model.__name__}: {exc.error_count()} error(s)",
            ControlPlaneErrorKind.invalid_response,
            script=script,
        ) from exc


class ControlPlane(ABC):
    """Operations the engine needs from a hypervisor control plane."""

    @abstractmethod
    def list_vms(self) -> list[LiveResource]: ...

    @abstractmethod
    def get_vm(self, name: str) -> LiveResource | None: ...

    @abstractmethod
    def get_vm_by_id(self, vm_id: str) -> LiveResource | None: ...

    @abstractmethod
    def create_vm(self, params: CreateVMParams) -> CreatedResource: ...

    @abstractmethod
    def start_vm(self, vm_id: str) -> None: ...

    @abstractmethod
    def stop_vm(self, vm_id: str) -> None: ...

    @abstractmethod
    def graceful_stop_vm(self, vm_id: str, timeout_s: int = 30) -> None: ...

    @abstractmethod
    def remove_vm(self, vm_id: str) -> None: ...

    @abstractmethod
    def checkpoint_vm(self, vm_id: str, name: str) -> LiveCheckpoint: ...

    @abstractmethod
    def restore_checkpoint(self, vm_id: str, checkpoint_id: str) -> None: ...

    @abstractmethod
    def list_checkpoints(self, vm_id: str) -> list[LiveCheckpoint]: ...

    @abstractmethod
    def delete_checkpoint(self, vm_id: str, checkpoint_id: str) -> None: ...

    @abstractmethod
    def check_available(self) -> Availability: ...

    @abstractmethod
    def check_default_switch(self) -> bool: ...

    @abstractmethod
    def file_exists(self, path: str) -> bool: ...

    @abstractmethod
    def delete_file(self, path: str) -> None: ...


class PowerShellControlPlane(ControlPlane):
    def __init__(
        self,
        powershell_path: str = "powershell.exe",
        timeout_s: int = 30,
        verbose: VerboseWriter | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.powershell_path = powershell_path
        self.timeout_s = timeout_s
        self.verbose = verbose
        self.log = logger or logging.getLogger(__name__)

    def _run(self, script: str, timeout_s: int | None = None) -> subprocess.CompletedProcess:
        timeout = timeout_s or self.timeout_s
        cmd = [self.powershell_path, "-NoProfile", "-NonInteractive", "-Command", script]
        if self.verbose is not None:
            self.verbose.write(script)
        try:
            return subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, check=False)
        except FileNotFoundError as exc:
            raise ControlPlaneError(
                f"Failed to spawn PowerShell: {self.powershell_path} not found",
                ControlPlaneErrorKind.hypervisor_unavailable,
                None,
                "",
                script,
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise ControlPlaneError(
                f"PowerShell execution timed out after {timeout}s",
                ControlPlaneErrorKind.execution_failed,
                None,
                _text(exc.stderr),
                script,
            ) from exc
        except OSError as exc:
            raise ControlPlaneError(
                f"Failed to spawn PowerShell: {exc}",
                ControlPlaneErrorKind.hypervisor_unavailable,
                None,
                "",
                script,
            ) from exc

    def execute(self, script: str, timeout_s: int | None = None) -> Any:
        proc = self._run(script, timeout_s)
        if proc.returncode != 0:
            stderr = proc.stderr or ""
            kind = classify_error(stderr, proc.returncode)
            self.log.debug("powershell exited %s (%s)", proc.returncode, kind.value)
            raise ControlPlaneError(
                format_error_message(stderr, proc.returncode),
                kind,
                proc.returncode,
                stderr,
                script,
            )
        return parse_output(proc.stdout, script, proc.returncode)

    def list_vms(self) -> list[LiveResource]:
        script = commands.build_get_vms()
        return [_model(LiveResource, row, script) for row in _as_list(self.execute(script))]

    def get_vm(self, name: str) -> LiveResource | None:
        script = commands.build_get_vm_by_name(name)
        result = self.execute(script)
        return _model(LiveResource, result, script) if result else None

    def get_vm_by_id(self, vm_id: str) -> LiveResource | None:
        script = commands.build_get_vm_by_id(vm_id)
        result = self.execute(script)
        return _model(LiveResource, result, script) if result else None

    def create_vm(self, params: CreateVMParams) -> CreatedResource:
        script = commands.build_create_vm(params)
        result = self.execute(script, timeout_s=max(self.timeout_s, 300))
        if not result:
            raise ControlPlaneError(
                f"No VM returned after creating {params.name}",
                ControlPlaneErrorKind.invalid_response,
                script=script,
            )
        return _model(CreatedResource, result, script)

    def start_vm(self, vm_id: str) -> None:
        self.execute(commands.build_start_vm(vm_id))

    def stop_vm(self, vm_id: str) -> None:
        self.execute(commands.build_stop_vm(vm_id))

    def graceful_stop_vm(self, vm_id: str, timeout_s: int = 30) -> None:
        # the script itself waits up to timeout_s before turning the VM off
        self.execute(commands.build_graceful_stop_vm(vm_id, timeout_s), timeout_s=timeout_s + self.timeout_s)

    def remove_vm(self, vm_id: str) -> None:
        self.execute(commands.build_remove_vm(vm_id))

    def checkpoint_vm(self, vm_id: str, name: str) -> LiveCheckpoint:
        script = commands.build_checkpoint_vm(vm_id, name)
        result = self.execute(script, timeout_s=max(self.timeout_s, 120))
        if not result:
            raise ControlPlaneError(
                f"No checkpoint returned for '{name}'",
                ControlPlaneErrorKind.invalid_response,
                script=script,
            )
        return _model(LiveCheckpoint, result, script)

    def restore_checkpoint(self, vm_id: str, checkpoint_id: str) -> None:
        self.execute(commands.build_restore_checkpoint(vm_id, checkpoint_id), timeout_s=max(self.timeout_s, 120))

    def list_checkpoints(self, vm_id: str) -> list[LiveCheckpoint]:
        script = commands.build_list_checkpoints(vm_id)
        return [_model(LiveCheckpoint, row, script) for row in _as_list(self.execute(script))]

    def delete_checkpoint(self, vm_id: str, checkpoint_id: str) -> None:
        self.execute(commands.build_delete_checkpoint(vm_id, checkpoint_id))

    def check_available(self) -> Availability:
        script = commands.build_check_hyperv()
        return _model(Availability, self.execute(script) or {}, script)

    def check_default_switch(self) -> bool:
        result = self.execute(commands.build_check_default_switch()) or {}
        return bool(result.get("exists"))

    def file_exists(self, path: str) -> bool:
        result = self.execute(commands.build_check_file_exists(path)) or {}
        return bool(result.get("exists"))

    def delete_file(self, path: str) -> None:
        self.execute(commands.build_delete_file(path))


def from_config(config: EngineConfig, logger: logging.Logger | None = None) -> PowerShellControlPlane:
    return PowerShellControlPlane(
        powershell_path=config.powershell_path,
        timeout_s=config.command_timeout_s,
        verbose=VerboseWriter() if config.verbose else None,
        logger=logger,
    )
