from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from .errors import DuplicateCheckpoint, NoSuchMachine, StateCorrupt
from .schemas import STATE_VERSION, CheckpointState, StateFile, VMState

STATE_DIR_NAME = ".ragnatramp"
STATE_FILE_NAME = "state.json"

log = logging.getLogger(__name__)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def state_dir_for(config_path: str) -> Path:
    return Path(os.path.abspath(config_path)).parent / STATE_DIR_NAME


def state_path_for(config_path: str) -> Path:
    return state_dir_for(config_path) / STATE_FILE_NAME


def new_state(project: str, config_path: str, config_hash: str) -> StateFile:
    now = now_iso()
    return StateFile(
        version=STATE_VERSION,
        config_hash=config_hash,
        config_path=os.path.abspath(config_path),
        project=project,
        created_at=now,
        updated_at=now,
        vms={},
    )


def load(path: str | Path) -> StateFile | None:
    path = Path(path)
    if not path.exists():
        return None
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise StateCorrupt(f"State file is unreadable: {path}: {exc}", str(path)) from exc
    if not isinstance(raw, dict):
        raise StateCorrupt(f"State file is not a JSON object: {path}", str(path))
    version = raw.get("version")
    if type(version) is not int or version != STATE_VERSION:
        raise StateCorrupt(f"Unsupported state file version {version!r} in {path}", str(path))
    try:
        return StateFile.model_validate(raw)
    except ValidationError as exc:
        raise StateCorrupt(f"State file failed validation: {path}: {exc}", str(path)) from exc


def save(path: str | Path, state: StateFile) -> None:
    path = Path(path)
    content = state.model_dump_json(by_alias=True, indent=2)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        f = tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False
        )
    except OSError as exc:
        raise StateCorrupt(f"Failed to write state file {path}: {exc}", str(path)) from exc
    tmp = Path(f.name)
    try:
        with f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException as exc:
        tmp.unlink(missing_ok=True)
        if isinstance(exc, OSError):
            raise StateCorrupt(f"Failed to write state file {path}: {exc}", str(path)) from exc
        raise
    log.debug("state saved to %s (%d vms)", path, len(state.vms))


def delete(path: str | Path) -> None:
    path = Path(path)
    path.unlink(missing_ok=True)
    try:
        path.parent.rmdir()
    except OSError:
        # directory still holds something else
        pass


def _touch(state: StateFile) -> None:
    state.updated_at = now_iso()


def upsert_vm(state: StateFile, machine_name: str, vm: VMState) -> None:
    state.vms[machine_name] = vm
    _touch(state)


def remove_vm(state: StateFile, machine_name: str) -> VMState | None:
    vm = state.vms.pop(machine_name, None)
    if vm is not None:
        _touch(state)
    return vm


def get_vm(state: StateFile | None, machine_name: str) -> VMState | None:
    if state is None:
        return None
    return state.vms.get(machine_name)


def find_vm_by_name(state: StateFile | None, vm_name: str) -> tuple[str, VMState] | None:
    if state is None:
        return None
    for machine_name, vm in state.vms.items():
        if vm.name == vm_name:
            return machine_name, vm
    return None


def get_checkpoint(state: StateFile | None, machine_name: str, checkpoint_name: str) -> CheckpointState | None:
    vm = get_vm(state, machine_name)
    if vm is None:
        return None
    for cp in vm.checkpoints:
        if cp.name == checkpoint_name:
            return cp
    return None


def add_checkpoint(state: StateFile, machine_name: str, checkpoint: CheckpointState) -> None:
    vm = state.vms.get(machine_name)
    if vm is None:
        raise NoSuchMachine(machine_name, sorted(state.vms))
    if any(cp.name == checkpoint.name for cp in vm.checkpoints):
        raise DuplicateCheckpoint(checkpoint.name, machine_name)
    vm.checkpoints.append(checkpoint)
    _touch(state)


def remove_checkpoints(state: StateFile, machine_name: str, names: list[str]) -> list[CheckpointState]:
    vm = state.vms.get(machine_name)
    if vm is None:
        return []
    wanted = set(names)
    removed = [cp for cp in vm.checkpoints if cp.name in wanted]
    if removed:
        vm.checkpoints = [cp for cp in vm.checkpoints if cp.name not in wanted]
        _touch(state)
    return removed


class StateStore:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    @classmethod
    def for_config(cls, config_path: str) -> StateStore:
        return cls(state_path_for(config_path))

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> StateFile | None:
        return load(self.path)

    def save(self, state: StateFile) -> None:
        save(self.path, state)

    def delete(self) -> None:
        delete(self.path)
