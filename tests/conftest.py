from __future__ import annotations

from pathlib import Path

import pytest

from ragnatramp.memory import InMemoryControlPlane
from ragnatramp.naming import compute_content_hash, generate_marker, generate_name
from ragnatramp.schemas import ResolvedConfig, VMState
from ragnatramp.state import StateStore, new_state, upsert_vm

BASE_IMAGE = "C:/HyperV/Golden/base.vhdx"


def make_config(config_path: Path, machines: list[str], auto_start: bool = True) -> ResolvedConfig:
    return ResolvedConfig.model_validate({
        "project": "demo",
        "machines": [
            {"name": name, "cpu": 2, "memory_mb": 2048, "base_image": BASE_IMAGE} for name in machines
        ],
        "artifact_path": str(config_path.parent / "disks"),
        "auto_start": auto_start,
        "config_path": str(config_path),
        "config_hash": compute_content_hash(config_path.read_text(encoding="utf-8")),
    })


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    path = tmp_path / "ragnatramp.yaml"
    path.write_text("project: demo\n", encoding="utf-8")
    return path


@pytest.fixture
def config(config_path: Path) -> ResolvedConfig:
    return make_config(config_path, ["web", "db", "cache"])


@pytest.fixture
def cp() -> InMemoryControlPlane:
    plane = InMemoryControlPlane()
    plane.files.add(BASE_IMAGE)
    return plane


@pytest.fixture
def store(config: ResolvedConfig) -> StateStore:
    return StateStore.for_config(config.config_path)


def track(cp: InMemoryControlPlane, config: ResolvedConfig, state, machine: str,
          power: str = "Running", notes: str | None = None):
    """Put an owned VM for `machine` both on the control plane and in the ledger."""
    name = generate_name(config.project, machine, config.config_path)
    vm = cp.add_vm(name, power, notes if notes is not None else generate_marker(config.config_path))
    if state is None:
        state = new_state(config.project, config.config_path, config.config_hash)
    upsert_vm(state, machine, VMState(
        id=vm.id,
        name=name,
        machine_name=machine,
        disk_path=f"{config.artifact_path}/{machine}.vhdx",
        created_at="2026-01-01T00:00:00+00:00",
    ))
    cp.files.add(f"{config.artifact_path}/{machine}.vhdx")
    return state, vm
