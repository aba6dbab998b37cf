from __future__ import annotations

import sys
import tempfile
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from ragnatramp.config import load_config
from ragnatramp.log_setup import logger_from_config
from ragnatramp.memory import InMemoryControlPlane
from ragnatramp.naming import compute_content_hash
from ragnatramp.schemas import ActionStatus, ResolvedConfig
from ragnatramp.services import Workflows


def build_config(root: Path) -> ResolvedConfig:
    config_path = root / "ragnatramp.yaml"
    config_path.write_text("project: smoke\n", encoding="utf-8")
    base = str(root / "golden.vhdx")
    return ResolvedConfig.model_validate({
        "project": "smoke",
        "machines": [
            {"name": "web", "cpu": 2, "memory_mb": 2048, "base_image": base},
            {"name": "db", "cpu": 2, "memory_mb": 4096, "base_image": base},
        ],
        "artifact_path": str(root / "disks"),
        "auto_start": True,
        "config_path": str(config_path),
        "config_hash": compute_content_hash(config_path.read_text(encoding="utf-8")),
    })


def run() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        root = Path(tmp)
        config = build_config(root)
        cp = InMemoryControlPlane()
        cp.files.add(config.machines[0].base_image)
        flows = Workflows(config, cp, logger=logger_from_config(load_config()))

        result = flows.up()
        assert result.success, result.messages
        assert len(result.report.completed) == 4
        assert all(vm.is_running for vm in cp.list_vms())

        assert not flows.plan().plan.has_actions

        assert flows.halt().success
        assert all(vm.is_off for vm in cp.list_vms())

        assert flows.checkpoint("base").success
        assert flows.restore("base").success

        status = flows.status()
        assert not status.drift.has_drift
        assert {m.machine_name for m in status.machines} == {"web", "db"}

        intruder = cp.add_vm("smoke-web-00000000")
        result = flows.destroy()
        assert result.success
        assert all(o.status == ActionStatus.completed for o in result.report.outcomes)
        assert [vm.id for vm in cp.list_vms()] == [intruder.id]
        assert not flows.store.exists()
    print("SMOKE_OK")


if __name__ == "__main__":
    run()
