import os
from pathlib import Path

import pytest

from conftest import make_config, track
from ragnatramp.errors import CheckpointNotFound, DuplicateCheckpoint, NoSuchMachine
from ragnatramp.naming import generate_marker, generate_name
from ragnatramp.planner import (
    compute_plan,
    plan,
    plan_checkpoint,
    plan_destroy,
    plan_halt,
    plan_restore,
    select_machines,
    summarize,
)
from ragnatramp.schemas import ActionType, CheckpointState, CreateDetails, StartDetails
from ragnatramp.state import add_checkpoint


def _types(result):
    return [(a.type.value, a.machine_name) for a in result.actions]


def test_empty_host_creates_and_starts_in_config_order(config):
    result = compute_plan(config, None, [])

    assert _types(result) == [
        ("create", "web"), ("start", "web"),
        ("create", "db"), ("start", "db"),
        ("create", "cache"), ("start", "cache"),
    ]
    create = result.actions[0]
    assert isinstance(create.details, CreateDetails)
    assert create.target_name == generate_name("demo", "web", config.config_path)
    assert create.details.disk_path == os.path.join(config.artifact_path, "web.vhdx")
    assert create.details.differencing is True
    assert create.details.notes == generate_marker(config.config_path)
    assert isinstance(result.actions[1].details, StartDetails)
    assert result.actions[1].details.vm_id is None


def test_no_auto_start_only_creates(config_path):
    config = make_config(config_path, ["web"], auto_start=False)
    assert _types(compute_plan(config, None, [])) == [("create", "web")]


def test_tracked_vm_that_is_off_gets_started(config, cp):
    state, vm = track(cp, config, None, "web", power="Off")
    state, _ = track(cp, config, state, "db", power="Running")
    state, _ = track(cp, config, state, "cache", power="Running")

    result = compute_plan(config, state, cp.list_vms())

    assert _types(result) == [("start", "web")]
    assert result.actions[0].details.vm_id == vm.id
    assert result.unchanged == 2


def test_untracked_live_vm_is_never_touched(config, cp):
    name = generate_name("demo", "web", config.config_path)
    cp.add_vm(name, "Off")

    result = compute_plan(config, None, cp.list_vms())

    assert "web" not in [a.machine_name for a in result.actions]
    assert result.unchanged == 1


def test_vanished_tracked_vm_is_recreated(config, cp):
    state, vm = track(cp, config, None, "web")
    cp.vms.pop(vm.id)

    result = compute_plan(config, state, cp.list_vms(), ["web"])

    assert _types(result) == [("create", "web"), ("start", "web")]


def test_plan_never_destroys(config, cp):
    state, _ = track(cp, config, None, "web")
    state, _ = track(cp, config, state, "db")
    config_with_one = make_config(Path(config.config_path), ["web"])

    result = compute_plan(config_with_one, state, cp.list_vms())

    assert result.count(ActionType.destroy) == 0


def test_plan_is_deterministic(config, cp):
    state, _ = track(cp, config, None, "db", power="Off")
    inventory = cp.list_vms()

    first = compute_plan(config, state, inventory)
    second = compute_plan(config, state, inventory)

    assert first.model_dump() == second.model_dump()


def test_plan_takes_machines_directly(config):
    result = plan(config.machines[:1], None, [], True, project="demo",
                  config_path=config.config_path, artifact_path=config.artifact_path)
    assert len(result.actions) == 2


def test_select_machines_rejects_unknown(config):
    assert [m.name for m in select_machines(config, ["cache", "web"])] == ["web", "cache"]
    with pytest.raises(NoSuchMachine) as exc:
        select_machines(config, ["web", "nope"])
    assert exc.value.known == ["web", "db", "cache"]


def test_halt_stops_running_tracked_vms(config, cp):
    state, web = track(cp, config, None, "web", power="Running")
    state, _ = track(cp, config, state, "db", power="Off")
    cp.add_vm("stranger", "Running")

    result = plan_halt(config, state, cp.list_vms(), force=True)

    assert _types(result) == [("stop", "web")]
    assert result.actions[0].details.vm_id == web.id
    assert result.actions[0].details.force is True
    assert result.unchanged == 1


def test_destroy_plans_only_owned_vms(config, cp):
    state, _ = track(cp, config, None, "web")
    state, _ = track(cp, config, state, "db", notes="hand made")
    state, gone = track(cp, config, state, "cache")
    cp.vms.pop(gone.id)

    result = plan_destroy(config, state, cp.list_vms())

    assert _types(result) == [("destroy", "web")]
    assert [r.machine_name for r in result.rejected] == ["db"]
    assert result.rejected[0].checks.marker_valid is False
    assert result.missing == ["cache"]


def test_destroy_selection_comes_from_ledger(config, cp):
    state, _ = track(cp, config, None, "web")
    assert _types(plan_destroy(config, state, cp.list_vms(), ["web"])) == [("destroy", "web")]
    with pytest.raises(NoSuchMachine):
        plan_destroy(config, state, cp.list_vms(), ["db"])


def test_checkpoint_rejects_existing_name(config, cp):
    state, _ = track(cp, config, None, "web")
    state, _ = track(cp, config, state, "db")
    assert _types(plan_checkpoint("base", config, state, cp.list_vms())) == [
        ("checkpoint", "web"), ("checkpoint", "db"),
    ]

    add_checkpoint(state, "db", CheckpointState(id="cp-1", name="base", created_at="t"))
    with pytest.raises(DuplicateCheckpoint):
        plan_checkpoint("base", config, state, cp.list_vms())


def test_restore_requires_checkpoint_everywhere(config, cp):
    state, _ = track(cp, config, None, "web")
    state, _ = track(cp, config, state, "db")
    add_checkpoint(state, "web", CheckpointState(id="cp-1", name="base", created_at="t"))

    with pytest.raises(CheckpointNotFound) as exc:
        plan_restore("base", config, state, cp.list_vms())
    assert exc.value.machines == ["db"]

    add_checkpoint(state, "db", CheckpointState(id="cp-2", name="base", created_at="t"))
    result = plan_restore("base", config, state, cp.list_vms())
    assert [a.details.checkpoint_id for a in result.actions] == ["cp-1", "cp-2"]


def test_summarize(config):
    assert summarize(compute_plan(config, None, [])) == "3 to create, 3 to start"
    assert summarize(compute_plan(config, None, []).model_copy(update={"actions": []})) == "No changes needed"


def test_summary_counts_every_action_type(config, cp):
    state, _ = track(cp, config, None, "web", power="Off")

    counts = compute_plan(config, state, cp.list_vms()).summary

    assert counts == {
        "create": 2, "start": 3, "stop": 0, "destroy": 0,
        "checkpoint": 0, "restore": 0, "unchanged": 0,
    }
