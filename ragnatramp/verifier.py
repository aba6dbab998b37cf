from __future__ import annotations

from .errors import OwnershipVerificationFailed
from .naming import generate_name, has_marker
from .schemas import LiveResource, OwnershipChecks, OwnershipResult, StateFile
from .state import find_vm_by_name, get_vm


def _failure_reason(checks: OwnershipChecks) -> str | None:
    failures = []
    if not checks.in_ledger:
        failures.append("VM not found in state file")
    if not checks.marker_valid:
        failures.append("VM Notes missing ragnatramp marker or config path mismatch")
    if not checks.name_matches_pattern:
        failures.append("VM name does not match expected pattern")
    if not failures:
        return None
    return "; ".join(failures)


def verify(
    expected_name: str,
    state: StateFile | None,
    live: LiveResource | None,
    config_path: str,
    project: str | None = None,
    machine: str | None = None,
) -> OwnershipResult:
    """Decide whether a live VM may be mutated or destroyed.

    Ownership requires all three of: a ledger entry with the expected name,
    a Notes marker naming this config path, and a live name equal to the one
    re-derived from (project, machine, config_path). Anything missing fails
    closed.
    """
    entry = find_vm_by_name(state, expected_name)
    in_ledger = entry is not None

    marker_valid = live is not None and has_marker(live.notes, config_path)

    if project is None and state is not None:
        project = state.project
    if machine is None and entry is not None:
        machine = entry[0]

    name_ok = False
    if live is not None and project and machine:
        try:
            name_ok = live.name == generate_name(project, machine, config_path)
        except ValueError:
            name_ok = False

    checks = OwnershipChecks(in_ledger=in_ledger, marker_valid=marker_valid, name_matches_pattern=name_ok)
    reason = _failure_reason(checks)
    return OwnershipResult(owned=reason is None, checks=checks, reason=reason)


def verify_machine(
    machine: str,
    state: StateFile | None,
    inventory: list[LiveResource],
    config_path: str,
    project: str,
) -> OwnershipResult:
    vm = get_vm(state, machine)
    expected = vm.name if vm is not None else generate_name(project, machine, config_path)
    live = next((r for r in inventory if r.name == expected), None)
    return verify(expected, state, live, config_path, project=project, machine=machine)


def require_owned(
    expected_name: str,
    state: StateFile | None,
    live: LiveResource | None,
    config_path: str,
    project: str | None = None,
    machine: str | None = None,
) -> OwnershipResult:
    result = verify(expected_name, state, live, config_path, project, machine)
    if not result.owned:
        raise OwnershipVerificationFailed(expected_name, result.checks, result.reason or "ownership not proven")
    return result
