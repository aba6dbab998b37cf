import io
import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from ragnatramp.commands import CreateVMParams
from ragnatramp.control_plane import (
    PowerShellControlPlane,
    classify_error,
    format_error_message,
    from_config,
)
from ragnatramp.config import EngineConfig
from ragnatramp.errors import ControlPlaneError, ControlPlaneErrorKind
from ragnatramp.verbose import VerboseWriter


def _proc(stdout: str = "", stderr: str = "", returncode: int = 0) -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def run():
    with patch("ragnatramp.control_plane.subprocess.run") as mock_run:
        yield mock_run


@pytest.fixture
def plane() -> PowerShellControlPlane:
    return PowerShellControlPlane(powershell_path="pwsh", timeout_s=7)


@pytest.mark.parametrize(
    "stderr,kind",
    [
        ("Get-VM : Access is denied.", ControlPlaneErrorKind.access_denied),
        ("You do not have permission to perform the operation", ControlPlaneErrorKind.access_denied),
        ("Hyper-V was unable to find a virtual machine with name 'x'", ControlPlaneErrorKind.not_found),
        ("The file does not exist", ControlPlaneErrorKind.not_found),
        ("The Hyper-V Virtual Machine Management service is stopped", ControlPlaneErrorKind.hypervisor_unavailable),
        ("virtualization support is disabled in the firmware", ControlPlaneErrorKind.hypervisor_unavailable),
        ("something odd happened", ControlPlaneErrorKind.execution_failed),
        ("", ControlPlaneErrorKind.execution_failed),
    ],
)
def test_classify_error(stderr, kind):
    assert classify_error(stderr, 1) == kind


def test_format_error_message_prefers_cmdlet_line():
    stderr = "\x1b[31mNew-VM : Cannot create the VM because the file is locked.\x1b[0m\r\nAt line:1 char:1\r\n+ New-VM ..."
    assert format_error_message(stderr, 1) == "New-VM : Cannot create the VM because the file is locked."


def test_format_error_message_joins_short_lines():
    stderr = "Error:\nthe disk is full\nsomewhere\nignored"
    assert format_error_message(stderr, 1) == "Error: | the disk is full | somewhere"


def test_format_error_message_empty_stderr():
    assert format_error_message("", 3) == "PowerShell exited with code 3"


def test_execute_spawns_powershell_non_interactively(run, plane):
    run.return_value = _proc('{"a": 1}')

    assert plane.execute("Get-Thing") == {"a": 1}

    args, kwargs = run.call_args
    assert args[0] == ["pwsh", "-NoProfile", "-NonInteractive", "-Command", "Get-Thing"]
    assert kwargs["timeout"] == 7
    assert kwargs["capture_output"] is True


@pytest.mark.parametrize("stdout", ["", "   ", "null", "null\r\n"])
def test_execute_empty_output_is_none(run, plane, stdout):
    run.return_value = _proc(stdout)
    assert plane.execute("x") is None


def test_execute_invalid_json(run, plane):
    run.return_value = _proc("WARNING: not json")
    with pytest.raises(ControlPlaneError) as exc:
        plane.execute("x")
    assert exc.value.kind == ControlPlaneErrorKind.invalid_response


def test_execute_nonzero_exit_is_classified(run, plane):
    run.return_value = _proc(stderr="Start-VM : Access is denied.", returncode=1)
    with pytest.raises(ControlPlaneError) as exc:
        plane.execute("Start-VM")
    assert exc.value.kind == ControlPlaneErrorKind.access_denied
    assert exc.value.process_exit_code == 1
    assert exc.value.script == "Start-VM"
    assert exc.value.exit_code == 2


def test_missing_executable_means_hypervisor_unavailable(run, plane):
    run.side_effect = FileNotFoundError("pwsh")
    with pytest.raises(ControlPlaneError) as exc:
        plane.execute("x")
    assert exc.value.kind == ControlPlaneErrorKind.hypervisor_unavailable


def test_timeout_means_execution_failed(run, plane):
    run.side_effect = subprocess.TimeoutExpired(cmd="pwsh", timeout=7)
    with pytest.raises(ControlPlaneError) as exc:
        plane.execute("x")
    assert exc.value.kind == ControlPlaneErrorKind.execution_failed


def test_timeout_stderr_is_decoded(run, plane):
    run.side_effect = subprocess.TimeoutExpired(cmd="pwsh", timeout=7, stderr=b"Stop-VM: still waiting")
    with pytest.raises(ControlPlaneError) as exc:
        plane.execute("x")
    assert exc.value.stderr == "Stop-VM: still waiting"
    assert "timed out after" in exc.value.message


def test_list_vms_normalizes_empty_and_single(run, plane):
    row = {"Id": "1", "Name": "demo-web-0123abcd", "State": "Running", "Notes": None, "MemoryMB": 2048, "CPUCount": 2}

    run.return_value = _proc("")
    assert plane.list_vms() == []

    run.return_value = _proc(json.dumps(row))
    vms = plane.list_vms()
    assert len(vms) == 1 and vms[0].is_running

    run.return_value = _proc(json.dumps([row, {**row, "Id": "2", "State": "Off"}]))
    assert [vm.power_state for vm in plane.list_vms()] == ["Running", "Off"]


def test_unknown_power_state_is_tolerated(run, plane):
    run.return_value = _proc(json.dumps({"Id": "1", "Name": "n", "State": "FastSavedCritical"}))
    vm = plane.get_vm("n")
    assert vm.power_state == "FastSavedCritical"
    assert not vm.is_running and not vm.is_off


def test_get_vm_absent(run, plane):
    run.return_value = _proc("null")
    assert plane.get_vm("missing") is None


def test_create_vm_returns_identity(run, plane):
    run.return_value = _proc('{"Id": "abc", "Name": "demo-web-0123abcd"}')
    created = plane.create_vm(CreateVMParams(
        name="demo-web-0123abcd", cpu=2, memory_mb=2048,
        base_image="C:/b.vhdx", disk_path="C:/d.vhdx", notes="managed:true",
    ))
    assert (created.id, created.name) == ("abc", "demo-web-0123abcd")


def test_checkpoint_and_list(run, plane):
    run.return_value = _proc('{"Id": "cp1", "Name": "base", "VMId": "abc"}')
    assert plane.checkpoint_vm("abc", "base").id == "cp1"

    run.return_value = _proc("[]")
    assert plane.list_checkpoints("abc") == []


def test_preflight_queries(run, plane):
    run.return_value = _proc('{"available": false, "message": "vmms is not running"}')
    result = plane.check_available()
    assert not result.available and "vmms" in result.message

    run.return_value = _proc('{"exists": true, "name": "Default Switch"}')
    assert plane.check_default_switch() is True

    run.return_value = _proc('{"exists": false, "path": "C:/x"}')
    assert plane.file_exists("C:/x") is False


def test_verbose_writes_each_request_once_before_dispatch(run):
    stream = io.StringIO()
    seen = []
    run.side_effect = lambda *a, **kw: seen.append(stream.getvalue()) or _proc(stderr="boom", returncode=1)
    plane = PowerShellControlPlane(verbose=VerboseWriter(stream, ansi=False))

    with pytest.raises(ControlPlaneError):
        plane.execute("Get-VM")

    assert seen == ["\n[PS] Get-VM\n\n"]
    assert stream.getvalue().count("[PS] ") == 1


def test_from_config():
    plane = from_config(EngineConfig(powershell_path="pwsh", command_timeout_s=12, shutdown_timeout_s=30, verbose=True))
    assert plane.powershell_path == "pwsh"
    assert plane.timeout_s == 12
    assert isinstance(plane.verbose, VerboseWriter)


def test_logger_is_injectable(run):
    logger = MagicMock()
    run.return_value = _proc(stderr="nope", returncode=5)
    plane = PowerShellControlPlane(logger=logger)
    with pytest.raises(ControlPlaneError):
        plane.execute("x")
    logger.debug.assert_called_once()
