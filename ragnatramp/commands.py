"""PowerShell request builders for Hyper-V operations.

Every builder returns a script whose output is JSON (via ConvertTo-Json) or
the literal 'null' for void operations. Free-text parameters always pass
through escape_ps() before they are interpolated into a single-quoted
PowerShell string.
"""
from __future__ import annotations

from dataclasses import dataclass

DEFAULT_SWITCH = "Default Switch"

_VM_FIELDS = """Select-Object Id, Name, Notes,
  @{N='State';E={$_.State.ToString()}},
  @{N='MemoryMB';E={[math]::Round($_.MemoryStartup/1MB)}},
  @{N='CPUCount';E={$_.ProcessorCount}}"""


def escape_ps(value: str) -> str:
    """Escape a value for a PowerShell single-quoted string (quotes are doubled)."""
    return str(value).replace("'", "''")


def _quoted(value: str) -> str:
    return f"'{escape_ps(value)}'"


def _as_json_array(var: str) -> str:
    return (
        f"if (${var} -eq $null) {{ '[]' }} "
        f"elseif (${var} -is [array]) {{ ${var} | ConvertTo-Json -Depth 3 }} "
        f"else {{ ConvertTo-Json @(${var}) -Depth 3 }}"
    )


@dataclass(frozen=True)
class CreateVMParams:
    name: str
    cpu: int
    memory_mb: int
    base_image: str
    disk_path: str
    notes: str
    differencing: bool = True
    auto_start: bool = False


def build_get_vms() -> str:
    return f"$vms = Get-VM | {_VM_FIELDS}\n{_as_json_array('vms')}"


def build_get_vm_by_name(name: str) -> str:
    return (
        f"$vm = Get-VM -Name {_quoted(name)} -ErrorAction SilentlyContinue | {_VM_FIELDS}\n"
        "if ($vm) { $vm | ConvertTo-Json -Depth 3 } else { 'null' }"
    )


def build_get_vm_by_id(vm_id: str) -> str:
    return (
        f"$vm = Get-VM -Id {_quoted(vm_id)} -ErrorAction SilentlyContinue | {_VM_FIELDS}\n"
        "if ($vm) { $vm | ConvertTo-Json -Depth 3 } else { 'null' }"
    )


def build_create_vm(params: CreateVMParams) -> str:
    disk = _quoted(params.disk_path)
    base = _quoted(params.base_image)
    if params.differencing:
        disk_creation = f"New-VHD -Path {disk} -ParentPath {base} -Differencing | Out-Null"
    else:
        disk_creation = f"Copy-Item -Path {base} -Destination {disk} -Force"
    lines = [
        "$ErrorActionPreference = 'Stop'",
        f"$diskDir = Split-Path -Parent {disk}",
        "if (-not (Test-Path $diskDir)) { New-Item -ItemType Directory -Path $diskDir -Force | Out-Null }",
        disk_creation,
        # Gen1 boots the widest range of golden images
        f"$vm = New-VM -Name {_quoted(params.name)} -Generation 1 -MemoryStartupBytes {int(params.memory_mb)}MB -NoVHD",
        f"Set-VM -VMName $vm.Name -ProcessorCount {int(params.cpu)}",
        f"Add-VMHardDiskDrive -VMName $vm.Name -Path {disk}",
        f"Connect-VMNetworkAdapter -VMName $vm.Name -SwitchName {_quoted(DEFAULT_SWITCH)}",
        f"Set-VM -VMName $vm.Name -Notes {_quoted(params.notes)}",
    ]
    if params.auto_start:
        lines.append("Start-VM -VM $vm")
    lines.append("$vm | Select-Object Id, Name | ConvertTo-Json")
    return "\n".join(lines)


def build_start_vm(vm_id: str) -> str:
    return "\n".join([
        "$ErrorActionPreference = 'Stop'",
        f"Start-VM -Id {_quoted(vm_id)}",
        "'null'",
    ])


def build_stop_vm(vm_id: str) -> str:
    return "\n".join([
        "$ErrorActionPreference = 'Stop'",
        f"$vm = Get-VM -Id {_quoted(vm_id)}",
        "Stop-VM -VM $vm -TurnOff -Force",
        "'null'",
    ])


def build_graceful_stop_vm(vm_id: str, timeout_s: int = 30) -> str:
    vid = _quoted(vm_id)
    return "\n".join([
        "$ErrorActionPreference = 'Stop'",
        f"$vm = Get-VM -Id {vid}",
        "if ($vm.State -eq 'Running') {",
        "  Stop-VM -VM $vm -Force:$false -ErrorAction SilentlyContinue",
        "  $waited = 0",
        f"  while ($waited -lt {int(timeout_s)}) {{",
        "    Start-Sleep -Seconds 1",
        "    $waited++",
        f"    $vm = Get-VM -Id {vid}",
        "    if ($vm.State -ne 'Running') { break }",
        "  }",
        "  if ($vm.State -eq 'Running') {",
        "    Stop-VM -VM $vm -TurnOff",
        "  }",
        "}",
        "'null'",
    ])


def build_remove_vm(vm_id: str) -> str:
    return "\n".join([
        "$ErrorActionPreference = 'Stop'",
        f"$vm = Get-VM -Id {_quoted(vm_id)} -ErrorAction SilentlyContinue",
        "if ($vm) {",
        "  if ($vm.State -eq 'Running') { Stop-VM -VM $vm -TurnOff }",
        "  Remove-VM -VM $vm -Force",
        "}",
        "'null'",
    ])


def build_checkpoint_vm(vm_id: str, name: str) -> str:
    return "\n".join([
        "$ErrorActionPreference = 'Stop'",
        f"$checkpoint = Checkpoint-VM -Id {_quoted(vm_id)} -SnapshotName {_quoted(name)} -Passthru",
        "$checkpoint | Select-Object Id, Name, VMId | ConvertTo-Json",
    ])


def build_restore_checkpoint(vm_id: str, checkpoint_id: str) -> str:
    vid = _quoted(vm_id)
    cid = escape_ps(checkpoint_id)
    return "\n".join([
        "$ErrorActionPreference = 'Stop'",
        f"$vm = Get-VM -Id {vid}",
        "if ($vm.State -eq 'Running') { Stop-VM -VM $vm -TurnOff }",
        f"$snapshot = Get-VMSnapshot -VMId {vid} | Where-Object {{ $_.Id -eq '{cid}' }}",
        # double-quoted: escape $ and ` so the id cannot expand
        f"if (-not $snapshot) {{ throw \"Snapshot not found: {_escape_dq(checkpoint_id)}\" }}",
        "Restore-VMSnapshot -VMSnapshot $snapshot -Confirm:$false",
        "'null'",
    ])


def build_list_checkpoints(vm_id: str) -> str:
    return (
        f"$snapshots = Get-VMSnapshot -VMId {_quoted(vm_id)} -ErrorAction SilentlyContinue"
        " | Select-Object Id, Name, VMId, VMName, @{N='CreationTime';E={$_.CreationTime.ToString('o')}}\n"
        f"{_as_json_array('snapshots')}"
    )


def build_delete_checkpoint(vm_id: str, checkpoint_id: str) -> str:
    return "\n".join([
        "$ErrorActionPreference = 'Stop'",
        f"$snapshot = Get-VMSnapshot -VMId {_quoted(vm_id)} | Where-Object {{ $_.Id -eq {_quoted(checkpoint_id)} }}",
        "if ($snapshot) { Remove-VMSnapshot -VMSnapshot $snapshot -Confirm:$false }",
        "'null'",
    ])


def build_check_hyperv() -> str:
    return "\n".join([
        "$result = @{ available = $false }",
        "try {",
        "  $vmms = Get-Service vmms -ErrorAction Stop",
        "  if ($vmms.Status -eq 'Running') {",
        "    $result.available = $true",
        "  } else {",
        "    $result.message = 'Hyper-V Virtual Machine Management service (vmms) is not running'",
        "  }",
        "} catch {",
        "  $result.message = \"Hyper-V is not installed or accessible: $($_.Exception.Message)\"",
        "}",
        "$result | ConvertTo-Json",
    ])


def build_check_default_switch(switch_name: str = DEFAULT_SWITCH) -> str:
    return "\n".join([
        "$result = @{ exists = $false }",
        f"$switch = Get-VMSwitch -Name {_quoted(switch_name)} -ErrorAction SilentlyContinue",
        "if ($switch) {",
        "  $result.exists = $true",
        "  $result.name = $switch.Name",
        "}",
        "$result | ConvertTo-Json",
    ])


def build_check_file_exists(path: str) -> str:
    p = _quoted(path)
    return "\n".join([
        f"$result = @{{ exists = (Test-Path -Path {p} -PathType Leaf); path = {p} }}",
        "$result | ConvertTo-Json",
    ])


def build_delete_file(path: str) -> str:
    p = _quoted(path)
    return "\n".join([
        f"if (Test-Path -Path {p}) {{ Remove-Item -Path {p} -Force }}",
        "'null'",
    ])


def _escape_dq(value: str) -> str:
    return str(value).replace("`", "``").replace("$", "`$").replace('"', '`"')
