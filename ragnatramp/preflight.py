from __future__ import annotations

from pydantic import BaseModel, Field

from .control_plane import ControlPlane
from .errors import ControlPlaneError, PreflightFailed
from .schemas import ResolvedConfig


class PreflightCheck(BaseModel):
    passed: bool
    message: str | None = None
    suggestion: str | None = None
    missing: list[str] = Field(default_factory=list)


class PreflightReport(BaseModel):
    hypervisor_available: PreflightCheck
    default_switch_exists: PreflightCheck
    base_images_exist: PreflightCheck

    @property
    def all_passed(self) -> bool:
        return (
            self.hypervisor_available.passed
            and self.default_switch_exists.passed
            and self.base_images_exist.passed
        )

    def failures(self) -> list[PreflightCheck]:
        checks = [self.hypervisor_available, self.default_switch_exists, self.base_images_exist]
        return [c for c in checks if not c.passed]


def check_hypervisor(cp: ControlPlane) -> PreflightCheck:
    try:
        result = cp.check_available()
    except ControlPlaneError as exc:
        return PreflightCheck(
            passed=False,
            message=exc.message,
            suggestion='Ensure you are a member of the "Hyper-V Administrators" group and Hyper-V is installed.',
        )
    if result.available:
        return PreflightCheck(passed=True)
    return PreflightCheck(
        passed=False,
        message=result.message or "Hyper-V is not available",
        suggestion="Ensure Hyper-V is enabled: Enable-WindowsOptionalFeature -Online -FeatureName Microsoft-Hyper-V -All",
    )


def check_default_switch(cp: ControlPlane) -> PreflightCheck:
    try:
        exists = cp.check_default_switch()
    except ControlPlaneError as exc:
        return PreflightCheck(
            passed=False,
            message=exc.message,
            suggestion="Ensure Hyper-V is running and you have permission to query virtual switches.",
        )
    if exists:
        return PreflightCheck(passed=True)
    return PreflightCheck(
        passed=False,
        message="Default Switch not found",
        suggestion='Create the Default Switch in Hyper-V Manager or run: New-VMSwitch -Name "Default Switch" -SwitchType Internal',
    )


def check_base_images(cp: ControlPlane, config: ResolvedConfig) -> PreflightCheck:
    images = list(dict.fromkeys(m.base_image for m in config.machines))
    missing = []
    for image in images:
        try:
            if not cp.file_exists(image):
                missing.append(image)
        except ControlPlaneError:
            # an image we cannot stat is as good as missing
            missing.append(image)
    if not missing:
        return PreflightCheck(passed=True)
    return PreflightCheck(
        passed=False,
        message=f"Base image(s) not found: {', '.join(missing)}",
        suggestion="Ensure the golden VHDX image exists at the specified path. Use Test-Path to verify.",
        missing=missing,
    )


def run_preflight(cp: ControlPlane, config: ResolvedConfig) -> PreflightReport:
    return PreflightReport(
        hypervisor_available=check_hypervisor(cp),
        default_switch_exists=check_default_switch(cp),
        base_images_exist=check_base_images(cp, config),
    )


def assert_preflight_passed(report: PreflightReport) -> None:
    failures = report.failures()
    if not failures:
        return
    first = failures[0]
    missing = [m for f in failures for m in f.missing]
    raise PreflightFailed(
        "; ".join(f.message or "preflight check failed" for f in failures),
        first.suggestion,
        missing,
    )
