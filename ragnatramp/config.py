import os
from dataclasses import dataclass


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


@dataclass
class EngineConfig:
    powershell_path: str
    command_timeout_s: int
    shutdown_timeout_s: int
    verbose: bool
    log_file: str | None = None


def load_config() -> EngineConfig:
    return EngineConfig(
        powershell_path=os.getenv("RAGNATRAMP_POWERSHELL", "powershell.exe"),
        command_timeout_s=max(1, int(os.getenv("RAGNATRAMP_CMD_TIMEOUT_S", "30"))),
        shutdown_timeout_s=max(0, int(os.getenv("RAGNATRAMP_SHUTDOWN_TIMEOUT_S", "30"))),
        verbose=_env_flag("RAGNATRAMP_VERBOSE"),
        log_file=os.getenv("RAGNATRAMP_LOG_FILE") or None,
    )
