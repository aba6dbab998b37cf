import logging

from ragnatramp.config import EngineConfig, load_config
from ragnatramp.errors import (
    ConfigResolutionError,
    ControlPlaneError,
    NoSuchMachine,
    OwnershipVerificationFailed,
    StateCorrupt,
    exit_code_for,
)
from ragnatramp.log_setup import HumanFormatter, logger_from_config, setup_logger
from ragnatramp.schemas import OwnershipChecks


def test_load_config_defaults(monkeypatch):
    for name in ("RAGNATRAMP_POWERSHELL", "RAGNATRAMP_CMD_TIMEOUT_S", "RAGNATRAMP_SHUTDOWN_TIMEOUT_S",
                 "RAGNATRAMP_VERBOSE", "RAGNATRAMP_LOG_FILE"):
        monkeypatch.delenv(name, raising=False)

    cfg = load_config()

    assert cfg.powershell_path == "powershell.exe"
    assert cfg.command_timeout_s == 30
    assert cfg.shutdown_timeout_s == 30
    assert cfg.verbose is False
    assert cfg.log_file is None


def test_load_config_from_env(monkeypatch):
    monkeypatch.setenv("RAGNATRAMP_POWERSHELL", "pwsh")
    monkeypatch.setenv("RAGNATRAMP_CMD_TIMEOUT_S", "0")
    monkeypatch.setenv("RAGNATRAMP_VERBOSE", "yes")
    monkeypatch.setenv("RAGNATRAMP_LOG_FILE", "/tmp/rt.log")

    cfg = load_config()

    assert cfg.powershell_path == "pwsh"
    assert cfg.command_timeout_s == 1
    assert cfg.verbose is True
    assert cfg.log_file == "/tmp/rt.log"


def test_exit_codes():
    checks = OwnershipChecks()
    assert exit_code_for(ConfigResolutionError("bad")) == 1
    assert exit_code_for(NoSuchMachine("x")) == 1
    assert exit_code_for(OwnershipVerificationFailed("vm", checks, "nope")) == 1
    assert exit_code_for(StateCorrupt("broken")) == 2
    assert exit_code_for(ControlPlaneError("boom")) == 2
    assert exit_code_for(ValueError("other")) == 2


def test_error_format_includes_fix():
    text = NoSuchMachine("x", ["web", "db"]).format()
    assert text == "Error: Machine 'x' not found\n\nFix: Known machines: web, db"


def test_human_formatter():
    record = logging.LogRecord("ragnatramp.executor", logging.WARNING, __file__, 1, "create %s failed", ("vm",), None)
    line = HumanFormatter(datefmt="%Y").format(record)
    assert line.startswith("[ragnatramp] ")
    assert line.endswith(" warning ragnatramp.executor create vm failed")


def test_setup_logger_writes_file(tmp_path):
    logfile = tmp_path / "logs" / "rt.log"
    logger = setup_logger("ragnatramp.test-file", str(logfile))

    logger.info("hello")
    for h in logger.handlers:
        h.flush()

    assert "hello" in logfile.read_text(encoding="utf-8")
    assert logger.propagate is False
    assert setup_logger("ragnatramp.test-file", str(logfile)) is logger


def test_logger_from_config_uses_engine_settings(tmp_path):
    logfile = tmp_path / "rt.log"
    engine = EngineConfig(powershell_path="pwsh", command_timeout_s=5, shutdown_timeout_s=5,
                          verbose=True, log_file=str(logfile))

    logger = logger_from_config(engine, "ragnatramp-test.engine")
    logger.debug("shutdown wait")
    for h in logger.handlers:
        h.flush()

    assert logger.level == logging.DEBUG
    assert "debug ragnatramp-test.engine shutdown wait" in logfile.read_text(encoding="utf-8")
