from __future__ import annotations

import hashlib
import os
import re
from dataclasses import dataclass

from . import __version__

VM_NAME_PATTERN = re.compile(r"^([A-Za-z][A-Za-z0-9-]*)-([A-Za-z][A-Za-z0-9-]*)-([0-9a-f]{8})$")
MARKER_PREFIX = "ragnatramp:"
MANAGED_LINE = "managed:true"

_CONFIG_LINE = re.compile(r"^config:(.+)$", re.MULTILINE)
_LEGACY_MARKER_LINE = re.compile(r"^ragnatramp:(?!v\d)(.+)$", re.MULTILINE)
_MANAGED = re.compile(r"^managed:true\s*$", re.IGNORECASE | re.MULTILINE)


@dataclass(frozen=True)
class ParsedName:
    project: str
    machine: str
    hash: str


def normalize_path(path: str) -> str:
    """Absolute, forward-slashed, lower-cased form used for hashing and comparison."""
    return os.path.abspath(path).replace("\\", "/").lower()


def compute_path_hash(path: str) -> str:
    normalized = path.replace("\\", "/").lower()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:8]


def compute_content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:8]


def generate_name(project: str, machine: str, config_path: str) -> str:
    if not project:
        raise ValueError("project name must not be empty")
    if not machine:
        raise ValueError("machine name must not be empty")
    return f"{project}-{machine}-{compute_path_hash(os.path.abspath(config_path))}"


def generate_marker(config_path: str, tool_version: str = __version__) -> str:
    return "\n".join([
        f"{MARKER_PREFIX}v{tool_version}",
        f"config:{os.path.abspath(config_path)}",
        MANAGED_LINE,
    ])


def parse_name(name: str) -> ParsedName | None:
    # Hyphens are legal in both parts, so the split is only a best guess for display.
    m = VM_NAME_PATTERN.match(name or "")
    if not m:
        return None
    return ParsedName(project=m.group(1), machine=m.group(2), hash=m.group(3))


def matches_expected_name(candidate: str, project: str, machine: str, config_path: str) -> bool:
    try:
        expected = generate_name(project, machine, config_path)
    except ValueError:
        return False
    return candidate == expected


def extract_config_path(notes: str | None) -> str | None:
    if not notes:
        return None
    m = _CONFIG_LINE.search(notes)
    if m:
        return m.group(1).strip()
    # older single-line marker: "ragnatramp:<path>"
    m = _LEGACY_MARKER_LINE.search(notes)
    if m:
        return m.group(1).strip()
    return None


def has_marker(notes: str | None, config_path: str | None = None) -> bool:
    if not notes or not _MANAGED.search(notes):
        return False
    if config_path is None:
        return True
    embedded = extract_config_path(notes)
    if not embedded:
        return False
    return normalize_path(embedded) == normalize_path(config_path)
