"""
JSON exporter — Writes and reads the JSON artifacts the commands exchange
(SiteInfo.json, DeploymentManifest.json, role plans, audit records).
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..config import ToolkitError

TOOL_NAME = "M365 Admin Toolkit"


class ArtifactError(ToolkitError):
    """Raised when an artifact file is missing or unreadable."""
    pass


def export_json(payload: Any, output_dir: Path, filename: str) -> Path:
    """
    Write a payload to output_dir/filename as indented UTF-8 JSON.

    Returns:
        Path to the created JSON file.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    filepath = output_dir / filename

    with open(filepath, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, default=str, ensure_ascii=False)

    return filepath


def load_json(path: Path) -> Any:
    """Read a JSON artifact written by export_json (or by hand)."""
    try:
        with open(path, "r", encoding="utf-8-sig") as fh:
            return json.load(fh)
    except FileNotFoundError:
        raise ArtifactError(f"File not found: {path}")
    except json.JSONDecodeError as e:
        raise ArtifactError(f"Invalid JSON in {path}: {e}")


def artifact_metadata(command: str, **extra) -> dict:
    """Standard header stamped on every artifact."""
    return {
        "tool": TOOL_NAME,
        "command": command,
        "generated_utc": datetime.now(timezone.utc).isoformat(),
        **extra,
    }
