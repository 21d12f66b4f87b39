from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from orphansweep.errors import ArtifactError
from orphansweep.models import AssignmentRecord, RemovalReport, ScanResult

logger = logging.getLogger("orphansweep.artifact")

SCHEMA_VERSION = 1
TOOL_NAME = "orphansweep"
DEFAULT_CANDIDATES_PATH = "orphaned-role-assignments.json"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def atomic_write_json(path: str, obj: Any) -> None:
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, sort_keys=False, default=str)
        f.write("\n")
    os.replace(tmp_path, path)


def write_candidates(path: str, records: Sequence[AssignmentRecord]) -> None:
    atomic_write_json(path, [r.to_artifact() for r in records])


def export_scan(result: ScanResult, path: str) -> bool:
    """
    Write the candidate artifact. Nothing is written for an empty result:
    that is a normal outcome, reported as False.
    """
    if not result.records:
        logger.info("No orphaned role assignments found; %s not written", path)
        return False
    write_candidates(path, result.records)
    logger.info("Wrote %d candidates to %s", len(result.records), path)
    return True


def read_candidates(path: str) -> list[AssignmentRecord]:
    """
    Load the reviewed artifact. A JSON object instead of an array is accepted
    when it holds exactly one record (a single-item export). Malformed entries
    are kept so the removal phase reports them individually.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ArtifactError(f"Candidate file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ArtifactError(f"Candidate file {path} is not valid JSON: {e}") from e

    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise ArtifactError(f"Candidate file {path} must contain a JSON array of role assignments")

    out: list[AssignmentRecord] = []
    for i, item in enumerate(data):
        if not isinstance(item, dict):
            logger.warning("Entry %d in %s is not an object; kept as malformed", i, path)
            item = {}
        out.append(AssignmentRecord.from_artifact(item))
    return out


def build_scan_report(result: ScanResult, *, artifact_path: Optional[str], artifact_written: bool) -> dict:
    report = {
        "tool": TOOL_NAME,
        "schema_version": SCHEMA_VERSION,
        "phase": "scan",
        "generated_at": utc_now_iso(),
        "artifact": artifact_path if artifact_written else None,
        "summary": result.summary(),
        "skipped_subscriptions": result.skipped_subscriptions,
        "management_groups": [
            {"name": n.name, "display_name": n.display_name, "parent": n.parent_name, "level": n.level, "path": n.path}
            for n in result.nodes
        ],
    }
    if result.errors:
        report["errors"] = result.errors
    return report


def build_removal_report(report: RemovalReport, *, source: Optional[str] = None) -> dict:
    return {
        "tool": TOOL_NAME,
        "schema_version": SCHEMA_VERSION,
        "phase": "remove",
        "generated_at": utc_now_iso(),
        "source": source,
        "summary": report.summary(),
        "results": [r.to_dict() for r in report.results],
    }
