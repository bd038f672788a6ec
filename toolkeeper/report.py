"""
Text and JSON rendering for tool listings and dependency audits, plus the
exit codes shared by every command.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

from .audit_engine import DependencyRecord, RiskLevel, summarize
from .common import atomic_write_text
from .listing import ToolListReport
from .policy import SupportedToolView
from .table import format_table, truncate

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_THRESHOLD = 20
EXIT_CHECK_FAILED = 21
EXIT_INTERRUPTED = 130

REQUIREMENT_WIDTH = 15
NOTES_WIDTH = 120


def threshold_exit_code(
    threshold_hit: bool,
    checks_failed: bool,
    fail_on_threshold: bool,
    fail_on_check_errors: bool,
) -> int:
    """Check failures take precedence over the threshold condition."""
    if fail_on_check_errors and checks_failed:
        return EXIT_CHECK_FAILED
    if fail_on_threshold and threshold_hit:
        return EXIT_THRESHOLD
    return EXIT_OK


def audit_exit_code(records: Sequence[DependencyRecord], fail_on_high: bool, fail_on_check_errors: bool) -> int:
    summary = summarize(records)
    return threshold_exit_code(summary.high > 0, summary.check_errors > 0, fail_on_high, fail_on_check_errors)


def list_exit_code(report: ToolListReport, fail_on_updates: bool, fail_on_check_errors: bool) -> int:
    return threshold_exit_code(report.has_updates, report.has_check_failures, fail_on_updates, fail_on_check_errors)


def to_json(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False)


def write_json_report(path: Path, payload: Any) -> None:
    atomic_write_text(path, to_json(payload) + "\n")


# Dependency audit

def build_audit_report(
    manifest_path: Path,
    records: Sequence[DependencyRecord],
    generated_at: datetime | None = None,
) -> dict[str, Any]:
    generated_at = generated_at or datetime.now(timezone.utc)
    return {
        "generated_at": generated_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
        "manifest_path": str(manifest_path),
        "summary": summarize(records).to_dict(),
        "dependencies": [record.to_dict() for record in records],
    }


def _opt(value: Any) -> str:
    return "-" if value is None else str(value)


def _archived(value: bool | None) -> str:
    if value is None:
        return "-"
    return "yes" if value else "no"


def render_audit_text(manifest_path: Path, records: Sequence[DependencyRecord]) -> str:
    summary = summarize(records)
    lines = [
        "Dependency Maintenance Audit",
        f"Manifest: {manifest_path}",
        f"Summary: high={summary.high} medium={summary.medium} low={summary.low} unknown={summary.unknown}",
    ]
    if summary.check_errors:
        lines.append(f"Check errors: {summary.check_errors}")
    lines.append("")

    if not records:
        lines.append("No dependencies to audit.")
        return "\n".join(lines) + "\n"

    header = ("NAME", "REQ", "RISK", "STARS", "REL_AGE_D", "PUSH_AGE_D", "ARCHIVED", "NOTES")
    rows = [
        (
            r.name,
            truncate(r.requirement, REQUIREMENT_WIDTH),
            r.risk.value,
            _opt(r.github_stars),
            _opt(r.latest_release_age_days),
            _opt(r.github_push_age_days),
            _archived(r.github_archived),
            truncate("; ".join(r.notes), NOTES_WIDTH),
        )
        for r in records
    ]
    lines.extend(format_table(header, rows))

    unknown = [r for r in records if r.risk is RiskLevel.UNKNOWN]
    if unknown:
        lines.append("")
        lines.append("Unverifiable dependencies:")
        for r in unknown:
            reason = "; ".join(r.notes) or "no signals"
            lines.append(f"- {r.name}: {reason}")
    return "\n".join(lines) + "\n"


# Tool listing

def render_tool_list_text(report: ToolListReport) -> str:
    lines: list[str] = []
    if report.rows:
        header = ["NAME", "VERSION", "ACTIVE"]
        if report.checked_updates:
            header.append("UPDATE")
        header.append("SOURCE")
        rows = []
        for row in report.rows:
            cells = [row.name, row.version, "*" if row.active else ""]
            if report.checked_updates:
                cells.append(row.update or "")
            cells.append(row.source)
            rows.append(cells)
        lines.extend(format_table(header, rows, num_right=False))
    else:
        lines.append("No tools installed.")

    for item in report.unmanaged:
        lines.append(f"Detected unmanaged binary: {item.name} {item.version} ({item.path})")
        lines.append(f"Run `keeper tool install {item.name}` to adopt it into managed store.")

    lines.append("")
    lines.append(f"Scope: {report.scope}")
    lines.append(f"Tool binaries path: {report.bin_path}")

    if report.check_failures:
        lines.append("")
        lines.append("Update check warnings:")
        for name, error in report.check_failures:
            lines.append(f"- {name}: {error}")
    return "\n".join(lines) + "\n"


def render_supported_text(views: Sequence[SupportedToolView]) -> str:
    rows = [(" / ".join((v.name, *v.aliases)), v.source) for v in views]
    return "\n".join(format_table(("TOOL", "SOURCES"), rows, num_right=False)) + "\n"
