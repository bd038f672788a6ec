"""
Dependency risk audit.

Fetches maintenance signals for every dependency concurrently, classifies
each one into a risk level and returns the records ordered by severity.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Sequence

from .common import auto_jobs, normalize_jobs
from .errors import KeeperError
from .manifest import DependencySpec
from .signals import GITHUB_BLOCKED_MESSAGE, SignalClient, age_days, github_repo_from_url, std_alternative

logger = logging.getLogger(__name__)

AUDIT_JOBS_MULTIPLIER = 2
AUDIT_JOBS_MIN = 4
AUDIT_JOBS_MAX = 16

RELEASE_STALE_DAYS = 1460
RELEASE_OLD_DAYS = 730
PUSH_STALE_DAYS = 1460
PUSH_OLD_DAYS = 365
STARS_LOW = 50
STARS_SMALL = 150


class RiskLevel(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    UNKNOWN = "unknown"

    @property
    def weight(self) -> int:
        return _RISK_WEIGHTS[self]


_RISK_WEIGHTS = {
    RiskLevel.HIGH: 4,
    RiskLevel.MEDIUM: 3,
    RiskLevel.LOW: 2,
    RiskLevel.UNKNOWN: 1,
}


def elevate(current: RiskLevel, candidate: RiskLevel) -> RiskLevel:
    """Return the more severe of two levels."""
    return candidate if candidate.weight > current.weight else current


def default_audit_jobs() -> int:
    return auto_jobs(AUDIT_JOBS_MULTIPLIER, AUDIT_JOBS_MIN, AUDIT_JOBS_MAX)


@dataclass(frozen=True)
class DependencyRecord:
    """
    Maintenance signals and classification of one dependency.

    Ages are whole days relative to the audit time. ``check_error`` is set
    when the registry lookup failed; such records are always UNKNOWN.
    """
    name: str
    requirement: str
    kinds: str
    optional: bool = False
    resolved: str | None = None
    latest_version: str | None = None
    crate_updated_at: str | None = None
    latest_release_at: str | None = None
    latest_release_age_days: int | None = None
    repository: str | None = None
    github_stars: int | None = None
    github_archived: bool | None = None
    github_pushed_at: str | None = None
    github_push_age_days: int | None = None
    std_alternative: str | None = None
    risk: RiskLevel = RiskLevel.UNKNOWN
    notes: tuple[str, ...] = ()
    check_error: str | None = None
    github_expected: bool = field(default=False, compare=False)

    @staticmethod
    def from_spec(spec: DependencySpec) -> DependencyRecord:
        return DependencyRecord(
            name=spec.name,
            requirement=spec.requirement,
            kinds=spec.kinds,
            optional=spec.optional,
            resolved=spec.resolved,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "requirement": self.requirement,
            "kinds": self.kinds,
            "optional": self.optional,
            "resolved": self.resolved,
            "latest_version": self.latest_version,
            "crate_updated_at": self.crate_updated_at,
            "latest_release_at": self.latest_release_at,
            "latest_release_age_days": self.latest_release_age_days,
            "repository": self.repository,
            "github_stars": self.github_stars,
            "github_archived": self.github_archived,
            "github_pushed_at": self.github_pushed_at,
            "github_push_age_days": self.github_push_age_days,
            "std_alternative": self.std_alternative,
            "risk": self.risk.value,
            "notes": list(self.notes),
            "check_error": self.check_error,
        }


def classify_risk(record: DependencyRecord) -> tuple[RiskLevel, list[str]]:
    """
    Classify a record from its signals.

    Starts at LOW and only elevates from the signals present. Missing GitHub
    data for a GitHub-hosted crate, or no release or push date at all, makes
    the result UNKNOWN whatever the other signals say.

    Returns:
        Tuple of (risk level, reasons)
    """
    risk = RiskLevel.LOW
    reasons: list[str] = []

    if record.github_archived is True:
        risk = elevate(risk, RiskLevel.HIGH)
        reasons.append("GitHub repo is archived")

    release_age = record.latest_release_age_days
    if release_age is not None:
        if release_age >= RELEASE_STALE_DAYS:
            risk = elevate(risk, RiskLevel.HIGH)
            reasons.append(f"latest crate release is stale ({release_age} days)")
        elif release_age >= RELEASE_OLD_DAYS:
            risk = elevate(risk, RiskLevel.MEDIUM)
            reasons.append(f"crate release not recent ({release_age} days)")

    push_age = record.github_push_age_days
    if push_age is not None:
        if push_age >= PUSH_STALE_DAYS:
            risk = elevate(risk, RiskLevel.HIGH)
            reasons.append(f"GitHub repo activity is stale ({push_age} days)")
        elif push_age >= PUSH_OLD_DAYS:
            risk = elevate(risk, RiskLevel.MEDIUM)
            reasons.append(f"GitHub activity older than 1 year ({push_age} days)")

    stars = record.github_stars
    if stars is not None:
        if stars <= STARS_LOW:
            risk = elevate(risk, RiskLevel.MEDIUM)
            reasons.append(f"low community signal (stars={stars})")
        elif stars <= STARS_SMALL:
            reasons.append(f"small community size (stars={stars})")

    if record.std_alternative:
        reasons.append(f"std alternative available: {record.std_alternative}")

    github_missing = (
        record.github_stars is None
        and record.github_archived is None
        and record.github_pushed_at is None
    )
    if record.github_expected and github_missing:
        risk = RiskLevel.UNKNOWN
        reasons.append("GitHub signals unavailable (set GITHUB_TOKEN for stable quota)")

    if record.latest_release_at is None and record.github_pushed_at is None:
        risk = RiskLevel.UNKNOWN
        reasons.append("insufficient maintenance signals")

    return risk, reasons


def audit_one(spec: DependencySpec, signals: SignalClient, now: datetime | None = None) -> DependencyRecord:
    """
    Collect signals for one dependency and classify it.

    A crates.io failure yields an UNKNOWN record with ``check_error`` set.
    A GitHub failure only adds a note.
    """
    now = now or datetime.now(timezone.utc)
    record = replace(DependencyRecord.from_spec(spec), std_alternative=std_alternative(spec.name))
    notes: list[str] = []

    try:
        crate = signals.crate_info(spec.name)
    except KeeperError as e:
        message = f"crates.io query failed: {e.message}"
        return replace(record, risk=RiskLevel.UNKNOWN, notes=(message,), check_error=message)

    record = replace(
        record,
        latest_version=crate.latest_version,
        crate_updated_at=crate.updated_at,
        latest_release_at=crate.latest_release_at,
        latest_release_age_days=age_days(crate.latest_release_at, now),
        repository=crate.repository,
    )

    if not crate.repository:
        notes.append("repository URL missing")
    else:
        repo = github_repo_from_url(crate.repository)
        if repo is None:
            notes.append("repository is not a GitHub repo URL")
        else:
            record = replace(record, github_expected=True)
            try:
                gh = signals.github_repo(*repo)
            except KeeperError as e:
                if e.message == GITHUB_BLOCKED_MESSAGE:
                    notes.append(e.message)
                else:
                    notes.append(f"GitHub query failed: {e.message}")
            else:
                record = replace(
                    record,
                    github_stars=gh.stars,
                    github_archived=gh.archived,
                    github_pushed_at=gh.pushed_at,
                    github_push_age_days=age_days(gh.pushed_at, now),
                )

    risk, reasons = classify_risk(record)
    return replace(record, risk=risk, notes=tuple(reasons + notes))


def sort_records(records: Sequence[DependencyRecord]) -> list[DependencyRecord]:
    """Order by severity (highest first), then by name."""
    return sorted(records, key=lambda r: (-r.risk.weight, r.name))


def audit_dependencies(
    specs: Sequence[DependencySpec],
    signals: SignalClient,
    jobs: int | None = None,
    now: datetime | None = None,
) -> list[DependencyRecord]:
    """
    Audit dependencies concurrently.

    Any exception inside a task is captured on that dependency's record; the
    remaining tasks always complete.

    Args:
        specs: Dependencies from the manifest parser
        signals: Shared signal client
        jobs: Worker count (default clamp(cpus*2, 4, 16))
        now: Reference time for age computation

    Returns:
        Records sorted by severity then name
    """
    if not specs:
        return []
    now = now or datetime.now(timezone.utc)
    workers = normalize_jobs(jobs or default_audit_jobs(), len(specs))
    records: list[DependencyRecord] = []

    with ThreadPoolExecutor(max_workers=workers) as executor:
        future_to_spec = {executor.submit(audit_one, spec, signals, now): spec for spec in specs}
        for future in as_completed(future_to_spec):
            spec = future_to_spec[future]
            try:
                records.append(future.result())
            except Exception as e:
                message = f"audit failed: {e}" if str(e) else f"audit failed: {type(e).__name__}"
                logger.debug(f"{spec.name}: {message}")
                records.append(replace(
                    DependencyRecord.from_spec(spec),
                    risk=RiskLevel.UNKNOWN,
                    notes=(message,),
                    check_error=message,
                ))

    signals.save_cache()
    return sort_records(records)


@dataclass(frozen=True)
class AuditSummary:
    high: int = 0
    medium: int = 0
    low: int = 0
    unknown: int = 0
    check_errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "high": self.high,
            "medium": self.medium,
            "low": self.low,
            "unknown": self.unknown,
            "check_errors": self.check_errors,
        }


def summarize(records: Sequence[DependencyRecord]) -> AuditSummary:
    counts = {level: 0 for level in RiskLevel}
    for record in records:
        counts[record.risk] += 1
    return AuditSummary(
        high=counts[RiskLevel.HIGH],
        medium=counts[RiskLevel.MEDIUM],
        low=counts[RiskLevel.LOW],
        unknown=counts[RiskLevel.UNKNOWN],
        check_errors=sum(1 for r in records if r.check_error),
    )
