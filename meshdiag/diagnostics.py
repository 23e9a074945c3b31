# -*- coding: utf-8 -*-
# meshdiag/diagnostics.py

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, List, Mapping, Optional

from .models import (
    DeviceSummary,
    DiagnosticReport,
    DiagnosticSummary,
    Issue,
    Node,
    Role,
    Severity,
)

log = logging.getLogger("meshdiag.diagnostics")

LQI_CRITICAL = 30
LQI_LOW = 50
BATTERY_CRITICAL = 15
BATTERY_LOW = 25
STALE_HOURS = 24 * 7


# ---------------------------------------------------------------------
# Telemetry helpers
# ---------------------------------------------------------------------

def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def parse_last_seen(value: Any) -> Optional[datetime]:
    """ISO-8601 string or epoch milliseconds → aware datetime (UTC if naive)."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            log.debug("out-of-range last_seen %r", value)
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            ts = datetime.fromisoformat(text)
        except ValueError:
            log.debug("unparseable last_seen %r", value)
            return None
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return ts
    return None


def _telemetry_for(node: Node, telemetry: Mapping[str, Mapping[str, Any]]) -> Mapping[str, Any]:
    state = telemetry.get(node.name)
    if state is None:
        state = telemetry.get(node.ieee)
    return state if isinstance(state, Mapping) else {}


# ---------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------

def _check_device(
        node: Node,
        lqi: Optional[float],
        battery: Optional[float],
        last_seen: Any,
        now: datetime,
) -> List[Issue]:
    issues: List[Issue] = []
    name = node.name

    if not node.interview_completed:
        issues.append(Issue(
            name, "interview_incomplete", Severity.CRITICAL,
            "Device interview not completed - may not function properly",
        ))

    if lqi is not None:
        if lqi < LQI_CRITICAL:
            issues.append(Issue(
                name, "lqi_critical", Severity.CRITICAL,
                f"Critical signal quality (LQI: {lqi})", lqi,
            ))
        elif lqi < LQI_LOW:
            issues.append(Issue(
                name, "lqi_low", Severity.WARNING,
                f"Low signal quality (LQI: {lqi})", lqi,
            ))

    if battery is not None:
        if battery < BATTERY_CRITICAL:
            issues.append(Issue(
                name, "battery_critical", Severity.CRITICAL,
                f"Critical battery level ({battery}%)", battery,
            ))
        elif battery < BATTERY_LOW:
            issues.append(Issue(
                name, "battery_low", Severity.WARNING,
                f"Low battery level ({battery}%)", battery,
            ))

    if node.is_battery:
        seen = parse_last_seen(last_seen)
        if seen is not None:
            hours = (now - seen).total_seconds() / 3600.0
            if hours > STALE_HOURS:
                issues.append(Issue(
                    name, "stale", Severity.WARNING,
                    f"Not seen for {int(hours / 24 + 0.5)} days", last_seen,
                ))

    return issues


def sort_issues(issues: Iterable[Issue]) -> List[Issue]:
    """critical < warning < info; scan order kept inside a tier."""
    return sorted(issues, key=lambda i: i.severity.rank)


def diagnose(
        nodes: Iterable[Node],
        telemetry: Optional[Mapping[str, Mapping[str, Any]]] = None,
        now: Optional[datetime] = None,
) -> DiagnosticReport:
    """
    Scan every enabled, non-coordinator device against fixed thresholds.

    `telemetry` maps device name (or ieee) to its last state payload
    (linkquality, battery, last_seen). Missing telemetry only skips the
    numeric checks for that device.
    """
    telemetry = telemetry or {}
    now = now or datetime.now(timezone.utc)

    summary = DiagnosticSummary()
    issues: List[Issue] = []
    rows: List[DeviceSummary] = []

    for node in nodes:
        summary.total_devices += 1

        if node.role is Role.COORDINATOR:
            summary.coordinator += 1
            continue
        if node.disabled:
            summary.disabled += 1
            continue
        if node.role is Role.ROUTER:
            summary.routers += 1
        elif node.role is Role.END_DEVICE:
            summary.end_devices += 1

        state = _telemetry_for(node, telemetry)
        lqi = _number(state.get("linkquality"))
        battery = _number(state.get("battery"))
        last_seen = state.get("last_seen")

        rows.append(DeviceSummary(
            name=node.name,
            ieee=node.ieee,
            role=node.role,
            lqi=lqi,
            battery=battery,
            last_seen=last_seen,
            model=node.model,
        ))
        issues.extend(_check_device(node, lqi, battery, last_seen, now))

    issues = sort_issues(issues)
    summary.critical = sum(1 for i in issues if i.severity is Severity.CRITICAL)
    summary.warnings = sum(1 for i in issues if i.severity is Severity.WARNING)
    summary.info = sum(1 for i in issues if i.severity is Severity.INFO)

    log.info(
        "diagnose: %d devices, %d critical, %d warnings",
        summary.total_devices, summary.critical, summary.warnings,
    )
    return DiagnosticReport(summary=summary, issues=issues, devices=rows)
