"""Aggregate statistics over the stored profile document."""

from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

from demo_data import score_state
from events import canonical_event_type

SCORE_TYPES = ("sleep", "activity", "mentalWellbeing", "readiness", "wellbeing")
STATE_BUCKETS = ("excellent", "high", "medium", "low", "minimal")
ACTIVE_WINDOW = timedelta(hours=24)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def latest_update(profiles: Iterable[Dict[str, Any]]) -> str:
    """Max `lastUpdated` across profiles ("" when there is none)."""
    return max((p.get("lastUpdated") or "" for p in profiles), default="")


def count_event_types(entries: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Delivery counts from activity-log entries.

    Accepted deliveries are counted per canonical event type; rejected
    ones only in `rejected`. Entries that are not deliveries (store
    clears) are ignored.
    """
    by_type = Counter()
    rejected = 0
    for entry in entries:
        if "externalId" not in entry:
            continue
        if entry.get("success") and entry.get("eventType"):
            by_type[canonical_event_type(entry["eventType"])] += 1
        else:
            rejected += 1
    return {"total": sum(by_type.values()), "rejected": rejected, "byType": dict(by_type)}


def build_stats(
    document: Dict[str, Dict[str, Any]],
    now: Optional[datetime] = None,
    activity: Iterable[Dict[str, Any]] = (),
) -> Dict[str, Any]:
    profiles = list(document.values())
    now = now or datetime.now(timezone.utc)

    coverage = Counter()
    totals = Counter()
    distribution = {t: dict.fromkeys(STATE_BUCKETS, 0) for t in SCORE_TYPES}
    biomarker_coverage = Counter()
    archetype_distribution = Counter()
    departments = Counter()
    completeness = Counter()
    active = 0

    for profile in profiles:
        scores = profile.get("scores") or {}
        score_count = 0
        for score_type in SCORE_TYPES:
            entry = scores.get(score_type)
            if not isinstance(entry, dict) or entry.get("value") is None:
                continue
            value = float(entry["value"])
            score_count += 1
            coverage[score_type] += 1
            totals[score_type] += value
            distribution[score_type][score_state(value)] += 1

        if score_count == len(SCORE_TYPES):
            completeness["withCompleteData"] += 1
        elif score_count > 1:
            completeness["withPartialData"] += 1
        elif score_count == 1:
            completeness["withMinimalData"] += 1
        else:
            completeness["withNoScores"] += 1

        for name in profile.get("biomarkers") or {}:
            biomarker_coverage[name] += 1
        for name, value in (profile.get("archetypes") or {}).items():
            if isinstance(value, dict):
                value = value.get("value")
            archetype_distribution[f"{name}:{value}"] += 1

        departments[profile.get("department") or "Unassigned"] += 1

        updated = _parse_ts(profile.get("lastUpdated"))
        if updated is not None and now - updated <= ACTIVE_WINDOW:
            active += 1

    total = len(profiles)
    return {
        "summary": {
            "totalProfiles": total,
            "lastUpdated": latest_update(profiles),
            "activeProfiles": active,
            "dataCompleteness": round(100 * completeness["withCompleteData"] / total, 1) if total else 0,
        },
        "scores": {
            "coverage": {t: coverage[t] for t in SCORE_TYPES},
            "averages": {
                t: (totals[t] / coverage[t] if coverage[t] else None) for t in SCORE_TYPES
            },
            "distribution": distribution,
        },
        "biomarkers": {
            "totalTypes": len(biomarker_coverage),
            "coverage": dict(biomarker_coverage),
        },
        "archetypes": {
            "totalTypes": len({key.split(":", 1)[0] for key in archetype_distribution}),
            "distribution": dict(archetype_distribution),
        },
        "profiles": {
            key: completeness[key]
            for key in ("withCompleteData", "withPartialData", "withMinimalData", "withNoScores")
        },
        "departments": dict(departments),
        "events": count_event_types(activity),
    }
