"""
Synthetic demo profiles and the dashboard display formatter.

Demo records use the same `WellnessRecord` schema as webhook data so
the dashboard can switch between the two without special cases.
Department assignment depends only on the generation index; score
values are random (pass a seeded `random.Random` for repeatable runs).
"""

import random
from typing import Any, Dict, List, Optional, Sequence, Tuple

from models import WellnessRecord, utc_now_iso

# (exclusive end index, department); indexes past the last band are unassigned.
DEPARTMENT_BANDS: Sequence[Tuple[int, str]] = (
    (20, "Engineering"),
    (31, "Sales"),
    (42, "Marketing"),
    (51, "Operations"),
)

SCORE_RANGES = {
    "wellbeing": (0.5, 0.4),
    "activity": (0.3, 0.5),
    "sleep": (0.5, 0.4),
    "mentalWellbeing": (0.6, 0.3),
    "readiness": (0.5, 0.4),
}

ARCHETYPE_VALUES = {
    "sleep_duration": ["short_sleeper", "normal_sleeper", "long_sleeper"],
    "sleep_quality": ["poor_sleeper", "average_sleeper", "good_sleeper"],
    "activity_level": ["sedentary", "moderately_active", "highly_active"],
    "circadian_rhythm": ["early_bird", "night_owl", "irregular_schedule"],
    "wellness_trend": ["improving", "stable", "declining"],
    "stress_pattern": ["low_stress", "moderate_stress", "high_stress"],
}


def department_for_index(index: int, bands: Sequence[Tuple[int, str]] = DEPARTMENT_BANDS) -> Optional[str]:
    for end, department in bands:
        if index < end:
            return department
    return None


def score_state(score: float) -> str:
    if score >= 0.8:
        return "excellent"
    if score >= 0.6:
        return "high"
    if score >= 0.4:
        return "medium"
    if score >= 0.2:
        return "low"
    return "minimal"


def _demo_record(index: int, rng: random.Random, now: str) -> WellnessRecord:
    scores = {name: low + rng.random() * span for name, (low, span) in SCORE_RANGES.items()}

    factors = {
        "activity": [
            {"name": "steps", "value": 2000 + rng.random() * 10000, "unit": "count", "goal": 10000},
            {"name": "active_hours", "value": 2 + rng.random() * 8, "unit": "hour", "goal": 8},
        ],
        "sleep": [
            {"name": "sleep_duration", "value": 5 + rng.random() * 4, "unit": "hour", "goal": 8},
            {"name": "sleep_efficiency", "value": 0.7 + rng.random() * 0.3, "unit": "index", "goal": 0.9},
        ],
        "mentalWellbeing": [
            {"name": "stress_level", "value": rng.random(), "unit": "index", "goal": 0.3},
        ],
    }

    archetypes = {
        name: rng.choice(values)
        for name, values in ARCHETYPE_VALUES.items()
        if rng.random() > 0.3
    }

    biomarkers = {
        "activity_steps": [{"value": 2000 + rng.random() * 10000, "unit": "count", "timestamp": now}],
        "sleep_duration": [{"value": 5 + rng.random() * 4, "unit": "hour", "timestamp": now}],
        "heart_resting_heart_rate": [{"value": 60 + rng.random() * 20, "unit": "bpm", "timestamp": now}],
    }

    external_id = f"EMP-{index + 1:03d}"
    return WellnessRecord(
        external_id=external_id,
        profile_id=f"demo-{index + 1:04d}",
        department=department_for_index(index),
        scores={
            name: {"value": value, "state": score_state(value), "updated_at": now}
            for name, value in scores.items()
        },
        factors=factors,
        biomarkers=biomarkers,
        archetypes=archetypes,
        demographics={
            "age": 25 + rng.randrange(30),
            "gender": rng.choice(["Male", "Female"]),
        },
        created_at=now,
        last_updated=now,
        deviceType="iOS" if index % 2 == 0 else "Android",
    )


def generate_demo_profiles(count: int = 57, rng: Optional[random.Random] = None) -> List[Dict[str, Any]]:
    """Return `count` fresh synthetic profile documents."""
    rng = rng or random.Random()
    now = utc_now_iso()
    return [_demo_record(i, rng, now).to_document() for i in range(count)]


def _title(name: str) -> str:
    return name.replace("_", " ").title()


def _archetype_label(name: str, value: Any) -> Optional[str]:
    # Older documents stored `{value, dataType, ...}` objects.
    if isinstance(value, dict):
        value = value.get("value")
    if value is None:
        return None
    return _title(str(value)) if value != "" else _title(name)


def _score_value(scores: Dict[str, Any], *keys: str) -> Optional[float]:
    for key in keys:
        entry = scores.get(key)
        if isinstance(entry, dict) and entry.get("value") is not None:
            return entry["value"]
    return None


def format_profile(profile: Dict[str, Any], index: int) -> Dict[str, Any]:
    """Shape one stored profile for the dashboard tables.

    `department` is passed through untouched (including null).
    """
    scores = profile.get("scores") or {}
    factors = profile.get("factors") or {}
    archetypes = profile.get("archetypes") or {}

    sub_scores = {}
    for score_type in SCORE_RANGES:
        entries = factors.get(score_type) or []
        sub_scores[score_type] = [
            {
                "name": _title(f.get("name", "")),
                "value": f.get("value"),
                "unit": f.get("unit"),
                "goal": f.get("goal"),
            }
            for f in entries
        ]

    labels = [_archetype_label(name, value) for name, value in archetypes.items()]

    return {
        "profileId": profile.get("profileId") or f"profile-{index + 1}",
        "externalId": profile.get("externalId") or f"ext-{index + 1}",
        "editableProfileId": f"EMP-{index + 1:03d}",
        "department": profile.get("department"),
        "deviceType": profile.get("deviceType") or "Unknown",
        "demographics": profile.get("demographics") or {},
        "wellbeingScore": _score_value(scores, "wellbeing"),
        "activityScore": _score_value(scores, "activity"),
        "sleepScore": _score_value(scores, "sleep"),
        "mentalWellbeingScore": _score_value(scores, "mentalWellbeing", "mental_wellbeing"),
        "readinessScore": _score_value(scores, "readiness"),
        "scoreAvailability": {
            score_type: _score_value(scores, score_type) is not None for score_type in SCORE_RANGES
        },
        "subScores": sub_scores,
        "archetypes": [label for label in labels if label],
        "lastDataSync": profile.get("lastUpdated"),
        "hasWebhookData": True,
    }
