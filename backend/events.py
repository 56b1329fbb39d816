"""
Event normalizer: provider webhook events -> record mutations.

Each event type the provider sends is a pydantic model. `parse_event()`
picks the model from the `X-Event-Type` header and validates the body
against it; the model's `apply()` performs the mutation on a
`WellnessRecord`. Event types this module does not know become an
`UnknownEvent` that carries the raw payload and mutates nothing.

Header values arrive as `<Name>IntegrationEvent`
(e.g. `ScoreCreatedIntegrationEvent`); the suffix is optional here.
"""

import re
from typing import Any, ClassVar, Dict, List, Optional, Type, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from models import BiomarkerReading, FactorEntry, ScoreEntry, WellnessRecord

INTEGRATION_SUFFIX = "IntegrationEvent"
BIOMARKER_HISTORY_LIMIT = 100
DEFAULT_FACTOR_UNIT = "score"

EVENT_TYPE_ALIASES = {
    "ArchetypeCreated": "ArchetypeIdentified",
}


def normalize_score_type(value: str) -> str:
    """`mental_wellbeing` -> `mentalWellbeing`; canonical keys pass through."""
    camel = re.sub(r"_+([^_])", lambda m: m.group(1).upper(), value)
    return camel.replace("_", "")


def canonical_event_type(header_value: str) -> str:
    """Strip the `IntegrationEvent` suffix and resolve aliases."""
    name = header_value.strip()
    if name.endswith(INTEGRATION_SUFFIX) and name != INTEGRATION_SUFFIX:
        name = name[: -len(INTEGRATION_SUFFIX)]
    return EVENT_TYPE_ALIASES.get(name, name)


class BaseEvent(BaseModel):
    """Common config: camelCase payload keys, extra keys tolerated."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    event_type: ClassVar[str] = ""
    mutates: ClassVar[bool] = True

    def apply(self, record: WellnessRecord, now: str, history_limit: int = BIOMARKER_HISTORY_LIMIT) -> None:
        raise NotImplementedError

    def describe(self) -> Dict[str, Any]:
        """Short summary for the activity log."""
        return {}


class FactorIn(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    value: Union[float, str, None] = None
    unit: Optional[str] = None

    def to_entry(self) -> FactorEntry:
        extras = self.model_extra or {}
        return FactorEntry(
            name=self.name,
            value=self.value,
            unit=self.unit or DEFAULT_FACTOR_UNIT,
            **extras,
        )


class ScoreCreated(BaseEvent):
    event_type: ClassVar[str] = "ScoreCreated"

    type: str
    score: float
    state: str
    score_date_time: Optional[str] = None
    factors: Optional[List[FactorIn]] = None

    @property
    def score_key(self) -> str:
        return normalize_score_type(self.type)

    def apply(self, record, now, history_limit=BIOMARKER_HISTORY_LIMIT):
        key = self.score_key
        record.scores[key] = ScoreEntry(
            value=self.score,
            state=self.state,
            updated_at=self.score_date_time or now,
        )
        # Provider score events may embed their factor breakdown.
        if self.factors is not None:
            record.factors[key] = [f.to_entry() for f in self.factors]

    def describe(self):
        return {"scoreType": self.score_key, "score": self.score, "state": self.state}


class FactorsCreated(BaseEvent):
    event_type: ClassVar[str] = "FactorsCreated"

    score_type: str
    factors: List[FactorIn]

    @property
    def score_key(self) -> str:
        return normalize_score_type(self.score_type)

    def apply(self, record, now, history_limit=BIOMARKER_HISTORY_LIMIT):
        record.factors[self.score_key] = [f.to_entry() for f in self.factors]

    def describe(self):
        return {"scoreType": self.score_key, "factorCount": len(self.factors)}


class BiomarkerCreated(BaseEvent):
    event_type: ClassVar[str] = "BiomarkerCreated"

    biomarker: Optional[str] = None
    category: Optional[str] = None
    type: Optional[str] = None
    value: Union[float, str]
    unit: str
    measurement_date_time: Optional[str] = None

    @model_validator(mode="after")
    def _require_name(self):
        if not self.biomarker and not (self.category and self.type):
            raise ValueError("biomarker name (or category and type) is required")
        return self

    @property
    def key(self) -> str:
        return self.biomarker or f"{self.category}_{self.type}"

    def apply(self, record, now, history_limit=BIOMARKER_HISTORY_LIMIT):
        readings = record.biomarkers.setdefault(self.key, [])
        readings.append(
            BiomarkerReading(
                value=self.value,
                unit=self.unit,
                timestamp=self.measurement_date_time or now,
            )
        )
        # Oldest readings go first.
        if len(readings) > history_limit:
            del readings[: len(readings) - history_limit]

    def describe(self):
        return {"biomarker": self.key, "value": self.value, "unit": self.unit}


class ProfileCreated(BaseEvent):
    event_type: ClassVar[str] = "ProfileCreated"

    demographics: Optional[Dict[str, Any]] = None
    department: Optional[str] = None
    profile_id: Optional[str] = None

    def apply(self, record, now, history_limit=BIOMARKER_HISTORY_LIMIT):
        if self.demographics:
            merged = dict(record.demographics or {})
            merged.update(self.demographics)
            record.demographics = merged
        # Only an explicit `department` key replaces the stored value.
        if "department" in self.model_fields_set:
            record.department = self.department
        if self.profile_id:
            record.profile_id = self.profile_id

    def describe(self):
        return {"demographicKeys": sorted(self.demographics or {})}


class ArchetypeIdentified(BaseEvent):
    event_type: ClassVar[str] = "ArchetypeIdentified"

    archetype_type: str = Field(validation_alias=AliasChoices("archetypeType", "archetype_type", "name"))
    archetype_value: Any = Field(validation_alias=AliasChoices("archetypeValue", "archetype_value", "value"))

    def apply(self, record, now, history_limit=BIOMARKER_HISTORY_LIMIT):
        record.archetypes[self.archetype_type] = self.archetype_value

    def describe(self):
        return {"archetypeType": self.archetype_type, "archetypeValue": self.archetype_value}


class DataLogReceived(BaseEvent):
    event_type: ClassVar[str] = "DataLogReceived"
    mutates: ClassVar[bool] = False

    def apply(self, record, now, history_limit=BIOMARKER_HISTORY_LIMIT):
        pass

    def describe(self):
        logs = (self.model_extra or {}).get("dataLogs")
        return {"dataLogCount": len(logs) if isinstance(logs, list) else 0}


class UnknownEvent(BaseModel):
    """An event type with no mutation rule; kept whole for diagnosis."""

    mutates: ClassVar[bool] = False

    event_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)

    def apply(self, record, now, history_limit=BIOMARKER_HISTORY_LIMIT):
        pass

    def describe(self):
        return {"unrecognized": True, "payload": self.payload}


WellnessEvent = Union[
    ScoreCreated,
    FactorsCreated,
    BiomarkerCreated,
    ProfileCreated,
    ArchetypeIdentified,
    DataLogReceived,
    UnknownEvent,
]

EVENT_MODELS: Dict[str, Type[BaseEvent]] = {
    model.event_type: model
    for model in (
        ScoreCreated,
        FactorsCreated,
        BiomarkerCreated,
        ProfileCreated,
        ArchetypeIdentified,
        DataLogReceived,
    )
}


def parse_event(event_type: str, payload: Dict[str, Any]) -> WellnessEvent:
    """Validate `payload` against the model registered for `event_type`.

    Raises `pydantic.ValidationError` when a known event type is missing
    required fields.
    """
    model = EVENT_MODELS.get(canonical_event_type(event_type))
    if model is None:
        return UnknownEvent(event_type=event_type, payload=payload)

    nested = payload.get("data")
    if isinstance(nested, dict):
        payload = nested
    return model.model_validate(payload)
