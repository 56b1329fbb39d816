"""
Pydantic models used across the backend.

These are the persisted shapes of the profile document. The JSON
document keeps the provider's camelCase field names, so every model
uses a camelCase alias generator; Python code works with snake_case
attributes and dumps with `by_alias=True`.

Guidelines:
- Unknown fields already present in the document (e.g. `accountId`,
  provider extras on factors) are kept (`extra="allow"`) so a rewrite
  never drops data this code does not understand.
- Timestamps are kept as the ISO-8601 strings they arrived as.
- Older documents stored one biomarker object per key and scores
  without `updatedAt`. Those shapes are upgraded on load; a missing
  timestamp is filled from the validation context's `now`.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator
from pydantic.alias_generators import to_camel


def utc_now_iso() -> str:
    """Current UTC time as `2025-09-16T08:30:00.123Z`."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class _DocumentModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


def _fill_timestamp(data: Any, names: tuple, fallbacks: tuple, info: ValidationInfo) -> Any:
    """Set `names[0]` from the first fallback key present, else `now`."""
    if not isinstance(data, dict) or any(data.get(n) for n in names):
        return data
    for key in fallbacks:
        if data.get(key):
            return {**data, names[0]: data[key]}
    now = (info.context or {}).get("now")
    if now:
        return {**data, names[0]: now}
    return data


class ScoreEntry(_DocumentModel):
    value: float
    state: Optional[str] = None
    updated_at: str

    @model_validator(mode="before")
    @classmethod
    def _legacy_timestamp(cls, data: Any, info: ValidationInfo) -> Any:
        return _fill_timestamp(data, ("updatedAt", "updated_at"), ("scoreDateTime",), info)


class FactorEntry(_DocumentModel):
    name: str
    value: Union[float, str, None] = None
    unit: str = "score"


class BiomarkerReading(_DocumentModel):
    value: Union[float, str, None] = None
    unit: Optional[str] = None
    timestamp: str

    @model_validator(mode="before")
    @classmethod
    def _legacy_timestamp(cls, data: Any, info: ValidationInfo) -> Any:
        return _fill_timestamp(data, ("timestamp",), ("updatedAt", "endDateTime", "startDateTime"), info)


class WellnessRecord(_DocumentModel):
    """One profile, keyed by the caller-supplied `externalId`.

    Fields:
    - `external_id`: primary key, taken from the `X-External-Id` header.
    - `profile_id`: internal id, `sahha-<externalId>` unless supplied.
    - `department`: optional classification; always serialized, even
      when null, so it survives every rewrite of the document.
    - `scores`: canonical score type -> latest score (last write wins).
    - `factors`: score type -> factor list (replaced wholesale).
    - `biomarkers`: biomarker name -> readings, oldest first, capped.
    - `archetypes`: archetype type -> latest classification value.
    - `demographics`: sparse object, shallow-merged.
    """

    external_id: str
    profile_id: str
    department: Optional[str] = None
    scores: Dict[str, ScoreEntry] = Field(default_factory=dict)
    factors: Dict[str, List[FactorEntry]] = Field(default_factory=dict)
    biomarkers: Dict[str, List[BiomarkerReading]] = Field(default_factory=dict)
    archetypes: Dict[str, Any] = Field(default_factory=dict)
    demographics: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None
    last_updated: Optional[str] = None

    @field_validator("biomarkers", mode="before")
    @classmethod
    def _single_reading_to_history(cls, value: Any) -> Any:
        # Legacy documents kept only the latest reading per key.
        if not isinstance(value, dict):
            return value
        return {k: [v] if isinstance(v, dict) else v for k, v in value.items()}

    @classmethod
    def new(cls, external_id: str, now: str) -> "WellnessRecord":
        """Empty record for an `externalId` seen for the first time."""
        return cls(
            external_id=external_id,
            profile_id=f"sahha-{external_id}",
            created_at=now,
            last_updated=now,
        )

    @classmethod
    def from_stored(cls, external_id: str, raw: Dict[str, Any], now: str) -> "WellnessRecord":
        """Validate a stored record, upgrading legacy shapes.

        Raises `pydantic.ValidationError` when the record cannot be
        upgraded, `TypeError` when it is not an object.
        """
        if not isinstance(raw, dict):
            raise TypeError(f"expected an object, got {type(raw).__name__}")
        data = dict(raw)
        data.setdefault("externalId", external_id)
        if not data.get("profileId") and not data.get("profile_id"):
            data["profileId"] = f"sahha-{external_id}"
        return cls.model_validate(data, context={"now": now})

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")
