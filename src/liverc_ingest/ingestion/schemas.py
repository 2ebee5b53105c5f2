"""
LiveRC JSON payload schemas.

LiveRC's JSON endpoints are loosely shaped: ids arrive as strings or numbers,
field names vary between snake_case, camelCase and short forms, and booleans
sometimes arrive as "true"/"false". The Pydantic models below accept all of
those spellings and coerce values; entries or laps that still fail
validation are skipped rather than failing the whole payload.
"""

import logging
import math
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Annotated, Any

from pydantic import (
    AfterValidator,
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

logger = logging.getLogger(__name__)


# --- Loose coercion helpers ---


def as_object(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def as_array(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def as_string(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and math.isfinite(value):
        return str(int(value)) if value.is_integer() else str(value)
    return None


_LEADING_NUMBER = re.compile(r"^\s*[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?")


def as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None if math.isnan(value) else float(value)
    if isinstance(value, str):
        match = _LEADING_NUMBER.match(value)
        if match:
            return float(match.group(0))
    return None


def as_boolean(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    return None


def first_present(*values: Any) -> Any:
    """Return the first value that is not None."""
    return next((value for value in values if value is not None), None)


def pick(source: dict[str, Any], *keys: str) -> Any:
    return first_present(*(source.get(key) for key in keys))


def _require_text(value: str) -> str:
    if not value:
        raise ValueError("value must not be empty")
    return value


RequiredStr = Annotated[str, BeforeValidator(as_string), AfterValidator(_require_text)]
LooseStr = Annotated[str | None, BeforeValidator(as_string)]
LooseFloat = Annotated[float | None, BeforeValidator(as_number)]
LooseBool = Annotated[bool | None, BeforeValidator(as_boolean)]


class LiveRcBaseModel(BaseModel):
    """
    Base model for all LiveRC payload schemas.
    Configures standard behavioral settings for consistency.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


# --- Entry list ---


class EntryListEntry(LiveRcBaseModel):
    """One registered driver in a class entry list."""

    entry_id: RequiredStr = Field(validation_alias=AliasChoices("entry_id", "id", "entryId"))
    display_name: RequiredStr = Field(
        validation_alias=AliasChoices("display_name", "name", "displayName")
    )
    car_number: LooseStr = Field(None, validation_alias=AliasChoices("car_number", "carNumber"))
    withdrawn: LooseBool = Field(None, validation_alias=AliasChoices("withdrawn"))
    source_transponder_id: LooseStr = Field(
        None, validation_alias=AliasChoices("transponder_id", "transponderId")
    )


class EntryListResponse(LiveRcBaseModel):
    event_id: str
    event_name: str | None = None
    class_id: str
    class_name: str | None = None
    class_code: str | None = None
    entries: list[EntryListEntry] = Field(default_factory=list)


# --- Race result ---


class LapPenalty(LiveRcBaseModel):
    duration_seconds: LooseFloat = Field(
        None, validation_alias=AliasChoices("seconds", "duration", "duration_seconds")
    )
    reason: LooseStr = Field(None, validation_alias=AliasChoices("reason", "description"))


class RaceResultLap(LiveRcBaseModel):
    """A single timed lap from a race result payload."""

    entry_id: RequiredStr = Field(validation_alias=AliasChoices("entry_id", "driver_id", "entryId"))
    driver_name: RequiredStr = Field(
        validation_alias=AliasChoices("driver_name", "name", "driverName")
    )
    lap_number: Annotated[int, BeforeValidator(as_number)] = Field(
        validation_alias=AliasChoices("lap", "lap_number", "number")
    )
    lap_time_seconds: Annotated[float, BeforeValidator(as_number)] = Field(
        validation_alias=AliasChoices("lap_time", "lapTime", "time", "seconds")
    )
    is_outlap: LooseBool = Field(None, validation_alias=AliasChoices("is_outlap", "outlap", "isOutlap"))
    penalties: Annotated[list[LapPenalty], BeforeValidator(as_array)] = Field(default_factory=list)

    @field_validator("penalties", mode="after")
    @classmethod
    def _drop_empty_penalties(cls, penalties: list[LapPenalty]) -> list[LapPenalty]:
        return [p for p in penalties if p.duration_seconds is not None or p.reason]


class RaceResultResponse(LiveRcBaseModel):
    event_id: str
    event_name: str | None = None
    class_id: str
    class_name: str | None = None
    class_code: str | None = None
    round_id: str
    round_name: str | None = None
    race_id: str
    race_name: str | None = None
    session_type: str | None = None
    start_time_utc: str | None = None
    laps: list[RaceResultLap] = Field(default_factory=list)


@dataclass(frozen=True)
class LiveRcRaceContext:
    """Slugs identifying one race, plus where its results live."""

    event_slug: str
    class_slug: str
    round_slug: str
    race_slug: str
    results_base_url: str | None = None
    origin: str | None = None


@dataclass(frozen=True)
class RaceResultParseOutcome:
    context: LiveRcRaceContext
    race_result: RaceResultResponse
    missing_identifiers: list[str] = field(default_factory=list)
    has_lap_data: bool = False


# --- Mappers ---


def _validate_each(model: type[LiveRcBaseModel], items: list[Any], label: str) -> list[Any]:
    valid = []
    skipped = 0
    for item in items:
        try:
            valid.append(model.model_validate(as_object(item)))
        except ValidationError:
            skipped += 1
    if skipped:
        logger.debug(f"Skipped {skipped} malformed {label} record(s)")
    return valid


def map_entry_list_response(raw: Any, event_slug: str, class_slug: str) -> EntryListResponse:
    """
    Map an entry-list payload, falling back to the URL slugs for missing ids.

    Args:
        raw: Decoded JSON body
        event_slug: Event slug from the requested URL
        class_slug: Class slug from the requested URL

    Returns:
        EntryListResponse with malformed entries dropped
    """
    root = as_object(raw)
    meta = as_object(root.get("meta"))
    event = as_object(first_present(root.get("event"), root.get("event_info"), meta.get("event")))
    race_class = as_object(
        first_present(root.get("class"), root.get("class_info"), meta.get("class"))
    )

    event_id = as_string(first_present(pick(event, "event_id", "id"), pick(root, "event_id", "id")))
    class_id = as_string(
        first_present(pick(race_class, "class_id", "id"), pick(root, "class_id", "id"))
    )
    entries_raw = as_array(pick(root, "entries", "entry_list", "data"))

    return EntryListResponse(
        event_id=event_id if event_id is not None else event_slug,
        event_name=as_string(first_present(pick(event, "event_name", "name"), root.get("event_name"))),
        class_id=class_id if class_id is not None else class_slug,
        class_name=as_string(
            first_present(pick(race_class, "class_name", "name"), root.get("class_name"))
        ),
        class_code=as_string(
            first_present(pick(race_class, "class_code", "code"), root.get("class_code"))
        ),
        entries=_validate_each(EntryListEntry, entries_raw, "entry list"),
    )


def map_race_result_response(raw: Any, context: LiveRcRaceContext) -> RaceResultResponse:
    """
    Map a race-result payload. Identifiers may sit at the root or inside
    nested event/class/round/race objects; missing ones fall back to the
    context slugs.
    """
    root = as_object(raw)
    event = as_object(root.get("event"))
    race_class = as_object(root.get("class"))
    round_ = as_object(root.get("round"))
    race = as_object(root.get("race"))

    def _id(scope: dict[str, Any], name: str, fallback: str) -> str:
        value = as_string(
            first_present(
                pick(root, f"{name}_id", f"{name}Id"),
                pick(scope, f"{name}_id", f"{name}Id", "id"),
            )
        )
        return value if value is not None else fallback

    laps_raw = as_array(pick(root, "laps", "results", "lap_data"))
    race_name = as_string(first_present(root.get("race_name"), race.get("name")))

    return RaceResultResponse(
        event_id=_id(event, "event", context.event_slug),
        event_name=as_string(first_present(root.get("event_name"), event.get("name"))),
        class_id=_id(race_class, "class", context.class_slug),
        class_name=as_string(first_present(root.get("class_name"), race_class.get("name"))),
        class_code=as_string(first_present(root.get("class_code"), race_class.get("code"))),
        round_id=_id(round_, "round", context.round_slug),
        round_name=as_string(first_present(root.get("round_name"), round_.get("name"))),
        race_id=_id(race, "race", context.race_slug),
        race_name=race_name if race_name is not None else context.race_slug,
        session_type=as_string(pick(root, "session_type", "type", "sessionType")),
        start_time_utc=as_string(pick(root, "start_time", "startTime", "scheduled_start")),
        laps=_validate_each(RaceResultLap, laps_raw, "lap"),
    )


def slugify_segment(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower())
    return re.sub(r"-{2,}", "-", slug).strip("-")


def generate_upload_namespace(seed: str | None = None) -> str:
    """Build a unique, slug-safe namespace for an uploaded payload."""
    segments = [
        slugify_segment(seed) if seed else "",
        format(int(time.time() * 1000), "x"),
        uuid.uuid4().hex[:12],
    ]
    return "-".join(segment for segment in segments if segment)


def _non_blank(value: str | None, fallback: str) -> str:
    if value is not None and value.strip():
        return value.strip()
    return fallback


def parse_race_result_payload(raw: Any, namespace_seed: str | None = None) -> RaceResultParseOutcome:
    """
    Parse an uploaded race-result payload that has no URL to supply slugs.

    Missing identifiers are reported rather than raised so the caller can
    decide how to respond; slugs fall back to a unique upload namespace.

    Args:
        raw: Decoded JSON body
        namespace_seed: Optional text (e.g. the file name) mixed into the namespace

    Returns:
        RaceResultParseOutcome
    """
    root = as_object(raw)
    event = as_object(root.get("event"))
    race_class = as_object(root.get("class"))
    round_ = as_object(root.get("round"))
    race = as_object(root.get("race"))

    def _id(scope: dict[str, Any], name: str) -> str | None:
        return as_string(
            first_present(
                pick(root, f"{name}_id", f"{name}Id"),
                pick(scope, f"{name}_id", f"{name}Id", "id"),
            )
        )

    event_id = _id(event, "event")
    class_id = _id(race_class, "class")
    round_id = _id(round_, "round")
    race_id = _id(race, "race")

    namespace = generate_upload_namespace(namespace_seed)
    context = LiveRcRaceContext(
        event_slug=_non_blank(event_id, f"upload-{namespace}-event"),
        class_slug=_non_blank(class_id, f"upload-{namespace}-class"),
        round_slug=_non_blank(round_id, f"upload-{namespace}-round"),
        race_slug=_non_blank(race_id, f"upload-{namespace}-race"),
    )

    missing = [
        name
        for name, value in (("event_id", event_id), ("class_id", class_id), ("race_id", race_id))
        if not value
    ]

    return RaceResultParseOutcome(
        context=context,
        race_result=map_race_result_response(raw, context),
        missing_identifiers=missing,
        has_lap_data=isinstance(pick(root, "laps", "results", "lap_data"), list),
    )
