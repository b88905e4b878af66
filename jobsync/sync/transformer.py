"""Mapping of source records onto target collection payloads."""

import re
import unicodedata
from typing import Any

import structlog

from jobsync.clients.base import TargetClient
from jobsync.models.records import SOURCE_ID_FIELD, SourceRecord
from jobsync.sync.hooks import SECTOR_FIELD, PostTransformHook

log = structlog.stdlib.get_logger()

SECTOR_COLLECTION = "sectors"

# Target field -> source field, copied as raw values.
FIELD_MAP: dict[str, str] = {
    "job-excerpt-v1": "msf__Title__c",
    "job-long-description-page": "msf__Title__c",
    "job-requirements": "msf__Job_Description__c",
    "job-responsibilities": "msf__Application_Procedure__c",
    "job-description": "msf__Job_Requirements__c",
    "vacature-wat-wij-bieden": "msf__Employment_Conditions__c",
    "vacature-locatie": "BS_Provincie__c",
    "job-is-featured": "msf__Show_On_Website__c",
}

# Used when the source field is missing or empty.
FIELD_DEFAULTS: dict[str, Any] = {"job-is-featured": False}

EMPLOYMENT_TYPES = ("Vast", "Interim")
HOURS_PER_WEEK = ("16-24 uur", "24-32 uur", "32-36 uur", "36-40 uur")


def slugify(text: str) -> str:
    """
    Build a URL slug from free text.

    Accents are folded to ASCII, anything that is not a letter or digit
    becomes a single hyphen.
    """
    normalized = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    slug = re.sub(r"[^a-z0-9]+", "-", normalized.lower()).strip("-")
    return slug


def employment_type(raw: dict[str, Any]) -> str:
    """Map the contract type onto the target's option list; permanent by default."""
    value = raw.get("BS_Soort_dienstverband__c") or ""
    if "interim" in str(value).lower():
        return EMPLOYMENT_TYPES[1]
    return EMPLOYMENT_TYPES[0]


def hours_band(raw: dict[str, Any]) -> str:
    """
    Map working hours onto the target's hour bands.

    An exact hour count wins over a free-text range. Anything that cannot be
    read falls into the full-time band.
    """
    hours = raw.get("msf__Hours_Per_Week__c")
    if hours:
        try:
            value = float(hours)
        except (TypeError, ValueError):
            return HOURS_PER_WEEK[3]
        if value <= 24:
            return HOURS_PER_WEEK[0]
        if value <= 32:
            return HOURS_PER_WEEK[1]
        if value <= 36:
            return HOURS_PER_WEEK[2]
        return HOURS_PER_WEEK[3]

    hours_range = str(raw.get("msf__Hours_Per_Week_Range__c") or "")
    if "16" in hours_range or "8-" in hours_range:
        return HOURS_PER_WEEK[0]
    if "24" in hours_range:
        return HOURS_PER_WEEK[1]
    if "32" in hours_range:
        return HOURS_PER_WEEK[2]
    return HOURS_PER_WEEK[3]


class RecordTransformer:
    """Turns a SourceRecord into the field data of a target item."""

    def __init__(
        self,
        target_client: TargetClient,
        hooks: list[PostTransformHook] | None = None,
    ):
        self.target_client = target_client
        self.hooks: list[PostTransformHook] = list(hooks or [])

    def transform(self, record: SourceRecord) -> dict[str, Any]:
        """
        Build the target payload for a source record.

        The slug carries the source id so two vacancies with the same title
        never collide.

        Args:
            record: Source record to transform

        Returns:
            Field data for the target item
        """
        name = (record.name or "").strip() or record.id
        payload: dict[str, Any] = {
            "name": name,
            "slug": slugify(f"{name}-{record.id}") or record.id.lower(),
            SOURCE_ID_FIELD: record.id,
        }
        for target_field, source_field in FIELD_MAP.items():
            value = record.fields.get(source_field)
            if value is None or value == "":
                value = FIELD_DEFAULTS.get(target_field, "")
            payload[target_field] = value
        payload["vacature-type"] = employment_type(record.fields)
        payload["uren-per-week"] = hours_band(record.fields)

        if record.sector:
            sector_id = self.target_client.resolve_reference(SECTOR_COLLECTION, record.sector)
            if sector_id:
                payload[SECTOR_FIELD] = sector_id
            else:
                log.warning("sector_not_resolved", source_id=record.id, sector=record.sector)

        for hook in self.hooks:
            payload = hook.apply(record, payload)

        return payload
