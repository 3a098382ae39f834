"""Data models for supabase2pipedrive."""

import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator

from supabase2pipedrive.exceptions import MappingUnavailable
from supabase2pipedrive.pipedrive.fields import CONTACT_TYPES, PERSON_FIELDS, FieldMapping

logger = logging.getLogger(__name__)

# Local column names that differ from the model attribute names
ORGANIZATION_COLUMNS = {
    "external_id": "pipedrive_org_id",
    "last_external_sync": "last_pipedrive_sync",
}
PERSON_COLUMNS = {
    "external_id": "pipedrive_id",
    "last_external_sync": "last_pipedrive_sync",
}

# Standard person attributes; every other key of a record is a field value
PERSON_KEYS = frozenset(
    {"id", "name", "email", "phone", "org_id", "notes", "add_time", "update_time"}
)

# Pipedrive visibility: 3 = entire company
VISIBLE_TO_EVERYONE = 3


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a Pipedrive or Supabase timestamp into an aware UTC datetime.

    Pipedrive sends "2024-01-31 17:02:11" (UTC, no offset); Supabase sends
    ISO 8601 with an offset. Unparseable values become None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.warning(f"Ignoring unparseable timestamp: {value!r}")
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def coerce_int(value: Any) -> int | None:
    """Convert Pipedrive numeric values ("1200", 1200.0) to int."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def to_row(values: dict[str, Any], columns: dict[str, str]) -> dict[str, Any]:
    """Rename model attributes to table columns and serialize datetimes."""
    row = {}
    for key, value in values.items():
        if isinstance(value, datetime):
            value = value.isoformat()
        row[columns.get(key, key)] = value
    return row


def _from_row(row: dict[str, Any], columns: dict[str, str]) -> dict[str, Any]:
    data = dict(row)
    for attribute, column in columns.items():
        data[attribute] = data.pop(column, None)
    return data


class Organization(BaseModel):
    """Organization row from the local CRM store."""

    id: int | str
    name: str | None = None
    website_url: str | None = None
    normalized_domain: str | None = None
    external_id: int | None = None
    updated_at: datetime | None = None
    last_external_sync: datetime | None = None

    @field_validator("updated_at", "last_external_sync", mode="before")
    @classmethod
    def _parse_timestamps(cls, value: Any) -> datetime | None:
        return parse_timestamp(value)

    @field_validator("external_id", mode="before")
    @classmethod
    def _parse_external_id(cls, value: Any) -> int | None:
        return coerce_int(value)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Organization":
        """Parse a row of the `organizations` table."""
        return cls.model_validate(_from_row(row, ORGANIZATION_COLUMNS))

    def to_pipedrive_payload(self) -> dict[str, Any]:
        """Convert to the body of a Pipedrive organization create/update."""
        payload: dict[str, Any] = {"visible_to": VISIBLE_TO_EVERYONE}
        if self.name:
            payload["name"] = self.name
        if self.website_url:
            payload["url"] = self.website_url
        return payload

    @staticmethod
    def values_from_pipedrive(
        remote: "RemoteOrganization", current: "Organization | None" = None
    ) -> dict[str, Any]:
        """Local column values carried by a Pipedrive organization.

        With `current`, only values that are set remotely and differ from the
        local record are returned.
        """
        candidates = {"name": remote.name or None, "website_url": remote.url or None}
        return {
            key: value
            for key, value in candidates.items()
            if value is not None and (current is None or getattr(current, key) != value)
        }


class Person(BaseModel):
    """Person row from the local CRM store."""

    id: int | str
    full_name: str | None = None
    work_email: str | None = None
    personal_email: str | None = None
    phone: str | None = None
    organization_id: int | str | None = None
    linkedin_profile: str | None = None
    title: str | None = None
    notes: str | None = None
    primary_contact_type: str | None = None
    secondary_contact_type: str | None = None
    num_followers: int | None = None
    headline: str | None = None
    summary: str | None = None
    location_name: str | None = None
    external_id: int | None = None
    updated_at: datetime | None = None
    last_external_sync: datetime | None = None

    @field_validator("updated_at", "last_external_sync", mode="before")
    @classmethod
    def _parse_timestamps(cls, value: Any) -> datetime | None:
        return parse_timestamp(value)

    @field_validator("external_id", "num_followers", mode="before")
    @classmethod
    def _parse_ints(cls, value: Any) -> int | None:
        return coerce_int(value)

    @field_validator("primary_contact_type", "secondary_contact_type")
    @classmethod
    def _valid_contact_type(cls, value: str | None) -> str | None:
        if value is not None and value not in CONTACT_TYPES:
            logger.warning(f"Dropping unknown contact type: {value!r}")
            return None
        return value

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Person":
        """Parse a row of the `people` table."""
        return cls.model_validate(_from_row(row, PERSON_COLUMNS))

    @property
    def display_name(self) -> str:
        return self.full_name or self.work_email or self.personal_email or f"#{self.id}"

    def to_pipedrive_payload(
        self, mapping: FieldMapping, org_external_id: int | None = None
    ) -> dict[str, Any]:
        """Convert to the body of a Pipedrive person create/update.

        Emails and phones become Pipedrive's labeled lists with exactly one
        primary entry. Custom fields without a resolved key are left out.
        """
        emails = []
        if self.work_email:
            emails.append({"label": "work", "value": self.work_email, "primary": True})
        if self.personal_email:
            emails.append(
                {"label": "personal", "value": self.personal_email, "primary": not self.work_email}
            )

        phones = []
        if self.phone:
            phones.append({"label": "main", "value": self.phone, "primary": True})

        payload: dict[str, Any] = {
            "email": emails,
            "phone": phones,
            "visible_to": VISIBLE_TO_EVERYONE,
        }
        if self.full_name:
            payload["name"] = self.full_name
        if org_external_id is not None:
            payload["org_id"] = org_external_id
        if self.notes:
            payload["notes"] = self.notes

        for spec in PERSON_FIELDS.values():
            value = getattr(self, spec.attribute)
            if value is None or value == "":
                continue
            try:
                encoded = mapping.write(spec.key_name, value)
            except MappingUnavailable as e:
                logger.debug(f"Not pushing {spec.attribute} for {self.display_name}: {e}")
                continue
            if encoded is not None:
                key, wire_value = encoded
                payload[key] = wire_value

        return payload

    @staticmethod
    def values_from_pipedrive(
        remote: "RemotePerson",
        mapping: FieldMapping,
        organization_id: int | str | None,
        current: "Person | None" = None,
    ) -> dict[str, Any]:
        """Local column values carried by a Pipedrive person.

        `organization_id` is the already-resolved local id of the remote
        organization reference. With `current`, only changed values are
        returned: remote values that are empty never clear local data, except
        the organization link, which follows Pipedrive when it is removed.
        """
        candidates: dict[str, Any] = {
            "full_name": remote.name or None,
            "work_email": remote.work_email,
            "personal_email": remote.personal_email,
            "phone": remote.main_phone,
            "notes": remote.notes or None,
        }

        for spec in PERSON_FIELDS.values():
            try:
                value = mapping.read(spec.key_name, remote.custom_fields)
            except MappingUnavailable as e:
                logger.debug(f"Not pulling {spec.attribute} for {remote.name}: {e}")
                continue
            if spec.field_type == "double":
                value = coerce_int(value)
            if spec.options and value not in spec.options:
                value = None
            candidates[spec.attribute] = value

        values = {
            key: value
            for key, value in candidates.items()
            if value is not None and (current is None or getattr(current, key) != value)
        }

        if current is None:
            if organization_id is not None:
                values["organization_id"] = organization_id
        elif organization_id != current.organization_id:
            values["organization_id"] = organization_id

        return values


class LabeledValue(BaseModel):
    """One entry of a Pipedrive email/phone list."""

    label: str | None = None
    value: str = ""
    primary: bool = False


class OrgRef(BaseModel):
    """Pipedrive's embedded organization reference on a person."""

    value: int
    name: str | None = None


def _primary(entries: list[LabeledValue]) -> LabeledValue | None:
    for entry in entries:
        if entry.primary:
            return entry
    return entries[0] if entries else None


class RemoteOrganization(BaseModel):
    """Organization as returned by the Pipedrive API."""

    id: int
    name: str | None = None
    url: str | None = None
    cc_email: str | None = None
    add_time: datetime | None = None
    update_time: datetime | None = None

    @field_validator("add_time", "update_time", mode="before")
    @classmethod
    def _parse_timestamps(cls, value: Any) -> datetime | None:
        return parse_timestamp(value)

    @classmethod
    def from_api(cls, record: dict[str, Any]) -> "RemoteOrganization":
        """Parse a Pipedrive organization record."""
        return cls(
            id=record["id"],
            name=record.get("name"),
            url=record.get("url") or record.get("website"),
            cc_email=record.get("cc_email"),
            add_time=record.get("add_time"),
            update_time=record.get("update_time"),
        )

    @property
    def changed_at(self) -> datetime | None:
        return self.update_time or self.add_time


class RemotePerson(BaseModel):
    """Person as returned by the Pipedrive API.

    Custom field values are kept verbatim in `custom_fields`, keyed by the
    installation-specific field hash.
    """

    id: int
    name: str | None = None
    email: list[LabeledValue] = Field(default_factory=list)
    phone: list[LabeledValue] = Field(default_factory=list)
    org_id: OrgRef | None = None
    notes: str | None = None
    add_time: datetime | None = None
    update_time: datetime | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)

    @field_validator("add_time", "update_time", mode="before")
    @classmethod
    def _parse_timestamps(cls, value: Any) -> datetime | None:
        return parse_timestamp(value)

    @field_validator("email", "phone", mode="before")
    @classmethod
    def _labeled_list(cls, value: Any) -> list:
        if not value:
            return []
        if isinstance(value, str):
            return [{"value": value, "primary": True}]
        entries = []
        for entry in value:
            if isinstance(entry, str):
                entry = {"value": entry}
            if entry.get("value"):
                entries.append(entry)
        return entries

    @field_validator("org_id", mode="before")
    @classmethod
    def _org_ref(cls, value: Any) -> Any:
        if value is None or value == "" or (isinstance(value, dict) and value.get("value") is None):
            return None
        if isinstance(value, (int, str)):
            return {"value": value}
        return value

    @classmethod
    def from_api(cls, record: dict[str, Any]) -> "RemotePerson":
        """Parse a Pipedrive person record."""
        return cls(
            id=record["id"],
            name=record.get("name"),
            email=record.get("email"),
            phone=record.get("phone"),
            org_id=record.get("org_id"),
            notes=record.get("notes"),
            add_time=record.get("add_time"),
            update_time=record.get("update_time"),
            custom_fields={k: v for k, v in record.items() if k not in PERSON_KEYS},
        )

    @property
    def changed_at(self) -> datetime | None:
        return self.update_time or self.add_time

    @property
    def emails(self) -> list[str]:
        return [entry.value for entry in self.email]

    def _labeled(self, label: str) -> str | None:
        for entry in self.email:
            if entry.label == label:
                return entry.value
        return None

    @property
    def work_email(self) -> str | None:
        """Work-labeled email; an unlabeled primary email counts as work."""
        work = self._labeled("work")
        if work or self._labeled("personal"):
            return work
        primary = _primary(self.email)
        return primary.value if primary else None

    @property
    def personal_email(self) -> str | None:
        return self._labeled("personal")

    @property
    def main_phone(self) -> str | None:
        primary = _primary(self.phone)
        return primary.value if primary else None


class SyncStats(BaseModel):
    """Statistics from one entity type of a sync run."""

    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def record(self, outcome: str) -> None:
        """Count a reconciliation outcome ("created", "updated" or "skipped")."""
        setattr(self, outcome, getattr(self, outcome) + 1)


class SyncReport(BaseModel):
    """Summary of a full sync run."""

    organizations: SyncStats = Field(default_factory=SyncStats)
    people: SyncStats = Field(default_factory=SyncStats)
