"""Pipedrive person custom fields: definitions and run-scoped key mapping."""

import logging
from typing import Any

from pydantic import BaseModel, Field

from supabase2pipedrive.exceptions import MappingUnavailable, PipedriveAPIError
from supabase2pipedrive.pipedrive.client import PipedriveClient
from supabase2pipedrive.pipedrive.pagination import BulkFetcher

logger = logging.getLogger(__name__)

CONTACT_TYPES = (
    "Participant",
    "Prospective Participant",
    "Individual Donor",
    "Prospective Individual Donor",
    "Institutional Donor",
    "Prospective Institutional Donor",
    "Product Partner",
    "Prospective Product Partner",
    "Program Partner",
    "Prospective Program Partner",
    "Corporate Partner",
    "Prospective Corporate Partner",
    "Influencer",
    "Media Contact",
    "Volunteer",
    "Advisor",
    "Board",
    "Staff",
    "Vendor",
)

ENUM_FIELD_TYPES = {"enum", "set"}


class FieldSpec(BaseModel):
    """A person custom field the sync needs in Pipedrive."""

    name: str = Field(description="Display name in Pipedrive")
    field_type: str
    attribute: str = Field(description="Matching attribute of the local Person")
    options: tuple[str, ...] = ()

    @property
    def key_name(self) -> str:
        return self.name.lower()


PERSON_FIELDS: dict[str, FieldSpec] = {
    spec.key_name: spec
    for spec in (
        FieldSpec(name="LinkedIn Profile", field_type="varchar", attribute="linkedin_profile"),
        FieldSpec(name="Job Title", field_type="varchar", attribute="title"),
        FieldSpec(
            name="Primary Contact Type",
            field_type="enum",
            attribute="primary_contact_type",
            options=CONTACT_TYPES,
        ),
        FieldSpec(
            name="Secondary Contact Type",
            field_type="enum",
            attribute="secondary_contact_type",
            options=CONTACT_TYPES,
        ),
        FieldSpec(name="Headline", field_type="varchar", attribute="headline"),
        FieldSpec(name="Summary", field_type="text", attribute="summary"),
        FieldSpec(name="LinkedIn Followers", field_type="double", attribute="num_followers"),
        FieldSpec(name="Location", field_type="varchar", attribute="location_name"),
    )
}


class FieldMapping(BaseModel):
    """Semantic field name -> Pipedrive field key, plus enum option tables.

    Built fresh for every run; option ids differ between installations.
    """

    keys: dict[str, str] = Field(default_factory=dict)
    options: dict[str, dict[str, str]] = Field(
        default_factory=dict, description="field name -> option id -> label"
    )

    def key(self, name: str) -> str:
        """Return the Pipedrive key for a field, or raise MappingUnavailable."""
        try:
            return self.keys[name]
        except KeyError:
            raise MappingUnavailable(name) from None

    def label_for(self, name: str, option_id: Any) -> str | None:
        return self.options.get(name, {}).get(str(option_id))

    def option_id_for(self, name: str, label: str) -> str | None:
        for option_id, option_label in self.options.get(name, {}).items():
            if option_label == label:
                return option_id
        return None

    def read(self, name: str, values: dict[str, Any]) -> Any:
        """Read a field from a Pipedrive record's values.

        Enum option ids are translated to labels; ids without a known label
        read as None.
        """
        raw = values.get(self.key(name))
        if raw is None or raw == "":
            return None
        if name not in self.options:
            return raw
        label = self.label_for(name, raw)
        if label is None:
            logger.warning(f"Ignoring unknown option id {raw!r} for field '{name}'")
        return label

    def write(self, name: str, value: Any) -> tuple[str, Any] | None:
        """Encode a local value as (field key, wire value).

        Enum labels are translated to option ids; labels without an option
        return None.
        """
        key = self.key(name)
        if name not in self.options:
            return key, value
        option_id = self.option_id_for(name, value)
        if option_id is None:
            logger.warning(f"No Pipedrive option for {value!r} in field '{name}'")
            return None
        return key, int(option_id) if option_id.isdigit() else option_id


class FieldMapper:
    """Discovers, and provisions when missing, the person custom fields."""

    def __init__(self, client: PipedriveClient, fetcher: BulkFetcher | None = None):
        self.client = client
        self.fetcher = fetcher or BulkFetcher(client)

    async def resolve_or_create_fields(
        self,
        required: dict[str, FieldSpec] = PERSON_FIELDS,
        create_missing: bool = True,
    ) -> FieldMapping:
        """
        Build the field mapping for one sync run.

        Existing definitions are matched by case-insensitive name. Missing ones
        are created (enum fields with their full option list) unless
        create_missing is False. A field that cannot be created is left out of
        the mapping. Failing to list the definitions raises.
        """
        definitions = await self.fetcher.fetch_all("personFields", strict=True)

        by_name: dict[str, dict[str, Any]] = {}
        for definition in definitions:
            name = (definition.get("name") or "").strip().lower()
            if name and name not in by_name:
                by_name[name] = definition

        keys: dict[str, str] = {}
        options: dict[str, dict[str, str]] = {}

        for key_name, spec in required.items():
            definition = by_name.get(key_name)
            if definition is None:
                if not create_missing:
                    logger.warning(f"Person field '{spec.name}' does not exist in Pipedrive")
                    continue
                definition = await self._create_field(spec)
                if definition is None:
                    continue

            keys[key_name] = definition["key"]
            if spec.field_type in ENUM_FIELD_TYPES:
                options[key_name] = await self._option_labels(definition)

        logger.info(f"Resolved {len(keys)}/{len(required)} person fields")
        return FieldMapping(keys=keys, options=options)

    async def _create_field(self, spec: FieldSpec) -> dict[str, Any] | None:
        payload: dict[str, Any] = {"name": spec.name, "field_type": spec.field_type}
        if spec.options:
            payload["options"] = [{"label": label} for label in spec.options]

        try:
            definition = await self.client.create_person_field(payload)
        except PipedriveAPIError as e:
            logger.error(f"Could not create person field '{spec.name}': {e}")
            return None

        logger.info(f"Created person field '{spec.name}' with key {definition.get('key')}")
        return definition

    async def _option_labels(self, definition: dict[str, Any]) -> dict[str, str]:
        """Option id -> label table from the field detail endpoint."""
        try:
            detail = await self.client.get_person_field(definition["id"])
        except PipedriveAPIError as e:
            logger.warning(
                f"Could not fetch options for '{definition.get('name')}': {e} "
                "(using options from the field list)"
            )
            detail = definition

        return {
            str(option["id"]): option["label"]
            for option in detail.get("options") or []
            if option.get("id") is not None and option.get("label")
        }
