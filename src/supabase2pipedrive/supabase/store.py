"""Typed access to the local `people` and `organizations` tables."""

import logging
from typing import Any

from supabase2pipedrive.exceptions import SupabaseError
from supabase2pipedrive.models import (
    ORGANIZATION_COLUMNS,
    PERSON_COLUMNS,
    Organization,
    Person,
    to_row,
)
from supabase2pipedrive.supabase.client import SupabaseClient

logger = logging.getLogger(__name__)

PEOPLE_TABLE = "people"
ORGANIZATIONS_TABLE = "organizations"


class CRMStore:
    """Local CRM records. Every write touches exactly one row."""

    def __init__(self, client: SupabaseClient):
        self.client = client

    async def fetch_organizations(self) -> list[Organization]:
        rows = await self.client.select_all(ORGANIZATIONS_TABLE)
        logger.info(f"Found {len(rows)} organizations in Supabase")
        return [Organization.from_row(row) for row in rows]

    async def fetch_people(self) -> list[Person]:
        rows = await self.client.select_all(PEOPLE_TABLE)
        logger.info(f"Found {len(rows)} people in Supabase")
        return [Person.from_row(row) for row in rows]

    async def create_organization(self, values: dict[str, Any]) -> Organization:
        row = await self.client.insert(ORGANIZATIONS_TABLE, to_row(values, ORGANIZATION_COLUMNS))
        return Organization.from_row(row)

    async def update_organization(self, org_id: Any, values: dict[str, Any]) -> Organization:
        row = await self.client.update(
            ORGANIZATIONS_TABLE, org_id, to_row(values, ORGANIZATION_COLUMNS)
        )
        if row is None:
            raise SupabaseError(404, f"Organization {org_id} not found")
        return Organization.from_row(row)

    async def create_person(self, values: dict[str, Any]) -> Person:
        row = await self.client.insert(PEOPLE_TABLE, to_row(values, PERSON_COLUMNS))
        return Person.from_row(row)

    async def update_person(self, person_id: Any, values: dict[str, Any]) -> Person:
        row = await self.client.update(PEOPLE_TABLE, person_id, to_row(values, PERSON_COLUMNS))
        if row is None:
            raise SupabaseError(404, f"Person {person_id} not found")
        return Person.from_row(row)
