"""Shared fixtures: an in-memory Pipedrive behind httpx.MockTransport and an in-memory CRM store.

Provides:
- FakePipedrive: persons, organizations and personFields endpoints with
  start/limit pagination, search and 404s for unknown ids
- FakeStore: the CRMStore interface over dicts, bumping updated_at on every
  write like the Supabase trigger does
- A PipedriveClient wired to the fake with a recording sleep
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any

import httpx
import pytest

from supabase2pipedrive.exceptions import SupabaseError
from supabase2pipedrive.models import Organization, Person
from supabase2pipedrive.pipedrive.client import PipedriveClient, RetryPolicy
from supabase2pipedrive.pipedrive.fields import CONTACT_TYPES, PERSON_FIELDS, FieldMapping

PRIMARY_OPTION_IDS = {str(143 + i): label for i, label in enumerate(CONTACT_TYPES)}
SECONDARY_OPTION_IDS = {str(162 + i): label for i, label in enumerate(CONTACT_TYPES)}


def field_key(name: str) -> str:
    """Opaque key the fake Pipedrive uses for a person field."""
    return "f_" + PERSON_FIELDS[name].attribute


def pipedrive_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def utc(year: int, month: int, day: int, hour: int = 0) -> datetime:
    return datetime(year, month, day, hour, tzinfo=timezone.utc)


def default_person_fields() -> list[dict[str, Any]]:
    """Every required person field, as an installation that already has them."""
    definitions = []
    for i, (name, spec) in enumerate(PERSON_FIELDS.items(), 1):
        definition: dict[str, Any] = {
            "id": 9000 + i,
            "key": field_key(name),
            "name": spec.name,
            "field_type": spec.field_type,
        }
        if name == "primary contact type":
            definition["options"] = [{"id": int(k), "label": v} for k, v in PRIMARY_OPTION_IDS.items()]
        elif name == "secondary contact type":
            definition["options"] = [
                {"id": int(k), "label": v} for k, v in SECONDARY_OPTION_IDS.items()
            ]
        definitions.append(definition)
    return definitions


class FakePipedrive:
    """Just enough of the Pipedrive v1 API for the sync engine."""

    def __init__(self, person_fields: list[dict[str, Any]] | None = None):
        self.persons: dict[int, dict[str, Any]] = {}
        self.organizations: dict[int, dict[str, Any]] = {}
        self.person_fields: list[dict[str, Any]] = (
            default_person_fields() if person_fields is None else person_fields
        )
        self.requests: list[httpx.Request] = []
        self.fail_paths: dict[str, int] = {}
        self._next_id = 500

    # -- seeding ---------------------------------------------------------

    def add_organization(self, org_id: int, name: str, updated: datetime, **extra: Any) -> dict:
        record = {
            "id": org_id,
            "name": name,
            "add_time": pipedrive_time(updated),
            "update_time": pipedrive_time(updated),
            **extra,
        }
        self.organizations[org_id] = record
        return record

    def add_person(
        self,
        person_id: int,
        name: str,
        updated: datetime | None,
        emails: list[dict[str, Any]] | None = None,
        org_id: int | None = None,
        **custom: Any,
    ) -> dict:
        record = {
            "id": person_id,
            "name": name,
            "email": emails or [{"value": "", "primary": True}],
            "phone": [{"value": "", "primary": True}],
            "org_id": self._org_ref(org_id),
            "add_time": pipedrive_time(updated) if updated else None,
            "update_time": pipedrive_time(updated) if updated else None,
            **custom,
        }
        self.persons[person_id] = record
        return record

    # -- inspection ------------------------------------------------------

    @property
    def writes(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method in ("POST", "PUT")]

    def writes_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.writes if r.url.path.startswith(f"/v1/{path}")]

    # -- transport -------------------------------------------------------

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/v1")
        method = request.method

        if self.fail_paths.get(path):
            self.fail_paths[path] -= 1
            return httpx.Response(500, json={"success": False, "error": "boom"})

        if method == "GET" and path in ("/persons", "/organizations", "/personFields"):
            collection = {
                "/persons": list(self.persons.values()),
                "/organizations": list(self.organizations.values()),
                "/personFields": self.person_fields,
            }[path]
            return self._page(request, collection)

        if method == "GET" and path == "/persons/search":
            term = request.url.params["term"].lower()
            items = [
                {"item": {"id": p["id"], "name": p["name"]}}
                for p in self.persons.values()
                if any((e.get("value") or "").lower() == term for e in p["email"])
            ]
            return self._ok({"items": items[:1]})

        if method == "GET" and path == "/organizations/search":
            term = request.url.params["term"].lower()
            items = [
                {"item": {"id": o["id"], "name": o["name"]}}
                for o in self.organizations.values()
                if o["name"].lower() == term
            ]
            return self._ok({"items": items[:1]})

        if method == "POST" and path == "/personFields":
            body = json.loads(request.content)
            field_id = self._new_id()
            definition = {
                "id": field_id,
                "key": f"hash{field_id}",
                "name": body["name"],
                "field_type": body["field_type"],
            }
            if body.get("options"):
                definition["options"] = [
                    {"id": self._new_id(), "label": option["label"]} for option in body["options"]
                ]
            self.person_fields.append(definition)
            return self._ok(definition, status=201)

        match = re.fullmatch(r"/(persons|organizations|personFields)/(\d+)", path)
        if method == "GET" and match:
            record = self._lookup(match.group(1), int(match.group(2)))
            if record is None:
                return self._not_found()
            return self._ok(record)

        if method == "PUT" and match:
            collection = self.persons if match.group(1) == "persons" else self.organizations
            record = collection.get(int(match.group(2)))
            if record is None:
                return self._not_found()
            record.update(self._stored(json.loads(request.content)))
            record["update_time"] = pipedrive_time(datetime.now(timezone.utc))
            return self._ok(record)

        if method == "POST" and path in ("/persons", "/organizations"):
            collection = self.persons if path == "/persons" else self.organizations
            now = pipedrive_time(datetime.now(timezone.utc))
            record = {"id": self._new_id(), "add_time": now, "update_time": now}
            record.update(self._stored(json.loads(request.content)))
            collection[record["id"]] = record
            return self._ok(record, status=201)

        return httpx.Response(400, json={"success": False, "error": f"unhandled {method} {path}"})

    # -- helpers ---------------------------------------------------------

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def _org_ref(self, org_id: int | None) -> dict | None:
        if org_id is None:
            return None
        org = self.organizations.get(org_id, {})
        return {"value": org_id, "name": org.get("name")}

    def _stored(self, body: dict[str, Any]) -> dict[str, Any]:
        if "org_id" in body:
            body["org_id"] = self._org_ref(body["org_id"])
        return body

    def _lookup(self, resource: str, record_id: int) -> dict | None:
        if resource == "persons":
            return self.persons.get(record_id)
        if resource == "organizations":
            return self.organizations.get(record_id)
        return next((f for f in self.person_fields if f["id"] == record_id), None)

    def _page(self, request: httpx.Request, collection: list[dict]) -> httpx.Response:
        start = int(request.url.params.get("start", 0))
        limit = int(request.url.params.get("limit", 100))
        page = collection[start : start + limit]
        more = start + limit < len(collection)
        return httpx.Response(
            200,
            json={
                "success": True,
                "data": page,
                "additional_data": {
                    "pagination": {"start": start, "limit": limit, "more_items_in_collection": more}
                },
            },
        )

    @staticmethod
    def _ok(data: Any, status: int = 200) -> httpx.Response:
        return httpx.Response(status, json={"success": True, "data": data})

    @staticmethod
    def _not_found() -> httpx.Response:
        return httpx.Response(404, json={"success": False, "error": "Not found"})


class FakeStore:
    """In-memory stand-in for CRMStore."""

    def __init__(
        self,
        organizations: list[Organization] | None = None,
        people: list[Person] | None = None,
    ):
        self.organizations = {org.id: org for org in organizations or []}
        self.people = {person.id: person for person in people or []}
        self.writes: list[tuple[str, str, dict[str, Any]]] = []
        self.fail_on: set[Any] = set()
        self._next_id = 1000

    async def fetch_organizations(self) -> list[Organization]:
        return list(self.organizations.values())

    async def fetch_people(self) -> list[Person]:
        return list(self.people.values())

    async def create_organization(self, values: dict[str, Any]) -> Organization:
        self.writes.append(("create", "organizations", values))
        self._next_id += 1
        record = Organization(id=self._next_id, updated_at=datetime.now(timezone.utc), **values)
        self.organizations[record.id] = record
        return record

    async def update_organization(self, org_id: Any, values: dict[str, Any]) -> Organization:
        self.writes.append(("update", "organizations", values))
        record = self.organizations[org_id].model_copy(
            update={**values, "updated_at": datetime.now(timezone.utc)}
        )
        self.organizations[org_id] = record
        return record

    async def create_person(self, values: dict[str, Any]) -> Person:
        self.writes.append(("create", "people", values))
        self._next_id += 1
        record = Person(id=self._next_id, updated_at=datetime.now(timezone.utc), **values)
        self.people[record.id] = record
        return record

    async def update_person(self, person_id: Any, values: dict[str, Any]) -> Person:
        if person_id in self.fail_on:
            raise SupabaseError(500, "write rejected")
        self.writes.append(("update", "people", values))
        record = self.people[person_id].model_copy(
            update={**values, "updated_at": datetime.now(timezone.utc)}
        )
        self.people[person_id] = record
        return record


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def pipedrive_api() -> FakePipedrive:
    return FakePipedrive()


@pytest.fixture
def pipedrive(pipedrive_api: FakePipedrive, sleeps: SleepRecorder) -> PipedriveClient:
    return PipedriveClient(
        "test-token",
        retry_policy=RetryPolicy(),
        sleep=sleeps,
        transport=pipedrive_api.transport(),
    )


@pytest.fixture
def mapping() -> FieldMapping:
    return FieldMapping(
        keys={name: field_key(name) for name in PERSON_FIELDS},
        options={
            "primary contact type": dict(PRIMARY_OPTION_IDS),
            "secondary contact type": dict(SECONDARY_OPTION_IDS),
        },
    )
