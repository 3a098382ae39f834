"""Full bidirectional sync run: organizations first, then people."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from supabase2pipedrive.exceptions import SyncTimeoutError
from supabase2pipedrive.matching import EntityMatcher, MatchResult
from supabase2pipedrive.models import (
    Organization,
    Person,
    RemoteOrganization,
    RemotePerson,
    SyncReport,
    SyncStats,
)
from supabase2pipedrive.pipedrive.client import PipedriveClient
from supabase2pipedrive.pipedrive.fields import FieldMapper
from supabase2pipedrive.pipedrive.pagination import DEFAULT_PAGE_SIZE, BulkFetcher
from supabase2pipedrive.reconciler import (
    OrganizationDirectory,
    Reconciled,
    Reconciler,
    utcnow,
)
from supabase2pipedrive.supabase.store import CRMStore

logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


class BidirectionalSyncer:
    """Handles 2-way sync between Supabase and Pipedrive."""

    def __init__(
        self,
        pipedrive: PipedriveClient,
        store: CRMStore,
        page_size: int = DEFAULT_PAGE_SIZE,
        pass_timeout: float = 1800.0,
        run_timeout: float = 7200.0,
        now: Callable[[], datetime] = utcnow,
    ):
        self.pipedrive = pipedrive
        self.store = store
        self.fetcher = BulkFetcher(pipedrive, page_size)
        self.matcher = EntityMatcher()
        self.pass_timeout = pass_timeout
        self.run_timeout = run_timeout
        self._now = now

    async def run(self) -> SyncReport:
        """
        Perform one full sync run.

        1. Resolve (and provision) the Pipedrive custom field mapping
        2. Fetch both systems' organizations and people concurrently
        3. Reconcile organizations (matched, Pipedrive-only, Supabase-only)
        4. Reconcile people against the reconciled organizations
        5. Create or link Supabase-only people in Pipedrive

        Field mapping and fetch failures abort the run; per-record failures are
        counted in the report and the run continues.
        """
        try:
            return await asyncio.wait_for(self._run(), timeout=self.run_timeout)
        except asyncio.TimeoutError as e:
            raise SyncTimeoutError(f"Sync run exceeded {self.run_timeout:g}s") from e

    async def _run(self) -> SyncReport:
        logger.info("Starting bidirectional sync between Supabase and Pipedrive...")
        report = SyncReport()

        mapper = FieldMapper(self.pipedrive, self.fetcher)
        mapping = await mapper.resolve_or_create_fields()
        reconciler = Reconciler(self.pipedrive, self.store, mapping, now=self._now)

        org_records, person_records, local_orgs, local_people = await self._fetch_snapshots()
        remote_orgs = self._parse(org_records, RemoteOrganization, report.organizations)
        remote_people = self._parse(person_records, RemotePerson, report.people)

        logger.info("\n=== Syncing organizations ===")
        org_matches = self.matcher.match_organizations(local_orgs, remote_orgs)
        organizations = await self._pass(
            "organizations",
            self._sync_organizations(
                reconciler,
                remote_orgs,
                org_matches,
                report.organizations,
                claimed=self._claimed_ids(org_records, local_orgs),
            ),
        )
        directory = OrganizationDirectory(organizations)
        logger.info(f"{len(directory)} organizations linked to Pipedrive")

        logger.info("\n=== Syncing people ===")
        people_matches = self.matcher.match_people(local_people, remote_people)
        await self._pass(
            "people",
            self._sync_people(reconciler, remote_people, people_matches, directory, report.people),
        )

        logger.info("\n=== Creating new people in Pipedrive ===")
        await self._pass(
            "new people",
            self._push_new_people(
                reconciler,
                people_matches.unmatched_local,
                directory,
                report.people,
                claimed=self._claimed_ids(person_records, local_people),
            ),
        )

        for label, stats in (("Organizations", report.organizations), ("People", report.people)):
            logger.info(f"\n{label} sync complete:")
            logger.info(f"  Created: {stats.created}")
            logger.info(f"  Updated: {stats.updated}")
            logger.info(f"  Skipped: {stats.skipped}")
            logger.info(f"  Errors: {stats.error_count}")

        return report

    async def _fetch_snapshots(
        self,
    ) -> tuple[list[dict[str, Any]], list[dict[str, Any]], list[Organization], list[Person]]:
        """Fetch both systems concurrently; the first failure cancels the other fetches."""
        try:
            async with asyncio.TaskGroup() as tg:
                org_records = tg.create_task(self.fetcher.fetch_all("organizations"))
                person_records = tg.create_task(self.fetcher.fetch_all("persons"))
                local_orgs = tg.create_task(self.store.fetch_organizations())
                local_people = tg.create_task(self.store.fetch_people())
        except ExceptionGroup as eg:
            raise eg.exceptions[0]
        return (
            org_records.result(),
            person_records.result(),
            local_orgs.result(),
            local_people.result(),
        )

    @staticmethod
    def _claimed_ids(
        records: list[dict[str, Any]], local: list[Organization] | list[Person]
    ) -> set[int]:
        """Pipedrive ids that a search-before-create must not link again."""
        claimed = {record["id"] for record in records if record.get("id") is not None}
        claimed.update(item.external_id for item in local if item.external_id is not None)
        return claimed

    async def _pass(self, name: str, operation: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(operation, timeout=self.pass_timeout)
        except asyncio.TimeoutError as e:
            raise SyncTimeoutError(f"The {name} pass exceeded {self.pass_timeout:g}s") from e

    @staticmethod
    def _parse(records: list[dict[str, Any]], model: type[M], stats: SyncStats) -> list[M]:
        parsed = []
        for record in records:
            try:
                parsed.append(model.from_api(record))
            except (ValidationError, KeyError) as e:
                error_msg = f"Failed to parse Pipedrive record {record.get('id')}: {e}"
                stats.errors.append(error_msg)
                logger.warning(error_msg)
        return parsed

    async def _attempt(
        self, stats: SyncStats, entity: str, name: str | None, operation: Awaitable[Reconciled]
    ) -> Reconciled | None:
        """Await one record's reconciliation; failures are counted, never raised."""
        try:
            result = await operation
        except Exception as e:
            error_msg = f"Failed to sync {entity} '{name}': {e}"
            stats.errors.append(error_msg)
            logger.error(f"  Error: {error_msg}")
            return None
        stats.record(result.outcome.value)
        return result

    async def _sync_organizations(
        self,
        reconciler: Reconciler,
        remote_orgs: list[RemoteOrganization],
        matches: MatchResult[Organization, RemoteOrganization],
        stats: SyncStats,
        claimed: set[int],
    ) -> list[Organization]:
        """
        Reconcile every organization; returns the successfully reconciled local records.

        `claimed` holds the Pipedrive ids already linked or present in the
        snapshot, and grows as Supabase-only organizations are linked or created.
        """
        synced: list[Organization] = []
        pairs = {pair.remote.id: pair for pair in matches.matched}
        total = len(remote_orgs) + len(matches.unmatched_local)

        for i, remote in enumerate(remote_orgs, 1):
            pair = pairs.get(remote.id)
            if pair is not None:
                operation = reconciler.reconcile_organization(pair.local, remote)
            else:
                operation = reconciler.create_local_organization(remote)
            result = await self._attempt(stats, "organization", remote.name, operation)
            if result is not None:
                synced.append(result.record)
            self._progress(i, total, "organizations")

        for i, local in enumerate(matches.unmatched_local, len(remote_orgs) + 1):
            operation = reconciler.push_local_organization(local, claimed)
            result = await self._attempt(stats, "organization", local.name, operation)
            if result is not None:
                synced.append(result.record)
                if result.record.external_id is not None:
                    claimed.add(result.record.external_id)
            self._progress(i, total, "organizations")

        return synced

    async def _sync_people(
        self,
        reconciler: Reconciler,
        remote_people: list[RemotePerson],
        matches: MatchResult[Person, RemotePerson],
        directory: OrganizationDirectory,
        stats: SyncStats,
    ) -> None:
        pairs = {pair.remote.id: pair for pair in matches.matched}

        for i, remote in enumerate(remote_people, 1):
            pair = pairs.get(remote.id)
            if pair is not None:
                operation = reconciler.reconcile_person(pair.local, remote, directory)
            else:
                operation = reconciler.create_local_person(remote, directory)
            await self._attempt(stats, "person", remote.name, operation)
            self._progress(i, len(remote_people), "people")

    async def _push_new_people(
        self,
        reconciler: Reconciler,
        people: list[Person],
        directory: OrganizationDirectory,
        stats: SyncStats,
        claimed: set[int],
    ) -> None:
        for i, person in enumerate(people, 1):
            result = await self._attempt(
                stats,
                "person",
                person.display_name,
                reconciler.push_local_person(person, directory, claimed),
            )
            if result is not None and result.record.external_id is not None:
                claimed.add(result.record.external_id)
            self._progress(i, len(people), "new people")

    @staticmethod
    def _progress(i: int, total: int, label: str) -> None:
        if i % 10 == 0 or i == total:
            logger.info(f"Progress: {i}/{total} {label} processed")
