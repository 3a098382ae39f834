"""Conflict resolution and per-record reconciliation between Supabase and Pipedrive."""

import logging
from collections.abc import Callable, Set as AbstractSet
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from supabase2pipedrive.exceptions import (
    CreateFailed,
    NoMatchFound,
    PipedriveAPIError,
    RemoteNotFound,
    SupabaseError,
    WriteFailed,
)
from supabase2pipedrive.models import (
    Organization,
    OrgRef,
    Person,
    RemoteOrganization,
    RemotePerson,
)
from supabase2pipedrive.pipedrive.client import PipedriveClient
from supabase2pipedrive.pipedrive.fields import FieldMapping
from supabase2pipedrive.supabase.store import CRMStore

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Direction(str, Enum):
    PULL = "pull"
    PUSH = "push"
    SKIP = "skip"


class Outcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


@dataclass
class Reconciled:
    """Result of reconciling one entity: what happened and the local record after it."""

    outcome: Outcome
    record: Organization | Person


def decide(local: Organization | Person, remote_changed_at: datetime | None) -> Direction:
    """
    Pick the reconciliation direction for a matched pair.

    Remote wins (PULL) only when it changed after the last sync (or there was
    none) and after the last local modification. If nothing changed remotely
    since the last sync the pair is skipped. Otherwise local wins (PUSH).
    """
    watermark = local.last_external_sync

    if remote_changed_at is None:
        return Direction.PUSH if watermark is None else Direction.SKIP

    if watermark is not None and remote_changed_at <= watermark:
        return Direction.SKIP

    if local.updated_at is None or remote_changed_at > local.updated_at:
        return Direction.PULL
    return Direction.PUSH


class OrganizationDirectory:
    """Pipedrive organization id <-> local organization id, for reconciled organizations."""

    def __init__(self, organizations: list[Organization] | None = None):
        self._local_by_remote: dict[int, Any] = {}
        self._remote_by_local: dict[Any, int] = {}
        for org in organizations or []:
            self.add(org)

    def __len__(self) -> int:
        return len(self._local_by_remote)

    def add(self, org: Organization) -> None:
        if org.external_id is None:
            return
        self._local_by_remote.setdefault(org.external_id, org.id)
        self._remote_by_local[org.id] = org.external_id

    def local_id_for(self, ref: OrgRef | None) -> Any:
        """Local id of a Pipedrive organization reference (None for no reference)."""
        if ref is None:
            return None
        try:
            return self._local_by_remote[ref.value]
        except KeyError:
            raise NoMatchFound(
                f"Pipedrive organization {ref.value} ({ref.name}) is not synced locally"
            ) from None

    def remote_id_for(self, organization_id: Any) -> int | None:
        """Pipedrive id of a local organization (None for no organization)."""
        if organization_id is None:
            return None
        try:
            return self._remote_by_local[organization_id]
        except KeyError:
            raise NoMatchFound(
                f"Organization {organization_id} is not linked to Pipedrive"
            ) from None


class Reconciler:
    """
    Applies create / pull / push decisions for single records.

    Each method performs at most one write per system for its entity and
    advances the sync watermark only after the action succeeded. Failures
    raise; the caller decides how to count them.
    """

    def __init__(
        self,
        pipedrive: PipedriveClient,
        store: CRMStore,
        mapping: FieldMapping,
        now: Callable[[], datetime] = utcnow,
    ):
        self.pipedrive = pipedrive
        self.store = store
        self.mapping = mapping
        self._now = now

    def _watermark(self, remote_changed_at: datetime | None) -> datetime:
        # Never behind the remote's own timestamp, so the next run skips the pair
        now = self._now()
        if remote_changed_at is not None and remote_changed_at > now:
            return remote_changed_at
        return now

    # ==================== ORGANIZATIONS ====================

    async def reconcile_organization(
        self, local: Organization, remote: RemoteOrganization
    ) -> Reconciled:
        """Reconcile a matched organization pair."""
        direction = decide(local, remote.changed_at)
        logger.debug(f"Organization {remote.name!r}: {direction.value}")

        if direction is Direction.SKIP:
            return Reconciled(Outcome.SKIPPED, local)

        if direction is Direction.PULL:
            values = Organization.values_from_pipedrive(remote, current=local)
            if local.external_id != remote.id:
                values["external_id"] = remote.id
            changed = bool(values)
            values["last_external_sync"] = self._now()
            record = await self._update_local_organization(local, values)
            if changed:
                logger.info(f"Updated organization {local.name!r} from Pipedrive: {sorted(values)}")
            return Reconciled(Outcome.UPDATED if changed else Outcome.SKIPPED, record)

        return await self._push_organization(local, remote.id)

    async def create_local_organization(self, remote: RemoteOrganization) -> Reconciled:
        """Create the local copy of an organization that only exists in Pipedrive."""
        values = Organization.values_from_pipedrive(remote)
        values["external_id"] = remote.id
        values["last_external_sync"] = self._now()

        try:
            record = await self.store.create_organization(values)
        except SupabaseError as e:
            raise CreateFailed("organization", remote.name or str(remote.id), e) from e

        logger.info(f"Created organization {remote.name!r} in Supabase (id {record.id})")
        return Reconciled(Outcome.CREATED, record)

    async def push_local_organization(
        self, local: Organization, claimed: AbstractSet[int] = frozenset()
    ) -> Reconciled:
        """
        Reconcile an organization that was not found in the Pipedrive snapshot.

        A name search hit whose id is in `claimed` already belongs to another
        local record and is not linked.
        """
        if local.external_id is not None:
            try:
                data = await self.pipedrive.get_organization(local.external_id)
            except RemoteNotFound:
                logger.warning(
                    f"Pipedrive organization {local.external_id} for {local.name!r} is gone, "
                    "clearing the stale id"
                )
                local = await self._update_local_organization(local, {"external_id": None})
            else:
                return await self.reconcile_organization(local, RemoteOrganization.from_api(data))

        if not local.name:
            logger.info(f"Skipping organization {local.id}: no name to create it with")
            return Reconciled(Outcome.SKIPPED, local)

        matches = await self.pipedrive.search_organizations(local.name, fields="name")
        if matches:
            remote_id = matches[0]["id"]
            if remote_id in claimed:
                raise NoMatchFound(
                    f"Pipedrive organization {remote_id} found for {local.name!r} "
                    "is already linked to another record"
                )
            logger.info(f"Found existing Pipedrive organization for {local.name!r}: {remote_id}")
            return await self._push_organization(local, remote_id)

        return await self._create_remote_organization(local)

    async def _push_organization(self, local: Organization, remote_id: int) -> Reconciled:
        try:
            data = await self.pipedrive.update_organization(remote_id, local.to_pipedrive_payload())
        except RemoteNotFound:
            logger.warning(f"Pipedrive organization {remote_id} is gone, recreating {local.name!r}")
            local = await self._update_local_organization(local, {"external_id": None})
            return await self._create_remote_organization(local)
        except PipedriveAPIError as e:
            raise WriteFailed("organization", local.name or str(local.id), e) from e

        remote = RemoteOrganization.from_api(data)
        record = await self._update_local_organization(
            local,
            {"external_id": remote.id, "last_external_sync": self._watermark(remote.changed_at)},
        )
        logger.info(f"Updated organization {local.name!r} in Pipedrive")
        return Reconciled(Outcome.UPDATED, record)

    async def _create_remote_organization(self, local: Organization) -> Reconciled:
        try:
            data = await self.pipedrive.create_organization(local.to_pipedrive_payload())
        except PipedriveAPIError as e:
            raise CreateFailed("organization", local.name or str(local.id), e) from e

        remote = RemoteOrganization.from_api(data)
        record = await self._update_local_organization(
            local,
            {"external_id": remote.id, "last_external_sync": self._watermark(remote.changed_at)},
        )
        logger.info(f"Created organization {local.name!r} in Pipedrive (id {remote.id})")
        return Reconciled(Outcome.CREATED, record)

    async def _update_local_organization(
        self, local: Organization, values: dict[str, Any]
    ) -> Organization:
        try:
            return await self.store.update_organization(local.id, values)
        except SupabaseError as e:
            raise WriteFailed("organization", local.name or str(local.id), e) from e

    # ==================== PEOPLE ====================

    async def reconcile_person(
        self, local: Person, remote: RemotePerson, directory: OrganizationDirectory
    ) -> Reconciled:
        """Reconcile a matched person pair."""
        direction = decide(local, remote.changed_at)
        logger.debug(f"Person {remote.name!r}: {direction.value}")

        if direction is Direction.SKIP:
            return Reconciled(Outcome.SKIPPED, local)

        if direction is Direction.PULL:
            organization_id = directory.local_id_for(remote.org_id)
            values = Person.values_from_pipedrive(
                remote, self.mapping, organization_id, current=local
            )
            if local.external_id != remote.id:
                values["external_id"] = remote.id
            changed = bool(values)
            values["last_external_sync"] = self._now()
            record = await self._update_local_person(local, values)
            if changed:
                logger.info(f"Updated person {local.display_name!r} from Pipedrive: {sorted(values)}")
            return Reconciled(Outcome.UPDATED if changed else Outcome.SKIPPED, record)

        return await self._push_person(local, remote.id, directory)

    async def create_local_person(
        self, remote: RemotePerson, directory: OrganizationDirectory
    ) -> Reconciled:
        """Create the local copy of a person that only exists in Pipedrive."""
        organization_id = directory.local_id_for(remote.org_id)
        values = Person.values_from_pipedrive(remote, self.mapping, organization_id)
        values["external_id"] = remote.id
        values["last_external_sync"] = self._now()

        try:
            record = await self.store.create_person(values)
        except SupabaseError as e:
            raise CreateFailed("person", remote.name or str(remote.id), e) from e

        logger.info(f"Created person {remote.name!r} in Supabase (id {record.id})")
        return Reconciled(Outcome.CREATED, record)

    async def push_local_person(
        self,
        local: Person,
        directory: OrganizationDirectory,
        claimed: AbstractSet[int] = frozenset(),
    ) -> Reconciled:
        """
        Reconcile a person that was not found in the Pipedrive snapshot.

        A stored Pipedrive id is re-read and reconciled normally; a 404 clears
        it. Otherwise Pipedrive is searched by work then personal email before
        a new person is created, so existing records are linked, not duplicated.
        A hit whose id is in `claimed` belongs to another local record and
        raises `NoMatchFound`.
        """
        if local.external_id is not None:
            try:
                data = await self.pipedrive.get_person(local.external_id)
            except RemoteNotFound:
                logger.warning(
                    f"Pipedrive person {local.external_id} for {local.display_name!r} is gone, "
                    "clearing the stale id"
                )
                local = await self._update_local_person(local, {"external_id": None})
            else:
                return await self.reconcile_person(local, RemotePerson.from_api(data), directory)

        existing_id = await self._find_remote_person(local, claimed)
        if existing_id is not None:
            logger.info(f"Found existing Pipedrive person for {local.display_name!r}: {existing_id}")
            return await self._push_person(local, existing_id, directory)

        return await self._create_remote_person(local, directory)

    async def _find_remote_person(self, local: Person, claimed: AbstractSet[int]) -> int | None:
        for email in (local.work_email, local.personal_email):
            if not email:
                continue
            matches = await self.pipedrive.search_persons(email, fields="email")
            if not matches:
                continue
            remote_id = matches[0]["id"]
            if remote_id in claimed:
                raise NoMatchFound(
                    f"Pipedrive person {remote_id} found for {local.display_name!r} "
                    "is already linked to another record"
                )
            return remote_id
        return None

    async def _push_person(
        self, local: Person, remote_id: int, directory: OrganizationDirectory
    ) -> Reconciled:
        payload = local.to_pipedrive_payload(
            self.mapping, directory.remote_id_for(local.organization_id)
        )
        try:
            data = await self.pipedrive.update_person(remote_id, payload)
        except RemoteNotFound:
            logger.warning(f"Pipedrive person {remote_id} is gone, recreating {local.display_name!r}")
            local = await self._update_local_person(local, {"external_id": None})
            return await self._create_remote_person(local, directory)
        except PipedriveAPIError as e:
            raise WriteFailed("person", local.display_name, e) from e

        remote = RemotePerson.from_api(data)
        record = await self._update_local_person(
            local,
            {"external_id": remote.id, "last_external_sync": self._watermark(remote.changed_at)},
        )
        logger.info(f"Updated person {local.display_name!r} in Pipedrive")
        return Reconciled(Outcome.UPDATED, record)

    async def _create_remote_person(
        self, local: Person, directory: OrganizationDirectory
    ) -> Reconciled:
        if not local.full_name:
            logger.info(f"Skipping person {local.id}: no name to create it with")
            return Reconciled(Outcome.SKIPPED, local)
        payload = local.to_pipedrive_payload(
            self.mapping, directory.remote_id_for(local.organization_id)
        )
        try:
            data = await self.pipedrive.create_person(payload)
        except PipedriveAPIError as e:
            raise CreateFailed("person", local.display_name, e) from e

        remote = RemotePerson.from_api(data)
        record = await self._update_local_person(
            local,
            {"external_id": remote.id, "last_external_sync": self._watermark(remote.changed_at)},
        )
        logger.info(f"Created person {local.display_name!r} in Pipedrive (id {remote.id})")
        return Reconciled(Outcome.CREATED, record)

    async def _update_local_person(self, local: Person, values: dict[str, Any]) -> Person:
        try:
            return await self.store.update_person(local.id, values)
        except SupabaseError as e:
            raise WriteFailed("person", local.display_name, e) from e
