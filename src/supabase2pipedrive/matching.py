"""Linking local records to their Pipedrive counterparts."""

import logging
from collections.abc import Callable, Hashable, Iterable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar
from urllib.parse import urlparse

from supabase2pipedrive.models import Organization, Person, RemoteOrganization, RemotePerson

logger = logging.getLogger(__name__)

L = TypeVar("L", Organization, Person)
R = TypeVar("R", RemoteOrganization, RemotePerson)


def normalize_domain(domain: str | None) -> str | None:
    """Lower-case a domain and strip a leading `www.`."""
    if not domain:
        return None
    value = domain.strip().lower().rstrip(".")
    if value.startswith("www."):
        value = value[4:]
    return value or None


def extract_domain(value: str | None) -> str | None:
    """Normalized domain of an email address or a URL."""
    if not value:
        return None
    value = value.strip()
    if "@" in value and "://" not in value:
        return normalize_domain(value.rsplit("@", 1)[1])
    if "://" not in value:
        value = f"http://{value}"
    try:
        return normalize_domain(urlparse(value).hostname)
    except ValueError:
        return None


def _lower(value: str | None) -> str | None:
    value = (value or "").strip().lower()
    return value or None


def organization_domain(org: Organization) -> str | None:
    return normalize_domain(org.normalized_domain) or extract_domain(org.website_url)


def build_index(
    records: Iterable[L], key: Callable[[L], Hashable | None], label: str
) -> dict[Hashable, L]:
    """
    Index records by key. The first record seen for a key wins.

    Later records sharing the key are logged and left out of the index, so
    they stay unmatched.
    """
    index: dict[Hashable, L] = {}
    for record in records:
        value = key(record)
        if value is None:
            continue
        if value in index:
            logger.warning(
                f"Duplicate {label} {value!r}: keeping record {index[value].id}, "
                f"ignoring record {record.id}"
            )
            continue
        index[value] = record
    return index


@dataclass
class MatchedPair(Generic[L, R]):
    local: L
    remote: R
    via: str


@dataclass
class MatchResult(Generic[L, R]):
    """Matched pairs and leftovers, remote-side lists in remote fetch order."""

    matched: list[MatchedPair[L, R]] = field(default_factory=list)
    unmatched_local: list[L] = field(default_factory=list)
    unmatched_remote: list[R] = field(default_factory=list)


# (name, index, remote record -> candidate keys)
Strategy = tuple[str, dict[Hashable, Any], Callable[[Any], list[Hashable | None]]]


class EntityMatcher:
    """Pairs local and remote records.

    A stored external id always wins. Local records without one are matched
    by fuzzy keys, tried in priority order, first hit wins.
    """

    def match_organizations(
        self, local: list[Organization], remote: list[RemoteOrganization]
    ) -> MatchResult[Organization, RemoteOrganization]:
        unlinked = [org for org in local if org.external_id is None]
        strategies: list[Strategy] = [
            (
                "domain",
                build_index(unlinked, organization_domain, "organization domain"),
                lambda r: [extract_domain(r.url), extract_domain(r.cc_email)],
            ),
            (
                "name",
                build_index(unlinked, lambda o: _lower(o.name), "organization name"),
                lambda r: [_lower(r.name)],
            ),
        ]
        return self._match("organizations", local, remote, strategies)

    def match_people(
        self, local: list[Person], remote: list[RemotePerson]
    ) -> MatchResult[Person, RemotePerson]:
        unlinked = [person for person in local if person.external_id is None]

        def remote_emails(r: RemotePerson) -> list[Hashable | None]:
            return [_lower(email) for email in r.emails]

        strategies: list[Strategy] = [
            (
                "work_email",
                build_index(unlinked, lambda p: _lower(p.work_email), "work email"),
                remote_emails,
            ),
            (
                "personal_email",
                build_index(unlinked, lambda p: _lower(p.personal_email), "personal email"),
                remote_emails,
            ),
            (
                "name",
                build_index(unlinked, lambda p: _lower(p.full_name), "person name"),
                lambda r: [_lower(r.name)],
            ),
        ]
        return self._match("people", local, remote, strategies)

    def _match(
        self,
        label: str,
        local: list[L],
        remote: list[R],
        strategies: list[Strategy],
    ) -> MatchResult[L, R]:
        by_external_id = build_index(local, lambda record: record.external_id, "external id")
        result: MatchResult[L, R] = MatchResult()
        claimed: set[Any] = set()

        for record in remote:
            pair = self._find(record, by_external_id, strategies, claimed)
            if pair is None:
                result.unmatched_remote.append(record)
            else:
                claimed.add(pair.local.id)
                result.matched.append(pair)

        result.unmatched_local = [record for record in local if record.id not in claimed]

        fuzzy = sum(1 for pair in result.matched if pair.via != "external_id")
        logger.info(
            f"Matched {len(result.matched)} {label} ({fuzzy} by fuzzy key), "
            f"{len(result.unmatched_remote)} only in Pipedrive, "
            f"{len(result.unmatched_local)} only in Supabase"
        )
        return result

    @staticmethod
    def _find(
        record: R,
        by_external_id: dict[Hashable, L],
        strategies: list[Strategy],
        claimed: set[Any],
    ) -> MatchedPair[L, R] | None:
        candidate = by_external_id.get(record.id)
        if candidate is not None:
            if candidate.id in claimed:
                return None
            return MatchedPair(candidate, record, "external_id")

        for via, index, keys in strategies:
            for key in keys(record):
                if key is None:
                    continue
                candidate = index.get(key)
                if candidate is not None and candidate.id not in claimed:
                    logger.debug(f"Matched {record.name!r} to local record {candidate.id} by {via}")
                    return MatchedPair(candidate, record, via)
        return None
