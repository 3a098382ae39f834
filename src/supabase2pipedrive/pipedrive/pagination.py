"""Bulk retrieval of paginated Pipedrive collections."""

import logging
from typing import Any

from supabase2pipedrive.exceptions import PipedriveAPIError
from supabase2pipedrive.pipedrive.client import PipedriveClient

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100


class BulkFetcher:
    """Fetches complete collections page by page using Pipedrive's start/limit cursor."""

    def __init__(self, client: PipedriveClient, page_size: int = DEFAULT_PAGE_SIZE):
        self.client = client
        self.page_size = page_size

    async def fetch_all(self, resource: str, strict: bool = False) -> list[dict[str, Any]]:
        """
        Fetch every record of a collection ("persons", "organizations", ...).

        Stops on a short page or when Pipedrive reports no more items. A failed
        page ends the fetch with the records gathered so far; pass strict=True
        to raise instead.
        """
        records: list[dict[str, Any]] = []
        start = 0

        while True:
            try:
                items, more_items = await self.client.list_page(resource, start, self.page_size)
            except PipedriveAPIError as e:
                if strict:
                    raise
                logger.error(
                    f"Fetching {resource} failed at offset {start}: {e} "
                    f"(continuing with {len(records)} records)"
                )
                break

            records.extend(items)

            if len(items) < self.page_size or more_items is False:
                break
            start += self.page_size

        logger.info(f"Fetched {len(records)} {resource} from Pipedrive")
        return records
