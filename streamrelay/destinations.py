"""
Stream Relay - Destination list client

The dashboard owns the destination configuration; it is fetched on every
start so edits take effect on the next start, restart or refresh.
"""
import logging

import httpx
from pydantic import ValidationError

from streamrelay.errors import DestinationSourceError
from streamrelay.models import Destination

logger = logging.getLogger(__name__)


class DestinationSource:
    """Fetches enabled destinations from the dashboard."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        dashboard_url: str,
        api_secret: str,
        path: str = "/api/vm/platforms",
    ):
        self.client = client
        self.url = dashboard_url.rstrip("/") + path
        self.api_secret = api_secret

    async def fetch(self) -> list[Destination]:
        try:
            res = await self.client.get(
                self.url,
                headers={"Authorization": f"Bearer {self.api_secret}"},
            )
        except httpx.HTTPError as e:
            logger.error(f"Failed to fetch destinations: {e}")
            raise DestinationSourceError(f"Dashboard unreachable: {e}") from e

        if not res.is_success:
            logger.error(f"Failed to fetch destinations ({res.status_code}): {res.text[:200]}")
            raise DestinationSourceError(
                f"Failed to fetch destinations from dashboard (HTTP {res.status_code})"
            )

        try:
            body = res.json()
            records = body.get("platforms")
            if records is None:
                records = body.get("destinations") or []
        except (ValueError, AttributeError) as e:
            logger.error(f"Malformed destination list: {e}")
            raise DestinationSourceError(f"Malformed destination list: {e}") from e
        if not isinstance(records, list):
            raise DestinationSourceError("Malformed destination list: expected a list")

        destinations = []
        for record in records:
            try:
                destination = Destination.model_validate(record)
            except ValidationError as e:
                # One bad record must not take the other destinations down
                record_id = record.get("id") if isinstance(record, dict) else None
                logger.warning(f"Skipping invalid destination {record_id!r}: {e}")
                continue
            if destination.enabled:
                destinations.append(destination)
        return destinations
