"""Review ingestion from Google Business Profile.

Each location sync runs in short, separately committed phases so that no
database transaction stays open across a Google call:

1. take the per-(organization, location) advisory lock;
2. resolve the access token and fetch the upstream review list;
3. insert unseen reviews together with their alert outbox entries;
4. dispatch each new outbox entry;
5. release the lock.

Re-syncing an unchanged upstream list inserts nothing: known reviews are
skipped, never updated.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from review_core.ingest import parse_review_record
from review_core.state.database import session_scope
from review_core.state.repository import (
    AlertOutboxRepository,
    LocationRepository,
    ReviewRepository,
    SyncLockRepository,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.config import APISettings
from api.security import CredentialVault
from api.services.alert_dispatcher import AlertDispatcher
from api.services.audit_service import AuditAction, AuditService
from api.services.gbp_client import BusinessProfileClient
from api.services.google_oauth import GoogleOAuthClient
from api.services.token_manager import GoogleTokenManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncResult:
    """Outcome of syncing one location."""

    new_count: int
    total_fetched: int
    skipped: bool = False
    alerts_sent: int = 0


class ReviewSyncService:
    """Pull reviews for locations and feed new ones to the alert outbox.

    Parameters
    ----------
    session_factory:
        Factory for the short-lived sessions each phase runs in.
    settings:
        Supplies the sync lock TTL.
    vault, oauth_client:
        Passed to :class:`GoogleTokenManager` for token resolution.
    gbp_client:
        Business Profile API client.
    dispatcher_factory:
        Builds an :class:`AlertDispatcher` bound to a session.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        settings: APISettings,
        vault: CredentialVault,
        oauth_client: GoogleOAuthClient,
        gbp_client: BusinessProfileClient,
        dispatcher_factory: Callable[[AsyncSession], AlertDispatcher],
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._vault = vault
        self._oauth = oauth_client
        self._gbp = gbp_client
        self._dispatcher_factory = dispatcher_factory

    async def sync_location(
        self,
        organization_id: str,
        location_id: str,
        location_external_id: str,
    ) -> SyncResult:
        """Sync one location.

        Returns a skipped result without calling Google when another sync
        holds the lock.

        Raises
        ------
        NotConnectedError
            The organization has no usable Google token.
        UpstreamAPIError
            The review listing call failed.
        """
        locked_by = uuid.uuid4().hex
        async with session_scope(self._session_factory) as session:
            acquired = await SyncLockRepository(session).acquire(
                organization_id,
                location_id,
                locked_by=locked_by,
                ttl_seconds=self._settings.sync_lock_ttl_seconds,
            )
        if not acquired:
            logger.info("Sync already running for org=%s location=%s; skipping", organization_id, location_id)
            return SyncResult(new_count=0, total_fetched=0, skipped=True)

        try:
            return await self._sync_locked(organization_id, location_id, location_external_id)
        finally:
            async with session_scope(self._session_factory) as session:
                await SyncLockRepository(session).release(organization_id, location_id, locked_by=locked_by)

    async def _sync_locked(
        self,
        organization_id: str,
        location_id: str,
        location_external_id: str,
    ) -> SyncResult:
        async with session_scope(self._session_factory) as session:
            token_manager = GoogleTokenManager(session, vault=self._vault, oauth_client=self._oauth)
            access_token = await token_manager.require_access_token(organization_id)

        raw_reviews = await self._gbp.list_reviews(access_token, location_external_id)

        entry_ids: list[str] = []
        async with session_scope(self._session_factory) as session:
            reviews = ReviewRepository(session)
            outbox = AlertOutboxRepository(session)
            for raw in raw_reviews:
                record = parse_review_record(raw)
                if record is None:
                    logger.warning("Skipping upstream review without an id for location=%s", location_id)
                    continue
                review_id = await reviews.insert_if_absent(
                    location_id=location_id,
                    external_id=record.external_id,
                    author=record.author,
                    rating=record.stored_rating,
                    content=record.content,
                    published_at=record.published_at,
                    platform=record.platform,
                    review_url=record.review_url,
                )
                if review_id is not None:
                    entry_ids.append(await outbox.enqueue(review_id, organization_id))

            if entry_ids:
                await AuditService(session, tenant_id=organization_id).log(
                    AuditAction.REVIEW_SYNCED,
                    target_id=location_id,
                    new_count=len(entry_ids),
                    total_fetched=len(raw_reviews),
                )

        alerts_sent = 0
        for entry_id in entry_ids:
            try:
                async with session_scope(self._session_factory) as session:
                    alerts_sent += await self._dispatcher_factory(session).dispatch_outbox_entry(entry_id) or 0
            except Exception:
                logger.exception("Alert dispatch for outbox entry %s failed; left for retry", entry_id)

        logger.info(
            "Synced org=%s location=%s: fetched=%d new=%d alerts=%d",
            organization_id,
            location_id,
            len(raw_reviews),
            len(entry_ids),
            alerts_sent,
            extra={"organization_id": organization_id, "location_id": location_id},
        )
        return SyncResult(
            new_count=len(entry_ids),
            total_fetched=len(raw_reviews),
            alerts_sent=alerts_sent,
        )

    async def sync_organization(self, organization_id: str) -> dict[str, Any]:
        """Sync every active location of one organization.

        Errors propagate to the caller; this backs the on-demand sync route.
        """
        async with session_scope(self._session_factory) as session:
            locations = await LocationRepository(session, organization_id).list_active()
            targets = [(loc.id, loc.external_id) for loc in locations if loc.external_id]

        new_count = 0
        total_fetched = 0
        skipped = 0
        for location_id, external_id in targets:
            result = await self.sync_location(organization_id, location_id, external_id)
            new_count += result.new_count
            total_fetched += result.total_fetched
            skipped += int(result.skipped)
        return {
            "locations": len(targets),
            "new_count": new_count,
            "total_fetched": total_fetched,
            "skipped": skipped,
        }

    async def sync_all_once(self) -> dict[str, Any]:
        """Sync every syncable location of every organization.

        A failure for one location is logged and counted; the batch carries
        on with the rest.
        """
        async with session_scope(self._session_factory) as session:
            locations = await LocationRepository.list_sync_targets(session)
            targets = [(loc.organization_id, loc.id, loc.external_id) for loc in locations]

        new_count = 0
        failures = 0
        for organization_id, location_id, external_id in targets:
            try:
                result = await self.sync_location(organization_id, location_id, external_id)
            except Exception:
                logger.exception(
                    "Review sync failed for org=%s location=%s",
                    organization_id,
                    location_id,
                    extra={"organization_id": organization_id, "location_id": location_id},
                )
                failures += 1
                continue
            new_count += result.new_count

        summary = {
            "organizations": len({org for org, _, _ in targets}),
            "locations": len(targets),
            "new_count": new_count,
            "failures": failures,
        }
        logger.info("Sync-all complete: %s", summary)
        return summary
