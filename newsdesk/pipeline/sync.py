"""Outbox drain: replays actions recorded while offline."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from newsdesk.connectors.base import NetworkGateway
from newsdesk.errors import AuthInvalid
from newsdesk.storage.db import ArticleStore
from newsdesk.storage.models import ActionStatus, OutboxAction

logger = logging.getLogger(__name__)


@dataclass
class SyncSummary:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: bool = False
    failed_ids: List[int] = field(default_factory=list)
    duration_seconds: float = 0.0


class SyncQueueProcessor:
    """Submit pending outbox actions one by one, isolating failures per action.

    Failed actions stay ``failed``; nothing here resets them to pending.
    ``AuthInvalid`` stops the drain and leaves the current action and the
    rest of the queue pending.
    """

    def __init__(self, store: ArticleStore, gateway: Optional[NetworkGateway]):
        self.store = store
        self.gateway = gateway
        self._draining = False

    @property
    def draining(self) -> bool:
        return self._draining

    async def drain(self, online: bool = True) -> SyncSummary:
        if not online or self.gateway is None:
            logger.info("Skipping sync: offline")
            return SyncSummary(skipped=True)
        if self._draining:
            logger.info("Skipping sync: drain already in progress")
            return SyncSummary(skipped=True)

        self._draining = True
        start = time.monotonic()
        summary = SyncSummary()
        try:
            pending = await self.store.list_pending()
            logger.info("Syncing %d pending actions", len(pending))
            for action in pending:
                summary.processed += 1
                if await self._submit(action):
                    summary.succeeded += 1
                else:
                    summary.failed += 1
                    summary.failed_ids.append(action.id)
        finally:
            self._draining = False

        summary.duration_seconds = time.monotonic() - start
        logger.info(
            "Sync complete: %d processed, %d succeeded, %d failed (%.1fs)",
            summary.processed, summary.succeeded, summary.failed, summary.duration_seconds,
        )
        return summary

    async def _submit(self, action: OutboxAction) -> bool:
        assert self.gateway is not None
        try:
            await self.gateway.submit_action(action)
        except AuthInvalid:
            logger.error("Sync stopped at action #%d: credentials rejected", action.id)
            raise
        except Exception as e:
            logger.error("Failed to sync action #%d (%s): %s", action.id, action.type, e)
            await self.store.set_status(action.id, ActionStatus.FAILED)
            return False
        await self.store.set_status(action.id, ActionStatus.COMPLETED)
        return True

    async def record(self, action_type: str, payload: Dict[str, Any], online: bool = True) -> bool:
        """Submit an action now when online, otherwise queue it for the next drain.

        Returns True when the action was either delivered or queued. Raises
        ``AuthInvalid`` without queueing when the credentials are rejected.
        """
        if online and self.gateway is not None:
            action = OutboxAction(id=0, type=action_type, payload=payload)
            try:
                await self.gateway.submit_action(action)
                return True
            except AuthInvalid:
                raise
            except Exception as e:
                logger.warning("Direct submit of %s failed, queueing: %s", action_type, e)

        action_id = await self.store.enqueue_action(action_type, payload)
        if action_id is None:
            logger.warning("Could not queue %s action", action_type)
            return False
        logger.info("Queued %s action #%d", action_type, action_id)
        return True
