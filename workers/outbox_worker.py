from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from db.models import DispatchOutcome, utcnow
from db.postgres import get_session_factory
from dispatch.dispatcher import CLASSIFICATION, EXTRACTION, Dispatcher
from dispatch.enqueue import get_classification_dispatcher, get_extraction_dispatcher
from dispatch.outbox_repo import OutboxRepo
from settings.config import settings

logger = logging.getLogger(__name__)


def _dispatchers() -> Dict[str, Dispatcher]:
    return {
        CLASSIFICATION: get_classification_dispatcher(),
        EXTRACTION: get_extraction_dispatcher(),
    }


async def redeliver_pending_dispatches(
    ctx: dict[str, Any],
    batch_size: int = 100,
    dispatchers: Optional[Dict[str, Dispatcher]] = None,
) -> dict:
    """
    Re-send outbox rows that were recorded but never delivered (the process died between
    the commit and the POST). Each row keeps its own attempt budget.
    """
    if dispatchers is None:
        dispatchers = _dispatchers()
    cutoff = utcnow() - timedelta(seconds=settings.DISPATCH_REDELIVERY_GRACE_SECONDS)
    session_factory = get_session_factory()

    async with session_factory() as session:
        pending = await OutboxRepo(session).pending(cutoff, limit=batch_size)
        await session.commit()

    outcomes: Dict[str, int] = {}
    for outbox_id, kind in pending:
        dispatcher = dispatchers.get(kind)
        if dispatcher is None:
            logger.error("Outbox row has unknown kind", extra={"outbox_id": outbox_id, "kind": kind})
            continue
        async with session_factory() as session:
            outcome = await dispatcher.deliver(session, outbox_id)
        outcomes[outcome.value] = outcomes.get(outcome.value, 0) + 1

    if pending:
        logger.info("Pending dispatches redelivered", extra={"count": len(pending), "outcomes": outcomes})
    return {"redelivered": len(pending), "outcomes": outcomes, "reached": outcomes.get(DispatchOutcome.REACHED.value, 0)}
