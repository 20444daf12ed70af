from __future__ import annotations

import logging
import uuid
from collections import Counter
from functools import lru_cache
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import File, FileStatus, Submission, SubmissionStatus
from files.state_machine import TERMINAL_STATES, FileStateMachine
from metrics.metrics_service import MetricsService, get_metrics_service

logger = logging.getLogger(__name__)


def derive_submission_status(statuses: Iterable[FileStatus]) -> SubmissionStatus:
    counts = Counter(statuses)
    total = sum(counts.values())
    if total == 0:
        return SubmissionStatus.PENDING
    if counts[FileStatus.PROCESSED] == total:
        return SubmissionStatus.PROCESSED
    if counts[FileStatus.FAILED] == total:
        return SubmissionStatus.FAILED
    if sum(counts[s] for s in TERMINAL_STATES) == total:
        # every file is done but results are mixed
        return SubmissionStatus.PARTIALLY_FAILED
    if counts[FileStatus.UPLOADED] < total:
        return SubmissionStatus.PROCESSING
    return SubmissionStatus.PENDING


def locked_submission(submission_id: uuid.UUID):
    # serialises recomputes of one submission; sibling files are read after the lock is granted
    return (
        select(Submission)
        .where(Submission.id == submission_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


class SubmissionAggregator:
    """
    Recomputes a submission's counters, status and metrics from current file state.

    Always a full recompute under the submission row lock, so concurrent file outcomes
    serialise and the last one sees every sibling's committed status.
    """

    def __init__(self, metrics: Optional[MetricsService] = None) -> None:
        self.metrics = metrics or get_metrics_service()

    async def on_file_transition(self, session: AsyncSession, file: File) -> None:
        await self.recompute(session, file.submission_id)

    async def recompute(self, session: AsyncSession, submission_id: uuid.UUID) -> Submission:
        submission = (await session.execute(locked_submission(submission_id))).scalar_one()
        statuses = [
            FileStatus(s)
            for s in (await session.execute(select(File.status).where(File.submission_id == submission_id))).scalars()
        ]
        previous = submission.status
        submission.files_processed = sum(1 for s in statuses if s in TERMINAL_STATES)
        submission.status = derive_submission_status(statuses).value
        await session.flush()
        await self.metrics.rebuild(session, submission_id)

        if previous != submission.status:
            logger.info(
                "Submission status changed",
                extra={
                    "submission_id": str(submission_id),
                    "from_status": previous,
                    "to_status": submission.status,
                    "files_processed": submission.files_processed,
                    "files_total": submission.files_total,
                },
            )
        return submission


@lru_cache(maxsize=1)
def get_aggregator() -> SubmissionAggregator:
    return SubmissionAggregator()


@lru_cache(maxsize=1)
def get_state_machine() -> FileStateMachine:
    """State machine wired to recompute the owning submission on every transition."""
    return FileStateMachine(handlers=[get_aggregator().on_file_transition])
