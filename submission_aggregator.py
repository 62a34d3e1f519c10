"""
Turns raw Judge0 batch results into per-test outcomes and persists exactly
one submission row per completed run.
"""

import base64
import binascii
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from config import Config
from errors import PersistenceError
from models import JudgeRun, JudgeStatus, RunPhase, Submission, TestCaseResult, TestOutcome

logger = logging.getLogger(__name__)

STDERR_TRUNCATION_MARKER = "...[truncated]"


# --- Status handling ---

def collapse_status(status_id: Optional[int]) -> TestOutcome:
    """Collapse a Judge0 status id into running, passed or failed."""
    if status_id is None or status_id <= JudgeStatus.PROCESSING:
        return TestOutcome.RUNNING
    if status_id == JudgeStatus.ACCEPTED:
        return TestOutcome.PASSED
    return TestOutcome.FAILED


def is_terminal(status_id: Optional[int]) -> bool:
    return collapse_status(status_id) is not TestOutcome.RUNNING


def status_id_of(raw: Dict[str, Any]) -> Optional[int]:
    status = raw.get("status") or {}
    try:
        return int(status.get("id"))
    except (TypeError, ValueError):
        return None


def all_terminal(raw_submissions: List[Dict[str, Any]]) -> bool:
    return bool(raw_submissions) and all(is_terminal(status_id_of(raw)) for raw in raw_submissions)


# --- Decoding ---

def decode_field(value: Optional[str]) -> Optional[str]:
    """Decode a base64 field from the judge into text."""
    if value is None:
        return None
    try:
        return base64.b64decode(value).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError) as e:
        logger.warning(f"Judge returned a field that is not valid base64: {e}")
        return value


def truncate_stderr(text: Optional[str], budget: int = Config.MAX_STDERR_LENGTH) -> Optional[str]:
    """
    Bound stderr to `budget` characters plus an explicit marker.

    Text that is already in truncated form (exactly budget characters followed
    by the marker) is returned as is, so applying this twice changes nothing.
    """
    if text is None or len(text) <= budget:
        return text
    if text.endswith(STDERR_TRUNCATION_MARKER) and len(text) == budget + len(STDERR_TRUNCATION_MARKER):
        return text
    return text[:budget] + STDERR_TRUNCATION_MARKER


def decode_submission(raw: Dict[str, Any], test_case_id: Optional[str] = None) -> TestCaseResult:
    status_id = status_id_of(raw)
    status = raw.get("status") or {}
    memory = raw.get("memory")
    return TestCaseResult(
        test_case_id=test_case_id,
        status_id=status_id or 0,
        status_description=status.get("description"),
        outcome=collapse_status(status_id),
        stdout=decode_field(raw.get("stdout")),
        stderr=truncate_stderr(decode_field(raw.get("stderr"))),
        message=decode_field(raw.get("message")),
        compile_output=decode_field(raw.get("compile_output")),
        time=str(raw["time"]) if raw.get("time") is not None else None,
        memory=int(memory) if isinstance(memory, (int, float)) else None,
    )


def decode_batch(raw_submissions: List[Dict[str, Any]], test_case_ids: Optional[List[str]] = None) -> List[TestCaseResult]:
    ids = test_case_ids or []
    return [
        decode_submission(raw, ids[idx] if idx < len(ids) else None)
        for idx, raw in enumerate(raw_submissions)
    ]


# --- Aggregation & persistence ---

class SubmissionAggregator:
    """Records poll attempts against a run and writes its submission once."""

    def __init__(self, store):
        self.store = store

    async def record(self, run: JudgeRun, raw_submissions: List[Dict[str, Any]]) -> List[TestCaseResult]:
        """
        Decode one poll attempt onto the run.

        The first attempt where every test case is terminal completes the run
        and persists it. Later calls for the same run never write again.
        """
        results = decode_batch(raw_submissions, run.test_case_ids)
        run.results = results

        if all_terminal(raw_submissions) and len(results) == run.test_case_count:
            if run.phase is RunPhase.RUNNING or run.phase is RunPhase.TIMED_OUT:
                run.phase = RunPhase.COMPLETED
                run.finished_at = datetime.now(timezone.utc)
                summary = run.summary()
                logger.info(
                    f"Run {run.run_id} for session {run.session_id} finished: "
                    f"{summary['passed']}/{summary['total']} passed"
                )
            await self.persist(run)

        return results

    async def persist(self, run: JudgeRun) -> bool:
        """Write the run's submission row. Returns True only when a new row was inserted."""
        if run.persisted:
            return False

        # Claimed before the await so a concurrent record() for this run skips the write
        run.persisted = True
        submission = Submission(
            id=str(uuid.uuid4()),
            run_id=run.run_id,
            session_id=run.session_id,
            user_id=run.user_id,
            question_id=run.question_id,
            language=run.language,
            code=run.code,
            elapsed_seconds=run.elapsed_seconds,
            per_test_results=run.results,
            created_at=datetime.now(timezone.utc),
        )

        try:
            inserted = await self.store.insert_submission(submission)
        except PersistenceError as e:
            run.persisted = False
            run.persist_error = str(e)
            logger.error(f"Failed to save submission for run {run.run_id} (session {run.session_id}): {e}")
            return False

        run.persist_error = None
        if not inserted:
            logger.info(f"Submission for run {run.run_id} already stored, skipping duplicate")
        return inserted
