"""
Session lifecycle manager.

Owns the `in_progress -> completed | abandoned` state machine. Every terminal
transition is a conditional update on `status == in_progress`, so whichever
of abandon, complete or the deadline timer writes first wins and the others
no-op. Judge runs, creation tokens, deadline timers and auto-submit drafts
are process-local; the session row is the only shared state.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from config import Config
from errors import (
    AuthorizationError,
    InsufficientCreditsError,
    NotFoundError,
    PersistenceError,
    PollTimeoutError,
    SessionClosedError,
    SessionError,
    UpstreamServiceError,
    ValidationError,
)
from judge_client import JudgeClient, RunRegistry, language_id
from models import (
    JudgeRun,
    RunPhase,
    Session,
    SessionCreationToken,
    SessionDraft,
    SessionStatus,
    StarterCode,
    Visibility,
)
from report_aggregator import EvaluationService, ReportAggregator, ReportRequest
from session_timer import SessionTimer, timer_view, utc_now
from submission_aggregator import SubmissionAggregator
from transcript_service import format_duration, format_transcript

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def to_epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


# =============================================================================
# CREATION TOKENS
# =============================================================================

@dataclass
class IssuedToken:
    session_id: str
    user_id: str
    question_id: str
    issued_at_ms: int


class CreationTokenStore:
    """
    Single-use creation tokens, keyed by the session id they were minted for.

    A token is popped as soon as a create uses it. It is put back only when
    the create failed for a transient reason (store or network error).
    """

    def __init__(self, clock: Clock = utc_now, ttl_ms: int = Config.CREATION_TOKEN_TTL_MS):
        self._clock = clock
        self.ttl_ms = ttl_ms
        self._issued: Dict[str, IssuedToken] = {}

    def now_ms(self) -> int:
        return to_epoch_ms(self._clock())

    def issue(self, user_id: str, question_id: str) -> SessionCreationToken:
        issued = IssuedToken(
            session_id=str(uuid.uuid4()),
            user_id=user_id,
            question_id=question_id,
            issued_at_ms=self.now_ms(),
        )
        self._issued[issued.session_id] = issued
        return SessionCreationToken(session_id=issued.session_id, issued_at_ms=issued.issued_at_ms)

    def consume(self, token: SessionCreationToken, user_id: str) -> IssuedToken:
        issued = self._issued.pop(token.session_id, None)
        if issued is None:
            raise ValidationError("Session creation token is invalid or was already used")
        if issued.user_id != user_id or issued.issued_at_ms != token.issued_at_ms:
            # Not the holder's token; leave it for its rightful owner
            self._issued[issued.session_id] = issued
            raise ValidationError("Session creation token is invalid or was already used")
        if self.now_ms() - issued.issued_at_ms > self.ttl_ms:
            raise ValidationError("Session creation token has expired")
        return issued

    def restore(self, issued: IssuedToken):
        self._issued.setdefault(issued.session_id, issued)

    def cleanup_expired(self) -> int:
        now_ms = self.now_ms()
        expired = [sid for sid, t in self._issued.items() if now_ms - t.issued_at_ms > self.ttl_ms]
        for sid in expired:
            self._issued.pop(sid, None)
        return len(expired)

    def __len__(self):
        return len(self._issued)


# =============================================================================
# LIFECYCLE MANAGER
# =============================================================================

class SessionLifecycleManager:
    def __init__(
        self,
        store,
        judge: JudgeClient,
        evaluator: EvaluationService,
        clock: Clock = utc_now,
        duration_minutes: float = Config.SESSION_DURATION_MINUTES,
        enforce_deadline: bool = True,
        auto_submit: bool = True,
        timer_tick_seconds: float = 1.0,
        timer_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        poll_interval: float = Config.POLL_INTERVAL_SECONDS,
        poll_max_attempts: int = Config.POLL_MAX_ATTEMPTS,
        poll_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.judge = judge
        self.clock = clock
        self.duration_minutes = duration_minutes
        self.enforce_deadline = enforce_deadline
        self.auto_submit = auto_submit
        self.timer_tick_seconds = timer_tick_seconds
        self.timer_sleep = timer_sleep
        self.poll_interval = poll_interval
        self.poll_max_attempts = poll_max_attempts
        self.poll_sleep = poll_sleep

        self.tokens = CreationTokenStore(clock=clock)
        self.runs = RunRegistry()
        self.aggregator = SubmissionAggregator(store)
        self.reports = ReportAggregator(store, evaluator, clock=clock)

        self._timers: Dict[str, Tuple[SessionTimer, asyncio.Task]] = {}
        self._drafts: Dict[str, SessionDraft] = {}
        self._poll_tasks: Dict[str, asyncio.Task] = {}

    # --- Lookups ---

    async def _load_owned(self, session_id: str, user_id: str) -> Session:
        if not session_id:
            raise ValidationError("sessionId is required")
        session = await self.store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        if session.user_id != user_id:
            raise AuthorizationError(f"Session {session_id} not found or unauthorized")
        return session

    async def _load_in_progress(self, session_id: str, user_id: str) -> Session:
        session = await self._load_owned(session_id, user_id)
        if session.status.is_terminal:
            raise SessionClosedError(session.id, session.status.value)
        return session

    # --- Start flow ---

    async def issue_creation_token(self, user_id: str, question_uri: str) -> SessionCreationToken:
        question = await self.store.get_question_by_uri(question_uri)
        if question is None:
            raise NotFoundError(f"Question {question_uri} not found")

        credits = await self.store.get_credits(user_id)
        if credits < Config.SESSION_CREDIT_COST:
            raise InsufficientCreditsError("Not enough credits to start a session")

        token = self.tokens.issue(user_id, question.id)
        logger.info(f"Issued creation token for session {token.session_id} (user {user_id}, question {question_uri})")
        return token

    async def create(
        self,
        session_id: str,
        question_uri: str,
        creation_token: SessionCreationToken,
        user_id: str,
    ) -> Session:
        """
        Create the session row, debiting one credit atomically.

        Raises:
            ValidationError: token missing, expired, consumed or for another session
            NotFoundError: unknown question
            InsufficientCreditsError: nothing was inserted or debited
            ConflictError: the session id already exists
        """
        if not session_id or not question_uri:
            raise ValidationError("sessionId and questionUri are required")
        if creation_token.session_id != session_id:
            raise ValidationError("Session creation token does not match this session")

        issued = self.tokens.consume(creation_token, user_id)

        question = await self.store.get_question_by_uri(question_uri)
        if question is None or question.id != issued.question_id:
            self.tokens.restore(issued)
            raise NotFoundError(f"Question {question_uri} not found")

        session = Session(
            id=session_id,
            user_id=user_id,
            question_id=question.id,
            status=SessionStatus.IN_PROGRESS,
            started_at=self.clock(),
        )

        try:
            created = await self.store.create_session(session, Config.SESSION_CREDIT_COST)
        except (PersistenceError, UpstreamServiceError):
            self.tokens.restore(issued)
            raise

        logger.info(f"Session {created.id} started for user {user_id} on {question_uri}")
        self._attach_timer(created)
        return created

    async def validate(self, session_id: str, user_id: str) -> Dict[str, Any]:
        """
        Check that the caller may resume this session.

        Raises SessionClosedError for completed or abandoned sessions so the
        caller can send the candidate away.
        """
        session = await self._load_in_progress(session_id, user_id)
        self._attach_timer(session)
        return {
            "status": session.status.value,
            "started_at": session.started_at,
            "question_id": session.question_id,
        }

    # --- Terminal transitions ---

    async def abandon(self, session_id: str, user_id: str) -> bool:
        """Mark an in-progress session abandoned. Any other status is left as is."""
        session = await self._load_owned(session_id, user_id)
        if session.status.is_terminal:
            logger.info(f"Ignoring abandon for session {session_id}: already {session.status.value}")
            return False

        applied = await self.store.conditional_update(
            session_id,
            SessionStatus.IN_PROGRESS,
            {"status": SessionStatus.ABANDONED, "ended_at": self.clock()},
        )
        if applied:
            logger.info(f"Session {session_id} abandoned")
            self._release(session_id)
        else:
            logger.info(f"Abandon for session {session_id} lost the race, status unchanged")
        return applied

    async def complete(self, session_id: str, user_id: str, request: ReportRequest) -> Dict[str, Any]:
        """Evaluate and close the session. Already closed sessions return their stored state."""
        session = await self._load_owned(session_id, user_id)
        if session.status.is_terminal:
            events = session.events or {}
            logger.info(f"Session {session_id} already {session.status.value}, skipping report")
            return {
                "success": True,
                "applied": False,
                "sessionId": session_id,
                "status": session.status.value,
                "scorecard": events.get("scorecard"),
            }

        result = await self.reports.finalize(session, request)
        if result["applied"]:
            self._release(session_id)
        return result

    # --- Deadline timer ---

    def _attach_timer(self, session: Session):
        if not self.enforce_deadline or session.id in self._timers:
            return

        session_id, user_id = session.id, session.user_id
        timer = SessionTimer(
            session.started_at,
            on_expired=lambda: self._on_deadline(session_id, user_id),
            duration_minutes=self.duration_minutes,
            clock=self.clock,
            tick_interval=self.timer_tick_seconds,
        )
        task = asyncio.create_task(timer.run(sleep=self.timer_sleep))
        self._timers[session_id] = (timer, task)
        task.add_done_callback(lambda t: self._forget_timer(session_id, t))
        logger.info(f"Deadline timer attached to session {session_id} ({int(timer.remaining)}s left)")

    def _forget_timer(self, session_id: str, task: asyncio.Task):
        entry = self._timers.get(session_id)
        if entry and entry[1] is task:
            self._timers.pop(session_id, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Deadline timer for session {session_id} crashed: {task.exception()}")

    def timer_task(self, session_id: str) -> Optional[asyncio.Task]:
        entry = self._timers.get(session_id)
        return entry[1] if entry else None

    def _stop_timer(self, session_id: str):
        entry = self._timers.pop(session_id, None)
        if entry is None:
            return
        timer, task = entry
        timer.stop()
        # A fired timer is awaiting its own auto-submit and exits by itself
        if not timer.has_fired and not task.done():
            task.cancel()

    def _release(self, session_id: str):
        self._stop_timer(session_id)
        self._drafts.pop(session_id, None)
        self.runs.forget_session(session_id)

    async def _on_deadline(self, session_id: str, user_id: str):
        logger.info(f"Session {session_id} reached its deadline")
        if not self.auto_submit:
            return

        draft = self._drafts.get(session_id) or SessionDraft()
        request = ReportRequest(
            session_id=session_id,
            transcript=format_transcript(draft.transcript_items),
            final_code=draft.code,
            language=draft.language,
            duration=format_duration(draft.transcript_items, to_epoch_ms(self.clock())),
            test_results=draft.test_results,
        )
        try:
            await self.complete(session_id, user_id, request)
            logger.info(f"Auto-submitted session {session_id} at deadline")
        except SessionError as e:
            # Session stays in progress; the client can still submit the report
            logger.error(f"Auto-submit failed for session {session_id}: {e.message}")

    async def save_draft(self, session_id: str, user_id: str, draft: SessionDraft):
        await self._load_in_progress(session_id, user_id)
        self._drafts[session_id] = draft

    def get_draft(self, session_id: str) -> Optional[SessionDraft]:
        return self._drafts.get(session_id)

    async def timer_view(self, session_id: str, user_id: str) -> Dict[str, Any]:
        session = await self._load_owned(session_id, user_id)
        view = timer_view(session.started_at, self.duration_minutes, self.clock())
        view["status"] = session.status.value
        view["startedAt"] = session.started_at.isoformat()
        return view

    # --- Code runs ---

    async def run_code(
        self,
        session_id: str,
        user_id: str,
        code: str,
        language: str,
        starter: Optional[StarterCode] = None,
    ) -> Dict[str, Any]:
        """Submit the code against every test case and poll the judge in the background."""
        if not code or not code.strip():
            raise ValidationError("Code cannot be empty")
        if len(code) > Config.MAX_CODE_LENGTH:
            raise ValidationError(f"Code exceeds {Config.MAX_CODE_LENGTH} characters")
        language_id(language)

        session = await self._load_in_progress(session_id, user_id)
        test_cases = await self.store.get_test_cases(session.question_id)
        if not test_cases:
            raise ValidationError(f"No test cases configured for session {session_id}")

        batch = await self.judge.submit(code, language, test_cases, starter)
        now = self.clock()
        started_at = session.started_at if session.started_at.tzinfo else session.started_at.replace(tzinfo=timezone.utc)
        run = JudgeRun(
            run_id=str(uuid.uuid4()),
            session_id=session.id,
            user_id=user_id,
            question_id=session.question_id,
            language=language.lower(),
            code=code,
            tokens=batch.tokens,
            test_case_count=batch.test_case_count,
            submitted_at=now,
            elapsed_seconds=max(0, int((now - started_at).total_seconds())),
            test_case_ids=[tc.id for tc in test_cases],
        )
        self.runs.start(run)

        task = asyncio.create_task(self._poll_run(run))
        self._poll_tasks[run.run_id] = task

        logger.info(f"Run {run.run_id} started for session {session_id} with {run.test_case_count} test cases")
        return self.run_snapshot(run)

    async def _poll_run(self, run: JudgeRun):
        async def on_progress(attempt: int, submissions: List[Dict[str, Any]]):
            run.attempts = attempt
            results = await self.aggregator.record(run, submissions)
            self.runs.publish(run, results)

        try:
            outcome = await self.judge.poll(
                run.tokens,
                on_progress=on_progress,
                interval=self.poll_interval,
                max_attempts=self.poll_max_attempts,
                sleep=self.poll_sleep,
            )
        except Exception as e:
            run.phase = RunPhase.FAILED
            run.last_error = str(e)
            run.finished_at = datetime.now(timezone.utc)
            logger.error(f"Polling failed for run {run.run_id} (session {run.session_id}): {e}")
            return

        run.attempts = outcome.attempts
        run.last_error = outcome.last_error
        if outcome.timed_out and run.phase is RunPhase.RUNNING:
            timeout = PollTimeoutError(
                f"Judge results not final after {outcome.attempts} attempts", details=outcome.last_error
            )
            run.phase = RunPhase.TIMED_OUT
            run.last_error = timeout.message
            run.finished_at = datetime.now(timezone.utc)
            logger.warning(f"Run {run.run_id}: {timeout.message}, keeping partial results ({timeout.details or 'no lookup errors'})")

    def poll_task(self, run_id: str) -> Optional[asyncio.Task]:
        return self._poll_tasks.get(run_id)

    def _owned_run(self, run_id: str, user_id: str) -> JudgeRun:
        run = self.runs.get(run_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found")
        if run.user_id != user_id:
            raise AuthorizationError(f"Run {run_id} not found or unauthorized")
        return run

    async def get_run(self, run_id: str, user_id: str) -> Dict[str, Any]:
        return self.run_snapshot(self._owned_run(run_id, user_id))

    async def refresh_run(self, run_id: str, user_id: str) -> Dict[str, Any]:
        """One immediate poll attempt. Never writes a second submission for the run."""
        run = self._owned_run(run_id, user_id)
        if run.phase is RunPhase.COMPLETED and run.persisted:
            return self.run_snapshot(run)

        try:
            submissions = await self.judge.get_batch(run.tokens)
        except UpstreamServiceError as e:
            run.last_error = e.message
            logger.warning(f"Refresh of run {run.run_id} failed, keeping previous results: {e.message}")
            return self.run_snapshot(run)
        results = await self.aggregator.record(run, submissions)
        self.runs.publish(run, results)
        return self.run_snapshot(run)

    def run_snapshot(self, run: JudgeRun) -> Dict[str, Any]:
        return {
            "runId": run.run_id,
            "sessionId": run.session_id,
            "phase": run.phase.value,
            "isCurrent": self.runs.is_current(run),
            "timedOut": run.phase is RunPhase.TIMED_OUT,
            "attempts": run.attempts,
            "summary": run.summary(),
            "results": [r.to_client() for r in run.results],
            "persisted": run.persisted,
            "persistError": run.persist_error,
            "lastError": run.last_error,
        }

    def latest_results(self, session_id: str) -> List[Dict[str, Any]]:
        return [r.to_client() for r in self.runs.latest_results(session_id)]

    # --- Dashboard and reports ---

    async def list_test_cases(self, question_uri: str) -> List[Dict[str, Any]]:
        question = await self.store.get_question_by_uri(question_uri)
        if question is None:
            raise NotFoundError(f"Question {question_uri} not found")
        return [tc.to_client() for tc in await self.store.get_test_cases(question.id)]

    async def credits(self, user_id: str) -> int:
        return await self.store.get_credits(user_id)

    async def list_sessions(self, user_id: str) -> List[Dict[str, Any]]:
        sessions = await self.store.list_sessions(user_id)
        titles: Dict[str, str] = {}
        rows = []
        for session in sessions:
            if session.question_id not in titles:
                question = await self.store.get_question(session.question_id)
                titles[session.question_id] = question.title if question else ""
            scorecard = (session.events or {}).get("scorecard") or {}
            rows.append({
                "id": session.id,
                "questionId": session.question_id,
                "questionTitle": titles[session.question_id],
                "status": session.status.value,
                "visibility": session.visibility.value,
                "startedAt": session.started_at.isoformat(),
                "endedAt": session.ended_at.isoformat() if session.ended_at else None,
                "overallRecommendation": scorecard.get("overallRecommendation"),
            })
        return rows

    async def set_visibility(self, session_id: str, user_id: str, visibility: Visibility) -> Visibility:
        await self._load_owned(session_id, user_id)
        if not await self.store.update_visibility(session_id, visibility):
            raise NotFoundError(f"Session {session_id} not found")
        logger.info(f"Session {session_id} visibility set to {visibility.value}")
        return visibility

    async def get_report(self, session_id: str, user_id: Optional[str]) -> Dict[str, Any]:
        """Stored report. Private reports are only readable by their owner."""
        session = await self.store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        if session.visibility is Visibility.PRIVATE and session.user_id != user_id:
            raise AuthorizationError(f"Session {session_id} not found or unauthorized")

        events = session.events or {}
        if not events.get("scorecard"):
            raise NotFoundError(f"No report available for session {session_id}")

        question = await self.store.get_question(session.question_id)
        return {
            "sessionId": session.id,
            "status": session.status.value,
            "visibility": session.visibility.value,
            "question": question.model_dump() if question else None,
            "startedAt": session.started_at.isoformat(),
            "endedAt": session.ended_at.isoformat() if session.ended_at else None,
            "finalCode": session.final_code,
            "transcript": (session.transcript or {}).get("items"),
            "scorecard": events.get("scorecard"),
            "testResults": events.get("testResults", []),
        }

    # --- Housekeeping ---

    def cleanup(self) -> Dict[str, int]:
        for run_id, task in list(self._poll_tasks.items()):
            if task.done():
                self._poll_tasks.pop(run_id, None)
        return {
            "expired_tokens": self.tokens.cleanup_expired(),
            "finished_runs": self.runs.cleanup_finished(),
        }

    async def shutdown(self):
        tasks = [task for _, task in self._timers.values()]
        tasks += [task for task in self._poll_tasks.values() if not task.done()]
        for _, (timer, _task) in list(self._timers.items()):
            timer.stop()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._timers.clear()
        self._poll_tasks.clear()
        logger.info(f"Session manager stopped ({len(tasks)} background tasks cancelled)")
