import asyncio
import base64
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from config import Config
from errors import UpstreamServiceError, ValidationError
from models import JudgeRun, StarterCode, TestCase, TestCaseResult
from submission_aggregator import all_terminal

logger = logging.getLogger(__name__)

# -------------------
# Judge0 API configuration
# -------------------
SUBMISSION_FIELDS = "token,status,stdout,stderr,message,compile_output,time,memory"

ProgressCallback = Callable[[int, List[Dict[str, Any]]], Any]


def to_base64(text: str) -> str:
    return base64.b64encode((text or "").encode("utf-8")).decode("ascii")


def build_source(code: str, starter: Optional[StarterCode] = None) -> str:
    """Final executable source: preamble, candidate code, harness."""
    parts = [starter.imports if starter else None, code, starter.main if starter else None]
    return "\n".join(part for part in parts if part)


def language_id(language: str) -> int:
    judge_id = Config.LANGUAGES.get((language or "").lower())
    if not judge_id:
        raise ValidationError(f"Unsupported language: {language}")
    return judge_id


@dataclass
class JudgeBatch:
    tokens: List[str]
    test_case_count: int


@dataclass
class PollOutcome:
    """Result of a bounded poll loop. `timed_out` means partial results."""

    submissions: List[Dict[str, Any]] = field(default_factory=list)
    attempts: int = 0
    all_terminal: bool = False
    timed_out: bool = False
    last_error: Optional[str] = None


class JudgeClient:
    """Async client for the Judge0 batch API."""

    def __init__(
        self,
        base_url: str = Config.JUDGE0_URL,
        api_key: str = Config.JUDGE0_API_KEY,
        host: str = Config.JUDGE0_HOST,
        timeout: float = Config.JUDGE0_REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["X-RapidAPI-Key"] = api_key
            headers["X-RapidAPI-Host"] = host
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self):
        await self._client.aclose()

    async def submit(
        self,
        code: str,
        language: str,
        test_cases: List[TestCase],
        starter: Optional[StarterCode] = None,
    ) -> JudgeBatch:
        """
        Send one batch with a sub-submission per test case.

        Test cases are never embedded in the source: each one travels as its
        own stdin/expected output pair.
        """
        if not test_cases:
            raise ValidationError("No test cases to run")

        judge_id = language_id(language)
        source = to_base64(build_source(code, starter))
        payload = {
            "submissions": [
                {
                    "language_id": judge_id,
                    "source_code": source,
                    "stdin": to_base64(tc.input),
                    "expected_output": to_base64(tc.expected_output),
                    "cpu_time_limit": Config.CPU_TIME_LIMIT,
                }
                for tc in test_cases
            ]
        }

        try:
            response = await self._client.post(
                "/submissions/batch",
                params={"base64_encoded": "true"},
                json=payload,
            )
        except httpx.HTTPError as e:
            raise UpstreamServiceError("Judge0 unreachable", details=str(e)) from e

        if response.status_code not in (200, 201):
            raise UpstreamServiceError(
                f"Judge0 rejected the batch ({response.status_code})", details=response.text[:500]
            )

        try:
            data = response.json()
            tokens = [item.get("token") for item in data] if isinstance(data, list) else []
        except (ValueError, AttributeError, TypeError) as e:
            raise UpstreamServiceError("Judge0 returned an unreadable batch response", details=response.text[:500]) from e
        if len(tokens) != len(test_cases) or not all(tokens):
            raise UpstreamServiceError("Judge0 batch response is missing tokens", details=str(data)[:500])

        logger.info(f"Submitted batch of {len(tokens)} test cases to Judge0")
        return JudgeBatch(tokens=tokens, test_case_count=len(test_cases))

    async def get_batch(self, tokens: List[str]) -> List[Dict[str, Any]]:
        """Fetch the current status of every token in one request."""
        try:
            response = await self._client.get(
                "/submissions/batch",
                params={
                    "tokens": ",".join(tokens),
                    "base64_encoded": "true",
                    "fields": SUBMISSION_FIELDS,
                },
            )
        except httpx.HTTPError as e:
            raise UpstreamServiceError("Judge0 unreachable", details=str(e)) from e

        if response.status_code != 200:
            raise UpstreamServiceError(
                f"Judge0 batch lookup failed ({response.status_code})", details=response.text[:500]
            )

        try:
            submissions = response.json().get("submissions") or []
            return [dict(sub or {}) for sub in submissions]
        except (ValueError, AttributeError, TypeError) as e:
            raise UpstreamServiceError("Judge0 returned an unreadable batch lookup", details=response.text[:500]) from e

    async def poll(
        self,
        tokens: List[str],
        on_progress: Optional[ProgressCallback] = None,
        interval: float = Config.POLL_INTERVAL_SECONDS,
        max_attempts: int = Config.POLL_MAX_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> PollOutcome:
        """
        Bounded retry loop over `get_batch`.

        Every attempt waits `interval` seconds first, so the loop never runs
        longer than roughly `max_attempts * interval`. Partial results are
        handed to `on_progress` after each successful attempt. A failed fetch
        uses up its attempt and is reported on the outcome instead of raised.
        """
        outcome = PollOutcome()

        for attempt in range(1, max_attempts + 1):
            await sleep(interval)
            outcome.attempts = attempt

            try:
                submissions = await self.get_batch(tokens)
            except UpstreamServiceError as e:
                outcome.last_error = e.message
                logger.warning(f"Poll attempt {attempt}/{max_attempts} failed: {e.message}")
                continue

            outcome.submissions = submissions
            if on_progress is not None:
                result = on_progress(attempt, submissions)
                if inspect.isawaitable(result):
                    await result

            if len(submissions) == len(tokens) and all_terminal(submissions):
                outcome.all_terminal = True
                return outcome

        outcome.timed_out = True
        logger.warning(f"Polling gave up after {max_attempts} attempts, returning partial results")
        return outcome


class RunRegistry:
    """
    In-memory registry of judge runs.

    Starting a run makes it the session's current run. Results published for
    any other run are dropped from the session view, so a slow older run can
    never overwrite a newer one.
    """

    def __init__(self):
        self._runs: Dict[str, JudgeRun] = {}
        self._current: Dict[str, str] = {}
        self._latest_results: Dict[str, List[TestCaseResult]] = {}

    def start(self, run: JudgeRun) -> Optional[str]:
        previous = self._current.get(run.session_id)
        self._runs[run.run_id] = run
        self._current[run.session_id] = run.run_id
        self._latest_results[run.session_id] = []
        if previous:
            logger.info(f"Run {run.run_id} supersedes run {previous} for session {run.session_id}")
        return previous

    def get(self, run_id: str) -> Optional[JudgeRun]:
        return self._runs.get(run_id)

    def current(self, session_id: str) -> Optional[JudgeRun]:
        run_id = self._current.get(session_id)
        return self._runs.get(run_id) if run_id else None

    def is_current(self, run: JudgeRun) -> bool:
        return self._current.get(run.session_id) == run.run_id

    def publish(self, run: JudgeRun, results: List[TestCaseResult]) -> bool:
        """Expose results as the session's latest view. Stale runs are discarded."""
        if not self.is_current(run):
            logger.info(f"Discarding results of stale run {run.run_id} for session {run.session_id}")
            return False
        self._latest_results[run.session_id] = list(results)
        return True

    def latest_results(self, session_id: str) -> List[TestCaseResult]:
        return list(self._latest_results.get(session_id, []))

    def forget_session(self, session_id: str):
        """Drop the session's current-run pointer and view. Its runs age out through cleanup_finished."""
        self._current.pop(session_id, None)
        self._latest_results.pop(session_id, None)

    def cleanup_finished(self, max_age_seconds: float = Config.FINISHED_RUN_TTL_SECONDS) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=max_age_seconds)
        removed = 0
        for run_id, run in list(self._runs.items()):
            if run.is_finished and run.finished_at and run.finished_at <= cutoff and not self.is_current(run):
                self._runs.pop(run_id, None)
                removed += 1
        return removed
