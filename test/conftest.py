import asyncio
import base64
import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from database_manager import InMemorySessionStore  # noqa: E402
from judge_client import JudgeClient  # noqa: E402
from models import Question, Scorecard, TestCase  # noqa: E402
from session_manager import SessionLifecycleManager  # noqa: E402

START = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

JUDGE_STATUS_DESCRIPTIONS = {
    1: "In Queue",
    2: "Processing",
    3: "Accepted",
    4: "Wrong Answer",
    5: "Time Limit Exceeded",
    6: "Compilation Error",
    11: "Runtime Error (NZEC)",
}

SCORECARD = {
    "dimensions": {
        "problemSolving": {"score": 4, "evidence": "Explained the hash map idea", "reasoning": "Solid approach"},
        "codeQuality": {"score": 3, "evidence": "Single function", "reasoning": "Readable"},
        "communication": {"score": 4, "evidence": "Talked through edge cases", "reasoning": "Clear"},
        "debugging": {"score": 3, "evidence": "Fixed an off-by-one", "reasoning": "Methodical"},
    },
    "overallRecommendation": "Hire",
    "summary": "Candidate solved the problem with a clean linear-time approach.",
    "submissionComments": [{"submissionNumber": 1, "comment": "First working version"}],
}


def b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


class FakeClock:
    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


class FakeJudge0:
    """
    In-process Judge0 batch API.

    `program(schedule)` scripts the next submitted batch: `schedule[k]` is the
    list of status ids returned on the k-th lookup of that batch; the last
    entry repeats once the schedule runs out.
    """

    def __init__(self):
        self.batches: List[dict] = []
        self.schedules: Dict[int, List[List[int]]] = {}
        self.lookups: Dict[int, int] = {}
        self.pending_schedules: List[List[List[int]]] = []
        self.fail_next_lookups = 0
        self.garbled_next_lookups = 0
        self.garbled_submissions = False
        self.reject_submissions = False
        self.stderr_for_failures: Optional[str] = None
        self.requests: List[httpx.Request] = []

    def program(self, schedule: List[List[int]]):
        self.pending_schedules.append(schedule)

    def lookup_count(self, batch_index: int = 0) -> int:
        return self.lookups.get(batch_index, 0)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST":
            return self._submit(request)
        return self._lookup(request)

    def _submit(self, request: httpx.Request) -> httpx.Response:
        if self.reject_submissions:
            return httpx.Response(503, text="judge unavailable")
        if self.garbled_submissions:
            return httpx.Response(200, text="<html>gateway</html>")

        payload = json.loads(request.content)
        index = len(self.batches)
        self.batches.append(payload)
        count = len(payload["submissions"])
        self.schedules[index] = (
            self.pending_schedules.pop(0) if self.pending_schedules else [[3] * count]
        )
        return httpx.Response(201, json=[{"token": f"b{index}-t{i}"} for i in range(count)])

    def _lookup(self, request: httpx.Request) -> httpx.Response:
        if self.fail_next_lookups:
            self.fail_next_lookups -= 1
            return httpx.Response(500, text="lookup failed")
        if self.garbled_next_lookups:
            self.garbled_next_lookups -= 1
            return httpx.Response(200, text="<html>gateway</html>")

        tokens = request.url.params["tokens"].split(",")
        index = int(tokens[0].split("-")[0][1:])
        attempt = self.lookups.get(index, 0)
        self.lookups[index] = attempt + 1
        schedule = self.schedules[index]
        statuses = schedule[min(attempt, len(schedule) - 1)]
        items = self.batches[index]["submissions"]

        submissions = []
        for i, token in enumerate(tokens):
            status_id = statuses[i]
            expected = base64.b64decode(items[i]["expected_output"]).decode("utf-8")
            entry = {
                "token": token,
                "status": {"id": status_id, "description": JUDGE_STATUS_DESCRIPTIONS.get(status_id, "Error")},
                "stdout": None,
                "stderr": None,
                "message": None,
                "compile_output": None,
                "time": None,
                "memory": None,
            }
            if status_id == 3:
                entry.update(stdout=b64(expected), time="0.01", memory=3200)
            elif status_id > 3:
                entry.update(stdout=b64("wrong"), time="0.02", memory=3300)
                if self.stderr_for_failures:
                    entry["stderr"] = b64(self.stderr_for_failures)
            submissions.append(entry)
        return httpx.Response(200, json={"submissions": submissions})


class FakeEvaluator:
    def __init__(self, scorecard: Optional[dict] = None):
        self.scorecard = scorecard or SCORECARD
        self.payloads: List[dict] = []
        self.error: Optional[Exception] = None

    async def evaluate(self, payload: dict) -> Scorecard:
        self.payloads.append(payload)
        if self.error is not None:
            raise self.error
        return Scorecard.model_validate(self.scorecard)


async def no_sleep(_seconds: float):
    await asyncio.sleep(0)


class RecordingSleep:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)
        await asyncio.sleep(0)

    @property
    def total(self) -> float:
        return sum(self.calls)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def question() -> Question:
    return Question(
        id="q-1",
        question_uri="two-sum",
        title="Two Sum",
        difficulty="Easy",
        description_md="Return the indices of the two numbers that add up to the target.",
    )


@pytest.fixture
def test_cases() -> List[TestCase]:
    return [
        TestCase(id="tc-1", input="2 7 11 15\n9", expected_output="0 1"),
        TestCase(id="tc-2", input="3 2 4\n6", expected_output="1 2"),
        TestCase(id="tc-3", input="3 3\n6", expected_output="0 1"),
        TestCase(id="tc-4", input="1 5 9 13\n22", expected_output="2 3", hidden=True),
    ]


@pytest.fixture
def store(question, test_cases) -> InMemorySessionStore:
    store = InMemorySessionStore()
    store.add_user("user-1", credits=3, token="token-1")
    store.add_user("user-2", credits=0, token="token-2")
    store.add_question(question, test_cases)
    return store


@pytest.fixture
def fake_judge() -> FakeJudge0:
    return FakeJudge0()


@pytest.fixture
def judge_client(fake_judge) -> JudgeClient:
    return JudgeClient(
        base_url="https://judge.test",
        api_key="test-key",
        host="judge.test",
        transport=httpx.MockTransport(fake_judge.handler),
    )


@pytest.fixture
def evaluator() -> FakeEvaluator:
    return FakeEvaluator()


@pytest.fixture
def manager(store, judge_client, evaluator, clock) -> SessionLifecycleManager:
    return SessionLifecycleManager(
        store=store,
        judge=judge_client,
        evaluator=evaluator,
        clock=clock,
        enforce_deadline=False,
        poll_sleep=no_sleep,
    )


@pytest.fixture
def start_session():
    """Issue a creation token and create a session in one step."""

    async def _start(manager: SessionLifecycleManager, user_id: str = "user-1", question_uri: str = "two-sum"):
        token = await manager.issue_creation_token(user_id, question_uri)
        return await manager.create(token.session_id, question_uri, token, user_id)

    return _start


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()
