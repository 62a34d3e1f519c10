import base64
import json
from datetime import datetime, timezone

import pytest

from errors import UpstreamServiceError, ValidationError
from judge_client import RunRegistry, build_source, language_id
from models import JudgeRun, RunPhase, StarterCode, TestCaseResult, TestOutcome


def decode(value):
    return base64.b64decode(value).decode("utf-8")


def make_run(run_id, session_id="session-1"):
    return JudgeRun(
        run_id=run_id,
        session_id=session_id,
        user_id="user-1",
        question_id="q-1",
        language="python",
        code="pass",
        tokens=["t0"],
        test_case_count=1,
        submitted_at=datetime(2025, 3, 1, tzinfo=timezone.utc),
    )


def passed_result(test_case_id="tc-1"):
    return TestCaseResult(test_case_id=test_case_id, status_id=3, outcome=TestOutcome.PASSED)


def test_build_source_wraps_code_with_starter():
    starter = StarterCode(imports="import sys", main="if __name__ == '__main__':\n    solve()")
    assert build_source("def solve():\n    pass", starter) == (
        "import sys\ndef solve():\n    pass\nif __name__ == '__main__':\n    solve()"
    )


def test_build_source_drops_empty_parts():
    assert build_source("print(1)", StarterCode(imports="", main=None)) == "print(1)"
    assert build_source("print(1)") == "print(1)"


def test_language_ids():
    assert language_id("python") == 71
    assert language_id("JavaScript") == 63
    assert language_id("cpp") == 54
    with pytest.raises(ValidationError):
        language_id("cobol")


@pytest.mark.asyncio
async def test_submit_sends_one_item_per_test_case(judge_client, fake_judge, test_cases):
    batch = await judge_client.submit("print(input())", "python", test_cases, StarterCode(imports="import sys"))

    assert batch.tokens == ["b0-t0", "b0-t1", "b0-t2", "b0-t3"]
    assert batch.test_case_count == 4

    request = fake_judge.requests[0]
    assert request.url.path == "/submissions/batch"
    assert request.url.params["base64_encoded"] == "true"
    assert request.headers["X-RapidAPI-Key"] == "test-key"

    items = json.loads(request.content)["submissions"]
    assert len(items) == 4
    for item, tc in zip(items, test_cases):
        assert item["language_id"] == 71
        assert item["cpu_time_limit"] == 2.0
        assert decode(item["source_code"]) == "import sys\nprint(input())"
        assert decode(item["stdin"]) == tc.input
        assert decode(item["expected_output"]) == tc.expected_output


@pytest.mark.asyncio
async def test_rejected_batch_raises_upstream_error(judge_client, fake_judge, test_cases):
    fake_judge.reject_submissions = True
    with pytest.raises(UpstreamServiceError):
        await judge_client.submit("print(1)", "python", test_cases)


@pytest.mark.asyncio
async def test_submit_without_test_cases_is_rejected(judge_client):
    with pytest.raises(ValidationError):
        await judge_client.submit("print(1)", "python", [])


@pytest.mark.asyncio
async def test_poll_stops_at_first_all_terminal_attempt(judge_client, fake_judge, test_cases, recording_sleep):
    fake_judge.program([[3, 4, 2, 1], [3, 4, 3, 2], [3, 4, 3, 3]])
    batch = await judge_client.submit("x", "python", test_cases)
    progress = []

    outcome = await judge_client.poll(
        batch.tokens,
        on_progress=lambda attempt, subs: progress.append(attempt),
        interval=1.5,
        max_attempts=10,
        sleep=recording_sleep,
    )

    assert outcome.all_terminal
    assert not outcome.timed_out
    assert outcome.attempts == 3
    assert progress == [1, 2, 3]
    assert recording_sleep.calls == [1.5, 1.5, 1.5]
    assert [s["status"]["id"] for s in outcome.submissions] == [3, 4, 3, 3]


@pytest.mark.asyncio
@pytest.mark.parametrize("schedule", [[[1, 1, 1, 1]], [[2, 3, 3, 3]], [[3, 3, 3, 1]]])
async def test_poll_is_bounded_for_never_finishing_batches(judge_client, fake_judge, test_cases, recording_sleep, schedule):
    fake_judge.program(schedule)
    batch = await judge_client.submit("x", "python", test_cases)

    outcome = await judge_client.poll(batch.tokens, interval=1.5, max_attempts=10, sleep=recording_sleep)

    assert outcome.timed_out
    assert not outcome.all_terminal
    assert outcome.attempts == 10
    assert recording_sleep.total <= 10 * 1.5
    assert len(outcome.submissions) == 4


@pytest.mark.asyncio
async def test_failed_lookup_counts_as_an_attempt(judge_client, fake_judge, test_cases, recording_sleep):
    fake_judge.fail_next_lookups = 2
    batch = await judge_client.submit("x", "python", test_cases)

    outcome = await judge_client.poll(batch.tokens, interval=1.5, max_attempts=5, sleep=recording_sleep)

    assert outcome.all_terminal
    assert outcome.attempts == 3
    assert "500" in outcome.last_error


@pytest.mark.asyncio
async def test_unreadable_lookup_counts_as_an_attempt(judge_client, fake_judge, test_cases, recording_sleep):
    fake_judge.garbled_next_lookups = 1
    batch = await judge_client.submit("x", "python", test_cases)

    outcome = await judge_client.poll(batch.tokens, interval=1.5, max_attempts=5, sleep=recording_sleep)

    assert outcome.all_terminal
    assert outcome.attempts == 2
    assert "unreadable" in outcome.last_error


@pytest.mark.asyncio
async def test_unreadable_batch_response_raises_upstream_error(judge_client, fake_judge, test_cases):
    fake_judge.garbled_submissions = True
    with pytest.raises(UpstreamServiceError):
        await judge_client.submit("print(1)", "python", test_cases)


@pytest.mark.asyncio
async def test_lookup_failing_every_time_times_out(judge_client, fake_judge, test_cases, recording_sleep):
    fake_judge.fail_next_lookups = 100
    batch = await judge_client.submit("x", "python", test_cases)

    outcome = await judge_client.poll(batch.tokens, interval=1.5, max_attempts=4, sleep=recording_sleep)

    assert outcome.timed_out
    assert outcome.submissions == []
    assert len(recording_sleep.calls) == 4


def test_registry_discards_results_from_superseded_run():
    registry = RunRegistry()
    run_a = make_run("run-a")
    run_b = make_run("run-b")

    assert registry.start(run_a) is None
    assert registry.start(run_b) == "run-a"

    assert registry.publish(run_b, [passed_result()])
    assert not registry.publish(run_a, [TestCaseResult(status_id=4, outcome=TestOutcome.FAILED)])

    assert registry.current("session-1") is run_b
    assert [r.outcome for r in registry.latest_results("session-1")] == [TestOutcome.PASSED]
    assert registry.get("run-a") is run_a


def test_registry_keeps_sessions_apart():
    registry = RunRegistry()
    run_a = make_run("run-a", session_id="s-1")
    run_b = make_run("run-b", session_id="s-2")
    registry.start(run_a)
    registry.start(run_b)

    assert registry.is_current(run_a)
    assert registry.is_current(run_b)


def test_registry_cleanup_drops_old_finished_runs():
    registry = RunRegistry()
    old = make_run("run-old")
    current = make_run("run-new")
    registry.start(old)
    registry.start(current)
    old.phase = RunPhase.COMPLETED
    old.finished_at = datetime(2020, 1, 1, tzinfo=timezone.utc)

    assert registry.cleanup_finished(max_age_seconds=60) == 1
    assert registry.get("run-old") is None
    assert registry.get("run-new") is current


def test_registry_forgets_closed_session():
    registry = RunRegistry()
    run = make_run("run-a")
    registry.start(run)
    registry.publish(run, [passed_result()])

    registry.forget_session("session-1")

    assert registry.current("session-1") is None
    assert registry.latest_results("session-1") == []
    assert not registry.publish(run, [passed_result()])

    run.phase = RunPhase.COMPLETED
    run.finished_at = datetime(2020, 1, 1, tzinfo=timezone.utc)
    assert registry.cleanup_finished(max_age_seconds=60) == 1
    assert registry.get("run-a") is None
