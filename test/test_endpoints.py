"""
HTTP tests for the FastAPI app, run in-process through httpx's ASGI transport
against the in-memory store and the fake judge.
"""

import json

import httpx
import pytest
import pytest_asyncio

import main

AUTH = {"Authorization": "Bearer token-1"}
OTHER_AUTH = {"Authorization": "Bearer token-2"}


@pytest_asyncio.fixture
async def client(manager):
    main.app.state.manager = manager
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await manager.shutdown()
    main.app.state.manager = None


async def start(client, headers=AUTH, question_uri="two-sum"):
    response = await client.post("/api/session-tokens", json={"questionUri": question_uri}, headers=headers)
    assert response.status_code == 200, response.text
    token = response.json()

    response = await client.post(
        "/api/interview-sessions",
        json={"sessionId": token["sessionId"], "questionUri": question_uri, "creationToken": token},
        headers=headers,
    )
    assert response.status_code == 200, response.text
    return response.json()["session"]["id"]


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] in ("healthy", "degraded")


@pytest.mark.asyncio
async def test_missing_token_uses_error_envelope(client):
    response = await client.get("/api/credits")

    assert response.status_code == 401
    body = response.json()
    assert body["status_code"] == 401
    assert body["error"] == "Authentication required"
    assert "timestamp" in body


@pytest.mark.asyncio
async def test_insufficient_credits_is_402(client):
    response = await client.post("/api/session-tokens", json={"questionUri": "two-sum"}, headers=OTHER_AUTH)

    assert response.status_code == 402
    assert response.json()["status_code"] == 402


@pytest.mark.asyncio
async def test_create_requires_creation_token(client):
    response = await client.post(
        "/api/interview-sessions",
        json={"sessionId": "forged-id", "questionUri": "two-sum"},
        headers=AUTH,
    )

    assert response.status_code == 400
    assert (await client.get("/api/credits", headers=AUTH)).json() == {"credits": 3}


@pytest.mark.asyncio
async def test_test_cases_endpoint_hides_hidden_cases(client):
    response = await client.get("/api/questions/two-sum/test-cases")

    cases = response.json()["testCases"]
    assert len(cases) == 4
    assert cases[0]["input"] == "2 7 11 15\n9"
    assert cases[3] == {"id": "tc-4", "hidden": True}


@pytest.mark.asyncio
async def test_interview_flow(client, manager, store):
    session_id = await start(client)

    response = await client.get("/api/interview-sessions", params={"sessionId": session_id}, headers=AUTH)
    assert response.json()["valid"] is True
    assert response.json()["session"]["status"] == "in_progress"

    response = await client.get(f"/api/interview-sessions/{session_id}/timer", headers=AUTH)
    assert response.json()["formattedTime"] == "30:00"

    response = await client.post(
        "/api/submission",
        json={"sessionId": session_id, "code": "print(input())", "language": "python"},
        headers=AUTH,
    )
    assert response.status_code == 200, response.text
    run_id = response.json()["runId"]
    await manager.poll_task(run_id)

    run = (await client.get(f"/api/submission/{run_id}", headers=AUTH)).json()
    assert run["phase"] == "completed"
    assert run["summary"]["passed"] == 4
    assert run["persisted"] is True

    response = await client.get("/api/interview-sessions", params={"sessionId": session_id}, headers=AUTH)
    assert [r["status"] for r in response.json()["latestResults"]] == ["passed"] * 4

    response = await client.post(
        "/api/report",
        json={
            "sessionId": session_id,
            "transcriptItems": [
                {"role": "assistant", "text": "How would you start?", "createdAtMs": 1},
                {"role": "user", "text": "With a hash map.", "createdAtMs": 2},
            ],
            "code": "print(input())",
            "testResults": run["results"],
            "metadata": {"language": "python", "duration": "10m 0s"},
        },
        headers=AUTH,
    )
    assert response.status_code == 200, response.text
    assert response.json()["applied"] is True
    assert response.json()["testSummary"] == {"total": 4, "passed": 4, "failed": 0}

    report = (await client.get(f"/api/report/{session_id}", headers=AUTH)).json()
    assert report["status"] == "completed"
    assert report["transcript"] == "Interviewer: How would you start?\nCandidate: With a hash map."

    response = await client.get("/api/interview-sessions", params={"sessionId": session_id}, headers=AUTH)
    assert response.json() == {"valid": False, "reason": "session_over", "status": "completed"}

    sessions = (await client.get("/api/sessions", headers=AUTH)).json()["sessions"]
    assert sessions[0]["overallRecommendation"] == "Hire"
    assert len(store.submissions) == 1


@pytest.mark.asyncio
async def test_validate_reasons(client):
    session_id = await start(client)

    response = await client.get("/api/interview-sessions", params={"sessionId": session_id}, headers=OTHER_AUTH)
    assert response.json() == {"valid": False, "reason": "unauthorized"}

    response = await client.get("/api/interview-sessions", params={"sessionId": "missing"}, headers=AUTH)
    assert response.json() == {"valid": False, "reason": "not_found"}


@pytest.mark.asyncio
async def test_patch_cannot_complete_a_session(client):
    session_id = await start(client)

    response = await client.patch(
        "/api/interview-sessions", json={"sessionId": session_id, "status": "completed"}, headers=AUTH
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_patch_abandons_once(client):
    session_id = await start(client)

    first = await client.patch("/api/interview-sessions", json={"sessionId": session_id}, headers=AUTH)
    second = await client.patch("/api/interview-sessions", json={"sessionId": session_id}, headers=AUTH)

    assert first.json() == {"success": True, "applied": True}
    assert second.json() == {"success": True, "applied": False}


@pytest.mark.asyncio
async def test_beacon_accepts_json_text_body(client, store):
    session_id = await start(client)

    response = await client.post(
        "/api/session-abandon",
        content=json.dumps({"sessionId": session_id, "accessToken": "token-1"}),
        headers={"Content-Type": "text/plain"},
    )

    assert response.json()["applied"] is True
    assert store.sessions[session_id].status.value == "abandoned"


@pytest.mark.asyncio
async def test_beacon_accepts_bare_session_id(client, store):
    session_id = await start(client)

    response = await client.post(
        "/api/session-abandon", content=session_id, headers={**AUTH, "Content-Type": "text/plain"}
    )

    assert response.json()["applied"] is True


@pytest.mark.asyncio
async def test_beacon_for_someone_elses_session_is_ignored(client, store):
    session_id = await start(client)

    response = await client.post("/api/session-abandon", content=session_id, headers=OTHER_AUTH)

    assert response.status_code == 200
    assert response.json()["applied"] is False
    assert store.sessions[session_id].status.value == "in_progress"


@pytest.mark.asyncio
async def test_unsupported_language_is_rejected(client):
    session_id = await start(client)

    response = await client.post(
        "/api/submission",
        json={"sessionId": session_id, "code": "x", "language": "cobol"},
        headers=AUTH,
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_report_visibility(client, manager):
    session_id = await start(client)
    await client.post("/api/report", json={"sessionId": session_id, "transcript": "Candidate: done"}, headers=AUTH)

    assert (await client.get(f"/api/report/{session_id}")).status_code == 403

    response = await client.patch(
        f"/api/sessions/{session_id}/visibility", json={"visibility": "public"}, headers=OTHER_AUTH
    )
    assert response.status_code == 403

    response = await client.patch(f"/api/sessions/{session_id}/visibility", json={"visibility": "public"}, headers=AUTH)
    assert response.json() == {"sessionId": session_id, "visibility": "public"}

    response = await client.get(f"/api/report/{session_id}")
    assert response.status_code == 200
    assert response.json()["scorecard"]["overallRecommendation"] == "Hire"
