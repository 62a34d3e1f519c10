import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

import psutil
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import Config
from database_manager import build_session_store
from errors import AuthenticationError, SessionClosedError, SessionError, ValidationError
from judge_client import JudgeClient
from models import ReportTestResult, SessionCreationToken, SessionDraft, StarterCode, TranscriptItem, Visibility
from report_aggregator import GeminiEvaluationService, ReportRequest
from session_manager import SessionLifecycleManager
from transcript_service import format_transcript

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


# =============================================================================
# REQUEST MODELS
# =============================================================================

class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SessionTokenRequest(CamelModel):
    question_uri: str = Field(..., alias="questionUri", min_length=1, max_length=200)


class CreateSessionRequest(CamelModel):
    session_id: str = Field(..., alias="sessionId", min_length=1, max_length=64)
    question_uri: str = Field(..., alias="questionUri", min_length=1, max_length=200)
    creation_token: Optional[SessionCreationToken] = Field(default=None, alias="creationToken")


class UpdateSessionRequest(CamelModel):
    session_id: str = Field(..., alias="sessionId", min_length=1, max_length=64)
    status: str = "abandoned"

    @field_validator("status")
    @classmethod
    def only_abandon(cls, v):
        if v != "abandoned":
            raise ValueError("Sessions can only be set to 'abandoned' here; use /api/report to complete")
        return v


class DraftRequest(CamelModel):
    code: str = Field(default="", max_length=Config.MAX_CODE_LENGTH)
    language: str = Field(default="", max_length=20)
    transcript_items: List[TranscriptItem] = Field(default_factory=list, alias="transcriptItems")
    test_results: List[ReportTestResult] = Field(default_factory=list, alias="testResults")


class SubmissionRequest(CamelModel):
    session_id: str = Field(..., alias="sessionId", min_length=1, max_length=64)
    code: str = Field(..., max_length=Config.MAX_CODE_LENGTH)
    language: str = Field(default="python", max_length=20)
    starter_code: Optional[StarterCode] = Field(default=None, alias="starterCode")

    @field_validator("language")
    @classmethod
    def supported_language(cls, v):
        v = v.lower().strip()
        if v not in Config.LANGUAGES:
            raise ValueError(f"Unsupported language: {v}")
        return v


class ReportMetadata(BaseModel):
    language: Optional[str] = None
    duration: Optional[str] = None


class ReportPayload(CamelModel):
    session_id: str = Field(..., alias="sessionId", min_length=1, max_length=64)
    transcript: Optional[str] = None
    transcript_items: List[TranscriptItem] = Field(default_factory=list, alias="transcriptItems")
    code: str = Field(default="", max_length=Config.MAX_CODE_LENGTH)
    language: Optional[str] = None
    test_results: List[ReportTestResult] = Field(default_factory=list, alias="testResults")
    metadata: ReportMetadata = Field(default_factory=ReportMetadata)

    def to_report_request(self) -> ReportRequest:
        transcript = self.transcript
        if transcript is None:
            transcript = format_transcript(self.transcript_items)
        return ReportRequest(
            session_id=self.session_id,
            transcript=transcript,
            final_code=self.code,
            language=self.language or self.metadata.language or "",
            duration=self.metadata.duration,
            test_results=self.test_results,
        )


class VisibilityRequest(BaseModel):
    visibility: Visibility


# =============================================================================
# APP SETUP
# =============================================================================

def build_manager() -> SessionLifecycleManager:
    return SessionLifecycleManager(
        store=build_session_store(),
        judge=JudgeClient(),
        evaluator=GeminiEvaluationService(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    if getattr(app.state, "manager", None) is None:
        app.state.manager = build_manager()
    manager: SessionLifecycleManager = app.state.manager

    async def cleanup_task():
        while True:
            await asyncio.sleep(Config.CLEANUP_INTERVAL_SECONDS)
            removed = manager.cleanup()
            logger.info(f"Periodic cleanup: {removed}")

    cleanup_task_handle = asyncio.create_task(cleanup_task())

    yield

    # Shutdown
    cleanup_task_handle.cancel()
    await manager.shutdown()
    await manager.judge.aclose()


app = FastAPI(
    title="Interview Session Orchestrator",
    version="1.0.0",
    description="Timed coding interview sessions with judge-graded runs and AI scorecards",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=Config.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
)


def get_manager(request: Request) -> SessionLifecycleManager:
    return request.app.state.manager


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    manager: SessionLifecycleManager = Depends(get_manager),
) -> str:
    if not credentials:
        raise AuthenticationError("Authentication required")
    return await manager.store.resolve_user(credentials.credentials)


async def get_optional_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    manager: SessionLifecycleManager = Depends(get_manager),
) -> Optional[str]:
    if not credentials:
        return None
    try:
        return await manager.store.resolve_user(credentials.credentials)
    except AuthenticationError:
        return None


# =============================================================================
# ROUTES
# =============================================================================

@app.get("/health")
async def health_check(manager: SessionLifecycleManager = Depends(get_manager)):
    """Health check with system metrics"""
    try:
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage('/')

        return {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "pending_creation_tokens": len(manager.tokens),
            "system_metrics": {
                "cpu_percent": psutil.cpu_percent(interval=None),
                "memory_percent": memory.percent,
                "memory_available_gb": round(memory.available / (1024**3), 2),
                "disk_free_gb": round(disk.free / (1024**3), 2),
                "disk_percent": round(disk.used / disk.total * 100, 2)
            }
        }
    except Exception as e:
        return {
            "status": "degraded",
            "error": str(e),
            "timestamp": datetime.now().isoformat()
        }


@app.get("/api/credits")
async def get_credits(
    user_id: str = Depends(get_current_user),
    manager: SessionLifecycleManager = Depends(get_manager),
):
    return {"credits": await manager.credits(user_id)}


@app.get("/api/sessions")
async def list_sessions(
    user_id: str = Depends(get_current_user),
    manager: SessionLifecycleManager = Depends(get_manager),
):
    return {"sessions": await manager.list_sessions(user_id)}


@app.get("/api/questions/{question_uri}/test-cases")
async def list_test_cases(question_uri: str, manager: SessionLifecycleManager = Depends(get_manager)):
    return {"testCases": await manager.list_test_cases(question_uri)}


@app.post("/api/session-tokens")
async def issue_session_token(
    body: SessionTokenRequest,
    user_id: str = Depends(get_current_user),
    manager: SessionLifecycleManager = Depends(get_manager),
):
    token = await manager.issue_creation_token(user_id, body.question_uri)
    return token.model_dump(by_alias=True)


@app.get("/api/interview-sessions")
async def validate_session(
    session_id: Optional[str] = Query(default=None, alias="sessionId"),
    user_id: str = Depends(get_current_user),
    manager: SessionLifecycleManager = Depends(get_manager),
):
    if not session_id:
        raise ValidationError("Missing sessionId")

    try:
        session = await manager.validate(session_id, user_id)
    except SessionClosedError as e:
        return {"valid": False, "reason": "session_over", "status": e.status}
    except SessionError as e:
        if e.status_code == 404:
            return {"valid": False, "reason": "not_found"}
        if e.status_code == 403:
            return {"valid": False, "reason": "unauthorized"}
        raise

    return {
        "valid": True,
        "session": {
            "id": session_id,
            "status": session["status"],
            "started_at": session["started_at"].isoformat(),
        },
        "latestResults": manager.latest_results(session_id),
    }


@app.post("/api/interview-sessions")
async def create_session(
    body: CreateSessionRequest,
    user_id: str = Depends(get_current_user),
    manager: SessionLifecycleManager = Depends(get_manager),
):
    if body.creation_token is None:
        raise ValidationError("Missing session creation token")

    session = await manager.create(body.session_id, body.question_uri, body.creation_token, user_id)
    return {"session": session.to_row()}


@app.patch("/api/interview-sessions")
async def update_session(
    body: UpdateSessionRequest,
    user_id: str = Depends(get_current_user),
    manager: SessionLifecycleManager = Depends(get_manager),
):
    applied = await manager.abandon(body.session_id, user_id)
    return {"success": True, "applied": applied}


@app.post("/api/session-abandon")
async def abandon_session_beacon(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
    manager: SessionLifecycleManager = Depends(get_manager),
):
    """
    Page-unload abandon. Beacons arrive as text/plain, either a JSON object
    or the bare session id, and cannot carry headers, so the access token may
    travel in the body as `accessToken`.
    """
    text = (await request.body()).decode("utf-8", errors="replace").strip()
    access_token = credentials.credentials if credentials else None
    try:
        body = json.loads(text)
    except ValueError:
        body = None

    if isinstance(body, dict):
        session_id = body.get("sessionId")
        access_token = access_token or body.get("accessToken")
    else:
        session_id = text

    if not access_token:
        raise AuthenticationError("Authentication required")
    user_id = await manager.store.resolve_user(access_token)

    if not session_id:
        raise ValidationError("Missing sessionId")

    try:
        applied = await manager.abandon(str(session_id), user_id)
    except SessionError as e:
        if e.status_code not in (403, 404):
            raise
        logger.info(f"Ignoring abandon beacon for session {session_id}: {e.message}")
        applied = False
    return {"success": True, "applied": applied}


@app.get("/api/interview-sessions/{session_id}/timer")
async def get_timer(
    session_id: str,
    user_id: str = Depends(get_current_user),
    manager: SessionLifecycleManager = Depends(get_manager),
):
    return await manager.timer_view(session_id, user_id)


@app.put("/api/interview-sessions/{session_id}/draft")
async def save_draft(
    session_id: str,
    body: DraftRequest,
    user_id: str = Depends(get_current_user),
    manager: SessionLifecycleManager = Depends(get_manager),
):
    draft = SessionDraft(
        code=body.code,
        language=body.language,
        transcript_items=body.transcript_items,
        test_results=body.test_results,
    )
    await manager.save_draft(session_id, user_id, draft)
    return {"success": True}


@app.post("/api/submission")
async def run_submission(
    body: SubmissionRequest,
    user_id: str = Depends(get_current_user),
    manager: SessionLifecycleManager = Depends(get_manager),
):
    return await manager.run_code(body.session_id, user_id, body.code, body.language, body.starter_code)


@app.get("/api/submission/{run_id}")
async def get_submission(
    run_id: str,
    user_id: str = Depends(get_current_user),
    manager: SessionLifecycleManager = Depends(get_manager),
):
    return await manager.get_run(run_id, user_id)


@app.post("/api/submission/{run_id}/refresh")
async def refresh_submission(
    run_id: str,
    user_id: str = Depends(get_current_user),
    manager: SessionLifecycleManager = Depends(get_manager),
):
    return await manager.refresh_run(run_id, user_id)


@app.post("/api/report")
async def generate_report(
    body: ReportPayload,
    user_id: str = Depends(get_current_user),
    manager: SessionLifecycleManager = Depends(get_manager),
):
    return await manager.complete(body.session_id, user_id, body.to_report_request())


@app.get("/api/report/{session_id}")
async def get_report(
    session_id: str,
    user_id: Optional[str] = Depends(get_optional_user),
    manager: SessionLifecycleManager = Depends(get_manager),
):
    return await manager.get_report(session_id, user_id)


@app.patch("/api/sessions/{session_id}/visibility")
async def update_visibility(
    session_id: str,
    body: VisibilityRequest,
    user_id: str = Depends(get_current_user),
    manager: SessionLifecycleManager = Depends(get_manager),
):
    visibility = await manager.set_visibility(session_id, user_id, body.visibility)
    return {"sessionId": session_id, "visibility": visibility.value}


# Error handlers
def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": message,
            "status_code": status_code,
            "timestamp": datetime.now().isoformat()
        }
    )


@app.exception_handler(SessionError)
async def session_error_handler(request, exc: SessionError):
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message} {exc.details or ''}")
    else:
        logger.info(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return error_response(exc.status_code, exc.message)


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    return error_response(exc.status_code, exc.detail)


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    logger.error(f"Unhandled exception: {exc}")
    return error_response(500, "Internal server error")


if __name__ == "__main__":
    logger.info("Starting Interview Session Orchestrator...")
    logger.info(f"Session duration: {Config.SESSION_DURATION_MINUTES} minutes")
    logger.info(f"Judge0 endpoint: {Config.JUDGE0_URL}")

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level="info",
        access_log=True,
        workers=1  # Timers, runs and creation tokens live in process memory
    )
