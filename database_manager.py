import asyncio
import copy
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from supabase import Client, create_client

from config import Config
from errors import (
    AuthenticationError,
    ConflictError,
    InsufficientCreditsError,
    NotFoundError,
    PersistenceError,
)
from models import Question, Session, SessionStatus, Submission, TestCase, Visibility

# Basic logger setup for this module
logger = logging.getLogger(__name__)

# Initialize Supabase client
supabase: Optional[Client] = None
if Config.SUPABASE_URL and Config.SUPABASE_KEY:
    try:
        supabase = create_client(Config.SUPABASE_URL, Config.SUPABASE_KEY)
        logger.info("Database manager initialized Supabase client successfully.")
    except Exception as e:
        logger.error(f"Failed to initialize Supabase client in database_manager: {e}")
else:
    logger.warning("Supabase credentials not found. Falling back to the in-memory session store.")


class SessionStore(Protocol):
    """Persistence contract used by the lifecycle manager and the aggregators."""

    async def resolve_user(self, access_token: str) -> str:
        ...

    async def create_session(self, session: Session, credit_cost: int = Config.SESSION_CREDIT_COST) -> Session:
        ...

    async def get_session(self, session_id: str) -> Optional[Session]:
        ...

    async def conditional_update(self, session_id: str, expected_status: SessionStatus, patch: Dict[str, Any]) -> bool:
        ...

    async def get_question(self, question_id: str) -> Optional[Question]:
        ...

    async def get_question_by_uri(self, question_uri: str) -> Optional[Question]:
        ...

    async def get_test_cases(self, question_id: str) -> List[TestCase]:
        ...

    async def insert_submission(self, submission: Submission) -> bool:
        ...

    async def list_submissions(self, session_id: str) -> List[Submission]:
        ...

    async def get_credits(self, user_id: str) -> int:
        ...

    async def list_sessions(self, user_id: str) -> List[Session]:
        ...

    async def update_visibility(self, session_id: str, visibility: Visibility) -> bool:
        ...


def _serialize_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    row = {}
    for key, value in patch.items():
        if isinstance(value, datetime):
            value = value.isoformat()
        elif hasattr(value, "value"):
            value = value.value
        row[key] = value
    return row


class SupabaseSessionStore:
    """
    Supabase-backed store.

    The client is synchronous, so every call runs in a worker thread. Any
    failure of the client is reported as a PersistenceError.
    """

    def __init__(self, client: Client):
        self.client = client

    async def _run(self, description: str, fn):
        try:
            return await asyncio.to_thread(fn)
        except Exception as e:
            logger.error(f"Supabase call failed ({description}): {e}")
            raise PersistenceError(f"Database error while trying to {description}", details=str(e)) from e

    async def resolve_user(self, access_token: str) -> str:
        try:
            response = await asyncio.to_thread(self.client.auth.get_user, access_token)
        except Exception as e:
            logger.warning(f"Rejected access token: {e}")
            raise AuthenticationError("Invalid or expired access token") from e

        user = getattr(response, "user", None)
        if not user or not getattr(user, "id", None):
            raise AuthenticationError("Invalid or expired access token")
        return str(user.id)

    async def create_session(self, session: Session, credit_cost: int = Config.SESSION_CREDIT_COST) -> Session:
        """
        Insert the session row and debit credits in one transaction.

        Runs the `start_interview_session` Postgres function, which raises
        `insufficient_credits` or a unique violation and rolls back both writes.
        """
        params = {
            "p_session_id": session.id,
            "p_user_id": session.user_id,
            "p_question_id": session.question_id,
            "p_credit_cost": credit_cost,
        }

        try:
            response = await asyncio.to_thread(
                lambda: self.client.rpc("start_interview_session", params).execute()
            )
        except Exception as e:
            text = f"{getattr(e, 'message', '')} {e}".lower()
            if "insufficient_credits" in text:
                raise InsufficientCreditsError("Not enough credits to start a session") from e
            if getattr(e, "code", None) == "23505" or "duplicate key" in text:
                raise ConflictError(f"Session {session.id} already exists") from e
            logger.error(f"Failed to create session {session.id}: {e}")
            raise PersistenceError("Database error while trying to create session", details=str(e)) from e

        data = response.data
        row = data[0] if isinstance(data, list) and data else data
        if not row:
            raise PersistenceError(f"Session {session.id} was not returned by start_interview_session")
        logger.info(f"Created session {session.id} for user {session.user_id}")
        return Session(**row)

    async def get_session(self, session_id: str) -> Optional[Session]:
        response = await self._run(
            "load session",
            lambda: self.client.table("sessions").select("*").eq("id", session_id).limit(1).execute(),
        )
        return Session(**response.data[0]) if response.data else None

    async def conditional_update(self, session_id: str, expected_status: SessionStatus, patch: Dict[str, Any]) -> bool:
        """Apply `patch` only while the row still has `expected_status`. Returns whether it applied."""
        row = _serialize_patch(patch)
        response = await self._run(
            "update session",
            lambda: self.client.table("sessions")
            .update(row)
            .eq("id", session_id)
            .eq("status", expected_status.value)
            .execute(),
        )
        return bool(response.data)

    async def get_question(self, question_id: str) -> Optional[Question]:
        response = await self._run(
            "load question",
            lambda: self.client.table("questions")
            .select("id, question_uri, title, difficulty, description_md")
            .eq("id", question_id)
            .limit(1)
            .execute(),
        )
        return Question(**response.data[0]) if response.data else None

    async def get_question_by_uri(self, question_uri: str) -> Optional[Question]:
        response = await self._run(
            "resolve question",
            lambda: self.client.table("questions")
            .select("id, question_uri, title, difficulty, description_md")
            .eq("question_uri", question_uri)
            .limit(1)
            .execute(),
        )
        return Question(**response.data[0]) if response.data else None

    async def get_test_cases(self, question_id: str) -> List[TestCase]:
        response = await self._run(
            "load test cases",
            lambda: self.client.table("test_cases")
            .select("id, input, expected_output, hidden")
            .eq("question_id", question_id)
            .order("created_at")
            .execute(),
        )
        return [TestCase(**row) for row in response.data or []]

    async def insert_submission(self, submission: Submission) -> bool:
        """Insert once per run. A second insert for the same run_id is ignored."""
        row = submission.to_row()
        response = await self._run(
            "save submission",
            lambda: self.client.table("submissions")
            .upsert(row, on_conflict="run_id", ignore_duplicates=True)
            .execute(),
        )
        return bool(response.data)

    async def list_submissions(self, session_id: str) -> List[Submission]:
        response = await self._run(
            "load submissions",
            lambda: self.client.table("submissions")
            .select("*")
            .eq("session_id", session_id)
            .order("created_at")
            .execute(),
        )
        return [Submission(**row) for row in response.data or []]

    async def get_credits(self, user_id: str) -> int:
        response = await self._run(
            "load credits",
            lambda: self.client.table("user_credits").select("credits").eq("user_id", user_id).limit(1).execute(),
        )
        return int(response.data[0]["credits"]) if response.data else 0

    async def list_sessions(self, user_id: str) -> List[Session]:
        response = await self._run(
            "list sessions",
            lambda: self.client.table("sessions")
            .select("*")
            .eq("user_id", user_id)
            .order("started_at", desc=True)
            .execute(),
        )
        return [Session(**row) for row in response.data or []]

    async def update_visibility(self, session_id: str, visibility: Visibility) -> bool:
        response = await self._run(
            "update visibility",
            lambda: self.client.table("sessions").update({"visibility": visibility.value}).eq("id", session_id).execute(),
        )
        return bool(response.data)


class InMemorySessionStore:
    """
    Process-local store for tests and local runs without Supabase.

    Mirrors the guarantees of the Supabase store: create-and-debit is atomic,
    updates are compare-and-swap on status, submissions are unique per run_id.
    """

    def __init__(self, accept_any_token: bool = False):
        self._lock = asyncio.Lock()
        self.accept_any_token = accept_any_token
        self.sessions: Dict[str, Session] = {}
        self.questions: Dict[str, Question] = {}
        self.test_cases: Dict[str, List[TestCase]] = {}
        self.submissions: List[Submission] = []
        self.credits: Dict[str, int] = {}
        self.tokens: Dict[str, str] = {}

    # --- Seeding helpers ---

    def add_user(self, user_id: str, credits: int = 0, token: Optional[str] = None):
        self.credits[user_id] = credits
        self.tokens[token or user_id] = user_id

    def add_question(self, question: Question, test_cases: Optional[List[TestCase]] = None):
        self.questions[question.id] = question
        self.test_cases[question.id] = list(test_cases or [])

    # --- SessionStore ---

    async def resolve_user(self, access_token: str) -> str:
        user_id = self.tokens.get(access_token)
        if user_id:
            return user_id
        if self.accept_any_token and access_token:
            return access_token
        raise AuthenticationError("Invalid or expired access token")

    async def create_session(self, session: Session, credit_cost: int = Config.SESSION_CREDIT_COST) -> Session:
        async with self._lock:
            if session.id in self.sessions:
                raise ConflictError(f"Session {session.id} already exists")
            if session.question_id not in self.questions:
                raise NotFoundError(f"Question {session.question_id} not found")
            balance = self.credits.get(session.user_id, 0)
            if balance < credit_cost:
                raise InsufficientCreditsError("Not enough credits to start a session")
            self.credits[session.user_id] = balance - credit_cost
            self.sessions[session.id] = session.model_copy(deep=True)
            logger.info(f"Created session {session.id} for user {session.user_id}")
            return session.model_copy(deep=True)

    async def get_session(self, session_id: str) -> Optional[Session]:
        session = self.sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def conditional_update(self, session_id: str, expected_status: SessionStatus, patch: Dict[str, Any]) -> bool:
        async with self._lock:
            session = self.sessions.get(session_id)
            if session is None or session.status is not expected_status:
                return False
            self.sessions[session_id] = session.model_copy(update=copy.deepcopy(patch))
            return True

    async def get_question(self, question_id: str) -> Optional[Question]:
        return self.questions.get(question_id)

    async def get_question_by_uri(self, question_uri: str) -> Optional[Question]:
        for question in self.questions.values():
            if question.question_uri == question_uri:
                return question
        return None

    async def get_test_cases(self, question_id: str) -> List[TestCase]:
        return list(self.test_cases.get(question_id, []))

    async def insert_submission(self, submission: Submission) -> bool:
        async with self._lock:
            if any(existing.run_id == submission.run_id for existing in self.submissions):
                return False
            self.submissions.append(submission.model_copy(deep=True))
            return True

    async def list_submissions(self, session_id: str) -> List[Submission]:
        rows = [s for s in self.submissions if s.session_id == session_id]
        return sorted(rows, key=lambda s: s.created_at)

    async def get_credits(self, user_id: str) -> int:
        return self.credits.get(user_id, 0)

    async def list_sessions(self, user_id: str) -> List[Session]:
        rows = [s.model_copy(deep=True) for s in self.sessions.values() if s.user_id == user_id]
        return sorted(rows, key=lambda s: s.started_at, reverse=True)

    async def update_visibility(self, session_id: str, visibility: Visibility) -> bool:
        async with self._lock:
            session = self.sessions.get(session_id)
            if session is None:
                return False
            self.sessions[session_id] = session.model_copy(update={"visibility": visibility})
            return True


def build_session_store() -> SessionStore:
    if supabase is not None:
        return SupabaseSessionStore(supabase)
    logger.warning("Using in-memory session store; data will not survive a restart.")
    return InMemorySessionStore(accept_any_token=True)