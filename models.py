"""
Data model for interview sessions, judge runs, submissions and scorecards.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

HIDDEN_MARKER = "[Hidden]"


# =============================================================================
# SESSIONS
# =============================================================================

class SessionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.IN_PROGRESS


class Visibility(str, Enum):
    PRIVATE = "private"
    UNLISTED = "unlisted"
    PUBLIC = "public"


class Session(BaseModel):
    """One row of the `sessions` table. Append-only, never deleted."""

    id: str
    user_id: str
    question_id: str
    status: SessionStatus = SessionStatus.IN_PROGRESS
    started_at: datetime
    ended_at: Optional[datetime] = None
    final_code: Optional[str] = None
    transcript: Optional[Dict[str, Any]] = None
    events: Optional[Dict[str, Any]] = None
    visibility: Visibility = Visibility.PRIVATE

    @field_validator("id", "user_id", "question_id", mode="before")
    @classmethod
    def _coerce_ids(cls, v):
        return str(v) if v is not None else v

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class SessionCreationToken(BaseModel):
    """Client-held proof that the session was started through the start flow."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId", min_length=1, max_length=64)
    issued_at_ms: int = Field(..., alias="issuedAtMs", ge=0)


class Question(BaseModel):
    id: str
    question_uri: str
    title: str = ""
    difficulty: str = ""
    description_md: str = ""

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v):
        return str(v)


class TestCase(BaseModel):
    """Immutable test case owned by a question."""

    id: str
    input: str = ""
    expected_output: str = ""
    hidden: bool = False

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v):
        return str(v)

    def to_client(self) -> Dict[str, Any]:
        """Client-safe view: hidden cases only reveal their id."""
        if self.hidden:
            return {"id": self.id, "hidden": True}
        return {
            "id": self.id,
            "hidden": False,
            "input": self.input,
            "expected_output": self.expected_output,
        }


# =============================================================================
# JUDGE RESULTS
# =============================================================================

class JudgeStatus(IntEnum):
    """Judge0 status ids."""

    IN_QUEUE = 1
    PROCESSING = 2
    ACCEPTED = 3
    WRONG_ANSWER = 4
    TIME_LIMIT_EXCEEDED = 5
    COMPILATION_ERROR = 6
    RUNTIME_ERROR_SIGSEGV = 7
    RUNTIME_ERROR_SIGXFSZ = 8
    RUNTIME_ERROR_SIGFPE = 9
    RUNTIME_ERROR_SIGABRT = 10
    RUNTIME_ERROR_NZEC = 11
    RUNTIME_ERROR_OTHER = 12
    INTERNAL_ERROR = 13
    EXEC_FORMAT_ERROR = 14


class TestOutcome(str, Enum):
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    NOT_RUN = "not_run"


class TestCaseResult(BaseModel):
    """Decoded outcome of one test case in a judge batch."""

    test_case_id: Optional[str] = None
    status_id: int
    status_description: Optional[str] = None
    outcome: TestOutcome
    stdout: Optional[str] = None
    stderr: Optional[str] = None
    message: Optional[str] = None
    compile_output: Optional[str] = None
    time: Optional[str] = None
    memory: Optional[int] = None

    def to_client(self) -> Dict[str, Any]:
        return {
            "testCaseId": self.test_case_id,
            "status": self.outcome.value,
            "actualOutput": self.stdout or "",
            "stderr": self.stderr or "",
            "compileOutput": self.compile_output,
        }


class Submission(BaseModel):
    """A persisted judge run. `run_id` is unique in the store."""

    id: str
    run_id: str
    session_id: str
    user_id: Optional[str] = None
    question_id: str
    language: str
    code: str
    elapsed_seconds: int = 0
    per_test_results: List[TestCaseResult] = Field(default_factory=list)
    created_at: datetime

    @field_validator("question_id", mode="before")
    @classmethod
    def _coerce_question_id(cls, v):
        return str(v)

    def tests_passed(self) -> int:
        return sum(1 for r in self.per_test_results if r.outcome is TestOutcome.PASSED)

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class RunPhase(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass
class JudgeRun:
    """In-memory state of one Run/Submit click. Never persisted as such."""

    run_id: str
    session_id: str
    user_id: str
    question_id: str
    language: str
    code: str
    tokens: List[str]
    test_case_count: int
    submitted_at: datetime
    elapsed_seconds: int = 0
    test_case_ids: List[str] = field(default_factory=list)
    phase: RunPhase = RunPhase.RUNNING
    results: List[TestCaseResult] = field(default_factory=list)
    attempts: int = 0
    persisted: bool = False
    persist_error: Optional[str] = None
    last_error: Optional[str] = None
    finished_at: Optional[datetime] = None

    @property
    def is_finished(self) -> bool:
        return self.phase is not RunPhase.RUNNING

    def summary(self) -> Dict[str, int]:
        outcomes = [r.outcome for r in self.results]
        return {
            "total": self.test_case_count,
            "passed": outcomes.count(TestOutcome.PASSED),
            "failed": outcomes.count(TestOutcome.FAILED),
            "running": self.test_case_count - outcomes.count(TestOutcome.PASSED)
            - outcomes.count(TestOutcome.FAILED),
        }


# =============================================================================
# TRANSCRIPTS, DRAFTS AND REPORT INPUT
# =============================================================================

class StarterCode(BaseModel):
    """Language-specific preamble and harness wrapped around the candidate code."""

    imports: Optional[str] = None
    main: Optional[str] = None


class TranscriptItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    role: str
    text: str = ""
    created_at_ms: int = Field(default=0, alias="createdAtMs")
    hidden: bool = Field(default=False, alias="isHidden")


class ReportTestResult(BaseModel):
    """Per-test result as reported by the client when the interview ends."""

    model_config = ConfigDict(populate_by_name=True)

    test_case_id: Optional[str] = Field(default=None, alias="testCaseId")
    status: TestOutcome = TestOutcome.NOT_RUN
    actual_output: Optional[str] = Field(default=None, alias="actualOutput")
    stderr: Optional[str] = None
    compile_output: Optional[str] = Field(default=None, alias="compileOutput")


class SessionDraft(BaseModel):
    """Latest client state kept in memory so an expired timer can auto-submit it."""

    code: str = ""
    language: str = ""
    transcript_items: List[TranscriptItem] = Field(default_factory=list)
    test_results: List[ReportTestResult] = Field(default_factory=list)


# =============================================================================
# SCORECARD
# =============================================================================

class Recommendation(str, Enum):
    STRONG_HIRE = "Strong Hire"
    HIRE = "Hire"
    MAYBE = "Maybe"
    NO_HIRE = "No Hire"


class DimensionScore(BaseModel):
    score: int = Field(..., ge=1, le=5, description="Numeric score (1-5)")
    evidence: str = Field(default="", description="Specific evidence from the transcript or code")
    reasoning: str = Field(default="", description="Brief reasoning for the score")


class ScorecardDimensions(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    problem_solving: DimensionScore = Field(..., alias="problemSolving")
    code_quality: DimensionScore = Field(..., alias="codeQuality")
    communication: DimensionScore
    debugging: DimensionScore


class SubmissionComment(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    submission_number: int = Field(..., alias="submissionNumber", ge=1)
    comment: str = ""


class Scorecard(BaseModel):
    """Structured evaluation returned by the evaluation service."""

    model_config = ConfigDict(populate_by_name=True)

    dimensions: ScorecardDimensions
    overall_recommendation: Recommendation = Field(..., alias="overallRecommendation")
    summary: str = Field(default="", description="Comprehensive summary of the candidate's performance")
    submission_comments: List[SubmissionComment] = Field(default_factory=list, alias="submissionComments")

    @field_validator("overall_recommendation", mode="before")
    @classmethod
    def _normalize_recommendation(cls, v):
        if isinstance(v, str):
            for option in Recommendation:
                if v.strip().lower() == option.value.lower():
                    return option
        return v

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
