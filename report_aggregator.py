"""
Report aggregation: turns a finished interview into a scorecard and closes
the session.

The evaluation request is bounded before it leaves the process: the
transcript is cut to a head/tail window, only the latest submissions are
included and their code is capped. The final write is the same guarded
`in_progress -> completed` transition used everywhere else, so a session that
was abandoned or already completed in the meantime is left untouched.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

from langchain_core.exceptions import OutputParserException
from langchain_core.output_parsers import PydanticOutputParser
from langchain_core.prompts import ChatPromptTemplate
from langchain_google_genai import ChatGoogleGenerativeAI
from pydantic import BaseModel, Field
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config import Config
from errors import NotFoundError, ParseError, PersistenceError, UpstreamServiceError
from models import (
    HIDDEN_MARKER,
    JudgeStatus,
    Question,
    ReportTestResult,
    Scorecard,
    Session,
    SessionStatus,
    Submission,
    TestCase,
    TestOutcome,
)
from session_timer import utc_now

logger = logging.getLogger(__name__)

TRANSCRIPT_TRUNCATION_MARKER = "\n\n[...truncated...]\n\n"
DETAIL_PREVIEW_CHARS = 100


class ReportRequest(BaseModel):
    """Everything the client knows when the interview ends."""

    session_id: str
    transcript: str = ""
    final_code: str = ""
    language: str = ""
    duration: Optional[str] = None
    test_results: List[ReportTestResult] = Field(default_factory=list)


# --- 1. Building the bounded evaluation input ---

def truncate_transcript(transcript: str, budget: int = Config.MAX_TRANSCRIPT_CHARS) -> str:
    """Keep the first and last budget/2 characters around a marker."""
    if len(transcript) <= budget:
        return transcript
    half = budget // 2
    return transcript[:half] + TRANSCRIPT_TRUNCATION_MARKER + transcript[-half:]


def build_enriched_results(
    test_cases: List[TestCase], test_results: List[ReportTestResult]
) -> List[Dict[str, Any]]:
    """
    Pair every test case with the client's result for it.

    Results are matched by test case id when the client sent ids, otherwise
    by position. Cases without a result are `not_run`. Hidden cases never
    carry their input or expected output.
    """
    by_id = {r.test_case_id: r for r in test_results if r.test_case_id}
    enriched = []

    for idx, tc in enumerate(test_cases):
        if by_id:
            result = by_id.get(tc.id)
        else:
            result = test_results[idx] if idx < len(test_results) else None

        enriched.append({
            "testCaseNumber": idx + 1,
            "testCaseId": tc.id,
            "input": HIDDEN_MARKER if tc.hidden else tc.input,
            "expectedOutput": HIDDEN_MARKER if tc.hidden else tc.expected_output,
            "hidden": tc.hidden,
            "status": result.status.value if result else TestOutcome.NOT_RUN.value,
            "actualOutput": result.actual_output if result else None,
            "stderr": result.stderr if result else None,
            "compileOutput": result.compile_output if result else None,
        })

    return enriched


def summarize_results(enriched: List[Dict[str, Any]]) -> Dict[str, int]:
    return {
        "total": len(enriched),
        "passed": sum(1 for t in enriched if t["status"] == TestOutcome.PASSED.value),
        "failed": sum(1 for t in enriched if t["status"] == TestOutcome.FAILED.value),
    }


def build_submission_timeline(
    submissions: List[Submission],
    limit: int = Config.MAX_REPORT_SUBMISSIONS,
    code_budget: int = Config.MAX_SUBMISSION_CODE_CHARS,
) -> List[Dict[str, Any]]:
    """Numbered history of the session's runs, keeping only the latest `limit`."""
    ordered = sorted(submissions, key=lambda s: s.created_at)
    timeline = []

    for number, sub in enumerate(ordered, start=1):
        passed = sum(1 for r in sub.per_test_results if r.status_id == JudgeStatus.ACCEPTED)
        timeline.append({
            "submissionNumber": number,
            "timestamp": sub.created_at.isoformat(),
            "testsPassed": f"{passed}/{len(sub.per_test_results)}",
            "code": sub.code[:code_budget],
            "diff": "Changed from previous submission" if number > 1 else "Initial submission",
        })

    return timeline[-limit:] if limit > 0 else []


def _format_detailed_results(enriched: List[Dict[str, Any]]) -> str:
    lines = []
    for t in enriched:
        line = f"Test {t['testCaseNumber']}: {t['status']}"
        if t["status"] == TestOutcome.FAILED.value:
            expected = (t["expectedOutput"] or "")[:DETAIL_PREVIEW_CHARS]
            actual = (t["actualOutput"] or "")[:DETAIL_PREVIEW_CHARS]
            line += f" (Expected: {expected}, Got: {actual})"
        lines.append(line)
    return "\n".join(lines)


def _format_timeline(timeline: List[Dict[str, Any]]) -> str:
    return "\n\n".join(
        f"--- Submission #{s['submissionNumber']} ({s['testsPassed']} tests passed) ---\n```\n{s['code']}\n```"
        for s in timeline
    )


def build_evaluation_payload(
    question: Question,
    request: ReportRequest,
    enriched: List[Dict[str, Any]],
    timeline: List[Dict[str, Any]],
) -> Dict[str, Any]:
    """Prompt variables for the evaluation chain, already size-bounded."""
    stats = summarize_results(enriched)
    return {
        "question_title": question.title,
        "difficulty": question.difficulty or "N/A",
        "language": request.language or "N/A",
        "duration": request.duration or "N/A",
        "description": question.description_md,
        "transcript": truncate_transcript(request.transcript or ""),
        "final_code": request.final_code or "No code submitted",
        "total_tests": stats["total"],
        "passed_tests": stats["passed"],
        "failed_tests": stats["failed"],
        "detailed_results": _format_detailed_results(enriched),
        "submission_count": len(timeline),
        "submission_timeline": _format_timeline(timeline),
    }


# --- 2. Evaluation service ---

class EvaluationService(Protocol):
    async def evaluate(self, payload: Dict[str, Any]) -> Scorecard:
        ...


parser = PydanticOutputParser(pydantic_object=Scorecard)

prompt = ChatPromptTemplate.from_messages([
    ("system",
     """You are an expert technical interviewer evaluating a coding interview session.

Score the candidate from 1 to 5 on each dimension:
1. problemSolving: How well did they understand and approach the problem?
2. codeQuality: Is the code clean, readable, and well-structured?
3. communication: How clearly did they explain their thinking?
4. debugging: How effectively did they identify and fix issues?

For each dimension give the score, specific evidence from the transcript or code, and brief reasoning.
Give an overallRecommendation of exactly one of "Strong Hire", "Hire", "Maybe" or "No Hire",
a summary of the performance, and one submissionComment per submission describing what changed and why.

Respond with a valid JSON object that strictly follows the provided schema. Do not include markdown formatting or additional text.

{format_instructions}"""),
    ("human",
     """Session Details:
- Question: {question_title}
- Difficulty: {difficulty}
- Language: {language}
- Duration: {duration}

Question Description:
{description}

Transcript:
{transcript}

Final Code:
```{language}
{final_code}
```

Test Results Summary:
- Total Tests: {total_tests}
- Passed: {passed_tests}
- Failed: {failed_tests}

Detailed Test Results:
{detailed_results}

Submission Timeline ({submission_count} submissions):
{submission_timeline}"""),
]).partial(format_instructions=parser.get_format_instructions())


def initialize_llm(api_key: Optional[str] = Config.GOOGLE_API_KEY, model: str = Config.EVAL_MODEL):
    """Initialize the LLM with proper error handling."""
    if not api_key:
        logger.error("GOOGLE_API_KEY not found in environment variables")
        raise ConnectionError("Google API key is required but not found in environment variables")

    llm = ChatGoogleGenerativeAI(
        model=model,
        google_api_key=api_key,
        temperature=0.1,
        max_retries=1,
        request_timeout=Config.EVAL_REQUEST_TIMEOUT,
    )
    logger.info(f"Gemini LLM initialized successfully for evaluator ({model})")
    return llm


class GeminiEvaluationService:
    """Scorecard generation with Gemini through a LangChain prompt | llm | parser chain."""

    def __init__(self, llm=None):
        if llm is None:
            try:
                llm = initialize_llm()
            except ConnectionError as e:
                logger.warning(f"LLM initialization failed: {e}")
        self.llm = llm
        self.chain = prompt | llm | parser if llm is not None else None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        retry=retry_if_exception_type(UpstreamServiceError),
        reraise=True,
    )
    async def _invoke_with_retry(self, payload: Dict[str, Any]) -> Scorecard:
        try:
            return await self.chain.ainvoke(payload)
        except OutputParserException as e:
            logger.error(f"Evaluation response could not be parsed: {e}")
            raise ParseError("Evaluation service returned an invalid scorecard", details=str(e)) from e
        except Exception as e:
            logger.warning(f"Evaluation attempt failed: {e}")
            raise UpstreamServiceError(f"AI evaluation service error: {e}") from e

    async def evaluate(self, payload: Dict[str, Any]) -> Scorecard:
        if self.chain is None:
            raise UpstreamServiceError("AI evaluation service is not available. Please check API key configuration.")
        return await self._invoke_with_retry(payload)


# --- 3. Finalization ---

class ReportAggregator:
    def __init__(self, store, evaluator: EvaluationService, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.evaluator = evaluator
        self.clock = clock

    async def prepare(self, session: Session, request: ReportRequest):
        """Load everything the report needs and build the evaluation payload."""
        question = await self.store.get_question(session.question_id)
        if question is None:
            raise NotFoundError(f"Question {session.question_id} not found")

        test_cases = await self.store.get_test_cases(question.id)
        try:
            submissions = await self.store.list_submissions(session.id)
        except PersistenceError as e:
            logger.error(f"Failed to fetch submissions for session {session.id}: {e}")
            submissions = []

        enriched = build_enriched_results(test_cases, request.test_results)
        timeline = build_submission_timeline(submissions)
        payload = build_evaluation_payload(question, request, enriched, timeline)
        return payload, enriched

    async def finalize(self, session: Session, request: ReportRequest) -> Dict[str, Any]:
        """
        Evaluate the session and close it.

        Raises:
            UpstreamServiceError, ParseError: evaluation failed, nothing was written
        """
        payload, enriched = await self.prepare(session, request)

        logger.info(
            f"Evaluating session {session.id}: transcript {len(payload['transcript'])} chars, "
            f"{payload['submission_count']} submissions"
        )
        scorecard = await self.evaluator.evaluate(payload)
        scorecard_json = scorecard.to_json()

        applied = await self.store.conditional_update(
            session.id,
            SessionStatus.IN_PROGRESS,
            {
                "status": SessionStatus.COMPLETED,
                "ended_at": self.clock(),
                "final_code": request.final_code,
                "transcript": {"items": request.transcript},
                "events": {"scorecard": scorecard_json, "testResults": enriched},
            },
        )
        if not applied:
            # Closed while the evaluation ran; report what the store holds instead
            stored = await self.store.get_session(session.id)
            logger.info(
                f"Session {session.id} was closed during evaluation "
                f"({stored.status.value if stored else 'missing'}), report not stored"
            )
            return {
                "success": True,
                "applied": False,
                "sessionId": session.id,
                "status": stored.status.value if stored else None,
                "scorecard": (stored.events or {}).get("scorecard") if stored else None,
            }

        logger.info(f"Session {session.id} completed with recommendation {scorecard.overall_recommendation.value}")
        return {
            "success": True,
            "applied": True,
            "sessionId": session.id,
            "status": SessionStatus.COMPLETED.value,
            "scorecard": scorecard_json,
            "testSummary": summarize_results(enriched),
        }
