import os
from typing import Dict, List

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


class Config:
    """Configuration constants for the interview session orchestrator"""

    # --- Storage ---
    SUPABASE_URL = os.getenv("SUPABASE_URL")
    SUPABASE_KEY = os.getenv("SUPABASE_KEY")

    # --- Judge0 (RapidAPI hosted CE by default) ---
    JUDGE0_URL = os.getenv("JUDGE0_URL", "https://judge0-ce.p.rapidapi.com")
    JUDGE0_API_KEY = os.getenv("JUDGE0_API_KEY", "")
    JUDGE0_HOST = os.getenv("JUDGE0_HOST", "judge0-ce.p.rapidapi.com")
    JUDGE0_REQUEST_TIMEOUT = _env_float("JUDGE0_REQUEST_TIMEOUT", 15.0)
    CPU_TIME_LIMIT = 2.0

    # Supported languages -> Judge0 language ids
    LANGUAGES: Dict[str, int] = {
        "python": 71,
        "javascript": 63,
        "cpp": 54,
        "c": 50,
        "java": 62,
    }

    # --- Evaluation service ---
    GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY")
    EVAL_MODEL = os.getenv("EVAL_MODEL", "gemini-2.5-pro")
    EVAL_REQUEST_TIMEOUT = _env_int("EVAL_REQUEST_TIMEOUT", 120)

    # --- Session lifecycle ---
    SESSION_DURATION_MINUTES = _env_int("SESSION_DURATION_MINUTES", 30)
    CREATION_TOKEN_TTL_MS = 5 * 60 * 1000
    SESSION_CREDIT_COST = 1

    # --- Polling ---
    POLL_INTERVAL_SECONDS = _env_float("POLL_INTERVAL_SECONDS", 1.5)
    POLL_MAX_ATTEMPTS = _env_int("POLL_MAX_ATTEMPTS", 10)

    # --- Payload budgets ---
    MAX_STDERR_LENGTH = 500
    MAX_TRANSCRIPT_CHARS = 80000
    MAX_REPORT_SUBMISSIONS = 5
    MAX_SUBMISSION_CODE_CHARS = 1500
    MAX_CODE_LENGTH = 50000

    # --- HTTP ---
    ALLOWED_ORIGINS: List[str] = [
        origin.strip()
        for origin in os.getenv(
            "ALLOWED_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000"
        ).split(",")
        if origin.strip()
    ]
    CLEANUP_INTERVAL_SECONDS = 300
    FINISHED_RUN_TTL_SECONDS = 3600
