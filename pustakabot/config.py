from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent

BOOK_SEARCH_MODES = ("hybrid", "criteria", "universal")


@dataclass(frozen=True)
class Settings:
    """Configuration container for collaborators, abuse limits, and session timing."""
    gemini_api_key: str
    gemini_model: str
    llm_timeout_sec: float
    llm_max_attempts: int
    llm_max_tokens: int
    llm_temperature: float
    responses_path: Path
    backup_dir: Path
    prompts_dir: Path
    analytics_db_path: Path
    mysql_host: str
    mysql_port: int
    mysql_user: str
    mysql_password: str
    mysql_database: str
    gateway_url: str
    admin_user: str
    admin_pass: str
    session_timeout_sec: float
    sweep_interval_sec: float
    spam_cooldown_sec: float
    rate_window_sec: float
    rate_max_messages: int
    ban_duration_sec: float
    max_message_chars: int
    book_search_mode: str
    result_limit: int


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables and filesystem paths.
    Dependencies: Uses os.getenv and BASE_DIR for default paths.
    Failure Modes: Invalid numeric values or an unknown BOOK_SEARCH_MODE raise ValueError.
    If Removed: App cannot wire the dialogue engine and fails at startup.
    Testing Notes: Verify defaults and overrides via environment variables.
    """
    # Resolve data file locations, then build Settings.
    responses_path = os.getenv("RESPONSES_PATH")
    if responses_path:
        responses_file = Path(responses_path)
    else:
        responses_file = (BASE_DIR / ".." / "resources" / "responses.json").resolve()

    backup_dir = os.getenv("BACKUP_DIR")
    analytics_path = os.getenv("ANALYTICS_DB_PATH")

    book_search_mode = os.getenv("BOOK_SEARCH_MODE", "hybrid").strip().lower()
    if book_search_mode not in BOOK_SEARCH_MODES:
        raise ValueError(f"BOOK_SEARCH_MODE must be one of {', '.join(BOOK_SEARCH_MODES)}")

    return Settings(
        gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
        llm_timeout_sec=float(os.getenv("LLM_TIMEOUT_SEC", "30")),
        llm_max_attempts=int(os.getenv("LLM_MAX_ATTEMPTS", "3")),
        llm_max_tokens=int(os.getenv("LLM_MAX_TOKENS", "300")),
        llm_temperature=float(os.getenv("LLM_TEMPERATURE", "0.5")),
        responses_path=responses_file,
        backup_dir=Path(backup_dir) if backup_dir else responses_file.parent / "backups",
        prompts_dir=(BASE_DIR / "prompts").resolve(),
        analytics_db_path=Path(analytics_path) if analytics_path else (BASE_DIR / "data" / "analytics.db"),
        mysql_host=os.getenv("MYSQL_HOST", "127.0.0.1"),
        mysql_port=int(os.getenv("MYSQL_PORT", "3306")),
        mysql_user=os.getenv("MYSQL_USER", "root"),
        mysql_password=os.getenv("MYSQL_PASSWORD", ""),
        mysql_database=os.getenv("MYSQL_DATABASE", "perpustakaan"),
        gateway_url=os.getenv("GATEWAY_URL", "http://localhost:3002/send-direct"),
        admin_user=os.getenv("ADMIN_USER", ""),
        admin_pass=os.getenv("ADMIN_PASS", ""),
        session_timeout_sec=float(os.getenv("SESSION_TIMEOUT_SEC", str(30 * 60))),
        sweep_interval_sec=float(os.getenv("SWEEP_INTERVAL_SEC", "1")),
        spam_cooldown_sec=float(os.getenv("SPAM_COOLDOWN_SEC", "1")),
        rate_window_sec=float(os.getenv("RATE_WINDOW_SEC", "60")),
        rate_max_messages=int(os.getenv("RATE_MAX_MESSAGES", "22")),
        ban_duration_sec=float(os.getenv("BAN_DURATION_SEC", str(30 * 60))),
        max_message_chars=int(os.getenv("MAX_MESSAGE_CHARS", "300")),
        book_search_mode=book_search_mode,
        result_limit=int(os.getenv("RESULT_LIMIT", "10")),
    )
