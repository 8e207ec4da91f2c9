import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from the project root
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")


def _float(name: str, default: float) -> float:
    return float(os.getenv(name, default))


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, default))


class Settings:
    # --- STORAGE ---
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")  # empty: in-memory

    # --- EXTERNAL LEDGER (relayer) ---
    LEDGER_API_URL: str = os.getenv("LEDGER_API_URL", "http://localhost:8669")
    LEDGER_API_KEY: str = os.getenv("LEDGER_API_KEY", "")
    DISTRIBUTOR_ADDRESS: str = os.getenv("DISTRIBUTOR_ADDRESS", "")
    DISTRIBUTOR_SECRET: str = os.getenv("DISTRIBUTOR_SECRET", "")
    APP_FUND_ADDRESS: str = os.getenv("APP_FUND_ADDRESS", "")

    # One block every ~10s; a transfer expires after 32 blocks.
    CONFIRMATION_POLL_INTERVAL_SECONDS: float = _float("CONFIRMATION_POLL_INTERVAL_SECONDS", 10.0)
    CONFIRMATION_MAX_WAIT_SECONDS: float = _float("CONFIRMATION_MAX_WAIT_SECONDS", 320.0)
    TRANSFER_EXPIRATION_SECONDS: int = _int("TRANSFER_EXPIRATION_SECONDS", 320)
    MAX_RESUBMISSIONS: int = _int("MAX_RESUBMISSIONS", 2)
    MAX_SUBMISSION_ATTEMPTS: int = _int("MAX_SUBMISSION_ATTEMPTS", 3)
    SUBMISSION_BACKOFF_SECONDS: float = _float("SUBMISSION_BACKOFF_SECONDS", 1.0)

    # --- MANUAL REVIEW ---
    MANUAL_REVIEW_WEBHOOK_URL: str = os.getenv("MANUAL_REVIEW_WEBHOOK_URL", "")
    MANUAL_REVIEW_WEBHOOK_TOKEN: str = os.getenv("MANUAL_REVIEW_WEBHOOK_TOKEN", "")
    EVIDENCE_BASE_URL: str = os.getenv("EVIDENCE_BASE_URL", "")

    # --- CLASSIFIER ---
    GROQ_API_KEY: str = os.getenv("GROQ_API_KEY", "")
    CLASSIFIER_MODEL: str = os.getenv("CLASSIFIER_MODEL", "meta-llama/llama-4-scout-17b-16e-instruct")
    CLASSIFIER_TIMEOUT_SECONDS: float = _float("CLASSIFIER_TIMEOUT_SECONDS", 20.0)


settings = Settings()
