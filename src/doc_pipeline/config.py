"""
Configuration module for the classification worker.

This module centralizes the loading and validation of all configuration
parameters from environment variables. It provides a single `Settings`
class that acts as a container for all configurable values, so retry limits,
delays and routing thresholds live in configuration defaults rather than in
the processing logic.
"""

import os
import socket
import uuid
from typing import Literal

import openai


class Settings:
    """
    A container for all configuration settings, loaded from environment variables.

    Optional settings fall back to defaults; missing required settings and
    invalid values raise ``ValueError``.
    """

    # --- Pipeline Stage Configuration ---
    STAGE_NAME: str
    LEDGER_STAGE_NAME: str
    SERVICE_NAME: str
    WORKER_ID: str

    # --- Retry Configuration ---
    MAX_RETRIES: int
    RETRY_DELAY_SECONDS: int
    DEAD_LETTER_ON_NOT_FOUND: bool

    # --- Routing Configuration ---
    REVIEW_CONFIDENCE_THRESHOLD: float
    REVIEW_QUALITY_THRESHOLD: float
    LEDGER_DOCUMENT_TYPES: frozenset[str]

    # --- Backends ---
    BROKER_BACKEND: Literal["memory", "redis"]
    REDIS_URL: str | None
    STORE_BACKEND: Literal["memory", "postgres"]
    POSTGRES_DSN: str | None
    TELEMETRY_URL: str | None

    # --- Worker Loop ---
    POLL_INTERVAL: int

    # --- LLM Provider Configuration ---
    LLM_PROVIDER: Literal["openai", "ollama"]
    OLLAMA_BASE_URL: str | None
    OPENAI_API_KEY: str | None
    CLASSIFY_MODEL: str
    CLASSIFY_FALLBACK_MODEL: str
    CLASSIFY_TIMEOUT: int
    CLASSIFY_MAX_CHARS: int
    REQUEST_TIMEOUT: int
    LLM_MAX_RETRIES: int

    # --- Logging ---
    LOG_LEVEL: str
    LOG_FORMAT: Literal["console", "json"]

    def __init__(self):
        """
        Loads settings from environment variables and performs validation.
        """
        # --- Pipeline Stage Configuration ---
        self.STAGE_NAME = os.getenv("STAGE_NAME", "classification").strip()
        self.LEDGER_STAGE_NAME = os.getenv("LEDGER_STAGE_NAME", "ledger").strip()
        self.SERVICE_NAME = os.getenv("SERVICE_NAME", "classification-worker").strip()
        # Each process needs its own id; it names the broker processing list
        self.WORKER_ID = (
            os.getenv("WORKER_ID", "").strip()
            or f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"
        )
        if not self.STAGE_NAME or not self.LEDGER_STAGE_NAME:
            raise ValueError("STAGE_NAME and LEDGER_STAGE_NAME must not be empty")

        # --- Retry Configuration ---
        self.MAX_RETRIES = self._get_int("MAX_RETRIES", 5, minimum=0)
        self.RETRY_DELAY_SECONDS = self._get_int("RETRY_DELAY_SECONDS", 15, minimum=1)
        self.DEAD_LETTER_ON_NOT_FOUND = self._get_bool("DEAD_LETTER_ON_NOT_FOUND", False)

        # --- Routing Configuration ---
        self.REVIEW_CONFIDENCE_THRESHOLD = self._get_float(
            "REVIEW_CONFIDENCE_THRESHOLD", 0.85
        )
        if not 0.0 <= self.REVIEW_CONFIDENCE_THRESHOLD <= 1.0:
            raise ValueError("REVIEW_CONFIDENCE_THRESHOLD must be between 0 and 1")
        self.REVIEW_QUALITY_THRESHOLD = self._get_float("REVIEW_QUALITY_THRESHOLD", 70)
        self.LEDGER_DOCUMENT_TYPES = frozenset(
            item.strip().lower()
            for item in os.getenv("LEDGER_DOCUMENT_TYPES", "invoice,receipt").split(",")
            if item.strip()
        )

        # --- Backends ---
        self.BROKER_BACKEND = os.getenv("BROKER_BACKEND", "memory").strip().lower()
        if self.BROKER_BACKEND not in ("memory", "redis"):
            raise ValueError("BROKER_BACKEND must be 'memory' or 'redis'")
        self.REDIS_URL = os.getenv("REDIS_URL")
        if self.BROKER_BACKEND == "redis":
            self.REDIS_URL = self._get_required_env("REDIS_URL")

        self.STORE_BACKEND = os.getenv("STORE_BACKEND", "memory").strip().lower()
        if self.STORE_BACKEND not in ("memory", "postgres"):
            raise ValueError("STORE_BACKEND must be 'memory' or 'postgres'")
        self.POSTGRES_DSN = os.getenv("POSTGRES_DSN")
        if self.STORE_BACKEND == "postgres":
            self.POSTGRES_DSN = self._get_required_env("POSTGRES_DSN")

        self.TELEMETRY_URL = os.getenv("TELEMETRY_URL") or None

        # --- Worker Loop ---
        self.POLL_INTERVAL = self._get_int("POLL_INTERVAL", 1, minimum=1)

        # --- LLM Provider Configuration ---
        self.LLM_PROVIDER = os.getenv("LLM_PROVIDER", "openai")
        if self.LLM_PROVIDER not in ("openai", "ollama"):
            raise ValueError("LLM_PROVIDER must be 'openai' or 'ollama'")

        if self.LLM_PROVIDER == "ollama":
            self.OLLAMA_BASE_URL = os.getenv(
                "OLLAMA_BASE_URL", "http://localhost:11434/v1/"
            )
            self.OPENAI_API_KEY = None  # Not used for Ollama
            self.CLASSIFY_MODEL = os.getenv("CLASSIFY_MODEL", "gemma3:27b")
            self.CLASSIFY_FALLBACK_MODEL = os.getenv("CLASSIFY_FALLBACK_MODEL", "gemma3:12b")
        else:  # openai
            self.OLLAMA_BASE_URL = None
            self.OPENAI_API_KEY = self._get_required_env("OPENAI_API_KEY")
            self.CLASSIFY_MODEL = os.getenv("CLASSIFY_MODEL", "gpt-5-mini")
            self.CLASSIFY_FALLBACK_MODEL = os.getenv("CLASSIFY_FALLBACK_MODEL", "o4-mini")

        self.CLASSIFY_TIMEOUT = self._get_int("CLASSIFY_TIMEOUT", 60, minimum=1)
        self.CLASSIFY_MAX_CHARS = self._get_int("CLASSIFY_MAX_CHARS", 2000, minimum=1)
        self.REQUEST_TIMEOUT = self._get_int("REQUEST_TIMEOUT", 30, minimum=1)
        self.LLM_MAX_RETRIES = self._get_int("LLM_MAX_RETRIES", 3, minimum=1)

        # --- Logging ---
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_FORMAT = os.getenv("LOG_FORMAT", "console").lower()
        if self.LOG_FORMAT not in ("console", "json"):
            raise ValueError("LOG_FORMAT must be 'console' or 'json'")

    def _get_required_env(self, var_name: str) -> str:
        """
        Gets a required environment variable, raising an error if it's not set.
        """
        value = os.getenv(var_name)
        if value is None:
            raise ValueError(f"Required environment variable '{var_name}' is not set.")
        return value

    def _get_int(self, var_name: str, default: int, *, minimum: int) -> int:
        raw = os.getenv(var_name)
        if raw is None or not raw.strip():
            return default
        try:
            value = int(raw)
        except ValueError:
            raise ValueError(f"{var_name} must be an integer, got '{raw}'") from None
        if value < minimum:
            raise ValueError(f"{var_name} must be >= {minimum}, got {value}")
        return value

    def _get_float(self, var_name: str, default: float) -> float:
        raw = os.getenv(var_name)
        if raw is None or not raw.strip():
            return float(default)
        try:
            return float(raw)
        except ValueError:
            raise ValueError(f"{var_name} must be a number, got '{raw}'") from None

    def _get_bool(self, var_name: str, default: bool) -> bool:
        raw = os.getenv(var_name)
        if raw is None or not raw.strip():
            return default
        value = raw.strip().lower()
        if value in ("1", "true", "yes", "on"):
            return True
        if value in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"{var_name} must be a boolean, got '{raw}'")


def setup_libraries(settings: Settings) -> None:
    """
    Configures third-party libraries based on the application settings.
    """
    if settings.LLM_PROVIDER == "ollama":
        openai.base_url = settings.OLLAMA_BASE_URL
        openai.api_key = "dummy"
    else:
        openai.api_key = settings.OPENAI_API_KEY
