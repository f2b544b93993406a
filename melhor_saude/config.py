from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

PROJECT_ROOT = Path(__file__).resolve().parents[1]

# SQLite na raiz do projeto por omissão; qualquer URL SQLAlchemy serve
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{PROJECT_ROOT / 'melhor_saude.sqlite'}")
DATABASE_ECHO = os.getenv("DATABASE_ECHO", "0") == "1"

# Em produção: definir sempre em variável de ambiente
JWT_SECRET = os.getenv("JWT_SECRET", "CHANGE_ME_DEV_SECRET")
JWT_ALG = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", "60"))
PASSWORD_RESET_EXPIRE_HOURS = int(os.getenv("PASSWORD_RESET_EXPIRE_HOURS", "24"))

APP_ENV = os.getenv("APP_ENV", "production")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR") or None

AI_GATEWAY_URL = os.getenv("AI_GATEWAY_URL", "https://ai.gateway.lovable.dev/v1/chat/completions")
AI_API_KEY = os.getenv("AI_API_KEY") or None
AI_MODEL = os.getenv("AI_MODEL", "google/gemini-2.5-flash")
AI_TIMEOUT_SECONDS = float(os.getenv("AI_TIMEOUT_SECONDS", "30"))

INVITE_CODE_PREFIX = os.getenv("INVITE_CODE_PREFIX", "MS")
INVITE_EXPIRE_DAYS = int(os.getenv("INVITE_EXPIRE_DAYS", "30"))
DEFAULT_INVITE_SESSIONS = int(os.getenv("DEFAULT_INVITE_SESSIONS", "10"))

WORKDAY_START_HOUR = int(os.getenv("WORKDAY_START_HOUR", "9"))
WORKDAY_END_HOUR = int(os.getenv("WORKDAY_END_HOUR", "18"))
REMINDER_HOURS = int(os.getenv("REMINDER_HOURS", "24"))

API_BASE = os.getenv("API_BASE", "http://127.0.0.1:8000")


def is_development() -> bool:
    return APP_ENV.lower() == "development"
