"""
Centralized configuration for MedExchange messaging.
Every value is read once from the environment (after loading .env).
"""

import os
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# --- Backend (PostgREST + realtime) ---
SUPABASE_URL = os.getenv("SUPABASE_URL", "").rstrip("/")
SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY", "")
MESSAGES_TABLE = os.getenv("MESSAGES_TABLE", "messages")
CLIENT_INFO = os.getenv("CLIENT_INFO", "medication-exchange-app")
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "15"))

# --- Realtime ---
REALTIME_FILTER_BY_RECIPIENT = _flag("REALTIME_FILTER_BY_RECIPIENT")
REALTIME_HEARTBEAT_SECONDS = int(os.getenv("REALTIME_HEARTBEAT_SECONDS", "25"))

# --- Identity (normally supplied by the auth layer) ---
HOSPITAL_ID = os.getenv("HOSPITAL_ID", "")
HOSPITAL_NAME = os.getenv("HOSPITAL_NAME", "")

# --- Ledger persistence ---
LEDGER_BACKEND = os.getenv("LEDGER_BACKEND", "memory")  # memory | file | gcs
LEDGER_PATH = os.getenv("LEDGER_PATH", "data/ledger.json")
GCS_BUCKET_NAME = os.getenv("GCS_BUCKET_NAME", "medexchange-ledger")

# --- Server ---
PORT = int(os.getenv("PORT", "8080"))
