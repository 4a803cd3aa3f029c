"""GreenOps Dashboard configuration: loaded from environment variables."""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent.parent / ".env")

REPO_ROOT = Path(__file__).resolve().parent.parent

# Supabase
SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
SUPABASE_SERVICE_KEY = os.environ.get("SUPABASE_SERVICE_KEY", "")

# Google OAuth (web application client)
GOOGLE_CLIENT_ID = os.environ.get("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET = os.environ.get("GOOGLE_CLIENT_SECRET", "")
GCP_REDIRECT_URI = os.environ.get(
    "GCP_REDIRECT_URI", "http://localhost:8000/api/auth/gcp/callback"
)

# Where the OAuth callback sends the browser back to
FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:3000")

# Token storage + OAuth state signing
TOKEN_ENCRYPTION_KEY = os.environ.get("TOKEN_ENCRYPTION_KEY", "")
OAUTH_STATE_SECRET = os.environ.get("OAUTH_STATE_SECRET", "")

# BigQuery: project that runs queries / holds the billing + carbon exports
GOOGLE_CLOUD_PROJECT_ID = os.environ.get("GOOGLE_CLOUD_PROJECT_ID", "")
BILLING_EXPORT_PROJECT = os.environ.get("BILLING_EXPORT_PROJECT", "") or GOOGLE_CLOUD_PROJECT_ID

# Cost heuristics
DEFAULT_MONTHLY_COST = float(os.environ.get("DEFAULT_MONTHLY_COST", "0"))
DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "EUR")
ANOMALY_COST_THRESHOLD = float(os.environ.get("ANOMALY_COST_THRESHOLD", "10.0"))

# Background sync
SYNC_INTERVAL_HOURS = int(os.environ.get("SYNC_INTERVAL_HOURS", "24"))

# Server
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "info")
