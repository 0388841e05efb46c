from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

API_TOKEN = os.environ.get("API_TOKEN", "dev-token")

# - Set CORS_ALLOW_ORIGINS="https://dashboard.example.com,https://another-origin.com"
# - For local development the default is "*".
CORS_ALLOW_ORIGINS = os.environ.get("CORS_ALLOW_ORIGINS", "*")

DB_PATH = os.environ.get("DB_PATH") or os.path.join(os.path.dirname(__file__), "pulse.db")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

# log | smtp | http
MAIL_TRANSPORT = os.environ.get("MAIL_TRANSPORT", "log")
MAIL_FROM = os.environ.get("MAIL_FROM", "noreply@example.com")
MAIL_FROM_NAME = os.environ.get("MAIL_FROM_NAME", "")

SMTP_HOST = os.environ.get("SMTP_HOST", "localhost")
SMTP_PORT = int(os.environ.get("SMTP_PORT", "587"))
SMTP_USER = os.environ.get("SMTP_USER", "")
SMTP_PASS = os.environ.get("SMTP_PASS", "")
SMTP_USE_TLS = os.environ.get("SMTP_USE_TLS", "true").lower() in ("1", "true", "yes")

MAIL_API_URL = os.environ.get("MAIL_API_URL", "")
MAIL_API_KEY = os.environ.get("MAIL_API_KEY", "")
MAIL_API_TIMEOUT = float(os.environ.get("MAIL_API_TIMEOUT", "15"))

# dispatch worker pool; keep under the provider's outbound limits
SEND_CONCURRENCY = int(os.environ.get("SEND_CONCURRENCY", "4"))
SEND_RATE_PER_SEC = float(os.environ.get("SEND_RATE_PER_SEC", "10"))
SEND_RETRY_ATTEMPTS = int(os.environ.get("SEND_RETRY_ATTEMPTS", "2"))
SEND_RETRY_BACKOFF = float(os.environ.get("SEND_RETRY_BACKOFF", "2.0"))

# 0 disables the scheduled-campaign poller
SCHEDULER_INTERVAL_SECS = int(os.environ.get("SCHEDULER_INTERVAL_SECS", "30"))
