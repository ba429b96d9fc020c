"""
Environment-driven settings for the batch orchestrator.

Everything is read once at import time, after `.env` is loaded, so values
from a local `.env` file are visible here.
"""

import os

from dotenv import load_dotenv

load_dotenv()

# ── Render providers ─────────────────────────────────────────────────────────

KIE_API_KEY = os.getenv("KIE_API_KEY", "")
KIE_API_BASE = os.getenv("KIE_API_BASE", "https://api.kie.ai/api/v1")
KIE_POLL_INTERVAL = float(os.getenv("KIE_POLL_INTERVAL", "5"))

FAL_API_KEY = os.getenv("FAL_API_KEY", "")
FAL_API_BASE = os.getenv("FAL_API_BASE", "https://queue.fal.run")
FAL_VIDEO_ENDPOINT = os.getenv("FAL_VIDEO_ENDPOINT", "fal-ai/kling-video/v2.1/standard/text-to-video")
FAL_POLL_INTERVAL = float(os.getenv("FAL_POLL_INTERVAL", "3"))

# ── Storage / infra ──────────────────────────────────────────────────────────

SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
REDIS_URL = os.getenv("REDIS_URL", "")

WORKER_SHARED_SECRET = os.getenv("WORKER_SHARED_SECRET", "")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# ── Batch limits ─────────────────────────────────────────────────────────────

MAX_BATCH_JOBS = int(os.getenv("MAX_BATCH_JOBS", "5000"))
MAX_JOB_ATTEMPTS = int(os.getenv("MAX_JOB_ATTEMPTS", "3"))        # retries per job
MAX_TRANSIENT_ERRORS = int(os.getenv("MAX_TRANSIENT_ERRORS", "3"))  # consecutive, per job
MAX_CONCURRENT_SUBMITS = int(os.getenv("MAX_CONCURRENT_SUBMITS", "8"))

# ── Polling ──────────────────────────────────────────────────────────────────

TICK_SECONDS = float(os.getenv("TICK_SECONDS", "1"))
MAX_POLL_BACKOFF = float(os.getenv("MAX_POLL_BACKOFF", "60"))

# ── Batch-start rate limit ───────────────────────────────────────────────────

BATCH_START_LIMIT = int(os.getenv("BATCH_START_LIMIT", "10"))
BATCH_START_WINDOW_SECONDS = int(os.getenv("BATCH_START_WINDOW_SECONDS", "3600"))
