"""
Gunicorn configuration for the TaskPulse API.

Uvicorn workers serve HTTP and the live WebSocket sessions. Each worker
holds its own connection registry; with NOTICE_CHANNEL_BACKEND=redis a
change notice raised in any worker reaches sessions held by all of them.

The arq worker (scanner + digest consumers) is a separate process:
    arq app.tasks.task_queue.WorkerSettings
"""

import multiprocessing
import os

# ─── Server Socket ───────────────────────────────────────────
bind = f"0.0.0.0:{os.getenv('PORT', os.getenv('APP_PORT', '8000'))}"

# ─── Worker Processes ────────────────────────────────────────
worker_class = "uvicorn.workers.UvicornWorker"

# Workers = (2 × CPU cores) + 1, capped by WEB_CONCURRENCY
workers = min(multiprocessing.cpu_count() * 2 + 1, int(os.getenv("WEB_CONCURRENCY", "4")))

threads = 1

# ─── Timeouts ────────────────────────────────────────────────
timeout = int(os.getenv("GUNICORN_TIMEOUT", "60"))

# Long enough for the lifespan hook to close live sessions and stop the dispatcher
graceful_timeout = 30

keepalive = 5

# ─── Worker Lifecycle ────────────────────────────────────────
# 0 = never recycle: a recycled worker drops every live session it holds
max_requests = int(os.getenv("GUNICORN_MAX_REQUESTS", "0"))
max_requests_jitter = 50 if max_requests else 0

preload_app = False  # Redis clients and the dispatcher are created per worker

# ─── Logging ─────────────────────────────────────────────────
# structlog LoggingMiddleware logs requests; Gunicorn only reports errors
accesslog = None
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()

# ─── Server Mechanics ────────────────────────────────────────
# Client addresses come from X-Forwarded-For (rate limit identity)
forwarded_allow_ips = os.getenv("FORWARDED_ALLOW_IPS", "*")
