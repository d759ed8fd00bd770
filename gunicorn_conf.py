"""
Gunicorn settings for the salvage escrow settlement service
Run with: gunicorn -c gunicorn_conf.py webhook_server:app
"""
import os

bind = f"0.0.0.0:{os.getenv('PORT', '5000')}"

# Each worker runs its own enforcement scheduler. Sweeps only call idempotent
# operations, so overlapping runs across workers find nothing left to do.
workers = int(os.getenv("WEB_CONCURRENCY", "2"))
worker_class = "uvicorn.workers.UvicornWorker"
timeout = 60  # webhook processing is bounded by WEBHOOK_TIMEOUT_SECONDS
graceful_timeout = 30
keepalive = 30
max_requests = 5000
max_requests_jitter = 500

accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()

proc_name = "salvage_escrow_settlement"

# Database pools and scheduler event loops must be created after fork
preload_app = False


def when_ready(server):
    print(f"✅ Gunicorn ready: {workers} uvicorn workers on {bind}")


def post_fork(server, worker):
    print(f"🔧 Worker {worker.pid} forked")


def worker_abort(worker):
    print(f"❌ Worker {worker.pid} aborted (timeout {timeout}s)")
