"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    PIPELINES_FILE            — YAML file with pipeline and target definitions (default: pipelines.yaml)
    RUNS_DIR                  — Directory holding one JSON RunRecord per run (default: runs)
    DEFAULT_STAGE_TIMEOUT     — Seconds a stage may run when it declares no timeout (default: 600)
    MAX_OUTPUT_BYTES          — Per-stream capture limit for stage output (default: 65536)
    KILL_GRACE_SECONDS        — Delay between SIGTERM and SIGKILL on timeout/cancel (default: 5)
    RETRY_BACKOFF_SECONDS     — Linear backoff step between stage attempts (default: 2)
    RETRY_BACKOFF_MAX_SECONDS — Upper bound for a single backoff sleep (default: 30)
    MAX_CONCURRENT_RUNS       — Runs admitted at the same time (default: 4)
    SUPERSEDE_IN_FLIGHT       — Newer trigger for same pipeline+ref aborts the older run (default: true)
    DEPLOY_TIMEOUT            — Seconds to wait for a rollout to become healthy (default: 300)
    DEPLOY_POLL_INTERVAL      — Initial poll interval while waiting on a rollout (default: 2)
    KUBECTL_BIN               — kubectl executable (default: kubectl)
    REGISTRY_USERNAME         — Image registry credentials (optional)
    REGISTRY_PASSWORD
    GITHUB_WEBHOOK_SECRET     — Shared secret for X-Hub-Signature-256 checks (optional)
    LOG_LEVEL                 — Root log level (default: INFO)
    LOG_DIR                   — Directory for dated log files (default: logs)

Retry Policy:
    Attempt n of a failing stage sleeps RETRY_BACKOFF_SECONDS * n before the
    next attempt, never longer than RETRY_BACKOFF_MAX_SECONDS.
"""
import os
from dotenv import load_dotenv

load_dotenv()

PIPELINES_FILE = os.getenv("PIPELINES_FILE", "pipelines.yaml")
RUNS_DIR = os.getenv("RUNS_DIR", "runs")

# Stage execution
DEFAULT_STAGE_TIMEOUT = int(os.getenv("DEFAULT_STAGE_TIMEOUT", 600))
MAX_OUTPUT_BYTES = int(os.getenv("MAX_OUTPUT_BYTES", 64 * 1024))
KILL_GRACE_SECONDS = float(os.getenv("KILL_GRACE_SECONDS", 5))

# Retry backoff
RETRY_BACKOFF_SECONDS = float(os.getenv("RETRY_BACKOFF_SECONDS", 2))
RETRY_BACKOFF_MAX_SECONDS = float(os.getenv("RETRY_BACKOFF_MAX_SECONDS", 30))

# Run admission
MAX_CONCURRENT_RUNS = int(os.getenv("MAX_CONCURRENT_RUNS", 4))
SUPERSEDE_IN_FLIGHT = os.getenv("SUPERSEDE_IN_FLIGHT", "true").lower() == "true"

# Deployment targets
DEPLOY_TIMEOUT = int(os.getenv("DEPLOY_TIMEOUT", 300))
DEPLOY_POLL_INTERVAL = float(os.getenv("DEPLOY_POLL_INTERVAL", 2))
KUBECTL_BIN = os.getenv("KUBECTL_BIN", "kubectl")
REGISTRY_USERNAME = os.getenv("REGISTRY_USERNAME")
REGISTRY_PASSWORD = os.getenv("REGISTRY_PASSWORD")

# Webhook
GITHUB_WEBHOOK_SECRET = os.getenv("GITHUB_WEBHOOK_SECRET")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
