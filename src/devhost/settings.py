from __future__ import annotations
import os

# Process control
KILL_GRACE_SECONDS = float(os.environ.get("DEVHOST_KILL_GRACE_SECONDS", "2"))

# Readiness probing
PROBE_INTERVAL_SECONDS = float(os.environ.get("DEVHOST_PROBE_INTERVAL_SECONDS", "1"))
PROBE_TIMEOUT_SECONDS = float(os.environ.get("DEVHOST_PROBE_TIMEOUT_SECONDS", "3"))
STARTUP_TIMEOUT_SECONDS = float(os.environ.get("DEVHOST_STARTUP_TIMEOUT_SECONDS", "120"))

# Postgres recipe
POSTGRES_IMAGE = os.environ.get("DEVHOST_POSTGRES_IMAGE", "postgres:17")
POSTGRES_USER = os.environ.get("DEVHOST_POSTGRES_USER", "postgres")
POSTGRES_PASSWORD = os.environ.get("DEVHOST_POSTGRES_PASSWORD", "postgres")

# Paths / environment handed to child processes
DEFAULT_APPHOST = os.environ.get("DEVHOST_APPHOST", "apphost.py")
OUTPUT_DIR = os.environ.get("DEVHOST_OUTPUT_DIR", ".devhost/artifacts")
ENVIRONMENT = os.environ.get("DEVHOST_ENVIRONMENT", "Development")
