"""Provisioning engine configuration."""

import os
import pathlib as pl

LAUNCH_PATH = pl.Path.cwd()

# Base URL of the TiP (Test-in-Production) service, e.g. "https://tip.example.net/api"
TIP_SERVICE_URL = (os.environ.get("TIP_SERVICE_URL") or "").rstrip("/")
if TIP_SERVICE_URL and not TIP_SERVICE_URL.startswith(("http://", "https://")):
    msg = f"Invalid TIP_SERVICE_URL: {TIP_SERVICE_URL}"
    raise RuntimeError(msg)

# Timeout (in seconds) for a single HTTP request to the TiP service
TIP_REQUEST_TIMEOUT = int(os.environ.get("TIP_REQUEST_TIMEOUT") or 60)

# Directory of the JSON file store used when executing steps from command line
FLEET_STATE_DIR = LAUNCH_PATH / pl.Path(
    os.environ.get("FLEET_STATE_DIR") or "fleet-state"
).expanduser()

# Default timeouts (in seconds) of the steps, used when the step component doesn't define `Timeout`
TIP_CREATION_TIMEOUT = int(os.environ.get("TIP_CREATION_TIMEOUT") or 2 * 60 * 60)
TIP_STATE_TIMEOUT = int(os.environ.get("TIP_STATE_TIMEOUT") or 60 * 60)
if TIP_CREATION_TIMEOUT <= 0 or TIP_STATE_TIMEOUT <= 0:
    msg = "Step timeouts must be positive numbers of seconds."
    raise RuntimeError(msg)

# Number of consecutive transient failures of a single resource before the step fails
MAX_CONSECUTIVE_FAILURES = int(os.environ.get("MAX_CONSECUTIVE_FAILURES") or 5)
if MAX_CONSECUTIVE_FAILURES < 1:
    msg = f"Invalid MAX_CONSECUTIVE_FAILURES '{MAX_CONSECUTIVE_FAILURES}': must be >= 1"
    raise RuntimeError(msg)

# Resolve FRAMEWORK_LOG
FRAMEWORK_LOG: str | pl.Path = os.environ.get("FRAMEWORK_LOG") or ""
if FRAMEWORK_LOG:
    FRAMEWORK_LOG = pl.Path(FRAMEWORK_LOG).expanduser().resolve()
