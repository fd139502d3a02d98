from __future__ import annotations
import os

TOOLCHAIN_DIR = os.environ.get("TERRAOPERATOR_TOOLCHAIN_DIR", ".terraoperator/toolchains")
WORKSPACE_DIR = os.environ.get("TERRAOPERATOR_WORKSPACE_DIR", ".terraoperator/workspaces")
RELEASES_URL = os.environ.get("TERRAOPERATOR_RELEASES_URL", "https://releases.hashicorp.com")
RUNNER_IMAGE = os.environ.get("TERRAOPERATOR_RUNNER_IMAGE", "brookatlas/terra-operator:latest")
AGENT_URL = os.environ.get("AGENT_URL") or None
DATABASE_URL = os.environ.get("DATABASE_URL") or None
REDIS_URL = os.environ.get("REDIS_URL") or None
RESULTS_KEY = os.environ.get("RESULTS_KEY", "terraoperator:results")
RESYNC_SECONDS = int(os.environ.get("RESYNC_SECONDS", "300"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
