"""Shared constants for Agent Dispatch."""

import os
from pathlib import Path


HOME_DIR = Path(os.getenv("AGENT_DISPATCH_HOME", str(Path.home() / ".agent-dispatch")))
LOG_DIR = HOME_DIR / "logs"
DB_DIR = HOME_DIR / "db"
DB_FILE = DB_DIR / "dispatch.db"
PRESET_DIR = HOME_DIR / "presets"
WORKTREE_DIR_NAME = ".agent-dispatch-worktrees"
SERVER_HOST = "127.0.0.1"
SERVER_PORT = 9890

GLOBAL_SCOPE = "global"
FALLBACK_PROVIDER = "claude-code"
SEEDED_AGENT_NAME = "Claude Code"
SEEDED_AGENT_PROVIDER = "claude-code"
SEEDED_AGENT_MODEL = "claude-sonnet-4-5"

SESSION_POLL_INTERVAL = 2.0
