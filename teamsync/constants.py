"""Project-wide constants shared by the remote schema, migrations and tests."""

from __future__ import annotations

DB_SCHEMA = "teamsync"

# Local partitions (SQLite tables)
COMPLETIONS_TABLE = "completions"
LOCAL_COMPLETED_TABLE = "local_completed_activities"

# Remote live-read channel fed by the teams trigger
TEAM_CHANGES_CHANNEL = "team_changes"

MAX_RETRIES = 10
MAX_RECONNECTION_ATTEMPTS = 5
