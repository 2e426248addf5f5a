"""teamsync: offline-tolerant completion sync and conflict arbitration for live team events."""
