"""SQLite storage plumbing for session records."""
