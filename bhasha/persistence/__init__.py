"""SQLite-backed document persistence."""
