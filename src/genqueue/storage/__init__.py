"""SQLite persistence for jobs, broker messages and pooled credentials."""
