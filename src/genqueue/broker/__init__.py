"""Message broker abstraction and the SQLite-backed implementation."""
