"""Generation client, provider adapters and response extraction."""
