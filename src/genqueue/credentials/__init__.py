"""Provider credential tiers and quarantine."""
