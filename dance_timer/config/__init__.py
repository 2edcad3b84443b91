"""Settings and user preferences."""
