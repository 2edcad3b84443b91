"""SQLite persistence for pricing rules and dance history."""
