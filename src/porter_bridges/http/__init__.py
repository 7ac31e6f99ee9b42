"""HTTP client for source collection."""
