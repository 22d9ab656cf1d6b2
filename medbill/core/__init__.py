"""Core enums, settings and error types."""
