"""Core runtime pieces: request context, errors, retry and scheduling."""
