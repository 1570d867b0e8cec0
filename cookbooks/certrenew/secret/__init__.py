"""Certificate and token secret operations."""
