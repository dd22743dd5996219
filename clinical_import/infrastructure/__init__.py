"""Infrastructure for Clinical Import: configuration and logging."""
