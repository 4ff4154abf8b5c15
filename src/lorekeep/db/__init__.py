"""Database layer: connection management and repositories."""
