"""Database exceptions."""


class DatabaseError(Exception):
    """Base class for persistence errors."""
    pass


class DatabaseSchemaError(DatabaseError):
    """Raised when schema initialization or migration fails."""
    pass


class ConcurrentModificationError(DatabaseError):
    """Raised when a compare-and-swap finds a newer version than expected."""
    def __init__(self, kind: str, key: str, expected_version: int):
        self.kind = kind
        self.key = key
        self.expected_version = expected_version
        super().__init__(
            f"{kind} {key} was modified concurrently "
            f"(expected version {expected_version})"
        )
