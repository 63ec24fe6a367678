"""Database exception types."""

class DatabaseError(Exception):
    """Base exception for database operations."""
    pass

class DatabaseSchemaError(DatabaseError):
    """Raised when schema loading or migration fails."""
    pass

class RecordNotFoundError(DatabaseError):
    """Raised when a keyed update targets a row that does not exist."""
    def __init__(self, table: str, key: str, value):
        self.table = table
        self.key = key
        self.value = value
        super().__init__(f"No {table} row with {key}={value}")

__all__ = ['DatabaseError', 'DatabaseSchemaError', 'RecordNotFoundError']
