"""Error taxonomy for the database access layer.

``ApplicationError`` is a deterministic rejection caused by the statement or
its data and is never retried. ``DatabaseConnectionError`` and
``QueryTimeout`` are transient failures that survived every retry.
``PoolTimeout`` means no connection became free in time; retrying it is the
caller's choice.
"""

# unique_violation, foreign_key_violation, undefined_table,
# undefined_column, syntax_error
NON_RETRYABLE_SQLSTATES = frozenset({"23505", "23503", "42P01", "42703", "42601"})


class DatabaseError(Exception):
    pass


class ApplicationError(DatabaseError):
    def __init__(self, message: str, *, sqlstate: str | None = None, original: BaseException | None = None):
        super().__init__(message)
        self.sqlstate = sqlstate
        self.original = original


class DatabaseConnectionError(DatabaseError):
    pass


class QueryTimeout(DatabaseError):
    pass


class PoolTimeout(DatabaseError):
    pass


class PoolClosedError(DatabaseError):
    pass


class TransactionTimeout(DatabaseError):
    pass


def sqlstate_of(exc: BaseException) -> str | None:
    return getattr(exc, "sqlstate", None)


def is_application_error(exc: BaseException) -> bool:
    if isinstance(exc, ApplicationError):
        return True
    if sqlstate_of(exc) in NON_RETRYABLE_SQLSTATES:
        return True
    return "syntax error" in str(exc)
