"""Database utilities: error classification, retry, timeouts and pool hygiene.

Repository operations run through ``execute_with_retry`` so every failure
leaves this module as a classified ``StorageError``. Connection and timeout
failures are retried with exponential backoff; constraint violations and
query errors fail immediately.
"""

import functools
import time
from threading import Lock
from typing import TypeVar, Callable, Any

import anyio
import structlog
from sqlmodel import Session
from sqlalchemy import event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import (
    DataError,
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    ProgrammingError,
    SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)

from app.core.errors import AnalyticsError, StorageError, StorageErrorKind

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Driver messages that indicate a dropped or unreachable server
CONNECTION_ERRORS = (
    "server closed the connection unexpectedly",
    "connection refused",
    "connection reset by peer",
    "ssl connection has been closed unexpectedly",
    "terminating connection due to administrator command",
    "could not connect to server",
    "the database system is starting up",
    "the database system is shutting down",
    "unable to open database file",
)

TIMEOUT_ERRORS = (
    "timeout",
    "timed out",
    "database is locked",
    "canceling statement due to statement timeout",
)

TRANSACTION_ERRORS = (
    "deadlock detected",
    "could not serialize access",
    "current transaction is aborted",
)


def classify_error(error: BaseException) -> StorageErrorKind:
    """Map a driver or SQLAlchemy exception onto a storage error kind."""
    if isinstance(error, StorageError):
        return error.kind
    if isinstance(error, IntegrityError):
        return StorageErrorKind.CONSTRAINT
    if isinstance(error, (PoolTimeoutError, TimeoutError)):
        return StorageErrorKind.TIMEOUT

    message = str(error).lower()
    if isinstance(error, (OperationalError, DisconnectionError, InterfaceError)):
        if any(msg in message for msg in TIMEOUT_ERRORS):
            return StorageErrorKind.TIMEOUT
        if any(msg in message for msg in TRANSACTION_ERRORS):
            return StorageErrorKind.TRANSACTION
        if any(msg in message for msg in CONNECTION_ERRORS):
            return StorageErrorKind.CONNECTION
        if isinstance(error, (DisconnectionError, InterfaceError)):
            return StorageErrorKind.CONNECTION
        return StorageErrorKind.QUERY
    if isinstance(error, (ProgrammingError, DataError)):
        return StorageErrorKind.QUERY
    if isinstance(error, ConnectionError):
        return StorageErrorKind.CONNECTION
    return StorageErrorKind.UNKNOWN


def is_transient_error(error: BaseException) -> bool:
    """Check if an error is worth retrying."""
    return classify_error(error).retryable


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential backoff: base, 2*base, 4*base ... capped at ``max_delay``."""
    return min(base_delay * (2**attempt), max_delay)


def execute_with_retry(
    engine,
    operation: Callable[[Session], T],
    max_retries: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 30.0,
    operation_name: str = "db_operation",
) -> T:
    """
    Run ``operation`` in a fresh session, retrying transient failures.

    The session is scoped to a single attempt, so its connection goes back to
    the pool on every exit path. Failures that exhaust the retries, or that are
    not retryable, are raised as ``StorageError``.

    Example:
        def insert(session):
            session.add(visit)
            session.commit()
            session.refresh(visit)
            return visit

        visit = execute_with_retry(engine, insert, operation_name="insert_page_visit")
    """
    for attempt in range(max_retries + 1):
        try:
            with Session(engine) as session:
                return operation(session)
        except AnalyticsError:
            raise
        except (SQLAlchemyError, OSError, TimeoutError) as e:
            kind = classify_error(e)
            if not kind.retryable or attempt >= max_retries:
                logger.error(
                    "Database operation failed",
                    operation=operation_name,
                    kind=kind.value,
                    attempts=attempt + 1,
                    error=str(e),
                )
                raise StorageError(
                    f"{operation_name} failed ({kind.value})",
                    kind=kind,
                    attempts=attempt + 1,
                ) from e

            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                "Database operation failed, retrying",
                operation=operation_name,
                kind=kind.value,
                attempt=attempt + 1,
                max_attempts=max_retries + 1,
                delay=round(delay, 2),
                error=str(e),
            )
            time.sleep(delay)

    raise RuntimeError("Unexpected state in execute_with_retry")


async def run_with_timeout(
    func: Callable[..., T],
    *args: Any,
    timeout: float,
    operation_name: str = "query",
    **kwargs: Any,
) -> T:
    """
    Run a blocking read in a worker thread with a deadline.

    The caller is released when the deadline passes; the abandoned thread
    finishes on its own and its session scope returns the connection.
    """
    call = functools.partial(func, *args, **kwargs)
    try:
        with anyio.fail_after(timeout):
            return await anyio.to_thread.run_sync(call, abandon_on_cancel=True)
    except TimeoutError as e:
        logger.warning("Query timed out", operation=operation_name, timeout=timeout)
        raise StorageError(
            f"{operation_name} exceeded {timeout:g}s",
            kind=StorageErrorKind.TIMEOUT,
        ) from e


class ConnectionWatchdog:
    """
    Tracks pool checkouts and reclaims connections held for too long.

    Checkout times are recorded through SQLAlchemy pool events. ``sweep`` is
    called periodically by the scheduler and invalidates every connection that
    has been checked out longer than ``max_checkout_seconds``.
    """

    def __init__(
        self,
        engine: Engine,
        max_checkout_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.engine = engine
        self.max_checkout_seconds = max_checkout_seconds
        self._clock = clock
        self._lock = Lock()
        self._checked_out: dict[int, tuple[Any, float]] = {}
        self._attached = False

    def attach(self) -> None:
        if self._attached:
            return
        event.listen(self.engine, "checkout", self._on_checkout)
        event.listen(self.engine, "checkin", self._on_checkin)
        self._attached = True

    def detach(self) -> None:
        if not self._attached:
            return
        event.remove(self.engine, "checkout", self._on_checkout)
        event.remove(self.engine, "checkin", self._on_checkin)
        self._attached = False

    def _on_checkout(self, dbapi_connection, connection_record, connection_proxy) -> None:
        with self._lock:
            self._checked_out[id(connection_record)] = (connection_record, self._clock())

    def _on_checkin(self, dbapi_connection, connection_record) -> None:
        with self._lock:
            self._checked_out.pop(id(connection_record), None)

    def in_use(self) -> int:
        with self._lock:
            return len(self._checked_out)

    def sweep(self) -> int:
        """Invalidate connections held past the limit. Returns how many were reclaimed."""
        now = self._clock()
        with self._lock:
            stale = [
                (key, record, now - started)
                for key, (record, started) in self._checked_out.items()
                if now - started > self.max_checkout_seconds
            ]
            for key, _, _ in stale:
                del self._checked_out[key]

        for _, record, held_for in stale:
            logger.warning(
                "Reclaiming long-held database connection",
                held_seconds=round(held_for, 1),
                limit_seconds=self.max_checkout_seconds,
            )
            record.invalidate()
        return len(stale)


def check_db_connection(engine) -> bool:
    """
    Check if database connection is healthy.
    Returns True if connection is good, False otherwise.
    """
    try:
        with Session(engine) as session:
            session.execute(text("SELECT 1"))
            return True
    except SQLAlchemyError as e:
        logger.error("Database connection check failed", error=str(e))
        return False
