"""
Custom exception hierarchy for the position lifecycle engine.

Hierarchy:

    TierkeeperError (base)
    ├── OperationalError      - transient/retryable (exchange, network, timeouts)
    │   ├── APIError          - exchange returned an error
    │   │   ├── AuthenticationError
    │   │   └── RateLimitError
    │   └── RemoteTimeoutError
    ├── DataError             - bad input, reject the call
    │   ├── ValidationError
    │   ├── PositionNotFoundError
    │   └── OrderExecutionError
    └── InvariantError        - safety violation, halt this mutation
        ├── InvalidTransitionError
        └── UnprotectedPositionError

Rules:
    - OperationalError: catch, log, retry on the next cycle. Never fill evidence.
    - DataError: catch at the API boundary, log, reject the request.
    - InvariantError: log CRITICAL, abort the mutation, surface in engine status.
    - Everything else (AttributeError, TypeError, etc.): let it propagate to
      the cycle driver, which logs it and records it as last_error.
"""


class TierkeeperError(Exception):
    """Base exception for all engine errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(TierkeeperError):
    """Transient/retryable error: exchange API, network, timeouts.

    Treatment: catch, log, retry on the next cycle.
    """
    pass


class APIError(OperationalError):
    """API-specific operational error (exchange returned error)."""
    pass


class AuthenticationError(APIError):
    """Raised when API authentication fails.

    Retrying will not help; operators must fix the credentials.
    """
    pass


class RateLimitError(APIError):
    """Raised when API rate limit is exceeded."""
    pass


class RemoteTimeoutError(OperationalError):
    """A remote call exceeded its bounded timeout."""
    pass


# ============ DATA (bad input, reject) ============

class DataError(TierkeeperError):
    """Bad input data.

    Treatment: reject the request, log, continue.
    """
    pass


class ValidationError(DataError):
    """Raised when request validation fails."""
    pass


class PositionNotFoundError(DataError):
    """Raised when a position id is unknown to the store."""
    pass


class OrderExecutionError(DataError):
    """Entry order rejected by the exchange. Nothing was opened, nothing to protect."""
    pass


# ============ INVARIANT (safety violation) ============

class InvariantError(TierkeeperError):
    """Safety invariant violation.

    Treatment: log CRITICAL, abort the mutation. Never silently continue.
    """
    pass


class InvalidTransitionError(InvariantError):
    """Phase transition would break monotonicity or the size/terminal invariant."""
    pass


class UnprotectedPositionError(InvariantError):
    """Entry filled but neither the protective batch nor the emergency stop could be placed.

    The position is live on the exchange with zero protective orders.
    Operators must intervene manually.
    """

    def __init__(self, message: str, *, position_id: str, symbol: str, entry_order_id: str):
        super().__init__(message)
        self.position_id = position_id
        self.symbol = symbol
        self.entry_order_id = entry_order_id
