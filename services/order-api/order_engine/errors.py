class OrderEngineError(Exception):
    pass


class ValidationError(OrderEngineError):
    """Malformed order request."""


class NotFoundError(OrderEngineError):
    pass


class InvalidOrderStateError(OrderEngineError):
    pass


class InsufficientStockError(OrderEngineError):
    """Carries every shortfall of the batch, not just the first one."""

    def __init__(self, shortfalls, notes=()):
        self.shortfalls = list(shortfalls)
        self.notes = list(notes)
        message = "Insufficient stock for: " + ", ".join(s.describe() for s in self.shortfalls)
        if self.notes:
            message += "; " + "; ".join(self.notes)
        super().__init__(message)


class ConcurrencyConflictError(OrderEngineError):
    """Contention on shared counters persisted after every retry."""
