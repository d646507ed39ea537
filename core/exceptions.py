"""Error taxonomy shared by the trade, escrow, shipping, dispute and rating managers.

Every failure is raised at the point of the violated precondition, before any
state is committed.
"""


class TradeError(Exception):
    """Base class for trade engine errors."""
    pass


class NotFoundError(TradeError):
    """Raised when a referenced trade, ticket, user or item does not exist."""
    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key} not found")


class InvalidStateError(TradeError):
    """Raised when an operation is not valid for the current status."""
    def __init__(self, message: str, current_status: str = None):
        self.current_status = current_status
        super().__init__(message)


class NotAuthorizedError(TradeError):
    """Raised when the caller is not a permitted party for this action."""
    pass


class InsufficientFundsError(TradeError):
    """Raised when a balance or escrow hold cannot cover the requested amount."""
    def __init__(self, user_id: str, available: int, requested: int):
        self.user_id = user_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient funds for {user_id}: "
            f"available {available}, requested {requested}"
        )


class ValidationError(TradeError):
    """Raised for malformed or policy-violating input."""
    pass


class ItemNotOwnedError(ValidationError):
    """Raised when an offered item is not owned by the side offering it."""
    def __init__(self, item_id: str, user_id: str):
        self.item_id = item_id
        self.user_id = user_id
        super().__init__(f"Item {item_id} is not owned by {user_id}")


class ConflictError(TradeError):
    """Raised for duplicate actions, such as rating a trade twice."""
    pass
