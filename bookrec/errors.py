"""Exception and warning types raised by the recommender pipeline."""


class BookRecError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(BookRecError, ValueError):
    """A malformed input row (bad ISBN, bad rating, missing field, ...)."""

    def __init__(self, message, reason="invalid"):
        super().__init__(message)
        self.reason = reason


class DataInsufficientError(BookRecError):
    """The data handed to an operation is too degenerate to work with."""


class UnknownUserError(BookRecError, LookupError):
    """The user has no factor vector (cold start)."""

    def __init__(self, user_id):
        super().__init__(f"No factor vector for user {user_id!r}")
        self.user_id = user_id


class InsufficientNeighborsError(BookRecError, LookupError):
    """No neighbour qualified for a KNN prediction."""

    def __init__(self, user_id, item_id):
        super().__init__(
            f"No qualifying neighbours to predict user {user_id!r} on item {item_id!r}"
        )
        self.user_id = user_id
        self.item_id = item_id


class ConvergenceWarning(UserWarning):
    """ALS stopped at its iteration or time bound before converging."""
