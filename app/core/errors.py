"""Domain errors raised by the query engine and translated by the API layer."""

from typing import Optional


class NotFoundError(Exception):
    """Resource not found."""

    def __init__(self, message: str = "Resource not found"):
        self.message = message
        super().__init__(self.message)


class QueryNotFoundError(NotFoundError):
    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__("Validated query not found")


class FilterDimensionNotFoundError(NotFoundError):
    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__("Filter dimension not found")


class ConflictError(Exception):
    """Request clashes with the current catalogue state."""

    def __init__(self, message: str = "Conflict"):
        self.message = message
        super().__init__(self.message)


class DuplicateQueryNameError(ConflictError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"An active validated query named {name!r} already exists")


class InvalidTransitionError(ConflictError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move a {current} query to {target}")


class QueryExecutionError(Exception):
    """Every backend able to answer the query failed."""

    def __init__(self, message: str, backend: Optional[str] = None):
        self.message = message
        self.backend = backend
        super().__init__(self.message)
