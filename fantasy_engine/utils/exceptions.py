"""
Typed failures raised by the scoring and settlement engine.

Every exception carries a ``kind`` so collaborators (HTTP routes, CLIs, batch
jobs) can map failures to their own response codes without string matching.
"""

class EngineError(Exception):
    """Base exception for engine errors."""
    kind = "engine"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

class ValidationError(EngineError):
    """Raised when input is malformed. Nothing has been mutated."""
    kind = "validation"

class NotFoundError(EngineError):
    """Raised when a referenced tournament, pool, grant or participant does not exist."""
    kind = "not_found"

    def __init__(self, entity: str, identifier):
        super().__init__(f"{entity} {identifier} not found")
        self.entity = entity
        self.identifier = identifier

class PreconditionError(EngineError):
    """Raised when the current state does not allow the operation."""
    kind = "precondition"

class GrantStateError(PreconditionError):
    """Raised when a reward grant transition is not part of the settlement state machine."""

    def __init__(self, grant_id: int, current: str, target: str):
        super().__init__(f"Grant {grant_id} cannot move from {current} to {target}")
        self.grant_id = grant_id
        self.current = current
        self.target = target

class ConflictError(EngineError):
    """Raised when a distribution collides with another run on the same pool."""
    kind = "conflict"

class TransactionError(EngineError):
    """Raised when the storage layer fails during an atomic commit."""
    kind = "transaction"

    def __init__(self, operation: str, details: str = None):
        super().__init__(f"Transaction failed during {operation}: {details}")
        self.operation = operation
