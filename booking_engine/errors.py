"""
Error taxonomy shared by the ledger, the booking/delivery state machines and
the report subsystem. The HTTP layer maps every subclass to a status code.
"""


class EngineError(Exception):
    code = "engine_error"
    http_status = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(EngineError):
    """Malformed input: non-positive quantity, missing references, bad enums."""
    code = "validation_error"
    http_status = 400


class ItemExpired(ValidationError):
    code = "item_expired"

    def __init__(self, item_id: str):
        super().__init__(f"Food item {item_id} is expired")
        self.item_id = item_id


class InsufficientInventory(EngineError):
    code = "insufficient_inventory"
    http_status = 409

    def __init__(self, item_id: str, requested: int, available: int):
        super().__init__(
            f"Food item {item_id} has {available} available, {requested} requested"
        )
        self.item_id = item_id
        self.requested = requested
        self.available = available


class InvalidStateTransition(EngineError):
    code = "invalid_transition"
    http_status = 409

    def __init__(self, entity: str, entity_id: str, current, target):
        current = getattr(current, "value", current)
        target = getattr(target, "value", target)
        super().__init__(f"{entity} {entity_id} cannot move from {current} to {target}")
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.target = target


class Conflict(EngineError):
    """Optimistic concurrency collision. Safe to retry."""
    code = "conflict"
    http_status = 409


class NotFound(EngineError):
    code = "not_found"
    http_status = 404

    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class AuthorizationError(EngineError):
    """Raised by the identity collaborator; never generated by the engine itself."""
    code = "forbidden"
    http_status = 403
