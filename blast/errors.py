"""Exceptions raised synchronously to the operator. State is unchanged when they are raised."""


class BlastError(Exception):
    """Base class for blast engine errors."""


class ValidationError(BlastError):
    """Bad input, e.g. an empty recipient list or min interval > max interval."""


class InvalidTransition(ValidationError):
    """The requested state change is not legal from the current status."""

    def __init__(self, entity: str, current: str, action: str, reason: str = None):
        self.entity = entity
        self.current = current
        self.action = action
        message = f"Cannot {action} {entity} in status '{current}'"
        super().__init__(f"{message}: {reason}" if reason else message)


class NotFound(BlastError):
    """Unknown campaign, recipient or contact."""

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")
