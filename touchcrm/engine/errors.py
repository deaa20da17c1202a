"""Exceptions raised to callers by the engine."""


class InvalidTransitionError(ValueError):
    """A status change that the entity's lifecycle does not allow."""

    def __init__(self, entity: str, current: str, requested: str):
        self.entity = entity
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move {entity} from '{current}' to '{requested}'")
