"""Typed failures raised by the printshop domain.

Every failure is a ``protean.exceptions.ValidationError`` carrying a
``{field: [message]}`` dict, so callers may catch broadly and still branch on
the concrete subclass.
"""

from protean.exceptions import ValidationError


class InvalidOperation(ValidationError):
    """An operation was attempted on incompatible values (e.g. mixed currencies)."""


class GuardFailed(ValidationError):
    """A named precondition for a state transition does not hold."""

    def __init__(self, guard: str, event: str, message: str):
        super().__init__({"guard": [message]})
        self.guard = guard
        self.event = event


class InvalidTransition(ValidationError):
    """The event is not defined for the order's current state."""

    def __init__(self, event: str, from_state: str, message: str | None = None):
        super().__init__({"state": [message or f"Cannot {event} an order in {from_state} state"]})
        self.event = event
        self.from_state = from_state


class ConcurrentModification(InvalidTransition):
    """Another writer changed the order between load and save."""

    def __init__(self, event: str, from_state: str, order_id: str):
        super().__init__(
            event,
            from_state,
            f"Order {order_id} was modified concurrently; {event} was not applied",
        )
        self.order_id = order_id


class InvariantViolation(ValidationError):
    """A write would break an aggregate invariant and was rejected."""
