"""
Error taxonomy for order lifecycle operations.
Authorization and state-machine errors are raised before anything is written to the store.
"""


class OrderLifecycleError(Exception):
    """Base class. `code` is the machine-readable error name returned to clients."""
    code = "error"


class ForbiddenError(OrderLifecycleError):
    """Actor's role or relationship to the record does not allow the read or mutation."""
    code = "forbidden"


class NotFoundError(OrderLifecycleError):
    """Referenced order, medicine, delivery or profile does not exist."""
    code = "not_found"


class InvalidTransitionError(OrderLifecycleError):
    """Requested status change is not a legal edge from the current status."""
    code = "invalid_transition"

    def __init__(self, current_status: str | None = None, action: str | None = None):
        self.current_status = current_status
        self.action = action
        super().__init__(f"cannot {action} an order in status {current_status!r}")


class PreconditionNotMetError(OrderLifecycleError):
    """Transition is legal but a guard (prescription, payment, stock) is unsatisfied."""
    code = "precondition_not_met"


class AlreadyAssignedError(OrderLifecycleError):
    """Another delivery partner claimed the order first."""
    code = "already_assigned"


class NotClaimableError(OrderLifecycleError):
    """Order is not (or no longer) eligible for claiming."""
    code = "not_claimable"


class StoreUnavailableError(OrderLifecycleError):
    """Transient failure talking to the backing store or notifier. Not retried automatically."""
    code = "store_unavailable"
