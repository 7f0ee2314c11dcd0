"""
Execution error taxonomy

Exceptions surfaced to callers of the execution components:
- Lookup failures for unknown task / iceberg identifiers
- Lifecycle violations (starting a task that is not pending or paused)
- Order gateway failures, split into transient and unrecoverable
"""


class ExecutionAlphaError(Exception):
    """Base class for all execution errors"""


class TaskNotFoundError(ExecutionAlphaError):
    """Raised when an operation references an unknown task or iceberg id"""

    def __init__(self, item_id: str, kind: str = "task"):
        self.item_id = item_id
        self.kind = kind
        super().__init__(f"{kind.capitalize()} not found: {item_id}")


class InvalidTaskStateError(ExecutionAlphaError):
    """Raised when a lifecycle transition is not allowed from the current status"""

    def __init__(self, item_id: str, status: str, action: str = "start"):
        self.item_id = item_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} {item_id} while status is '{status}'")


class OrderGatewayError(ExecutionAlphaError):
    """Order placement or cancellation failed at the gateway"""


class InsufficientBalanceError(OrderGatewayError):
    """Account cannot fund the order; never retried"""


UNRECOVERABLE_MARKERS = ('insufficient', 'balance')


def is_unrecoverable(error: BaseException) -> bool:
    """Check whether an order failure should abort the whole parent order"""
    if isinstance(error, InsufficientBalanceError):
        return True
    message = str(error).lower()
    return any(marker in message for marker in UNRECOVERABLE_MARKERS)
