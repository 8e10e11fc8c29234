"""Payment state machine transitions enforced by the ledger."""

PENDING = "PENDING"
AWAITING_3DS = "AWAITING_3DS"
SUCCESS = "SUCCESS"
COMPLETED = "COMPLETED"
FAILED = "FAILED"

SUCCESS_STATES = frozenset({SUCCESS, COMPLETED})
TERMINAL_STATES = frozenset({SUCCESS, COMPLETED, FAILED})
OPEN_STATES = frozenset({PENDING, AWAITING_3DS})

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {AWAITING_3DS, SUCCESS, FAILED},
    AWAITING_3DS: {SUCCESS, FAILED},
    # Settlement happens downstream; nothing in this service moves a payment backward.
    SUCCESS: {COMPLETED},
    COMPLETED: set(),
    FAILED: set(),
}


class InvalidTransitionError(ValueError):
    """Raised when a payment is asked to move along an edge that does not exist."""

    def __init__(self, current: str, new: str) -> None:
        super().__init__(f"Invalid transition: {current} -> {new}")
        self.current = current
        self.new = new


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(current, new)
