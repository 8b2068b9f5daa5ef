# stayledger/domain/state_machine.py

from collections import deque
from enum import Enum
from typing import Dict, Set

from stayledger.domain.exceptions import InvalidStateTransitionError


class BookingStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CHECK_IN_READY = "CHECK_IN_READY"
    CHECKED_IN = "CHECKED_IN"
    COMPLETED = "COMPLETED"
    DISPUTED = "DISPUTED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    ESCALATED_TO_ADMIN = "ESCALATED_TO_ADMIN"


# Ordinal used by the booking contract's status enum.
_LEDGER_CODES: Dict[BookingStatus, int] = {
    BookingStatus.ACTIVE: 0,
    BookingStatus.CHECK_IN_READY: 1,
    BookingStatus.CHECKED_IN: 2,
    BookingStatus.COMPLETED: 3,
    BookingStatus.DISPUTED: 4,
    BookingStatus.CANCELLED: 5,
    BookingStatus.REFUNDED: 6,
    BookingStatus.ESCALATED_TO_ADMIN: 7,
}
_STATUS_BY_CODE = {code: status for status, code in _LEDGER_CODES.items()}

# Statuses that take a booking's dates out of the overlap check.
RELEASED_STATUSES = frozenset({BookingStatus.CANCELLED, BookingStatus.REFUNDED})


class BookingStateMachine:
    """
    Central lifecycle controller for booking transitions.
    Defines the legal state transitions.
    """

    _ALLOWED_TRANSITIONS: Dict[BookingStatus, Set[BookingStatus]] = {
        BookingStatus.ACTIVE: {
            BookingStatus.CHECK_IN_READY,
            BookingStatus.CANCELLED,
        },
        BookingStatus.CHECK_IN_READY: {
            BookingStatus.CHECKED_IN,
            BookingStatus.DISPUTED,
        },
        BookingStatus.CHECKED_IN: {
            BookingStatus.COMPLETED,
        },
        BookingStatus.DISPUTED: {
            BookingStatus.COMPLETED,
            BookingStatus.ESCALATED_TO_ADMIN,
        },
        BookingStatus.ESCALATED_TO_ADMIN: {
            BookingStatus.COMPLETED,
            BookingStatus.REFUNDED,
        },
        BookingStatus.COMPLETED: set(),
        BookingStatus.CANCELLED: set(),
        BookingStatus.REFUNDED: set(),
    }

    @classmethod
    def can_transition(
        cls,
        from_status: BookingStatus,
        to_status: BookingStatus,
    ) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(
        cls,
        from_status: BookingStatus,
        to_status: BookingStatus,
    ) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_terminal(cls, status: BookingStatus) -> bool:
        """
        Returns True if the state is terminal (no further transitions allowed).
        """
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def get_allowed_transitions(
        cls, status: BookingStatus
    ) -> Set[BookingStatus]:
        """
        Returns allowed next states from current state.
        """
        cls._ensure_valid_status(status)
        return cls._ALLOWED_TRANSITIONS.get(status, set())

    @classmethod
    def is_reachable(
        cls,
        from_status: BookingStatus,
        to_status: BookingStatus,
    ) -> bool:
        """
        Returns True if to_status can follow from_status through zero or
        more legal transitions. Projections use this to ignore stale
        status updates that arrive after newer ones.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        seen = {from_status}
        queue = deque([from_status])
        while queue:
            current = queue.popleft()
            if current == to_status:
                return True
            for nxt in cls._ALLOWED_TRANSITIONS[current]:
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
        return False

    @staticmethod
    def to_ledger_code(status: BookingStatus) -> int:
        return _LEDGER_CODES[status]

    @staticmethod
    def from_ledger_code(code: int) -> BookingStatus:
        try:
            return _STATUS_BY_CODE[int(code)]
        except KeyError:
            raise ValueError(f"Unknown ledger booking status code: {code}") from None

    @staticmethod
    def _ensure_valid_status(status: BookingStatus) -> None:
        if not isinstance(status, BookingStatus):
            raise TypeError(
                f"Expected BookingStatus, got {type(status)}"
            )
