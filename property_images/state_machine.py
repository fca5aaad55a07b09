"""
Mail Ingestion State Machine

States one inbound message passes through and the valid transitions
between them. Rejections are terminal and never write to a store.
"""

from enum import Enum
from typing import Final

import structlog

from property_images.exceptions import PropertyImagesError
from property_images.models.events import IngestStatus

log = structlog.get_logger()


class IngestState(str, Enum):
    """Processing state of one inbound message."""

    RECEIVED = "RECEIVED"
    PARSED = "PARSED"
    MATCHED = "MATCHED"
    UNMATCHED = "UNMATCHED"
    IMAGES_EXTRACTED = "IMAGES_EXTRACTED"
    STORED = "STORED"
    NOTIFICATION_SENT = "NOTIFICATION_SENT"

    REJECTED_MALFORMED_MESSAGE = "REJECTED_MALFORMED_MESSAGE"
    REJECTED_UNKNOWN_PROPERTY = "REJECTED_UNKNOWN_PROPERTY"
    REJECTED_NO_IMAGES_FOUND = "REJECTED_NO_IMAGES_FOUND"

    @property
    def is_terminal(self) -> bool:
        return not VALID_TRANSITIONS[self]

    @property
    def is_rejection(self) -> bool:
        return self in REJECTION_STATES


REJECTION_STATES: Final[frozenset[IngestState]] = frozenset({
    IngestState.REJECTED_MALFORMED_MESSAGE,
    IngestState.REJECTED_UNKNOWN_PROPERTY,
    IngestState.REJECTED_NO_IMAGES_FOUND,
})

VALID_TRANSITIONS: Final[dict[IngestState, frozenset[IngestState]]] = {
    IngestState.RECEIVED: frozenset({
        IngestState.PARSED,
        IngestState.REJECTED_MALFORMED_MESSAGE,
    }),
    IngestState.PARSED: frozenset({
        IngestState.MATCHED,
        IngestState.UNMATCHED,
    }),
    IngestState.UNMATCHED: frozenset({
        IngestState.REJECTED_UNKNOWN_PROPERTY,
    }),
    IngestState.MATCHED: frozenset({
        IngestState.IMAGES_EXTRACTED,
        IngestState.REJECTED_NO_IMAGES_FOUND,
    }),
    IngestState.IMAGES_EXTRACTED: frozenset({
        IngestState.STORED,
        IngestState.REJECTED_UNKNOWN_PROPERTY,
    }),
    # STORED is terminal unless a confirmation goes out
    IngestState.STORED: frozenset({
        IngestState.NOTIFICATION_SENT,
    }),
    IngestState.NOTIFICATION_SENT: frozenset(),
    IngestState.REJECTED_MALFORMED_MESSAGE: frozenset(),
    IngestState.REJECTED_UNKNOWN_PROPERTY: frozenset(),
    IngestState.REJECTED_NO_IMAGES_FOUND: frozenset(),
}

OUTCOME_STATUS: Final[dict[IngestState, IngestStatus]] = {
    IngestState.STORED: IngestStatus.STORED,
    IngestState.NOTIFICATION_SENT: IngestStatus.STORED,
    IngestState.REJECTED_MALFORMED_MESSAGE: IngestStatus.REJECTED_MALFORMED_MESSAGE,
    IngestState.REJECTED_UNKNOWN_PROPERTY: IngestStatus.REJECTED_UNKNOWN_PROPERTY,
    IngestState.REJECTED_NO_IMAGES_FOUND: IngestStatus.REJECTED_NO_IMAGES_FOUND,
}


class InvalidTransitionError(PropertyImagesError):
    """Programming error: the handler attempted an illegal state change."""


class IngestTracker:
    """Tracks the state of one ingestion and enforces valid transitions."""

    def __init__(self) -> None:
        self.state = IngestState.RECEIVED
        self.history: list[IngestState] = [IngestState.RECEIVED]

    def advance(self, new_state: IngestState) -> IngestState:
        allowed = VALID_TRANSITIONS[self.state]
        if new_state not in allowed:
            log.warning(
                "invalid_ingest_transition",
                current_state=self.state.value,
                new_state=new_state.value,
                allowed_transitions=[s.value for s in allowed],
            )
            raise InvalidTransitionError(
                f"Cannot transition from '{self.state.value}' to '{new_state.value}'"
            )
        self.state = new_state
        self.history.append(new_state)
        return new_state

    def outcome_status(self) -> IngestStatus:
        """Map the current state onto a terminal IngestStatus."""
        try:
            return OUTCOME_STATUS[self.state]
        except KeyError:
            raise InvalidTransitionError(
                f"State '{self.state.value}' has no terminal outcome"
            ) from None
