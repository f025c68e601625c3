"""Capture state machine for managing per-channel state transitions."""

from ingestor.schemas import CaptureState


class CaptureStateMachine:
    """State machine for the capture lifecycle of one channel.

    State flow with triggers:
    - IDLE -> JOINING (start() accepted)
    - JOINING -> CAPTURING (source and encoders spawned) | IDLE (metadata or join failure)
              | STOPPING (stop() while joining)
    - CAPTURING -> STOPPING (stop(), lease loss, shutdown)
    - STOPPING -> IDLE (all subprocesses terminated)
    """

    TRANSITIONS: dict[CaptureState, set[CaptureState]] = {
        CaptureState.IDLE: {CaptureState.JOINING, CaptureState.STOPPING},
        CaptureState.JOINING: {
            CaptureState.CAPTURING,
            CaptureState.IDLE,
            CaptureState.STOPPING,
        },
        CaptureState.CAPTURING: {CaptureState.STOPPING},
        CaptureState.STOPPING: {CaptureState.IDLE},
    }

    @classmethod
    def can_transition(cls, current: CaptureState, new: CaptureState) -> bool:
        return new in cls.TRANSITIONS.get(current, set())

    @classmethod
    def is_running(cls, state: CaptureState) -> bool:
        """True while a new start must be rejected."""
        return state in CaptureState.running_states()

    @classmethod
    def get_valid_transitions(cls, state: CaptureState) -> set[CaptureState]:
        return cls.TRANSITIONS.get(state, set())
