"""
alarm_state.py - Alarm FSM for the presence sentinel

The machine latches: once the target color goes missing the alarm keeps
ringing until somebody presses stop, even if the color comes back.

State Flow:
    MONITORING -> TRIGGERING   (color absent)       emits TRIGGER
    TRIGGERING -> MONITORING   (stop command)       emits SILENCE, REARM
    everything else stays where it is and emits nothing
"""

import logging
from enum import Enum, auto
from typing import Callable, Dict, List, Tuple

logger = logging.getLogger(__name__)


# =============================================================================
# ENUMS
# =============================================================================

class AlarmState(Enum):
    """FSM states"""
    MONITORING = auto()
    TRIGGERING = auto()


class AlarmEvent(Enum):
    """Inputs to the FSM"""
    ABSENCE_DETECTED = auto()
    PRESENCE_DETECTED = auto()
    STOP_COMMAND = auto()


class AlarmSignal(Enum):
    """Side effects emitted by transitions"""
    ARM = auto()
    TRIGGER = auto()
    SILENCE = auto()
    REARM = auto()


Transition = Tuple[AlarmState, Tuple[AlarmSignal, ...]]

TRANSITIONS: Dict[Tuple[AlarmState, AlarmEvent], Transition] = {
    (AlarmState.MONITORING, AlarmEvent.ABSENCE_DETECTED): (AlarmState.TRIGGERING, (AlarmSignal.TRIGGER,)),
    (AlarmState.MONITORING, AlarmEvent.PRESENCE_DETECTED): (AlarmState.MONITORING, ()),
    (AlarmState.MONITORING, AlarmEvent.STOP_COMMAND): (AlarmState.MONITORING, ()),
    (AlarmState.TRIGGERING, AlarmEvent.ABSENCE_DETECTED): (AlarmState.TRIGGERING, ()),
    # Presence alone never silences the alarm
    (AlarmState.TRIGGERING, AlarmEvent.PRESENCE_DETECTED): (AlarmState.TRIGGERING, ()),
    (AlarmState.TRIGGERING, AlarmEvent.STOP_COMMAND): (
        AlarmState.MONITORING, (AlarmSignal.SILENCE, AlarmSignal.REARM)
    ),
}


def next_transition(state: AlarmState, event: AlarmEvent) -> Transition:
    """Look up (next state, signals) for an event in a given state"""
    return TRANSITIONS[(state, event)]


def event_for_presence(present: bool) -> AlarmEvent:
    return AlarmEvent.PRESENCE_DETECTED if present else AlarmEvent.ABSENCE_DETECTED


Listener = Callable[[AlarmSignal, AlarmState], None]


# =============================================================================
# STATE MACHINE
# =============================================================================

class AlarmStateMachine:
    """
    Owns the AlarmState and the live AlarmSession.

    The effector is only ever called from here, so a session exists exactly
    while the state is TRIGGERING. Not thread-safe: drive it from a single
    thread (the pipeline's state lane).
    """

    def __init__(self, effector):
        self.effector = effector
        self._state = AlarmState.MONITORING
        self._session = None
        self._listeners: List[Listener] = []

    @property
    def state(self) -> AlarmState:
        return self._state

    @property
    def session(self):
        return self._session

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    def arm(self) -> Tuple[AlarmSignal, ...]:
        """Announce that monitoring has started"""
        logger.info("Sentinel armed")
        self._notify(AlarmSignal.ARM)
        return (AlarmSignal.ARM,)

    def on_presence(self, present: bool) -> Tuple[AlarmSignal, ...]:
        return self.handle(event_for_presence(present))

    def handle(self, event: AlarmEvent) -> Tuple[AlarmSignal, ...]:
        """Apply one event and return the signals it emitted"""
        previous = self._state
        next_state, signals = next_transition(previous, event)

        for signal in signals:
            self._apply(signal)
            self._notify(signal)

        self._state = next_state
        if next_state is not previous:
            logger.info(f"{previous.name} -> {next_state.name} on {event.name}")
        return signals

    def close(self):
        """Release a live alarm on shutdown"""
        if self._state is AlarmState.TRIGGERING:
            logger.info("Shutting down with an active alarm, silencing")
            self._apply(AlarmSignal.SILENCE)
            self._notify(AlarmSignal.SILENCE)

    def _apply(self, signal: AlarmSignal):
        if signal is AlarmSignal.TRIGGER:
            self._session = self.effector.activate()
            self._state = AlarmState.TRIGGERING
        elif signal is AlarmSignal.SILENCE:
            session, self._session = self._session, None
            self._state = AlarmState.MONITORING
            if session is not None:
                self.effector.deactivate(session)

    def _notify(self, signal: AlarmSignal):
        for listener in list(self._listeners):
            try:
                listener(signal, self._state)
            except Exception as e:
                logger.error(f"Listener failed on {signal.name}: {e}", exc_info=True)

    def __repr__(self) -> str:
        return f"AlarmStateMachine(state={self._state.name}, session={self._session!r})"
