"""
Call session state machine.

Each handler is a pure function of the current session and one event. It
returns a :class:`Transition` naming the new state, the field updates to
write onto the session, and the side effects the engine must carry out in
order. Nothing here touches the registry, the store or the network.

    NEW -> NUMBERS_KNOWN -> INCOMING_RECORDED -> ANSWERED -> ENDED
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple

from .call_session import CallSession, SessionState
from .outcome import CallStatus, classify_hangup


class EventKind(str, Enum):
    NEW_CHANNEL = "new_channel"
    CALLER_ID = "caller_id"
    EXTENSION = "extension"
    ANSWER = "answer"
    HANGUP = "hangup"


@dataclass(frozen=True)
class CallEvent:
    """One recognised line or event, already attributed to a channel."""
    kind: EventKind
    channel_id: str
    timestamp: datetime
    unique_id: Optional[str] = None
    value: Optional[str] = None
    cause: Optional[str] = None


# Side effects -------------------------------------------------------------

@dataclass(frozen=True)
class RecordIncoming:
    caller_number: str
    receiver_number: str
    accepted_at: datetime
    channel_id: str


@dataclass(frozen=True)
class RecordAnswer:
    call_id: int
    answered_at: datetime


@dataclass(frozen=True)
class FinishCall:
    """Close an existing record; ``outcome`` applies only if it was never answered."""
    call_id: int
    accepted_at: datetime
    ended_at: datetime
    answered: bool
    outcome: CallStatus


@dataclass(frozen=True)
class RecordTerminal:
    """Insert a record that goes straight to its terminal status."""
    caller_number: Optional[str]
    receiver_number: Optional[str]
    accepted_at: datetime
    ended_at: datetime
    channel_id: str
    outcome: CallStatus


@dataclass(frozen=True)
class FetchRecording:
    channel_id: str


@dataclass(frozen=True)
class EvictSession:
    channel_id: str


@dataclass(frozen=True)
class Transition:
    state: SessionState
    updates: Dict[str, object] = field(default_factory=dict)
    effects: Tuple[object, ...] = ()
    # Reason the event was discarded; updates and effects are empty when set
    dropped: Optional[str] = None
    note: Optional[str] = None

    @property
    def is_dropped(self) -> bool:
        return self.dropped is not None


def _drop(session: CallSession, reason: str) -> Transition:
    return Transition(state=session.state, dropped=reason)


def _unchanged(session: CallSession, note: Optional[str] = None) -> Transition:
    return Transition(state=session.state, note=note)


def check_identity(session: CallSession, event: CallEvent) -> Optional[str]:
    """Return a drop reason when the event belongs to another Uniqueid."""
    if event.unique_id and session.unique_id and event.unique_id != session.unique_id:
        return f"uniqueid mismatch ({event.unique_id} != {session.unique_id})"
    return None


def on_new_channel(session: CallSession, event: CallEvent) -> Transition:
    """Newchannel for a channel that already has a session."""
    if session.unique_id is None and event.unique_id:
        return Transition(state=session.state, updates={"unique_id": event.unique_id})
    return _unchanged(session, note="duplicate new channel")


def on_caller_id(session: CallSession, event: CallEvent) -> Transition:
    if session.is_ended:
        return _drop(session, "caller id after hangup")
    if not event.value or session.processed:
        return _unchanged(session)

    state = session.state
    if state == SessionState.NEW and session.receiver_number:
        state = SessionState.NUMBERS_KNOWN
    return Transition(state=state, updates={"caller_number": event.value})


def on_extension(session: CallSession, event: CallEvent) -> Transition:
    if session.is_ended:
        return _drop(session, "extension after hangup")
    if not event.value or session.processed:
        return _unchanged(session)

    updates: Dict[str, object] = {"receiver_number": event.value}
    caller = session.caller_number
    if not caller:
        return Transition(state=session.state, updates=updates)

    if caller == event.value:
        return Transition(
            state=SessionState.NUMBERS_KNOWN,
            updates=updates,
            note=f"caller equals receiver ({caller}), not recorded",
        )

    updates["processed"] = True
    effect = RecordIncoming(
        caller_number=caller,
        receiver_number=event.value,
        accepted_at=session.created_at,
        channel_id=session.channel_id,
    )
    return Transition(state=SessionState.INCOMING_RECORDED, updates=updates, effects=(effect,))


def on_answer(session: CallSession, event: CallEvent) -> Transition:
    if session.is_ended:
        return _drop(session, "answer after hangup")
    if session.answered_at is not None:
        return _unchanged(session, note="already answered")
    if session.call_record_id is None:
        return _unchanged(session, note="answer before call record exists")

    return Transition(
        state=SessionState.ANSWERED,
        updates={"answered_at": event.timestamp},
        effects=(RecordAnswer(call_id=session.call_record_id, answered_at=event.timestamp),),
    )


def on_hangup(session: CallSession, event: CallEvent) -> Transition:
    if session.is_ended:
        return _drop(session, "duplicate hangup")

    ended_at = event.timestamp
    outcome = classify_hangup(event.cause)
    effects = []
    note = None

    if session.call_record_id is not None:
        effects.append(FinishCall(
            call_id=session.call_record_id,
            accepted_at=session.created_at,
            ended_at=ended_at,
            answered=session.answered_at is not None,
            outcome=outcome,
        ))
    elif session.processed:
        note = "incoming record was never stored, nothing to close"
    elif session.is_self_loop:
        note = "caller equals receiver, not recorded"
    elif not (session.caller_number or session.receiver_number):
        note = "no numbers known, not recorded"
    else:
        effects.append(RecordTerminal(
            caller_number=session.caller_number,
            receiver_number=session.receiver_number,
            accepted_at=session.created_at,
            ended_at=ended_at,
            channel_id=session.channel_id,
            outcome=outcome,
        ))

    effects.append(FetchRecording(channel_id=session.channel_id))
    effects.append(EvictSession(channel_id=session.channel_id))

    return Transition(
        state=SessionState.ENDED,
        updates={"ended_at": ended_at},
        effects=tuple(effects),
        note=note,
    )


_HANDLERS = {
    EventKind.NEW_CHANNEL: on_new_channel,
    EventKind.CALLER_ID: on_caller_id,
    EventKind.EXTENSION: on_extension,
    EventKind.ANSWER: on_answer,
    EventKind.HANGUP: on_hangup,
}


def transition(session: CallSession, event: CallEvent) -> Transition:
    """Compute the transition for ``event`` without mutating ``session``."""
    mismatch = check_identity(session, event)
    if mismatch:
        return _drop(session, mismatch)

    result = _HANDLERS[event.kind](session, event)

    if not result.is_dropped and session.unique_id is None and event.unique_id:
        if "unique_id" not in result.updates:
            updates = dict(result.updates)
            updates["unique_id"] = event.unique_id
            result = Transition(
                state=result.state,
                updates=updates,
                effects=result.effects,
                note=result.note,
            )
    return result
