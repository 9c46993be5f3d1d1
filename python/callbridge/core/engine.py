"""
Call Correlation Engine.

Consumes parsed manager-interface blocks, attributes each to a channel's
call session, runs the state machine in ``transitions`` and carries out the
resulting side effects: store writes, notifications, recording lookups and
delayed session eviction.

Blocks are handled strictly one after another. A block that fails is logged
and dropped; the next block is processed normally.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, TYPE_CHECKING

from ..errors import CorrelationError, PersistenceError
from ..websocket import events
from .call_session import CallSession, CallSessionRegistry, utcnow
from .outcome import CallStatus, RecordingStatus, parse_status
from .task_registry import TaskRegistry
from .transitions import (
    CallEvent,
    EventKind,
    EvictSession,
    FetchRecording,
    FinishCall,
    RecordAnswer,
    RecordIncoming,
    RecordTerminal,
    Transition,
    transition,
)

if TYPE_CHECKING:
    from ..ami.parser import EventBlock
    from ..db.gateway import CompanyRef, PersistenceGateway, UserRef
    from ..metrics import MetricsCollector
    from ..websocket.fanout import NotificationFanout
    from .recording import RecordingFetcher

logger = logging.getLogger("callbridge.engine")

# (kind, value, cause) extracted from one block
ParsedEvent = Tuple[EventKind, Optional[str], Optional[str]]


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not value or value == "<unknown>":
        return None
    return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def extract_events(block: "EventBlock") -> List[ParsedEvent]:
    """
    Recognised events of one block, in the order they must be applied:
    Newchannel first, then CallerIDNum/Exten lines as they arrived, then
    Answer or Hangup.
    """
    name = (block.event or "").lower()
    parsed: List[ParsedEvent] = []

    if name == "newchannel":
        parsed.append((EventKind.NEW_CHANNEL, None, None))

    for key, value in block.lines:
        lowered = key.lower()
        if lowered == "calleridnum":
            parsed.append((EventKind.CALLER_ID, _clean(value), None))
        elif lowered == "exten":
            parsed.append((EventKind.EXTENSION, _clean(value), None))

    if name == "answer":
        parsed.append((EventKind.ANSWER, None, None))
    elif name == "hangup":
        parsed.append((EventKind.HANGUP, None, _clean(block.get("Cause"))))

    return parsed


class CallCorrelationEngine:
    """Turns the PBX event stream into call records and notifications."""

    def __init__(
        self,
        gateway: "PersistenceGateway",
        fanout: "NotificationFanout",
        registry: Optional[CallSessionRegistry] = None,
        tasks: Optional[TaskRegistry] = None,
        fetcher: Optional["RecordingFetcher"] = None,
        eviction_delay: float = 5.0,
        metrics: Optional["MetricsCollector"] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the engine.

        Args:
            gateway: Persistence gateway
            fanout: Notification publisher
            registry: Channel session registry (created when omitted)
            tasks: Background task registry (created when omitted)
            fetcher: Recording metadata fetcher; recordings are skipped when None
            eviction_delay: Seconds a session outlives its hangup
            metrics: Optional metrics collector
            clock: Source of event timestamps
        """
        self.gateway = gateway
        self.fanout = fanout
        self.tasks = tasks or TaskRegistry()
        self.registry = registry or CallSessionRegistry(self.tasks)
        self.fetcher = fetcher
        self.eviction_delay = eviction_delay
        self.metrics = metrics
        self.clock = clock

        self._dropped_count = 0
        self._handled_count = 0

    # Input ------------------------------------------------------------

    async def handle_blocks(self, blocks: List["EventBlock"]) -> None:
        """Process the blocks of one read in order."""
        lookback: List[Tuple[Optional[str], Optional[str]]] = []
        for block in blocks:
            if block.event is None:
                continue
            try:
                await self.handle_block(block, lookback)
            except CorrelationError as e:
                self._dropped_count += 1
                logger.warning(f"Dropped {block.event} block: {e}")
                if self.metrics:
                    self.metrics.event_dropped("unresolved")
            except Exception as e:
                logger.error(f"Failed to process {block.event} block: {e}", exc_info=e)
            if block.channel or block.unique_id:
                lookback.append((block.channel, block.unique_id))

    async def handle_block(
        self,
        block: "EventBlock",
        lookback: Optional[List[Tuple[Optional[str], Optional[str]]]] = None,
    ) -> None:
        parsed = extract_events(block)
        if not parsed:
            return

        self._handled_count += 1
        now = self.clock()
        channel_id, unique_id = self._resolve_identifiers(block, lookback or [])

        session, created = self._resolve_session(parsed[0][0], channel_id, unique_id, now)
        if session is None:
            raise CorrelationError(
                f"no session for channel={channel_id} uniqueid={unique_id}",
                {"channel": channel_id, "uniqueid": unique_id},
            )

        for kind, value, cause in parsed:
            if created and kind == EventKind.NEW_CHANNEL:
                continue
            event = CallEvent(
                kind=kind,
                channel_id=session.channel_id,
                timestamp=now,
                unique_id=unique_id,
                value=value,
                cause=cause,
            )
            await self.apply(session, event)

    def _resolve_identifiers(
        self,
        block: "EventBlock",
        lookback: List[Tuple[Optional[str], Optional[str]]],
    ) -> Tuple[Optional[str], Optional[str]]:
        """
        Channel and Uniqueid from the block, else from earlier blocks of the same read.

        A block with its own Uniqueid only borrows the channel of an earlier
        block carrying that Uniqueid; otherwise the registry lookup decides.
        """
        channel_id = block.channel
        unique_id = block.unique_id

        if channel_id is None and unique_id is not None:
            for prior_channel, prior_unique in reversed(lookback):
                if prior_channel and prior_unique == unique_id:
                    channel_id = prior_channel
                    break
        elif channel_id is None:
            for prior_channel, prior_unique in reversed(lookback):
                if prior_channel:
                    channel_id = prior_channel
                    unique_id = prior_unique
                    break
        elif unique_id is None:
            for prior_channel, prior_unique in reversed(lookback):
                if prior_channel == channel_id and prior_unique:
                    unique_id = prior_unique
                    break

        return channel_id, unique_id

    def _resolve_session(
        self,
        first_kind: EventKind,
        channel_id: Optional[str],
        unique_id: Optional[str],
        now: datetime,
    ) -> Tuple[Optional[CallSession], bool]:
        """
        Find the session an event belongs to.

        Order: direct channel match; Uniqueid match across the registry;
        the most recently created session. The last step is a heuristic
        that can misattribute events when several calls are in flight.
        """
        if channel_id is not None:
            if first_kind == EventKind.NEW_CHANNEL:
                return self._open_session(channel_id, unique_id, now)

            session = self.registry.get(channel_id)
            if session is None and first_kind in (EventKind.CALLER_ID, EventKind.EXTENSION):
                session, created = self.registry.get_or_create(channel_id, unique_id, now)
                logger.info(f"Session {channel_id} opened mid-call (no Newchannel seen)")
                return session, created
            return session, False

        session = self.registry.find_by_unique_id(unique_id) if unique_id else None
        if session is None:
            session = self.registry.most_recent()
            if session is not None:
                logger.debug(f"No channel in block, assuming most recent session {session.channel_id}")
        return session, False

    def _open_session(
        self,
        channel_id: str,
        unique_id: Optional[str],
        now: datetime,
    ) -> Tuple[CallSession, bool]:
        existing = self.registry.get(channel_id)
        if existing is not None and existing.is_ended and (
            unique_id is None or unique_id != existing.unique_id
        ):
            session = CallSession(channel_id=channel_id, unique_id=unique_id, created_at=now)
            self.registry.replace(session)
            logger.info(f"New channel {channel_id} reuses an ended session's channel")
            return session, True

        session, created = self.registry.get_or_create(channel_id, unique_id, now)
        if created:
            logger.info(f"New channel {channel_id} (uniqueid={unique_id})")
            if self.metrics:
                self.metrics.active_sessions(len(self.registry))
        return session, created

    # State machine ----------------------------------------------------

    async def apply(self, session: CallSession, event: CallEvent) -> Transition:
        """Run one event through the state machine and execute its effects."""
        result = transition(session, event)

        if result.is_dropped:
            self._dropped_count += 1
            logger.warning(f"Dropped {event.kind.value} on {event.channel_id}: {result.dropped}")
            if self.metrics:
                self.metrics.event_dropped(event.kind.value)
            return result

        if result.note:
            logger.info(f"{event.channel_id} {event.kind.value}: {result.note}")

        previous = session.state
        session.apply(result.updates)
        session.state = result.state
        if previous != result.state:
            logger.info(f"{session.channel_id}: {previous.value} -> {result.state.value}")

        for effect in result.effects:
            await self._run_effect(session, effect)

        if self.metrics:
            self.metrics.active_sessions(len(self.registry))

        return result

    async def _run_effect(self, session: CallSession, effect: Any) -> None:
        handler = self._effect_handlers.get(type(effect))
        if handler is None:
            logger.error(f"No handler for effect {effect!r}")
            return
        try:
            await handler(self, session, effect)
        except PersistenceError as e:
            logger.error(f"{type(effect).__name__} for {session.channel_id} failed: {e}")
            if self.metrics:
                self.metrics.persistence_error()
        except Exception as e:
            logger.error(f"{type(effect).__name__} for {session.channel_id} failed: {e}", exc_info=e)

    # Effects ----------------------------------------------------------

    async def _lookup_user(self, number: Optional[str]) -> Optional["UserRef"]:
        try:
            return await self.gateway.find_user_by_phone(number)
        except PersistenceError as e:
            logger.warning(f"User lookup for {number} failed, continuing without: {e}")
            return None

    async def _lookup_company(self, number: Optional[str]) -> Optional["CompanyRef"]:
        try:
            return await self.gateway.find_company_by_phone(number)
        except PersistenceError as e:
            logger.warning(f"Company lookup for {number} failed, continuing without: {e}")
            return None

    @staticmethod
    def _payload(
        session: CallSession,
        status: CallStatus,
        timestamp: Optional[datetime],
        **extra: Any,
    ) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "caller_number": session.caller_number,
            "receiver_number": session.receiver_number,
            "timestamp": _iso(timestamp),
            "status": status.value,
            "assigned_user_id": session.assigned_user_id,
            "channel_id": session.channel_id,
        }
        data.update(extra)
        return data

    async def _record_incoming(self, session: CallSession, effect: RecordIncoming) -> None:
        user = await self._lookup_user(effect.receiver_number)
        company = await self._lookup_company(effect.caller_number)

        call_id = await self.gateway.insert_call(
            caller_number=effect.caller_number,
            receiver_number=effect.receiver_number,
            accepted_at=effect.accepted_at,
            status=CallStatus.INCOMING,
            assigned_user_id=user.id if user else None,
            caller_company_id=company.id if company else None,
            channel_id=effect.channel_id,
        )
        session.call_record_id = call_id
        session.assigned_user_id = user.id if user else None
        logger.info(
            f"Incoming call {call_id}: {effect.caller_number} -> {effect.receiver_number} "
            f"(user={session.assigned_user_id}, company={company.id if company else None})"
        )
        if self.metrics:
            self.metrics.call_recorded(CallStatus.INCOMING.value)

        await self.fanout.publish(
            events.INCOMING_CALL,
            call_id,
            self._payload(
                session,
                CallStatus.INCOMING,
                effect.accepted_at,
                caller_company_id=company.id if company else None,
                caller_company_name=company.name if company else None,
            ),
            target_user_id=session.assigned_user_id,
        )

    async def _record_answer(self, session: CallSession, effect: RecordAnswer) -> None:
        updated = await self.gateway.record_pbx_answer(effect.call_id, effect.answered_at)
        if not updated:
            return
        logger.info(f"Call {effect.call_id} answered")
        await self.fanout.publish(
            events.CALL_ANSWERED,
            effect.call_id,
            self._payload(session, CallStatus.ANSWERED, effect.answered_at),
        )

    async def _finish_call(self, session: CallSession, effect: FinishCall) -> None:
        answered = effect.answered
        try:
            row = await self.gateway.find_call_status(effect.call_id)
        except PersistenceError as e:
            logger.warning(f"Status lookup for call {effect.call_id} failed, using session state: {e}")
            row = None

        if row is not None:
            current = parse_status(row.status)
            if current is not None and current.is_terminal:
                logger.info(f"Call {effect.call_id} already {current.value}, hangup ignored")
                return
            answered = answered or row.answered_at is not None or (
                current is not None and current.is_answered
            )

        if answered:
            duration = max(0, int((effect.ended_at - effect.accepted_at).total_seconds()))
            updated = await self.gateway.update_call(
                effect.call_id,
                status=CallStatus.COMPLETED,
                ended_at=effect.ended_at,
                duration=duration,
            )
            if not updated:
                return
            logger.info(f"Call {effect.call_id} completed after {duration}s")
            if self.metrics:
                self.metrics.call_finished(CallStatus.COMPLETED.value, duration)
            await self.fanout.publish(
                events.CALL_ENDED,
                effect.call_id,
                self._payload(session, CallStatus.COMPLETED, effect.ended_at, duration=duration),
            )
            return

        status = effect.outcome
        updated = await self.gateway.update_call(
            effect.call_id,
            status=status,
            ended_at=effect.ended_at,
        )
        if not updated:
            return
        logger.info(f"Call {effect.call_id} ended unanswered: {status.value}")
        if self.metrics:
            self.metrics.call_finished(status.value)
        event_type = events.MISSED_CALL_CREATED if status == CallStatus.MISSED else events.CALL_ENDED
        await self.fanout.publish(
            event_type,
            effect.call_id,
            self._payload(session, status, effect.ended_at),
        )

    async def _record_terminal(self, session: CallSession, effect: RecordTerminal) -> None:
        user = await self._lookup_user(effect.receiver_number)
        company = await self._lookup_company(effect.caller_number)

        call_id = await self.gateway.insert_call(
            caller_number=effect.caller_number,
            receiver_number=effect.receiver_number,
            accepted_at=effect.accepted_at,
            ended_at=effect.ended_at,
            status=effect.outcome,
            assigned_user_id=user.id if user else None,
            caller_company_id=company.id if company else None,
            channel_id=effect.channel_id,
        )
        session.call_record_id = call_id
        session.assigned_user_id = user.id if user else None
        logger.info(
            f"Call {call_id} recorded at hangup as {effect.outcome.value}: "
            f"{effect.caller_number} -> {effect.receiver_number}"
        )
        if self.metrics:
            self.metrics.call_finished(effect.outcome.value)

        if effect.outcome == CallStatus.MISSED:
            await self.fanout.publish(
                events.MISSED_CALL_CREATED,
                call_id,
                self._payload(
                    session,
                    CallStatus.MISSED,
                    effect.ended_at,
                    caller_company_id=company.id if company else None,
                    caller_company_name=company.name if company else None,
                ),
            )

    async def _fetch_recording(self, session: CallSession, effect: FetchRecording) -> None:
        if self.fetcher is None or session.call_record_id is None:
            return
        call_id = session.call_record_id
        self.tasks.register(
            f"recording:{effect.channel_id}:{call_id}",
            self._store_recording(call_id, effect.channel_id),
        )

    async def _store_recording(self, call_id: int, channel_id: str) -> None:
        try:
            result = await self.fetcher.fetch(channel_id)
        except Exception as e:
            logger.error(f"Recording lookup for call {call_id} failed: {e}")
            fields = {"recording_status": RecordingStatus.ERROR.value, "recording_reason": str(e)}
            outcome = RecordingStatus.ERROR.value
        else:
            outcome = result.status.value
            if result.status == RecordingStatus.AVAILABLE:
                fields = {"recording_url": result.path, "recording_status": outcome}
            else:
                fields = {"recording_status": outcome, "recording_reason": result.reason}

        if self.metrics:
            self.metrics.recording_fetched(outcome)

        try:
            await self.gateway.update_call(call_id, **fields)
        except PersistenceError as e:
            logger.error(f"Could not store recording status for call {call_id}: {e}")

    async def _evict_session(self, session: CallSession, effect: EvictSession) -> None:
        self.registry.schedule_eviction(session, self.eviction_delay)

    _effect_handlers = {
        RecordIncoming: _record_incoming,
        RecordAnswer: _record_answer,
        FinishCall: _finish_call,
        RecordTerminal: _record_terminal,
        FetchRecording: _fetch_recording,
        EvictSession: _evict_session,
    }

    # Introspection ----------------------------------------------------

    def get_stats(self) -> dict:
        return {
            "active_sessions": len(self.registry),
            "handled_blocks": self._handled_count,
            "dropped_events": self._dropped_count,
            "background_tasks": self.tasks.active_count,
        }
