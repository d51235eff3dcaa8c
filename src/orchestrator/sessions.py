from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from src.adapters.base import (
    AdapterEvent,
    ChannelAdapter,
    ChannelKind,
    InboundEvent,
    InboundMessage,
    OutboundMessage,
    Paired,
    PairingCode,
    SessionState,
    Terminated,
)
from src.errors import AuthFailed, ChannelTransportError, PairingExpired, PlatformError
from src.orchestrator.graph import ActionDispatcher
from src.services.menus import MAIN_MENU
from src.utils.logging import tenant_id_var

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[str, ChannelKind], ChannelAdapter]
SessionKey = Tuple[str, ChannelKind]


@dataclass
class PairingArtifact:
    payload: str
    sequence: int
    issued_at: datetime
    expires_at: float

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class ChannelSession:
    session_id: str
    tenant_id: str
    channel: ChannelKind
    state: SessionState = SessionState.UNINITIALIZED
    identity: str = ""
    display_name: str = ""
    last_activity: Optional[datetime] = None
    artifact: Optional[PairingArtifact] = None
    pairing_sequence: int = 0
    regenerating: bool = False
    credential: Optional[str] = field(default=None, repr=False)
    last_error: Optional[str] = None
    attempts: int = 0

    @property
    def connected(self) -> bool:
        return self.state == SessionState.CONNECTED

    def snapshot(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "channel": self.channel.value,
            "state": self.state.value,
            "identity": self.identity,
            "display_name": self.display_name,
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
            "regenerating": self.regenerating,
            "has_pairing_code": self.artifact is not None,
            "last_error": self.last_error,
            "attempts": self.attempts,
        }


class PairingStatus(str, Enum):
    READY = "ready"
    REGENERATING = "regenerating"
    PENDING = "pending"
    ALREADY_CONNECTED = "already_connected"


@dataclass
class PairingView:
    status: PairingStatus
    artifact: Optional[PairingArtifact] = None


@dataclass
class _Runtime:
    session: ChannelSession
    mailbox: "asyncio.Queue[InboundEvent]" = field(default_factory=asyncio.Queue)
    settled: asyncio.Event = field(default_factory=asyncio.Event)
    adapter: Optional[ChannelAdapter] = None
    tasks: List["asyncio.Task[Any]"] = field(default_factory=list)
    refresh_task: Optional["asyncio.Task[Any]"] = None
    chat_menus: Dict[str, str] = field(default_factory=dict)
    last_taps: Dict[str, Tuple[str, float]] = field(default_factory=dict)


class SessionOrchestrator:
    """Supervises one channel adapter per (tenant, channel).

    Each live session runs an event pump, a sequential deliverer and, for
    QR-paired channels, a pairing watchdog. Connect and disconnect for the
    same key are serialized by an ``asyncio.Lock``.
    """

    def __init__(
        self,
        adapter_factory: AdapterFactory,
        dispatcher: ActionDispatcher,
        pairing_ttl_seconds: float = 20.0,
        handshake_timeout_seconds: float = 30.0,
        disconnect_timeout_seconds: float = 5.0,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        backoff_max_seconds: float = 30.0,
        click_debounce_seconds: float = 2.0,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._adapter_factory = adapter_factory
        self._dispatcher = dispatcher
        self._pairing_ttl = pairing_ttl_seconds
        self._handshake_timeout = handshake_timeout_seconds
        self._disconnect_timeout = disconnect_timeout_seconds
        self._max_retries = max_retries
        self._backoff = backoff_seconds
        self._backoff_max = backoff_max_seconds
        self._debounce = click_debounce_seconds
        self._clock = clock or time.monotonic
        self._watch_interval = max(min(pairing_ttl_seconds / 4, 1.0), 0.01)
        self._sessions: Dict[SessionKey, ChannelSession] = {}
        self._runtimes: Dict[SessionKey, _Runtime] = {}
        self._locks: Dict[SessionKey, asyncio.Lock] = {}

    def _lock_for(self, key: SessionKey) -> asyncio.Lock:
        return self._locks.setdefault(key, asyncio.Lock())

    # public API

    def status(self, tenant_id: str, channel: ChannelKind) -> Optional[ChannelSession]:
        return self._sessions.get((tenant_id, channel))

    def connected_tenants(self, channel: ChannelKind) -> List[str]:
        return [
            tenant_id
            for (tenant_id, kind), session in self._sessions.items()
            if kind == channel and session.state == SessionState.CONNECTED
        ]

    async def validate(self, tenant_id: str, channel: ChannelKind, credential: str) -> str:
        adapter = self._adapter_factory(tenant_id, channel)
        try:
            return await adapter.validate(credential)
        finally:
            await adapter.close(logout=False)

    async def connect(
        self,
        tenant_id: str,
        channel: ChannelKind,
        credential: Optional[str] = None,
    ) -> ChannelSession:
        key = (tenant_id, channel)
        async with self._lock_for(key):
            session = self._sessions.get(key)
            if session is not None and session.state.is_live:
                return session
            previous = self._runtimes.pop(key, None)
            if previous is not None:
                await self._stop_runtime(previous, logout=False)

            session = ChannelSession(
                session_id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                channel=channel,
                state=SessionState.CONNECTING,
                credential=credential,
                last_activity=datetime.now(UTC),
            )
            runtime = _Runtime(session=session)
            self._sessions[key] = session
            self._runtimes[key] = runtime
            runtime.tasks.append(asyncio.create_task(self._supervise(runtime)))
            runtime.tasks.append(asyncio.create_task(self._deliver(runtime)))
            if channel.uses_pairing:
                runtime.tasks.append(asyncio.create_task(self._watch_pairing(runtime)))
            logger.info(
                "Session connecting",
                extra={"tenant_id": tenant_id, "channel": channel.value, "session_id": session.session_id},
            )

        if not channel.uses_pairing:
            try:
                await asyncio.wait_for(runtime.settled.wait(), timeout=self._handshake_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Handshake still pending",
                    extra={"tenant_id": tenant_id, "channel": channel.value},
                )
        return session

    async def disconnect(
        self,
        tenant_id: str,
        channel: ChannelKind,
        logout: bool = True,
    ) -> Optional[ChannelSession]:
        key = (tenant_id, channel)
        async with self._lock_for(key):
            session = self._sessions.get(key)
            runtime = self._runtimes.pop(key, None)
            if runtime is not None:
                await self._stop_runtime(runtime, logout=logout)
            if session is not None:
                session.state = SessionState.DISCONNECTED
                session.credential = None
                session.artifact = None
                session.regenerating = False
                session.last_activity = datetime.now(UTC)
                logger.info(
                    "Session disconnected",
                    extra={"tenant_id": tenant_id, "channel": channel.value, "session_id": session.session_id},
                )
            return session

    async def shutdown(self) -> None:
        for tenant_id, channel in list(self._runtimes):
            await self.disconnect(tenant_id, channel, logout=False)

    def pairing_artifact(self, tenant_id: str, channel: ChannelKind = ChannelKind.WHATSAPP) -> PairingView:
        key = (tenant_id, channel)
        session = self._sessions.get(key)
        if session is None or not session.state.is_live:
            return PairingView(PairingStatus.PENDING)
        if session.state == SessionState.CONNECTED:
            return PairingView(PairingStatus.ALREADY_CONNECTED)
        runtime = self._runtimes.get(key)
        try:
            artifact = self._current_artifact(session)
        except PairingExpired:
            if runtime is not None:
                self._expire(runtime)
            return PairingView(PairingStatus.REGENERATING)
        if artifact is not None:
            return PairingView(PairingStatus.READY, artifact)
        if session.regenerating:
            return PairingView(PairingStatus.REGENERATING)
        return PairingView(PairingStatus.PENDING)

    # internals

    def _current_artifact(self, session: ChannelSession) -> Optional[PairingArtifact]:
        artifact = session.artifact
        if artifact is not None and artifact.expired(self._clock()):
            raise PairingExpired("Pairing code expired")
        return artifact

    def _expire(self, runtime: _Runtime) -> None:
        session = runtime.session
        if session.artifact is None and session.regenerating:
            return
        session.artifact = None
        session.regenerating = True
        logger.info(
            "Pairing code expired, requesting a new one",
            extra={"tenant_id": session.tenant_id, "sequence": session.pairing_sequence},
        )
        if runtime.refresh_task is None or runtime.refresh_task.done():
            runtime.tasks = [task for task in runtime.tasks if not task.done()]
            runtime.refresh_task = asyncio.create_task(self._refresh(runtime))
            runtime.tasks.append(runtime.refresh_task)

    async def _refresh(self, runtime: _Runtime) -> None:
        adapter = runtime.adapter
        if adapter is None:
            return
        try:
            await adapter.refresh_pairing()
        except ChannelTransportError as exc:
            logger.warning(
                "Pairing refresh failed",
                extra={"tenant_id": runtime.session.tenant_id, "error": exc.message},
            )

    async def _watch_pairing(self, runtime: _Runtime) -> None:
        session = runtime.session
        while True:
            try:
                artifact = self._current_artifact(session)
            except PairingExpired:
                self._expire(runtime)
                artifact = None
            if artifact is None:
                await asyncio.sleep(self._watch_interval)
                continue
            await asyncio.sleep(min(max(artifact.expires_at - self._clock(), 0.0), self._watch_interval))

    async def _handle_event(self, runtime: _Runtime, event: AdapterEvent) -> None:
        session = runtime.session
        session.last_activity = datetime.now(UTC)
        if isinstance(event, PairingCode):
            session.pairing_sequence += 1
            session.artifact = PairingArtifact(
                payload=event.payload,
                sequence=session.pairing_sequence,
                issued_at=datetime.now(UTC),
                expires_at=self._clock() + self._pairing_ttl,
            )
            session.regenerating = False
            if session.state != SessionState.AWAITING_PAIRING:
                session.state = SessionState.AWAITING_PAIRING
                logger.info("Awaiting pairing", extra={"tenant_id": session.tenant_id})
            runtime.settled.set()
        elif isinstance(event, Paired):
            session.state = SessionState.CONNECTED
            session.identity = event.identity
            session.display_name = event.display_name
            if event.credential:
                session.credential = event.credential
            session.artifact = None
            session.regenerating = False
            session.attempts = 0
            session.last_error = None
            runtime.settled.set()
            logger.info(
                "Session connected",
                extra={"tenant_id": session.tenant_id, "channel": session.channel.value, "identity": event.identity},
            )
        elif isinstance(event, InboundMessage):
            runtime.mailbox.put_nowait(event.event)

    async def _supervise(self, runtime: _Runtime) -> None:
        session = runtime.session
        tenant_id_var.set(session.tenant_id)
        while True:
            adapter = self._adapter_factory(session.tenant_id, session.channel)
            runtime.adapter = adapter
            try:
                await adapter.open(session.credential)
                async for event in adapter.events():
                    if isinstance(event, Terminated):
                        # Remote logout or session end: the stored credential is no longer usable.
                        await self._close_quietly(adapter)
                        self._terminate(runtime, SessionState.DISCONNECTED, event.reason, purge=True)
                        return
                    await self._handle_event(runtime, event)
                raise ChannelTransportError("Event stream ended")
            except AuthFailed as exc:
                await self._close_quietly(adapter)
                self._terminate(runtime, SessionState.FAILED, exc.message, purge=True)
                return
            except ChannelTransportError as exc:
                await self._close_quietly(adapter)
                session.attempts += 1
                session.last_error = exc.message
                if session.attempts > self._max_retries:
                    self._terminate(runtime, SessionState.FAILED, exc.message, purge=False)
                    return
                delay = min(self._backoff * 2 ** (session.attempts - 1), self._backoff_max)
                logger.warning(
                    "Channel transport error, retrying",
                    extra={
                        "tenant_id": session.tenant_id,
                        "channel": session.channel.value,
                        "attempt": session.attempts,
                        "delay": delay,
                        "error": exc.message,
                    },
                )
                session.state = SessionState.CONNECTING
                session.artifact = None
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception(
                    "Unexpected adapter failure",
                    extra={"tenant_id": session.tenant_id, "channel": session.channel.value},
                )
                await self._close_quietly(adapter)
                self._terminate(runtime, SessionState.FAILED, str(exc), purge=False)
                return

    def _terminate(self, runtime: _Runtime, state: SessionState, error: str, purge: bool) -> None:
        session = runtime.session
        session.state = state
        session.last_error = error
        session.artifact = None
        session.regenerating = False
        if purge:
            session.credential = None
        runtime.settled.set()
        current = asyncio.current_task()
        for task in runtime.tasks:
            if task is not current:
                task.cancel()
        logger.info(
            "Session terminated",
            extra={"tenant_id": session.tenant_id, "channel": session.channel.value, "state": state.value, "error": error},
        )

    async def _deliver(self, runtime: _Runtime) -> None:
        session = runtime.session
        tenant_id_var.set(session.tenant_id)
        while True:
            event = await runtime.mailbox.get()
            if self._is_duplicate_tap(runtime, event):
                logger.debug("Dropping duplicate tap", extra={"tenant_id": session.tenant_id, "chat_id": event.chat_id})
                continue
            current_menu = runtime.chat_menus.get(event.chat_id, MAIN_MENU)
            try:
                result = await asyncio.to_thread(
                    self._dispatcher.dispatch,
                    session.tenant_id,
                    session.channel,
                    event,
                    current_menu,
                )
                message: Optional[OutboundMessage] = result.message
                runtime.chat_menus[event.chat_id] = result.next_menu or MAIN_MENU
            except PlatformError as exc:
                logger.warning(
                    "Dispatch failed",
                    extra={"tenant_id": session.tenant_id, "chat_id": event.chat_id, "error": exc.message},
                )
                message = await self._fallback_message(runtime, event)
            except Exception:
                logger.exception(
                    "Unexpected dispatch failure",
                    extra={"tenant_id": session.tenant_id, "chat_id": event.chat_id},
                )
                message = await self._fallback_message(runtime, event)

            adapter = runtime.adapter
            if adapter is None or message is None:
                continue
            try:
                await adapter.send(message)
            except ChannelTransportError as exc:
                logger.warning(
                    "Outbound send failed",
                    extra={"tenant_id": session.tenant_id, "chat_id": event.chat_id, "error": exc.message},
                )

    async def _fallback_message(self, runtime: _Runtime, event: InboundEvent) -> Optional[OutboundMessage]:
        """Default reply for an event whose dispatch failed; None if even that is unavailable."""
        session = runtime.session
        runtime.chat_menus[event.chat_id] = MAIN_MENU
        try:
            return await asyncio.to_thread(self._dispatcher.fallback, session.tenant_id, event)
        except Exception:
            logger.exception(
                "Fallback reply unavailable",
                extra={"tenant_id": session.tenant_id, "chat_id": event.chat_id},
            )
            return None

    def _is_duplicate_tap(self, runtime: _Runtime, event: InboundEvent) -> bool:
        if event.kind != "callback" or self._debounce <= 0:
            return False
        now = self._clock()
        previous = runtime.last_taps.get(event.chat_id)
        runtime.last_taps[event.chat_id] = (event.callback_data or "", now)
        if previous is None:
            return False
        data, tapped_at = previous
        return data == (event.callback_data or "") and now - tapped_at < self._debounce

    async def _close_quietly(self, adapter: ChannelAdapter, logout: bool = False) -> None:
        try:
            await asyncio.wait_for(adapter.close(logout=logout), timeout=self._disconnect_timeout)
        except (PlatformError, asyncio.TimeoutError) as exc:
            logger.warning("Adapter close did not complete cleanly", extra={"error": str(exc)})

    async def _stop_runtime(self, runtime: _Runtime, logout: bool) -> None:
        pending = [task for task in runtime.tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=self._disconnect_timeout)
            if still_running:
                logger.warning(
                    "Session tasks did not stop in time",
                    extra={"tenant_id": runtime.session.tenant_id, "count": len(still_running)},
                )
        if runtime.adapter is not None:
            await self._close_quietly(runtime.adapter, logout=logout)
