from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from . import proto
from .channels import ChannelDirectory, DeliveryOutcome, InjectOutcome, channel_id_for
from .mailbox import DEFAULT_MAILBOX_LIMIT, OfflineMailbox
from .proto import (
    CloseChannelRequest,
    MessageRequest,
    OpenChannelRequest,
    ProtocolError,
    RegisterRequest,
    TypingRequest,
)
from .sessions import RegisterOutcome, SessionRegistry, Transport

log = logging.getLogger("pester.router")

TEST_SENDER_ID = "__server_test__"


class Router:
    """Turns inbound client events into store mutations and outbound events.

    Stores are injected so every instance is isolated. All handlers are plain
    synchronous calls: on a single event loop each inbound event is applied
    completely before the next one starts.
    """

    def __init__(
        self,
        sessions: SessionRegistry,
        channels: ChannelDirectory,
        mailbox: OfflineMailbox,
        *,
        auto_rejoin: bool = True,
    ) -> None:
        self.sessions = sessions
        self.channels = channels
        self.mailbox = mailbox
        self.auto_rejoin = auto_rejoin

    @classmethod
    def create(
        cls,
        *,
        mailbox_limit: Optional[int] = DEFAULT_MAILBOX_LIMIT,
        auto_rejoin: bool = True,
        now: Optional[Callable[[], int]] = None,
    ) -> "Router":
        sessions = SessionRegistry()
        mailbox = OfflineMailbox(mailbox_limit)
        channels = ChannelDirectory(sessions, mailbox, now=now or proto.now_ms)
        return cls(sessions, channels, mailbox, auto_rejoin=auto_rejoin)

    # ------------------------------------------------------------------
    # Ingress
    # ------------------------------------------------------------------

    def handle_raw(self, conn: Transport, raw: bytes | str) -> None:
        try:
            event = proto.parse_event(raw)
        except ProtocolError as exc:
            log.debug("Rejected frame on %s connection: %s", conn.kind, exc)
            self._reply_error(conn, str(exc))
            return
        self.handle_event(conn, event)

    def handle_event(self, conn: Transport, event: proto.InboundEvent) -> None:
        try:
            if isinstance(event, RegisterRequest):
                self._on_register(conn, event)
            elif isinstance(event, OpenChannelRequest):
                self._on_open_channel(conn, event)
            elif isinstance(event, MessageRequest):
                self._on_message(conn, event)
            elif isinstance(event, TypingRequest):
                self._on_typing(conn, event)
            elif isinstance(event, CloseChannelRequest):
                self._on_close_channel(conn, event)
            else:
                raise ProtocolError(f"Unknown message type: {getattr(event, 'type', None)}")
        except ProtocolError as exc:
            self._reply_error(conn, str(exc))

    def disconnect(self, conn: Transport) -> None:
        user_id = conn.user_id
        if user_id and self._release(conn, user_id):
            log.info("%s disconnected (%s)", user_id, conn.kind)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _on_register(self, conn: Transport, event: RegisterRequest) -> Optional[RegisterOutcome]:
        user_id = event.user_id
        if user_id is None:
            if self._current_user(conn):
                raise ProtocolError("userId is required")
            return None

        previous = self._current_user(conn)
        if previous and previous != user_id:
            self._release(conn, previous)

        outcome = self.sessions.register(user_id, conn)
        if outcome.kicked:
            self.channels.leave_all(user_id)
        self.sessions.send(user_id, proto.Registered(user_id=user_id, timestamp=self.channels.now()).to_wire())
        log.info("%s registered via %s", user_id, conn.kind)

        if self.auto_rejoin:
            self.channels.rejoin(user_id)

        pending = self.mailbox.flush(user_id)
        if pending:
            log.info("Delivering %d buffered message(s) to %s", len(pending), user_id)
            for buffered in pending:
                self.sessions.send(user_id, buffered)
        return outcome

    def _on_open_channel(self, conn: Transport, event: OpenChannelRequest) -> None:
        user_id = self._require_user(conn)
        self.channels.open(user_id, event.friend_id)

    def _on_message(self, conn: Transport, event: MessageRequest) -> DeliveryOutcome:
        user_id = self._require_user(conn)
        channel_id = self._resolve_channel(user_id, event.channel_id, event.target_user_id)
        if channel_id is None:
            raise ProtocolError("channelId is required")
        return self.channels.post_message(user_id, channel_id, event.text)

    def _on_typing(self, conn: Transport, event: TypingRequest) -> None:
        user_id = self._current_user(conn)
        if not user_id:
            return
        channel_id = self._resolve_channel(user_id, event.channel_id, event.target_user_id)
        if channel_id is None:
            return
        self.channels.post_typing(user_id, channel_id)

    def _on_close_channel(self, conn: Transport, event: CloseChannelRequest) -> None:
        user_id = self._current_user(conn)
        if not user_id or event.channel_id is None:
            return
        self.channels.close(user_id, event.channel_id)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def inject_message(
        self,
        target_user_id: str,
        text: Optional[str] = None,
        *,
        sender_id: str = TEST_SENDER_ID,
    ) -> InjectOutcome:
        if not isinstance(target_user_id, str) or not target_user_id:
            raise ProtocolError("targetUserId is required")
        if not text:
            text = f"[Test] ping at {datetime.now(timezone.utc).isoformat()}"
        return self.channels.inject(sender_id, target_user_id, text)

    def status(self, user_ids: Iterable[str]) -> Dict[str, bool]:
        return {uid: self.sessions.is_online(uid) for uid in user_ids}

    def online(self) -> List[str]:
        return self.sessions.online()

    def channel_snapshot(self) -> Dict[str, List[str]]:
        return self.channels.snapshot()

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    def _current_user(self, conn: Transport) -> Optional[str]:
        # a kicked connection keeps its user_id but no longer owns the session
        user_id = conn.user_id
        if user_id and self.sessions.lookup(user_id) is conn:
            return user_id
        return None

    def _require_user(self, conn: Transport) -> str:
        user_id = self._current_user(conn)
        if not user_id:
            raise ProtocolError("Register first")
        return user_id

    @staticmethod
    def _resolve_channel(user_id: str, channel_id: Optional[str], target_user_id: Optional[str]) -> Optional[str]:
        if channel_id is not None:
            return channel_id
        if target_user_id is not None:
            return channel_id_for(user_id, target_user_id)
        return None

    def _release(self, conn: Transport, user_id: str) -> bool:
        if not self.sessions.unregister(user_id, conn):
            return False
        left = self.channels.leave_all(user_id)
        if left:
            log.debug("%s left %d channel(s)", user_id, len(left))
        return True

    @staticmethod
    def _reply_error(conn: Transport, message: str) -> None:
        try:
            conn.send(proto.error_frame(message))
        except Exception:
            log.warning("Could not report error to %s connection", conn.kind, exc_info=True)


__all__ = ["Router", "TEST_SENDER_ID"]
