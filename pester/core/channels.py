from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Protocol, Set

from .proto import (
    ChannelClosed,
    ChannelInvite,
    ChannelOpened,
    ChatMessage,
    ProtocolError,
    TypingNotice,
    UserLeft,
    UserOnline,
    clean_message_text,
    now_ms,
)

"""
Channel directory
-----------------
A channel is the member set of one conversation, keyed by an id both sides
derive from the pair of user ids. Membership is independent of sessions: a
user added while offline stays a member until they close the channel or
their live session disconnects.

Collaborators are passed in rather than imported:
  - sessions: anything with ``send(user_id, event) -> bool`` and ``is_online(user_id)``
  - mailbox:  anything with ``buffer(user_id, event)``

Every method runs without suspension points, so callers on one event loop see
each join, leave and broadcast as a single step.
"""

log = logging.getLogger("pester.channels")

NowFn = Callable[[], int]


class Presence(Protocol):
    def send(self, user_id: str, event: dict) -> bool: ...

    def is_online(self, user_id: str) -> bool: ...


class Mailbox(Protocol):
    def buffer(self, user_id: str, event: dict) -> None: ...


def channel_id_for(a: str, b: str) -> str:
    """Order-independent channel id for a pair of users."""

    return "chat_" + "_".join(sorted((a, b)))


@dataclass(slots=True)
class DeliveryOutcome:
    channel_id: str
    event: dict
    delivered: List[str] = field(default_factory=list)
    buffered: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


@dataclass(slots=True)
class InjectOutcome:
    channel_id: str
    text: str
    delivered: bool
    buffered: bool


class ChannelDirectory:
    """Tracks channel membership and fans channel events out to members."""

    channel_id_for = staticmethod(channel_id_for)

    def __init__(self, sessions: Presence, mailbox: Mailbox, *, now: NowFn = now_ms) -> None:
        self.sessions = sessions
        self.mailbox = mailbox
        self.now = now
        self._members: Dict[str, Set[str]] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def members(self, channel_id: str) -> FrozenSet[str]:
        return frozenset(self._members.get(channel_id, ()))

    def is_member(self, user_id: str, channel_id: str) -> bool:
        return user_id in self._members.get(channel_id, ())

    def channels_of(self, user_id: str) -> List[str]:
        return [cid for cid, members in self._members.items() if user_id in members]

    def snapshot(self) -> Dict[str, List[str]]:
        return {cid: sorted(members) for cid, members in self._members.items()}

    def __contains__(self, channel_id: object) -> bool:
        return channel_id in self._members

    def __len__(self) -> int:
        return len(self._members)

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def open(self, opener: str, friend_id: Any) -> dict:
        """Create (or reuse) the pair channel and add both users to it.

        The opener receives ``channel_opened``; an online friend also receives
        ``channel_invite``. Returns the ``channel_opened`` event.
        """
        if not isinstance(friend_id, str) or not friend_id or friend_id == opener:
            raise ProtocolError("Invalid friendId")

        channel_id = channel_id_for(opener, friend_id)
        self._members.setdefault(channel_id, set()).update((opener, friend_id))

        friend_online = self.sessions.is_online(friend_id)
        opened = ChannelOpened(
            channel_id=channel_id,
            friend_id=friend_id,
            friend_online=friend_online,
            timestamp=self.now(),
        ).to_wire()
        self.sessions.send(opener, opened)
        if friend_online:
            invite = ChannelInvite(channel_id=channel_id, from_user_id=opener, timestamp=self.now())
            self.sessions.send(friend_id, invite.to_wire())

        log.info(
            "Channel %s opened by %s -> %s (friend %s)",
            channel_id, opener, friend_id, "online" if friend_online else "offline",
        )
        return opened

    def close(self, user_id: str, channel_id: str) -> None:
        """Leave ``channel_id``; the closer is always acknowledged, member or not."""
        self._leave(user_id, channel_id)
        self.sessions.send(user_id, ChannelClosed(channel_id=channel_id, timestamp=self.now()).to_wire())

    def leave_all(self, user_id: str) -> List[str]:
        left = self.channels_of(user_id)
        for channel_id in left:
            self._leave(user_id, channel_id)
        return left

    def rejoin(self, user_id: str) -> List[str]:
        """Re-announce every channel that still lists ``user_id`` after it registers.

        The user gets a ``channel_invite`` from the other member, and that member
        gets ``user_online``.
        """
        rejoined: List[str] = []
        for channel_id in self.channels_of(user_id):
            peer = next((m for m in sorted(self._members[channel_id]) if m != user_id), None)
            if peer is None:
                continue
            ts = self.now()
            self.sessions.send(user_id, ChannelInvite(channel_id=channel_id, from_user_id=peer, timestamp=ts).to_wire())
            self.sessions.send(peer, UserOnline(channel_id=channel_id, user_id=user_id, timestamp=ts).to_wire())
            rejoined.append(channel_id)
        if rejoined:
            log.info("Rejoined %s to %d channel(s)", user_id, len(rejoined))
        return rejoined

    def _leave(self, user_id: str, channel_id: str) -> bool:
        members = self._members.get(channel_id)
        if not members or user_id not in members:
            return False
        members.discard(user_id)
        self._broadcast(members, UserLeft(channel_id=channel_id, user_id=user_id, timestamp=self.now()).to_wire())
        if not members:
            del self._members[channel_id]
            log.debug("Channel %s is empty; removed", channel_id)
        return True

    # ------------------------------------------------------------------
    # Traffic
    # ------------------------------------------------------------------

    def post_message(self, user_id: str, channel_id: str, text: Any) -> DeliveryOutcome:
        """Send a chat message to every other member, buffering it for offline ones."""
        text = clean_message_text(text)
        members = self._members.get(channel_id)
        if not members or user_id not in members:
            raise ProtocolError("Not in this channel")

        event = ChatMessage(channel_id=channel_id, from_user_id=user_id, text=text, timestamp=self.now()).to_wire()
        outcome = DeliveryOutcome(channel_id=channel_id, event=event)
        for member in sorted(members):
            if member == user_id:
                continue
            if not self.sessions.is_online(member):
                self.mailbox.buffer(member, event)
                outcome.buffered.append(member)
            elif self.sessions.send(member, event):
                outcome.delivered.append(member)
            else:
                outcome.failed.append(member)
        return outcome

    def post_typing(self, user_id: str, channel_id: str) -> int:
        members = self._members.get(channel_id)
        if not members:
            return 0
        notice = TypingNotice(channel_id=channel_id, user_id=user_id, timestamp=self.now()).to_wire()
        return self._broadcast(members, notice, exclude=user_id)

    def inject(self, sender_id: str, target_id: str, text: str) -> InjectOutcome:
        """Drop a message from ``sender_id`` into the pair channel without a live sender.

        Used for diagnostics: the channel is created if needed, an online target
        gets ``channel_invite`` then ``message``, an offline one has it buffered.
        """
        text = clean_message_text(text)
        channel_id = channel_id_for(sender_id, target_id)
        self._members.setdefault(channel_id, set()).update((sender_id, target_id))

        event = ChatMessage(channel_id=channel_id, from_user_id=sender_id, text=text, timestamp=self.now()).to_wire()
        if self.sessions.is_online(target_id):
            invite = ChannelInvite(channel_id=channel_id, from_user_id=sender_id, timestamp=self.now())
            self.sessions.send(target_id, invite.to_wire())
            self.sessions.send(target_id, event)
            delivered = True
        else:
            self.mailbox.buffer(target_id, event)
            delivered = False
        log.info("Injected message -> %s (%s)", target_id, "delivered" if delivered else "buffered")
        return InjectOutcome(channel_id=channel_id, text=text, delivered=delivered, buffered=not delivered)

    def _broadcast(self, members: Set[str], event: dict, exclude: Optional[str] = None) -> int:
        sent = 0
        for member in list(members):
            if member == exclude:
                continue
            if self.sessions.send(member, event):
                sent += 1
        return sent


__all__ = ["ChannelDirectory", "DeliveryOutcome", "InjectOutcome", "channel_id_for"]
