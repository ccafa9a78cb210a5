from __future__ import annotations

import json

import pytest

from conftest import FakeTransport
from pester.core.router import Router, TEST_SENDER_ID


def send(router: Router, conn: FakeTransport, **frame) -> None:
    router.handle_raw(conn, json.dumps(frame))


@pytest.fixture
def login(router, connect):
    """Register ``user_id`` on a fresh fake connection and clear its inbox."""

    def _login(user_id: str, kind: str = "fake") -> FakeTransport:
        conn = connect(kind)
        send(router, conn, type="register", userId=user_id)
        conn.clear()
        return conn

    return _login


# -----------------------------
# register
# -----------------------------

def test_register_acknowledges_with_server_timestamp(router, connect):
    conn = connect()
    send(router, conn, type="register", userId="alice", timestamp=1)

    assert conn.types() == ["registered"]
    ack = conn.sent[0]
    assert ack["userId"] == "alice"
    assert ack["timestamp"] > 1_700_000_000_000


def test_second_registration_kicks_first(router, connect):
    first, second = connect(), connect()
    send(router, first, type="register", userId="alice")
    send(router, second, type="register", userId="alice")

    assert first.types() == ["registered", "kicked"]
    assert first.closed is True
    assert second.types() == ["registered"]
    assert router.sessions.lookup("alice") is second


def test_superseded_connection_disconnect_is_harmless(router, connect, login):
    bob = login("bob")
    first = connect()
    send(router, first, type="register", userId="alice")
    send(router, first, type="open_channel", friendId="bob")
    bob.clear()
    second = connect()
    send(router, second, type="register", userId="alice")

    router.disconnect(first)

    assert set(router.online()) == {"alice", "bob"}
    assert bob.types() == ["user_left"]
    assert router.channel_snapshot() == {"chat_alice_bob": ["bob"]}


def test_kick_removes_user_from_channels(router, connect, login):
    alice = login("alice")
    bob = login("bob")
    send(router, alice, type="open_channel", friendId="bob")
    bob.clear()

    replacement = connect()
    send(router, replacement, type="register", userId="alice")

    assert alice.types() == ["channel_opened", "kicked"]
    assert replacement.types() == ["registered"]
    assert bob.types() == ["user_left"]
    assert bob.sent[0]["userId"] == "alice"
    assert router.channel_snapshot() == {"chat_alice_bob": ["bob"]}


def test_superseded_connection_cannot_act(router, connect, login):
    login("bob")
    first = connect()
    send(router, first, type="register", userId="alice")
    send(router, connect(), type="register", userId="alice")
    first.clear()

    send(router, first, type="open_channel", friendId="bob")

    assert first.closed is True
    assert first.sent == []
    assert router.channel_snapshot() == {}


def test_invalid_user_id_dropped_when_unregistered(router, connect):
    conn = connect()
    send(router, conn, type="register")
    send(router, conn, type="register", userId="")
    send(router, conn, type="register", userId=12)
    assert conn.sent == []
    assert router.online() == []


def test_invalid_user_id_reported_when_registered(router, login):
    alice = login("alice")
    send(router, alice, type="register", userId="")

    assert alice.sent == [{"type": "error", "message": "userId is required"}]
    assert router.sessions.lookup("alice") is alice


def test_registering_a_new_id_releases_the_old_one(router, login):
    conn = login("alice")
    bob = login("bob")
    send(router, conn, type="open_channel", friendId="bob")
    bob.clear()

    send(router, conn, type="register", userId="alicia")

    assert set(router.online()) == {"alicia", "bob"}
    assert bob.types() == ["user_left"]
    assert router.channel_snapshot() == {"chat_alice_bob": ["bob"]}


# -----------------------------
# open_channel
# -----------------------------

def test_open_channel_before_register(router, connect):
    conn = connect()
    send(router, conn, type="open_channel", friendId="bob")

    assert conn.sent == [{"type": "error", "message": "Register first"}]
    assert router.channel_snapshot() == {}


def test_open_channel_with_offline_friend(router, login):
    alice = login("alice")
    send(router, alice, type="open_channel", friendId="bob")

    assert alice.types() == ["channel_opened"]
    assert alice.sent[0]["friendOnline"] is False
    assert alice.sent[0]["channelId"] == "chat_alice_bob"


def test_open_channel_with_online_friend(router, login):
    alice, bob = login("alice"), login("bob")
    send(router, alice, type="open_channel", friendId="bob")

    assert alice.sent[0]["friendOnline"] is True
    assert bob.types() == ["channel_invite"]


@pytest.mark.parametrize("friend", [None, "", "alice", 9])
def test_open_channel_invalid_friend(router, login, friend):
    alice = login("alice")
    send(router, alice, type="open_channel", friendId=friend)
    assert alice.sent == [{"type": "error", "message": "Invalid friendId"}]


# -----------------------------
# message
# -----------------------------

def test_documented_scenario(router, connect):
    """alice opens bob while he is offline, bob logs in, alice says hi."""
    alice = connect()
    send(router, alice, type="register", userId="alice")
    send(router, alice, type="open_channel", friendId="bob")
    assert alice.sent[-1]["friendOnline"] is False

    bob = connect()
    send(router, bob, type="register", userId="bob")
    assert bob.types() == ["registered", "channel_invite"]
    assert alice.types()[-1] == "user_online"

    alice.clear()
    bob.clear()
    send(router, alice, type="message", channelId="chat_alice_bob", text="hi")

    assert bob.types() == ["message"]
    assert bob.sent[0]["text"] == "hi"
    assert bob.sent[0]["fromUserId"] == "alice"
    assert alice.sent == []


def test_offline_messages_flushed_in_order_on_register(router, connect, login):
    alice = login("alice")
    send(router, alice, type="open_channel", friendId="bob")
    for text in ("one", "two", "three"):
        send(router, alice, type="message", channelId="chat_alice_bob", text=text)
    assert router.mailbox.pending("bob") == 3

    bob = connect()
    send(router, bob, type="register", userId="bob")

    assert bob.types() == ["registered", "channel_invite", "message", "message", "message"]
    assert [m["text"] for m in bob.of_type("message")] == ["one", "two", "three"]
    assert router.mailbox.pending("bob") == 0


def test_message_by_target_user_id(router, login):
    alice, bob = login("alice"), login("bob")
    send(router, alice, type="open_channel", friendId="bob")
    bob.clear()

    send(router, alice, type="message", targetUserId="bob", text="direct")

    assert bob.of_type("message")[0]["channelId"] == "chat_alice_bob"


@pytest.mark.parametrize(
    "frame,error",
    [
        ({"channelId": "chat_alice_bob", "text": ""}, "Message cannot be empty"),
        ({"channelId": "chat_alice_bob", "text": "y" * 301}, "Message must be 300 characters or less"),
        ({"channelId": "chat_alice_bob", "text": 5}, "Invalid message text"),
        ({"channelId": "chat_alice_carol", "text": "hi"}, "Not in this channel"),
        ({"text": "hi"}, "channelId is required"),
    ],
)
def test_message_failures_reported_to_sender_only(router, login, frame, error):
    alice, bob = login("alice"), login("bob")
    send(router, alice, type="open_channel", friendId="bob")
    alice.clear()
    bob.clear()

    send(router, alice, type="message", **frame)

    assert alice.sent == [{"type": "error", "message": error}]
    assert bob.sent == []


def test_message_before_register(router, connect):
    conn = connect()
    send(router, conn, type="message", channelId="chat_a_b", text="hi")
    assert conn.sent == [{"type": "error", "message": "Register first"}]


# -----------------------------
# typing / close_channel
# -----------------------------

def test_typing_is_silently_dropped_when_invalid(router, connect, login):
    stranger = connect()
    send(router, stranger, type="typing", channelId="chat_alice_bob")
    alice = login("alice")
    send(router, alice, type="typing")
    assert stranger.sent == []
    assert alice.sent == []


def test_typing_reaches_peer(router, login):
    alice, bob = login("alice"), login("bob")
    send(router, alice, type="open_channel", friendId="bob")
    bob.clear()

    send(router, alice, type="typing", targetUserId="bob")

    assert bob.types() == ["typing"]
    assert bob.sent[0]["userId"] == "alice"


def test_close_channel(router, login):
    alice, bob = login("alice"), login("bob")
    send(router, alice, type="open_channel", friendId="bob")
    alice.clear()
    bob.clear()

    send(router, alice, type="close_channel", channelId="chat_alice_bob")

    assert alice.types() == ["channel_closed"]
    assert bob.types() == ["user_left"]


def test_close_channel_missing_fields_dropped(router, connect, login):
    stranger = connect()
    send(router, stranger, type="close_channel", channelId="chat_alice_bob")
    alice = login("alice")
    send(router, alice, type="close_channel")
    assert stranger.sent == []
    assert alice.sent == []


# -----------------------------
# parse layer
# -----------------------------

def test_invalid_json_keeps_connection_open(router, connect):
    conn = connect()
    router.handle_raw(conn, b"{nope")

    assert conn.sent == [{"type": "error", "message": "Invalid JSON"}]
    assert conn.closed is False

    send(router, conn, type="register", userId="alice")
    assert conn.types()[-1] == "registered"


def test_unknown_type(router, login):
    alice = login("alice")
    send(router, alice, type="shout", text="HI")
    assert alice.sent == [{"type": "error", "message": "Unknown message type: shout"}]


# -----------------------------
# disconnect
# -----------------------------

def test_disconnect_notifies_and_cleans_up(router, connect, login):
    alice, bob = login("alice"), login("bob")
    send(router, alice, type="open_channel", friendId="bob")
    bob.clear()

    router.disconnect(alice)

    assert bob.types() == ["user_left"]
    assert router.status(["alice", "bob"]) == {"alice": False, "bob": True}
    assert router.channel_snapshot() == {"chat_alice_bob": ["bob"]}

    router.disconnect(bob)
    assert router.channel_snapshot() == {}

    again = login("alice")
    send(router, again, type="open_channel", friendId="bob")
    assert router.channel_snapshot() == {"chat_alice_bob": ["alice", "bob"]}


def test_disconnect_of_unregistered_connection(router, connect):
    router.disconnect(connect())
    assert router.online() == []


# -----------------------------
# configuration & diagnostics
# -----------------------------

def test_auto_rejoin_can_be_disabled(clock, connect):
    router = Router.create(now=clock, auto_rejoin=False)
    alice = connect()
    send(router, alice, type="register", userId="alice")
    send(router, alice, type="open_channel", friendId="bob")
    alice.clear()

    bob = connect()
    send(router, bob, type="register", userId="bob")

    assert bob.types() == ["registered"]
    assert alice.sent == []


def test_mailbox_limit_applies(clock, connect):
    router = Router.create(now=clock, mailbox_limit=2)
    alice = connect()
    send(router, alice, type="register", userId="alice")
    send(router, alice, type="open_channel", friendId="bob")
    for text in ("a", "b", "c"):
        send(router, alice, type="message", channelId="chat_alice_bob", text=text)

    assert [m["text"] for m in router.mailbox.flush("bob")] == ["b", "c"]


def test_inject_message_buffers_then_delivers(router, connect):
    outcome = router.inject_message("bob", "hello from ops")
    assert outcome.buffered is True
    assert outcome.channel_id == f"chat_{TEST_SENDER_ID}_bob"

    bob = connect()
    send(router, bob, type="register", userId="bob")

    assert bob.types() == ["registered", "channel_invite", "message"]
    assert bob.sent[-1]["text"] == "hello from ops"


def test_inject_message_default_text(router, login):
    bob = login("bob")
    outcome = router.inject_message("bob")

    assert outcome.delivered is True
    assert outcome.text.startswith("[Test] ping at ")
    assert bob.types() == ["channel_invite", "message"]


def test_inject_message_empty_text_uses_default(router, login):
    carol = login("carol")
    outcome = router.inject_message("carol", "")

    assert outcome.text.startswith("[Test] ping at ")
    assert carol.of_type("message")[0]["text"] == outcome.text


def test_server_timestamps_are_monotonic(router, login):
    alice, bob = login("alice"), login("bob")
    send(router, alice, type="open_channel", friendId="bob")
    for n in range(3):
        send(router, alice, type="message", channelId="chat_alice_bob", text=str(n))

    stamps = [e["timestamp"] for e in bob.sent]
    assert stamps == sorted(stamps)
