import asyncio
import json
import logging
from typing import Optional

import pytest

from server.membership import CapacityExceeded
from server.session_manager import RoomState, SessionManager


class DummyTransport:
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed: Optional[tuple[int, str]] = None

    async def send_text(self, data: str) -> None:
        if self.closed is not None:
            raise RuntimeError("transport closed")
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = (code, reason)

    def types(self) -> list[str]:
        return [message["type"] for message in self.sent]

    def last(self, kind: str) -> dict:
        return [message for message in self.sent if message["type"] == kind][-1]


class ManualAlarm:
    def __init__(self, due: float, callback) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.alarms: list[ManualAlarm] = []

    def monotonic(self) -> float:
        return self.now

    def time(self) -> float:
        return 1_700_000_000.0 + self.now

    def call_later(self, delay: float, callback) -> ManualAlarm:
        alarm = ManualAlarm(self.now + delay, callback)
        self.alarms.append(alarm)
        return alarm

    def advance(self, seconds: float) -> None:
        self.now += seconds
        due = [alarm for alarm in self.alarms if not alarm.cancelled and alarm.due <= self.now]
        for alarm in due:
            self.alarms.remove(alarm)
            alarm.callback()

    def pending(self) -> list[ManualAlarm]:
        return [alarm for alarm in self.alarms if not alarm.cancelled]


async def settle(manager: SessionManager) -> None:
    """Let expiry tasks and peer writers run to completion."""

    while manager._expiry_tasks:
        await asyncio.gather(*list(manager._expiry_tasks))
    await manager.channel.flush()
    for _ in range(20):
        await asyncio.sleep(0)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def expired_calls() -> list[int]:
    return []


@pytest.fixture
def manager(clock, expired_calls) -> SessionManager:
    async def on_expired() -> None:
        expired_calls.append(1)

    return SessionManager(capacity=2, session_timeout=300, clock=clock, on_session_expired=on_expired)


@pytest.mark.anyio
async def test_full_session_expires_and_evicts_everyone(manager, clock, expired_calls) -> None:
    alice, bob = DummyTransport(), DummyTransport()
    await manager.join("alice", alice, origin_address="10.0.0.2")
    await manager.join("bob", bob, origin_address="10.0.0.3")

    assert await manager.start_session(requested_by="alice") is True
    await settle(manager)
    started = alice.last("session_started")
    assert started["timeout"] == 300_000
    assert started["startTime"] == 1_700_000_000_000

    clock.advance(299)
    await settle(manager)
    assert "session_expired" not in alice.types()

    clock.advance(1)
    await settle(manager)

    assert alice.types() == ["joined", "users_update", "users_update", "session_started", "session_expired"]
    assert bob.types() == ["joined", "users_update", "session_started", "session_expired"]
    assert bob.last("session_expired")["message"] == "Session has expired after 5 minutes"
    assert alice.closed == (1000, "Session expired")
    assert bob.closed == (1000, "Session expired")
    assert await manager.list_peers() == []
    assert await manager.get_state() is RoomState.IDLE
    assert await manager.time_remaining() is None
    assert expired_calls == [1]


@pytest.mark.anyio
async def test_join_reports_room_state_to_newcomer(manager) -> None:
    alice, bob = DummyTransport(), DummyTransport()
    peer = await manager.join("alice", alice)
    await manager.join("bob", bob)
    await settle(manager)

    joined = alice.sent[0]
    assert joined["type"] == "joined"
    assert joined["userId"] == peer.id
    assert joined["sessionTimeout"] == 300_000
    assert joined["timeRemaining"] is None
    assert joined["sessionStarted"] is False
    update = alice.last("users_update")
    assert [user["name"] for user in update["users"]] == ["alice", "bob"]
    assert update["maxUsers"] == 2


@pytest.mark.anyio
async def test_third_join_is_rejected_without_disturbing_room(manager) -> None:
    alice, bob, carol = DummyTransport(), DummyTransport(), DummyTransport()
    await manager.join("alice", alice)
    await manager.join("bob", bob)
    await settle(manager)
    alice_seen = list(alice.sent)

    with pytest.raises(CapacityExceeded) as excinfo:
        await manager.join("carol", carol)
    await settle(manager)

    assert str(excinfo.value) == "Room is full (max 2 users)"
    assert [peer.display_name for peer in await manager.list_peers()] == ["alice", "bob"]
    assert alice.sent == alice_seen
    assert carol.sent == []
    events = await manager.get_recent_events()
    assert events[-1]["type"] == "join_rejected"


@pytest.mark.anyio
async def test_last_leave_cancels_running_session(manager, clock, expired_calls) -> None:
    alice, bob = DummyTransport(), DummyTransport()
    alice_peer = await manager.join("alice", alice)
    bob_peer = await manager.join("bob", bob)
    await manager.start_session()

    clock.advance(100)
    await manager.leave(alice_peer.id)
    assert await manager.get_state() is RoomState.ACTIVE
    await manager.leave(bob_peer.id)

    assert await manager.get_state() is RoomState.IDLE
    assert await manager.time_remaining() is None
    assert clock.pending() == []

    clock.advance(500)
    await settle(manager)
    assert "session_expired" not in alice.types() + bob.types()
    assert expired_calls == []


@pytest.mark.anyio
async def test_rejoin_after_empty_room_starts_idle(manager, clock) -> None:
    alice = DummyTransport()
    alice_peer = await manager.join("alice", alice)
    await manager.start_session()
    await manager.leave(alice_peer.id)

    bob = DummyTransport()
    await manager.join("bob", bob)
    await settle(manager)

    joined = bob.sent[0]
    assert joined["sessionStarted"] is False
    assert joined["timeRemaining"] is None
    assert await manager.get_state() is RoomState.IDLE


@pytest.mark.anyio
async def test_start_session_is_idempotent(manager) -> None:
    alice = DummyTransport()
    await manager.join("alice", alice)

    assert await manager.start_session() is True
    assert await manager.start_session() is False
    await settle(manager)

    assert alice.types().count("session_started") == 1


@pytest.mark.anyio
async def test_start_session_in_empty_room_is_refused(manager, clock) -> None:
    assert await manager.start_session() is False
    assert await manager.get_state() is RoomState.IDLE
    assert clock.pending() == []


@pytest.mark.anyio
async def test_remaining_time_never_increases(manager, clock) -> None:
    await manager.join("alice", DummyTransport())
    await manager.start_session()

    samples = []
    for step in (0, 1, 10, 0, 60.5, 200):
        clock.advance(step)
        samples.append(await manager.time_remaining())

    assert samples[0] == 300
    assert samples == sorted(samples, reverse=True)
    assert all(0 <= sample <= 300 for sample in samples)


@pytest.mark.anyio
async def test_users_update_carries_remaining_time(manager, clock) -> None:
    alice = DummyTransport()
    await manager.join("alice", alice)
    await manager.start_session()
    clock.advance(30)
    await manager.join("bob", DummyTransport())
    await settle(manager)

    update = alice.last("users_update")
    assert update["sessionStarted"] is True
    assert update["timeRemaining"] == 270_000


@pytest.mark.anyio
async def test_stale_expiry_is_ignored(manager, clock) -> None:
    alice = DummyTransport()
    alice_peer = await manager.join("alice", alice)
    await manager.start_session()
    stale_handle = manager._session_handle
    await manager.leave(alice_peer.id)

    bob = DummyTransport()
    await manager.join("bob", bob)
    await manager.start_session()

    assert await manager._expire(expected=stale_handle) is False
    assert await manager.get_state() is RoomState.ACTIVE
    assert [peer.display_name for peer in await manager.list_peers()] == ["bob"]


@pytest.mark.anyio
async def test_forced_expire_without_session_is_noop(manager) -> None:
    await manager.join("alice", DummyTransport())

    assert await manager.expire() is False
    assert len(await manager.list_peers()) == 1


@pytest.mark.anyio
async def test_failing_expiry_hook_still_resets_room(clock, caplog) -> None:
    def broken_hook() -> None:
        raise OSError("disk gone")

    manager = SessionManager(capacity=2, session_timeout=10, clock=clock, on_session_expired=broken_hook)
    alice = DummyTransport()
    await manager.join("alice", alice)
    await manager.start_session()

    with caplog.at_level(logging.ERROR):
        clock.advance(10)
        await settle(manager)

    assert "Session expiry hook failed" in caplog.text
    assert alice.closed == (1000, "Session expired")
    assert await manager.get_state() is RoomState.IDLE
    assert await manager.list_peers() == []

    await manager.join("bob", DummyTransport())
    assert await manager.start_session() is True


@pytest.mark.anyio
async def test_leave_unknown_peer_is_noop(manager) -> None:
    alice = DummyTransport()
    await manager.join("alice", alice)
    await settle(manager)
    before = list(alice.sent)

    assert await manager.leave("missing") is None
    await settle(manager)

    assert alice.sent == before


@pytest.mark.anyio
async def test_leave_notifies_remaining_peer(manager) -> None:
    alice, bob = DummyTransport(), DummyTransport()
    await manager.join("alice", alice)
    bob_peer = await manager.join("bob", bob)

    assert (await manager.leave(bob_peer.id)).display_name == "bob"
    await settle(manager)

    assert [user["name"] for user in alice.last("users_update")["users"]] == ["alice"]
    assert bob.closed == (1000, "")


@pytest.mark.anyio
async def test_file_notifications_reach_all_peers(manager) -> None:
    alice, bob = DummyTransport(), DummyTransport()
    await manager.join("alice", alice)
    await manager.join("bob", bob)

    await manager.notify_file_added("report.pdf", "alice")
    await manager.notify_file_deleted("report.pdf")
    await settle(manager)

    for transport in (alice, bob):
        assert transport.types()[-2:] == ["file_added", "file_deleted"]
        assert transport.last("file_added") == {"type": "file_added", "filename": "report.pdf", "sender": "alice"}


@pytest.mark.anyio
async def test_disconnect_all_notifies_and_resets(manager, clock) -> None:
    alice, bob = DummyTransport(), DummyTransport()
    await manager.join("alice", alice)
    await manager.join("bob", bob)
    await manager.start_session()

    assert await manager.disconnect_all(reason="Server shutting down") == 2

    for transport in (alice, bob):
        assert transport.last("error") == {"type": "error", "message": "Server shutting down"}
        assert transport.closed == (1001, "Server shutting down")
    assert await manager.get_state() is RoomState.IDLE
    assert clock.pending() == []
    assert await manager.disconnect_all() == 0


@pytest.mark.anyio
async def test_summaries_and_snapshot(manager) -> None:
    assert await manager.server_info() == {
        "name": "LAN File Share",
        "users": 0,
        "maxUsers": 2,
        "canJoin": True,
    }

    alice = DummyTransport()
    await manager.join("alice", alice, origin_address="10.0.0.2")
    await manager.join("bob", DummyTransport())
    await manager.start_session(requested_by="alice")
    await settle(manager)

    summary = await manager.users_summary()
    assert summary["canJoin"] is False
    assert [user["ip"] for user in summary["users"]] == ["10.0.0.2", None]

    snapshot = await manager.snapshot()
    assert snapshot["state"] == "active"
    assert snapshot["participant_count"] == 2
    assert snapshot["time_remaining_ms"] == 300_000
    assert snapshot["peers"][0]["bytes_sent"] > 0
    event_types = [event["type"] for event in snapshot["events"]]
    assert event_types == ["user_joined", "user_joined", "session_started"]


def test_session_timeout_must_be_positive() -> None:
    with pytest.raises(ValueError):
        SessionManager(session_timeout=0)


@pytest.mark.anyio
async def test_session_survives_while_one_peer_remains(manager, clock) -> None:
    alice, bob = DummyTransport(), DummyTransport()
    await manager.join("alice", alice)
    bob_peer = await manager.join("bob", bob)
    await manager.start_session()
    clock.advance(60)

    await manager.leave(bob_peer.id)
    await settle(manager)

    update = alice.last("users_update")
    assert [user["name"] for user in update["users"]] == ["alice"]
    assert update["sessionStarted"] is True
    assert update["timeRemaining"] == 240_000
    assert await manager.get_state() is RoomState.ACTIVE
