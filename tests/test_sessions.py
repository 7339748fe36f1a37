"""Session registry: per-type tables, TTL expiry and the sweeper service."""

from minibot_hub.config import SessionConfig
from minibot_hub.core.session import (
    AdminAddSession,
    BroadcastSession,
    FlowSession,
    ReplySession,
    SessionRegistry,
    WelcomeEditSession,
)
from minibot_hub.flows.steps import FlowDefinition
from minibot_hub.services.scheduler import SessionSweeper
from minibot_hub.services.service_manager import ServiceManager


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _registry(ttl: float = 60.0):
    clock = FakeClock()
    return SessionRegistry(ttl_seconds=ttl, clock=clock), clock


# ── Tables ────────────────────────────────────────────


class TestSessionTable:
    def test_start_and_get(self):
        sessions, _ = _registry()
        sessions.broadcast.start(7, BroadcastSession(bot_id=1))
        assert sessions.broadcast.get(7).bot_id == 1
        assert 7 in sessions.broadcast
        assert sessions.reply.get(7) is None

    def test_start_replaces_prior_session(self):
        sessions, _ = _registry()
        sessions.broadcast.start(7, BroadcastSession(bot_id=1))
        sessions.broadcast.start(7, BroadcastSession(bot_id=2))
        assert sessions.broadcast.get(7).bot_id == 2
        assert len(sessions.broadcast) == 1

    def test_idle_session_expires(self):
        sessions, clock = _registry(ttl=60)
        sessions.admin_add.start(7, AdminAddSession(bot_id=1))
        clock.now += 61
        assert sessions.admin_add.get(7) is None
        assert len(sessions.admin_add) == 0

    def test_touch_renews(self):
        sessions, clock = _registry(ttl=60)
        sessions.welcome_edit.start(7, WelcomeEditSession(bot_id=1))
        clock.now += 50
        sessions.welcome_edit.touch(7)
        clock.now += 50
        assert sessions.welcome_edit.get(7) is not None

    def test_zero_ttl_never_expires(self):
        sessions, clock = _registry(ttl=0)
        sessions.broadcast.start(7, BroadcastSession(bot_id=1))
        clock.now += 10**6
        assert sessions.broadcast.get(7) is not None

    def test_pop_removes(self):
        sessions, _ = _registry()
        sessions.reply.start(7, ReplySession(feedback_id=3, target_user_id=50, bot_id=1))
        popped = sessions.reply.pop(7)
        assert popped.feedback_id == 3
        assert sessions.reply.pop(7) is None

    def test_flow_sessions_keyed_per_bot(self):
        sessions, _ = _registry()
        flow = FlowDefinition(name="f", steps=())
        sessions.flows.start((1, 7), FlowSession(bot_id=1, user_id=7, flow=flow))
        sessions.flows.start((2, 7), FlowSession(bot_id=2, user_id=7, flow=flow))
        assert len(sessions.flows) == 2
        assert sessions.flows.get((1, 7)).bot_id == 1


# ── Registry ──────────────────────────────────────────


class TestSessionRegistry:
    def test_cancel_all(self):
        sessions, _ = _registry()
        flow = FlowDefinition(name="f", steps=())
        sessions.broadcast.start(7, BroadcastSession(bot_id=1))
        sessions.admin_add.start(7, AdminAddSession(bot_id=1))
        sessions.flows.start((1, 7), FlowSession(bot_id=1, user_id=7, flow=flow))
        sessions.flows.start((2, 7), FlowSession(bot_id=2, user_id=7, flow=flow))

        cancelled = sessions.cancel_all(7, bot_id=1)
        assert cancelled == ["broadcast", "admin_add", "flows"]
        assert sessions.flows.get((2, 7)) is not None
        assert sessions.cancel_all(7, bot_id=1) == []

    def test_purge_expired(self):
        sessions, clock = _registry(ttl=60)
        sessions.broadcast.start(1, BroadcastSession(bot_id=1))
        sessions.reply.start(2, ReplySession(feedback_id=1, target_user_id=3, bot_id=1))
        clock.now += 30
        sessions.admin_add.start(3, AdminAddSession(bot_id=1))
        clock.now += 31
        assert sessions.purge_expired() == 2
        assert sessions.stats() == {"broadcast": 0, "reply": 0, "admin_add": 1, "welcome_edit": 0, "flows": 0}

    def test_clear(self):
        sessions, _ = _registry()
        sessions.broadcast.start(1, BroadcastSession(bot_id=1))
        sessions.clear()
        assert sum(sessions.stats().values()) == 0


# ── Sweeper service ───────────────────────────────────


class TestSessionSweeper:
    async def test_sweep_purges(self):
        sessions, clock = _registry(ttl=60)
        sessions.broadcast.start(1, BroadcastSession(bot_id=1))
        clock.now += 120
        sweeper = SessionSweeper(SessionConfig(ttl_seconds=60, sweep_interval=30), sessions)
        assert await sweeper.sweep() == 1

    async def test_start_and_stop(self):
        sessions, _ = _registry()
        sweeper = SessionSweeper(SessionConfig(ttl_seconds=60, sweep_interval=30), sessions)
        await sweeper.start()
        assert sweeper.healthy
        await sweeper.stop()
        assert not sweeper.healthy

    async def test_disabled_without_ttl(self):
        sessions, _ = _registry(ttl=0)
        manager = ServiceManager(SessionConfig(ttl_seconds=0), sessions)
        await manager.start_all()
        assert manager.health_check_all() == {"session_sweeper": True}
        await manager.stop_all()
