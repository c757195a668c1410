"""Tests for the connection registry."""
import random

import pytest

from app.auth.verifier import Identity
from app.chat.errors import NotAuthenticated
from app.chat.registry import ConnectionRegistry


def identity(user_id: str) -> Identity:
    return Identity(userId=user_id, username=f"name-{user_id}")


class ListenerSpy:
    def __init__(self) -> None:
        self.calls = 0

    async def __call__(self) -> None:
        self.calls += 1


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def spy(registry):
    s = ListenerSpy()
    registry.add_listener(s)
    return s


class TestMembership:
    @pytest.mark.asyncio
    async def test_unauthenticated_connection_not_online(self, registry, raw_connection):
        conn, _ = raw_connection()
        await registry.register(conn)

        assert registry.is_registered(conn)
        assert registry.all_identified() == []
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_attach_identity_makes_user_online(self, registry, spy, raw_connection):
        conn, _ = raw_connection()
        await registry.register(conn)

        assert await registry.attach_identity(conn, identity("a")) is True

        assert conn.is_authenticated
        assert [i.userId for i in registry.all_identified()] == ["a"]
        assert registry.find_by_user_id("a") == {conn}
        assert spy.calls == 1

    @pytest.mark.asyncio
    async def test_register_does_not_notify(self, registry, spy, raw_connection):
        conn, _ = raw_connection()
        await registry.register(conn)
        assert spy.calls == 0

    @pytest.mark.asyncio
    async def test_unregister_is_idempotent(self, registry, spy, raw_connection):
        conn, _ = raw_connection()
        await registry.register(conn)
        await registry.attach_identity(conn, identity("a"))

        assert await registry.unregister(conn) is True
        assert await registry.unregister(conn) is False

        assert registry.all_identified() == []
        assert registry.find_by_user_id("a") == set()
        # attach + one unregister
        assert spy.calls == 2

    @pytest.mark.asyncio
    async def test_attach_on_unregistered_connection_is_noop(self, registry, spy, raw_connection):
        conn, _ = raw_connection()
        assert await registry.attach_identity(conn, identity("a")) is False
        assert conn.identity is None
        assert spy.calls == 0

    @pytest.mark.asyncio
    async def test_multi_tab_user_listed_once(self, registry, raw_connection):
        tab1, _ = raw_connection()
        tab2, _ = raw_connection()
        for conn in (tab1, tab2):
            await registry.register(conn)
            await registry.attach_identity(conn, identity("a"))

        assert [i.userId for i in registry.all_identified()] == ["a"]
        assert registry.find_by_user_id("a") == {tab1, tab2}

        await registry.unregister(tab1)
        assert [i.userId for i in registry.all_identified()] == ["a"]
        assert registry.find_by_user_id("a") == {tab2}

    @pytest.mark.asyncio
    async def test_reattach_moves_connection_to_new_user(self, registry, raw_connection):
        conn, _ = raw_connection()
        await registry.register(conn)
        await registry.attach_identity(conn, identity("a"))
        await registry.attach_identity(conn, identity("b"))

        assert registry.find_by_user_id("a") == set()
        assert registry.find_by_user_id("b") == {conn}

    @pytest.mark.asyncio
    async def test_find_returns_snapshot(self, registry, raw_connection):
        conn, _ = raw_connection()
        await registry.register(conn)
        await registry.attach_identity(conn, identity("a"))

        found = registry.find_by_user_id("a")
        await registry.unregister(conn)

        assert found == {conn}


class TestSelectedPeer:
    @pytest.mark.asyncio
    async def test_selected_peer_requires_identity(self, registry, raw_connection):
        conn, _ = raw_connection()
        await registry.register(conn)

        with pytest.raises(NotAuthenticated):
            await registry.set_selected_peer(conn, "b")

    @pytest.mark.asyncio
    async def test_selected_peer_lookup(self, registry, raw_connection):
        tab1, _ = raw_connection()
        tab2, _ = raw_connection()
        for conn in (tab1, tab2):
            await registry.register(conn)
            await registry.attach_identity(conn, identity("a"))

        assert registry.selected_peer_of("a") is None

        await registry.set_selected_peer(tab2, "b")
        assert registry.selected_peer_of("a") == "b"

        await registry.set_selected_peer(tab2, None)
        assert registry.selected_peer_of("a") is None

    @pytest.mark.asyncio
    async def test_selected_peer_of_offline_user(self, registry):
        assert registry.selected_peer_of("nobody") is None


class TestSendToUser:
    @pytest.mark.asyncio
    async def test_delivers_to_every_tab(self, registry, raw_connection):
        tab1, ws1 = raw_connection()
        tab2, ws2 = raw_connection()
        other, ws_other = raw_connection()
        for conn, user in ((tab1, "a"), (tab2, "a"), (other, "b")):
            await registry.register(conn)
            await registry.attach_identity(conn, identity(user))

        delivered = await registry.send_to_user("a", {"hello": 1})

        assert delivered == 2
        assert ws1.sent == [{"hello": 1}]
        assert ws2.sent == [{"hello": 1}]
        assert ws_other.sent == []

    @pytest.mark.asyncio
    async def test_offline_user_gets_zero(self, registry):
        assert await registry.send_to_user("nobody", {"x": 1}) == 0

    @pytest.mark.asyncio
    async def test_failed_send_not_counted(self, registry, raw_connection):
        good, _ = raw_connection()
        bad, _ = raw_connection(fail=True)
        for conn in (good, bad):
            await registry.register(conn)
            await registry.attach_identity(conn, identity("a"))

        assert await registry.send_to_user("a", {"x": 1}) == 1
        # A failed send does not unregister the connection
        assert registry.is_registered(bad)


@pytest.mark.asyncio
async def test_random_operation_sequences_keep_presence_consistent(raw_connection):
    """allIdentified never lists a user without a live connection, nor twice."""
    rng = random.Random(20261018)
    users = ["u1", "u2", "u3", "u4"]

    for _ in range(20):
        registry = ConnectionRegistry()
        known = []
        for _ in range(60):
            op = rng.choice(["register", "attach", "unregister", "unregister"])
            if op == "register" or not known:
                conn, _ = raw_connection()
                await registry.register(conn)
                known.append(conn)
            elif op == "attach":
                await registry.attach_identity(rng.choice(known), identity(rng.choice(users)))
            else:
                await registry.unregister(rng.choice(known))

            online = [i.userId for i in registry.all_identified()]
            assert len(online) == len(set(online))

            expected = {
                c.identity.userId for c in known
                if registry.is_registered(c) and c.identity is not None
            }
            assert set(online) == expected
            for user_id in online:
                assert registry.find_by_user_id(user_id)
