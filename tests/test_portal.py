import time

from conftest import no_sleep
from core.events import AUTH_TOPIC
from core.portal import PortalRegistry


def _registry(gateway, **kwargs):
    return PortalRegistry(gateway_factory=lambda: gateway, sleep=no_sleep, **kwargs)


def test_idle_sessions_are_swept(gateway, make_user):
    _, token = make_user()
    reg = _registry(gateway, idle_ttl=60)
    idle = reg.create()
    idle.bind(token)
    active = reg.create()
    assert gateway.events.listener_count(AUTH_TOPIC) == 1

    idle.last_seen = time.time() - 120
    fresh = reg.create()

    assert reg.get(idle.id) is None
    assert reg.get(active.id) is active
    assert reg.get(fresh.id) is fresh
    assert gateway.events.listener_count(AUTH_TOPIC) == 0


def test_registry_is_capped(gateway):
    reg = _registry(gateway, max_sessions=3)
    first = reg.create()
    first.last_seen -= 10
    others = [reg.create() for _ in range(3)]
    assert len(reg) == 3
    assert reg.get(first.id) is None
    assert all(reg.get(c.id) is c for c in others)


def test_headerless_lookup_by_token(gateway, make_user):
    _, token = make_user()
    reg = _registry(gateway)
    ctx = reg.get_or_create(None, token)
    ctx.bind(token)

    assert reg.get_or_create(None, token) is ctx
    assert reg.get_or_create(None, None) is not ctx
    assert reg.get_or_create("unknown-id", token) is not ctx
    assert len(reg) == 3
