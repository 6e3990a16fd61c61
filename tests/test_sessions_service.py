from datetime import timedelta

import pytest

from account_security.core.errors import InvalidSessionData, SessionAlreadyTerminated, SessionNotFound
from account_security.schemas.sessions import DeviceSignals, SessionFilters, SessionStatus
from account_security.services.location import StaticLocationResolver
from account_security.services.origin import Identity, Origin
from account_security.services.sessions import SessionService, cache_key

from conftest import OTHER_TENANT, TENANT, USER, FailingCache, listen

CHROME = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.6099.109 Safari/537.36"
)
IDENTITY = Identity(user_id=USER, tenant_id=TENANT)
HOME = Origin(ip_address="127.0.0.1", user_agent=CHROME)


@pytest.mark.asyncio
async def test_create_persists_caches_and_announces(session_service, session_store, cache, bus, event_store):
    events = listen(bus, "session.created")

    created = await session_service.create(IDENTITY, HOME, device_signals=DeviceSignals(language="en-US"))

    assert created.status == SessionStatus.ACTIVE
    assert len(created.session_token) >= 32
    assert created.device_info.browser == "chrome"
    assert created.device_info.os == "windows"
    assert created.location.city == "San Francisco"
    assert created.anomalies == []
    assert created.id in session_store.records
    assert cache_key(created.id) in cache
    assert events.names() == ["session.created"]
    assert event_store.types() == ["SESSION_CREATED"]


@pytest.mark.asyncio
async def test_create_validates_input(session_service, clock):
    with pytest.raises(InvalidSessionData):
        await session_service.create(Identity(user_id="", tenant_id=TENANT), HOME)
    with pytest.raises(InvalidSessionData):
        await session_service.create(IDENTITY, Origin(ip_address="not-an-ip"))
    with pytest.raises(InvalidSessionData):
        await session_service.create(IDENTITY, HOME, session_token="short")
    with pytest.raises(InvalidSessionData):
        await session_service.create(IDENTITY, HOME, expires_at=clock() - timedelta(seconds=1))


@pytest.mark.asyncio
async def test_naive_expiry_is_read_as_utc(session_service, clock):
    expires_at = (clock() + timedelta(hours=2)).replace(tzinfo=None)

    created = await session_service.create(IDENTITY, HOME, expires_at=expires_at)

    assert created.expires_at == clock() + timedelta(hours=2)
    with pytest.raises(InvalidSessionData):
        await session_service.create(IDENTITY, HOME, expires_at=clock().replace(tzinfo=None))


@pytest.mark.asyncio
async def test_same_device_keeps_fingerprint_within_a_day(session_service):
    first = await session_service.create(IDENTITY, HOME)
    second = await session_service.create(IDENTITY, HOME)
    assert first.device_info.fingerprint == second.device_info.fingerprint


@pytest.mark.asyncio
async def test_expired_session_then_sweep(session_service, clock, bus, event_store):
    events = listen(bus, "session.expired")
    created = await session_service.create(IDENTITY, HOME)

    clock.advance(hours=25)
    view = await session_service.get(created.id, TENANT)
    assert view.status == SessionStatus.EXPIRED

    assert await session_service.sweep_expired() == 1
    view = await session_service.get(created.id, TENANT)
    assert view.status == SessionStatus.TERMINATED
    assert view.termination_reason == "expired"
    assert view.terminated_by == "system"
    assert events.names() == ["session.expired"]
    assert "SESSION_EXPIRED" in event_store.types()

    assert await session_service.sweep_expired() == 0


@pytest.mark.asyncio
async def test_idle_status_is_computed_on_read(session_service, clock):
    created = await session_service.create(IDENTITY, HOME)
    clock.advance(minutes=45)
    view = await session_service.get(created.id, TENANT)
    assert view.status == SessionStatus.IDLE

    touched = await session_service.touch(created.id, HOME, tenant_id=TENANT)
    assert touched.status == SessionStatus.ACTIVE
    assert touched.last_activity == clock()


@pytest.mark.asyncio
async def test_terminate_evicts_cache_and_blocks_touch(session_service, cache, bus):
    events = listen(bus, "session.terminated")
    created = await session_service.create(IDENTITY, HOME)

    view = await session_service.terminate(created.id, terminated_by=USER, reason="logout", tenant_id=TENANT)

    assert view.status == SessionStatus.TERMINATED
    assert cache_key(created.id) not in cache
    assert len(events.events) == 1
    with pytest.raises(SessionAlreadyTerminated):
        await session_service.terminate(created.id, terminated_by=USER, reason="logout")
    with pytest.raises(SessionAlreadyTerminated):
        await session_service.touch(created.id, HOME)


@pytest.mark.asyncio
async def test_other_tenant_cannot_see_or_mutate(session_service, session_store):
    created = await session_service.create(IDENTITY, HOME)

    with pytest.raises(SessionNotFound):
        await session_service.get(created.id, OTHER_TENANT)
    with pytest.raises(SessionNotFound):
        await session_service.touch(created.id, HOME, tenant_id=OTHER_TENANT)
    with pytest.raises(SessionNotFound):
        await session_service.terminate(created.id, terminated_by="x", reason="y", tenant_id=OTHER_TENANT)
    assert session_store.records[created.id].is_active is True


@pytest.mark.asyncio
async def test_flags_emit_once(session_service, event_store):
    created = await session_service.create(IDENTITY, HOME)

    await session_service.add_flag(created.id, "manual-review", reason="support", tenant_id=TENANT)
    view = await session_service.add_flag(created.id, "manual-review", tenant_id=TENANT)

    assert view.security_flags == ["manual-review"]
    assert event_store.types().count("SESSION_SECURITY_FLAG_ADDED") == 1

    view = await session_service.remove_flag(created.id, "manual-review", tenant_id=TENANT)
    assert view.security_flags == []


@pytest.mark.asyncio
async def test_cache_outage_falls_back_to_store(session_store, recorder, bus, detector, clock):
    failing = FailingCache()
    service = SessionService(
        session_store,
        failing,
        recorder,
        bus,
        resolver=StaticLocationResolver(),
        detector=detector,
        clock=clock,
    )

    created = await service.create(IDENTITY, HOME)
    view = await service.get(created.id, TENANT)
    await service.terminate(created.id, terminated_by=USER, reason="logout")

    assert view.id == created.id
    assert failing.calls > 0
    assert session_store.records[created.id].is_active is False


@pytest.mark.asyncio
async def test_impossible_travel_is_flagged_on_create(session_service, event_store, clock):
    await session_service.create(IDENTITY, HOME)
    clock.advance(minutes=10)

    # 192.168.1.1 resolves to New York, roughly 4100 km from San Francisco.
    created = await session_service.create(IDENTITY, Origin(ip_address="192.168.1.1", user_agent=CHROME))

    assert "impossible-travel" in created.anomalies
    assert "impossible-travel" in created.security_flags
    assert "SUSPICIOUS_SESSION" in event_store.types()


@pytest.mark.asyncio
async def test_unresolvable_addresses_never_look_like_travel(session_service, event_store, clock):
    await session_service.create(IDENTITY, Origin(ip_address="203.0.113.5", user_agent=CHROME))
    clock.advance(minutes=2)

    second = await session_service.create(IDENTITY, Origin(ip_address="198.51.100.77", user_agent=CHROME))

    assert second.location.city == "Unknown"
    assert "impossible-travel" not in second.anomalies
    assert "SUSPICIOUS_SESSION" not in event_store.types()


@pytest.mark.asyncio
async def test_listing_and_lookups(session_service, clock):
    first = await session_service.create(IDENTITY, HOME)
    clock.advance(hours=2)
    second = await session_service.create(Identity(user_id="user-2", tenant_id=TENANT), HOME)
    await session_service.create(Identity(user_id="user-3", tenant_id=OTHER_TENANT), HOME)
    await session_service.terminate(first.id, terminated_by=USER, reason="logout")

    page = await session_service.list_sessions(TENANT)
    assert page.total == 2
    assert [item.id for item in page.items] == [second.id, first.id]

    active = await session_service.list_sessions(TENANT, SessionFilters(is_active=True))
    assert [item.id for item in active.items] == [second.id]

    by_ip = await session_service.sessions_for_ip(TENANT, "127.0.0.1")
    assert len(by_ip) == 2
    by_device = await session_service.sessions_for_fingerprint(TENANT, second.device_info.fingerprint)
    assert second.id in {item.id for item in by_device}

    mine = await session_service.active_sessions_for_user("user-2", TENANT)
    assert [item.id for item in mine] == [second.id]

    stats = await session_service.statistics(TENANT)
    assert (stats.total, stats.active, stats.terminated) == (2, 1, 1)
