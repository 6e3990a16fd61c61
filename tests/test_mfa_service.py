import asyncio
import re
from datetime import timedelta
from urllib.parse import unquote

import pytest

from account_security.core.errors import (
    BackupCodeAlreadyUsed,
    InvalidBackupCodeFormat,
    InvalidCodeFormat,
    MfaAlreadyExists,
    MfaNotEnabled,
    MfaNotFound,
)
from account_security.services import totp
from account_security.services.mfa import LOCKED_MESSAGE
from account_security.services.origin import Origin

from conftest import OTHER_TENANT, TENANT, USER, listen

ORIGIN = Origin(ip_address="198.51.100.7", user_agent="pytest-agent")


def _wrong_code(secret: str, now) -> str:
    step = totp.current_time_step(now)
    valid = {totp.code_at(secret, step + offset) for offset in (-1, 0, 1)}
    return next(code for code in ("000000", "111111", "222222", "333333") if code not in valid)


async def _enrolled(mfa_service, mfa_store):
    result = await mfa_service.setup(USER, TENANT, "alice@example.com", origin=ORIGIN, enable_immediately=True)
    return result, mfa_store.records[(USER, TENANT)]


@pytest.mark.asyncio
async def test_setup_returns_secret_backup_codes_and_uri(mfa_service, mfa_store, event_store):
    result = await mfa_service.setup(USER, TENANT, "alice@example.com")

    assert len(result.secret) >= 32
    assert re.fullmatch(r"[A-Z2-7]+=*", result.secret)
    assert len(result.backup_codes) == 10
    assert all(re.fullmatch(r"[A-Z0-9]{8}", code) for code in result.backup_codes)
    assert "Acme" in result.provisioning_uri
    assert f"secret={result.secret.rstrip('=')}" in result.provisioning_uri
    assert "alice@example.com" in unquote(result.provisioning_uri)
    assert result.manual_entry_key == "Acme:alice@example.com"
    assert result.is_enabled is False

    record = mfa_store.records[(USER, TENANT)]
    # Only digests are stored.
    assert set(record.backup_codes) == {totp.hash_backup_code(code) for code in result.backup_codes}
    assert record.is_enabled is False
    assert event_store.types() == ["MFA_SETUP"]


@pytest.mark.asyncio
async def test_setup_twice_conflicts(mfa_service):
    await mfa_service.setup(USER, TENANT, "alice@example.com")
    with pytest.raises(MfaAlreadyExists):
        await mfa_service.setup(USER, TENANT, "alice@example.com")


@pytest.mark.asyncio
async def test_records_are_isolated_per_tenant(mfa_service):
    await mfa_service.setup(USER, TENANT, "alice@example.com")
    await mfa_service.setup(USER, OTHER_TENANT, "alice@example.com")
    with pytest.raises(MfaNotFound):
        await mfa_service.get_status("someone-else", TENANT)


@pytest.mark.asyncio
async def test_correct_code_verifies_and_resets_failures(mfa_service, mfa_store, clock, bus):
    events = listen(bus, "mfa.verified")
    result, record = await _enrolled(mfa_service, mfa_store)
    record.failed_attempts = 2

    outcome = await mfa_service.verify_totp(USER, TENANT, totp.current_code(result.secret, clock()), ORIGIN)

    assert outcome.success is True
    assert outcome.remaining_attempts == 5
    assert record.failed_attempts == 0
    assert record.is_verified is True
    assert record.verified_at == clock()
    assert events.names() == ["mfa.verified"]
    status = await mfa_service.get_status(USER, TENANT)
    assert status.status == "active"


@pytest.mark.asyncio
async def test_wrong_code_counts_attempt(mfa_service, mfa_store, clock, event_store):
    result, record = await _enrolled(mfa_service, mfa_store)

    outcome = await mfa_service.verify_totp(USER, TENANT, _wrong_code(result.secret, clock()), ORIGIN)

    assert outcome.success is False
    assert outcome.remaining_attempts == 4
    assert record.failed_attempts == 1
    assert "MFA_VERIFICATION_FAILED" in event_store.types()


@pytest.mark.asyncio
async def test_five_failures_lock_and_correct_code_is_then_rejected(mfa_service, mfa_store, clock, event_store):
    result, record = await _enrolled(mfa_service, mfa_store)
    wrong = _wrong_code(result.secret, clock())

    outcomes = [await mfa_service.verify_totp(USER, TENANT, wrong, ORIGIN) for _ in range(5)]

    fifth = outcomes[-1]
    assert fifth.success is False
    assert fifth.locked_until == clock() + timedelta(minutes=30)
    assert fifth.retry_after_seconds == 1800
    assert fifth.remaining_attempts == 0
    assert record.failed_attempts == 5
    assert event_store.types().count("MFA_LOCKED") == 1

    log_size = len(record.activity_log)
    sixth = await mfa_service.verify_totp(USER, TENANT, totp.current_code(result.secret, clock()), ORIGIN)
    assert sixth.success is False
    assert sixth.message == LOCKED_MESSAGE
    assert record.failed_attempts == 5
    assert record.is_verified is False
    assert len(record.activity_log) == log_size

    status = await mfa_service.get_status(USER, TENANT)
    assert status.status == "locked"
    assert status.lock_remaining_seconds == 1800


@pytest.mark.asyncio
async def test_lock_expires_and_next_attempt_starts_fresh(mfa_service, mfa_store, clock):
    result, record = await _enrolled(mfa_service, mfa_store)
    wrong = _wrong_code(result.secret, clock())
    for _ in range(5):
        await mfa_service.verify_totp(USER, TENANT, wrong, ORIGIN)

    clock.advance(minutes=30)
    outcome = await mfa_service.verify_totp(USER, TENANT, _wrong_code(result.secret, clock()), ORIGIN)

    assert outcome.success is False
    assert outcome.remaining_attempts == 4
    assert record.failed_attempts == 1
    assert record.locked_until is None


@pytest.mark.asyncio
async def test_malformed_code_raises_without_counting(mfa_service, mfa_store):
    await _enrolled(mfa_service, mfa_store)
    record = mfa_store.records[(USER, TENANT)]
    entries = len(record.activity_log)

    with pytest.raises(InvalidCodeFormat):
        await mfa_service.verify_totp(USER, TENANT, "12ab56", ORIGIN)

    assert record.failed_attempts == 0
    assert len(record.activity_log) == entries


@pytest.mark.asyncio
async def test_verify_requires_enabled_mfa(mfa_service, clock):
    result = await mfa_service.setup(USER, TENANT, "alice@example.com")
    with pytest.raises(MfaNotEnabled):
        await mfa_service.verify_totp(USER, TENANT, totp.current_code(result.secret, clock()))


@pytest.mark.asyncio
async def test_verify_without_record_is_not_found(mfa_service):
    with pytest.raises(MfaNotFound):
        await mfa_service.verify_totp(USER, TENANT, "123456")


@pytest.mark.asyncio
async def test_backup_code_is_single_use(mfa_service, mfa_store, bus):
    events = listen(bus, "mfa.backup_code_used")
    _, record = await _enrolled(mfa_service, mfa_store)
    record.backup_codes = [*record.backup_codes, totp.hash_backup_code("ABCD1234")]
    issued = len(record.backup_codes)

    first = await mfa_service.use_backup_code(USER, TENANT, "ABCD1234", ORIGIN)

    assert first.success is True
    assert first.remaining_backup_codes == issued - 1
    assert totp.hash_backup_code("ABCD1234") in record.used_backup_codes
    assert totp.hash_backup_code("ABCD1234") not in record.backup_codes
    assert len(events.events) == 1

    with pytest.raises(BackupCodeAlreadyUsed):
        await mfa_service.use_backup_code(USER, TENANT, "ABCD1234", ORIGIN)
    assert record.failed_attempts == 0


@pytest.mark.asyncio
async def test_backup_code_is_normalized(mfa_service, mfa_store):
    result, _ = await _enrolled(mfa_service, mfa_store)
    outcome = await mfa_service.use_backup_code(USER, TENANT, f"  {result.backup_codes[0].lower()} ")
    assert outcome.success is True


@pytest.mark.asyncio
async def test_unknown_backup_code_counts_as_failure(mfa_service, mfa_store):
    result, record = await _enrolled(mfa_service, mfa_store)
    unknown = next(code for code in ("ZZZZ0000", "ZZZZ0001") if code not in result.backup_codes)

    outcome = await mfa_service.use_backup_code(USER, TENANT, unknown, ORIGIN)

    assert outcome.success is False
    assert outcome.remaining_attempts == 4
    assert record.failed_attempts == 1


@pytest.mark.asyncio
async def test_malformed_backup_code_raises(mfa_service, mfa_store):
    await _enrolled(mfa_service, mfa_store)
    with pytest.raises(InvalidBackupCodeFormat):
        await mfa_service.use_backup_code(USER, TENANT, "ABC-1234")


@pytest.mark.asyncio
async def test_regenerate_invalidates_previous_codes(mfa_service, mfa_store):
    result, record = await _enrolled(mfa_service, mfa_store)
    await mfa_service.use_backup_code(USER, TENANT, result.backup_codes[0])

    regenerated = await mfa_service.regenerate_backup_codes(USER, TENANT, reason="rotation")

    assert len(regenerated.backup_codes) == 10
    assert regenerated.remaining_backup_codes == 10
    assert record.used_backup_codes == []
    outcome = await mfa_service.use_backup_code(USER, TENANT, result.backup_codes[1])
    assert outcome.success is False


@pytest.mark.asyncio
async def test_enable_and_disable(mfa_service, event_store):
    await mfa_service.setup(USER, TENANT, "alice@example.com")

    enabled = await mfa_service.enable(USER, TENANT, ORIGIN)
    assert enabled.is_enabled is True
    assert enabled.status == "pending"

    disabled = await mfa_service.disable(USER, TENANT, reason="lost device", disabled_by="admin-1")
    assert disabled.is_enabled is False
    assert disabled.status == "disabled"
    assert disabled.activity_log[-1].action == "disable"
    assert event_store.types()[-1] == "MFA_DISABLED"


@pytest.mark.asyncio
async def test_status_masks_secret(mfa_service):
    result = await mfa_service.setup(USER, TENANT, "alice@example.com")
    status = await mfa_service.get_status(USER, TENANT)
    assert status.secret_hint == result.secret[:8] + "****"
    assert result.secret not in status.model_dump_json()


@pytest.mark.asyncio
async def test_concurrent_failures_are_all_counted(mfa_service, mfa_store, clock):
    result, record = await _enrolled(mfa_service, mfa_store)
    wrong = _wrong_code(result.secret, clock())

    outcomes = await asyncio.gather(*(mfa_service.verify_totp(USER, TENANT, wrong) for _ in range(3)))

    assert record.failed_attempts == 3
    assert sorted(o.remaining_attempts for o in outcomes) == [2, 3, 4]


@pytest.mark.asyncio
async def test_concurrent_backup_code_use_succeeds_once(mfa_service, mfa_store):
    result, _ = await _enrolled(mfa_service, mfa_store)
    code = result.backup_codes[0]

    outcomes = await asyncio.gather(
        mfa_service.use_backup_code(USER, TENANT, code),
        mfa_service.use_backup_code(USER, TENANT, code),
        return_exceptions=True,
    )

    assert sum(1 for o in outcomes if not isinstance(o, Exception) and o.success) == 1
    assert sum(1 for o in outcomes if isinstance(o, BackupCodeAlreadyUsed)) == 1


@pytest.mark.asyncio
async def test_cleanup_and_statistics(mfa_service, mfa_store, clock):
    result, record = await _enrolled(mfa_service, mfa_store)
    wrong = _wrong_code(result.secret, clock())
    for _ in range(5):
        await mfa_service.verify_totp(USER, TENANT, wrong)

    stats = await mfa_service.statistics(TENANT)
    assert stats.total == 1
    assert stats.enabled == 1
    assert stats.locked == 1
    assert stats.average_failed_attempts == 5.0

    assert await mfa_service.cleanup_expired_locks() == 0
    clock.advance(minutes=31)
    assert await mfa_service.cleanup_expired_locks() == 1
    assert record.failed_attempts == 0
    assert (await mfa_service.statistics(TENANT)).locked == 0
