from __future__ import annotations

import asyncio

import pytest

from rapport_sync.application.dto.auth import Credential, RegistrationPayload
from rapport_sync.application.exceptions import AuthError, ConflictError, NetworkError, ValidationError
from rapport_sync.domain.entities.session_status import Authenticating, SignedIn, SignedOut
from rapport_sync.domain.value_objects.enums import AuthEventType, Table
from rapport_sync.services.session_manager import SessionManager
from tests.conftest import make_session, until

EMAIL = "me@example.com"
PASSWORD = "secret1"


@pytest.fixture
def manager(auth, records, clock):
    return SessionManager(auth, records, clock=clock, call_timeout=0.05, health_check_interval=0)


@pytest.fixture
def account(auth):
    return auth.add_account(EMAIL, PASSWORD, name="Me")


async def _signed_in(manager, account):
    await manager.login(Credential(EMAIL, PASSWORD))
    await manager.settle()
    return manager.current_user()


@pytest.mark.asyncio
async def test_login_resolves_basic_identity_then_profile(manager, account, records):
    statuses = []
    manager.on_status_change(statuses.append)

    identity = await manager.login(Credential(EMAIL, PASSWORD))

    assert identity.id == account.id
    assert identity.display_name == "Me"
    assert manager.current_status() == SignedIn(identity, profile_fresh=False)

    await manager.settle()

    status = manager.current_status()
    assert isinstance(status, SignedIn)
    assert status.profile_fresh is True
    assert [type(s) for s in statuses] == [Authenticating, SignedIn, SignedIn]
    assert records.rows(Table.USERS, id=account.id)[0]["name"] == "Me"


@pytest.mark.asyncio
async def test_login_uses_existing_profile_row(manager, account, records):
    records.seed(Table.USERS, id=account.id, email=EMAIL, name="Profile Name", user_type="premium")

    identity = await _signed_in(manager, account)

    assert identity.display_name == "Profile Name"
    assert identity.role_tag == "premium"
    assert records.count("insert", Table.USERS) == 0


@pytest.mark.asyncio
async def test_login_invalid_credentials(manager, account):
    with pytest.raises(AuthError):
        await manager.login(Credential(EMAIL, "wrong-password"))

    assert manager.current_status() == SignedOut()


@pytest.mark.asyncio
async def test_login_validation_makes_no_directory_call(manager, auth):
    with pytest.raises(ValidationError):
        await manager.login(Credential("not-an-email", PASSWORD))
    with pytest.raises(ValidationError):
        await manager.login(Credential(EMAIL, ""))

    assert auth.calls == []
    assert manager.current_status() == SignedOut()


@pytest.mark.asyncio
async def test_login_timeout_keeps_previous_identity(manager, account, auth):
    identity = await _signed_in(manager, account)
    auth.add_account("other@example.com", PASSWORD)
    auth.hold("sign_in")

    with pytest.raises(NetworkError):
        await manager.login(Credential("other@example.com", PASSWORD))

    assert manager.current_user().id == identity.id


@pytest.mark.asyncio
async def test_profile_failure_leaves_degraded_identity(manager, account, records):
    records.fail("select", Table.USERS)

    await manager.login(Credential(EMAIL, PASSWORD))
    await manager.settle()

    status = manager.current_status()
    assert isinstance(status, SignedIn)
    assert status.profile_fresh is False
    assert status.identity.display_name == "Me"

    await manager.health_check()

    assert manager.current_status() == status
    assert records.count("select", Table.USERS) == 1


@pytest.mark.asyncio
async def test_late_profile_is_discarded_after_logout(manager, account, records):
    gate = records.hold("select", Table.USERS)

    await manager.login(Credential(EMAIL, PASSWORD))
    await until(lambda: records.count("select", Table.USERS) == 1)
    await manager.logout()
    gate.set()
    await manager.settle()

    assert manager.current_status() == SignedOut()


@pytest.mark.asyncio
async def test_stale_signed_out_during_login_is_discarded(manager, account, auth):
    await manager.start()
    gate = auth.hold("sign_in")

    login = asyncio.create_task(manager.login(Credential(EMAIL, PASSWORD)))
    await until(lambda: auth.count("sign_in") == 1)
    auth.emit(AuthEventType.SIGNED_OUT)
    gate.set()
    await login
    await manager.settle()

    assert manager.current_user().id == account.id
    # one call to restore, one to confirm the replayed event
    assert auth.count("get_session") == 2
    await manager.stop()


@pytest.mark.asyncio
async def test_confirmed_signed_out_event_signs_out(manager, account, auth):
    await manager.start()
    await _signed_in(manager, account)

    auth.session = None
    auth.emit(AuthEventType.SIGNED_OUT)
    await manager.settle()

    assert manager.current_status() == SignedOut()
    await manager.stop()


@pytest.mark.asyncio
async def test_unconfirmed_signed_out_event_is_ignored(manager, account, auth):
    await manager.start()
    identity = await _signed_in(manager, account)

    auth.emit(AuthEventType.SIGNED_OUT)
    await manager.settle()

    assert manager.current_user() == identity
    await manager.stop()


@pytest.mark.asyncio
async def test_logout_clears_locally_when_directory_fails(manager, account, auth):
    await _signed_in(manager, account)
    auth.fail("sign_out")

    await manager.logout()

    assert manager.current_status() == SignedOut()


@pytest.mark.asyncio
async def test_health_check_without_session_signs_out(manager, account, auth):
    await _signed_in(manager, account)
    auth.session = None

    await manager.visibility_regained()

    assert manager.current_status() == SignedOut()


@pytest.mark.asyncio
async def test_health_check_network_failure_keeps_identity(manager, account, auth):
    identity = await _signed_in(manager, account)
    auth.fail("get_session")

    await manager.health_check()

    assert manager.current_status() == SignedIn(identity, profile_fresh=True)


@pytest.mark.asyncio
async def test_start_restores_stored_session(manager, account, auth):
    auth.session = make_session(account)

    await manager.start()
    await manager.settle()

    assert manager.current_user().id == account.id
    await manager.stop()


@pytest.mark.asyncio
async def test_register_creates_profile_with_metadata(manager, records):
    payload = RegistrationPayload(
        email="new@example.com", password=PASSWORD, name="New Person", relationship_status="dating",
    )

    identity = await manager.register(payload)
    await manager.settle()

    row = records.rows(Table.USERS, id=identity.id)[0]
    assert row["name"] == "New Person"
    assert row["relationship_status"] == "dating"
    assert manager.current_status().profile_fresh is True


@pytest.mark.asyncio
async def test_register_duplicate_email(manager, account):
    with pytest.raises(ConflictError):
        await manager.register(RegistrationPayload(email=EMAIL, password=PASSWORD, name="Again"))

    assert manager.current_status() == SignedOut()


@pytest.mark.asyncio
async def test_register_rejects_short_password(manager, auth):
    with pytest.raises(ValidationError):
        await manager.register(RegistrationPayload(email="new@example.com", password="123", name="X"))

    assert auth.calls == []


@pytest.mark.asyncio
async def test_user_updated_event_refreshes_profile(manager, account, auth, records):
    await manager.start()
    await _signed_in(manager, account)
    records.tables[Table.USERS][0]["name"] = "Renamed"

    auth.emit(AuthEventType.USER_UPDATED, auth.session)
    await manager.settle()

    assert manager.current_user().display_name == "Renamed"
    await manager.stop()
