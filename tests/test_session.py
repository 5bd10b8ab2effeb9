import asyncio
import json
import httpx
import pytest
from clinic_portal import errors
from clinic_portal.client import ApiClient
from clinic_portal.models import Role, SessionState, SessionStatus
from clinic_portal.session import SessionManager
from clinic_portal.token_store import FileTokenStore
from conftest import API_BASE, load


@pytest.mark.asyncio
async def test_bootstrap_without_persisted_session_is_anonymous(session):
    session.bootstrap()
    assert session.status is SessionStatus.ANONYMOUS
    assert (await session.wait_until_ready()).identity is None


@pytest.mark.asyncio
async def test_bootstrap_is_optimistic_then_revalidates(api, session, store, patient):
    route = api.get("/api/auth/user/").respond(200, json=load("login_success.json"))
    store.save("tok-patient-7", patient)

    session.bootstrap()
    assert session.status is SessionStatus.LOADING
    assert session.state.identity == patient

    state = await session.wait_until_ready()
    assert state.status is SessionStatus.AUTHENTICATED
    assert route.calls.last.request.headers["Authorization"] == "Token tok-patient-7"


@pytest.mark.asyncio
async def test_bootstrap_fails_closed_on_rejected_token(api, session, store, patient):
    api.get("/api/auth/user/").respond(401, json={"detail": "Token inválido."})
    store.save("expired", patient)

    session.bootstrap()
    state = await session.wait_until_ready()

    assert state.status is SessionStatus.ANONYMOUS
    assert state.token is None
    assert store.load() == (None, None)


@pytest.mark.asyncio
async def test_bootstrap_fails_closed_on_network_error(api, session, store, patient):
    api.get("/api/auth/user/").respond(502)
    store.save("tok", patient)
    session.bootstrap()
    assert (await session.wait_until_ready()).status is SessionStatus.ANONYMOUS
    assert store.token is None


@pytest.mark.asyncio
async def test_login_then_bootstrap_in_fresh_process(api, tmp_path):
    api.post("/api/auth/login/").respond(200, json=load("login_success.json"))
    api.get("/api/auth/user/").respond(200, json=load("login_success.json"))
    path = tmp_path / "session.json"

    async with ApiClient(FileTokenStore(path), base_url=API_BASE) as c1:
        first = SessionManager(c1)
        await first.sign_in("ana@example.com", "s3cret!")
        assert first.authenticated

    async with ApiClient(FileTokenStore(path), base_url=API_BASE) as c2:
        second = SessionManager(c2)
        second.bootstrap()
        state = await second.wait_until_ready()

    assert state.status is SessionStatus.AUTHENTICATED
    assert state.identity == first.identity
    assert state.token == "tok-patient-7"


@pytest.mark.asyncio
async def test_login_returns_token_and_identity_without_touching_state(api, session):
    route = api.post("/api/auth/login/").respond(200, json=load("login_success.json"))
    session.bootstrap()

    result = await session.login("ana@example.com", "s3cret!")

    assert result.token == "tok-patient-7"
    assert result.identity.role is Role.PATIENT
    assert result.identity.display_name == "Ana Pérez"
    assert session.status is SessionStatus.ANONYMOUS
    assert route.calls.last.request.headers["X-CSRFToken"] == "csrf-abc"


@pytest.mark.asyncio
async def test_duplicate_logins_are_coalesced(api, session):
    route = api.post("/api/auth/login/").respond(200, json=load("login_success.json"))

    a, b = await asyncio.gather(
        session.login("ana@example.com", "s3cret!"),
        session.login("ANA@example.com ", "s3cret!"),
    )

    assert route.call_count == 1
    assert a == b


@pytest.mark.asyncio
async def test_different_credentials_are_not_coalesced(api, session):
    route = api.post("/api/auth/login/").respond(200, json=load("login_success.json"))
    await asyncio.gather(
        session.login("ana@example.com", "s3cret!"),
        session.login("ana@example.com", "other"),
    )
    assert route.call_count == 2


@pytest.mark.asyncio
async def test_completed_login_can_be_retried(api, session):
    route = api.post("/api/auth/login/")
    route.side_effect = [
        httpx.Response(400, json={"non_field_errors": ["Credenciales inválidas."]}),
        httpx.Response(200, json=load("login_success.json")),
    ]
    with pytest.raises(errors.AuthenticationFailure):
        await session.login("ana@example.com", "s3cret!")
    assert (await session.login("ana@example.com", "s3cret!")).token == "tok-patient-7"
    assert route.call_count == 2


@pytest.mark.asyncio
async def test_invalid_credentials_are_authentication_failure(api, session):
    api.post("/api/auth/login/").respond(400, json={"detail": "Credenciales inválidas."})
    session.bootstrap()

    with pytest.raises(errors.AuthenticationFailure) as info:
        await session.login("ana@example.com", "wrong")

    assert info.value.detail == "Credenciales inválidas."
    assert session.status is SessionStatus.ANONYMOUS


@pytest.mark.asyncio
async def test_field_errors_stay_validation_failures(api, session):
    api.post("/api/auth/login/").respond(400, json={"email": ["Introduzca un correo válido."]})
    with pytest.raises(errors.ValidationFailure) as info:
        await session.login("not-an-email", "x")
    assert not isinstance(info.value, errors.AuthenticationFailure)
    assert info.value.fields == {"email": "Introduzca un correo válido."}


@pytest.mark.asyncio
async def test_adopt_token_with_preloaded_identity_skips_fetch(api, session, store, patient):
    route = api.get("/api/auth/user/").respond(200, json=load("login_success.json"))

    state = await session.adopt_token("tok-patient-7", patient)

    assert state.status is SessionStatus.AUTHENTICATED
    assert store.load() == ("tok-patient-7", patient)
    assert route.call_count == 0


@pytest.mark.asyncio
async def test_adopt_token_without_identity_fetches_it(api, session, store):
    api.get("/api/auth/user/").respond(200, json=load("user_receptionist.json"))

    state = await session.adopt_token("tok-staff")

    assert state.status is SessionStatus.AUTHENTICATED
    assert state.identity.role is Role.RECEPTIONIST
    assert store.identity == state.identity


@pytest.mark.asyncio
async def test_adopt_token_with_rejected_token_ends_anonymous(api, session, store):
    api.get("/api/auth/user/").respond(401)
    state = await session.adopt_token("bad")
    assert state.status is SessionStatus.ANONYMOUS
    assert store.token is None


@pytest.mark.asyncio
async def test_refresh_failure_logs_out(api, session, store, patient):
    api.get("/api/auth/user/").respond(403)
    await session.adopt_token("tok", patient)

    assert await session.refresh_identity() is None
    assert session.status is SessionStatus.ANONYMOUS
    assert store.load() == (None, None)


@pytest.mark.asyncio
async def test_role_change_requires_new_session(api, session, patient):
    api.get("/api/auth/user/").respond(200, json=load("user_receptionist.json"))
    await session.adopt_token("tok", patient)

    await session.refresh_identity()
    assert session.status is SessionStatus.ANONYMOUS


@pytest.mark.asyncio
async def test_logout_drops_authorization_header(api, session, client, patient):
    route = api.get("/api/horarios/").respond(200, json=[])
    await session.adopt_token("tok", patient)
    await client.get("/horarios/")
    assert route.calls.last.request.headers["Authorization"] == "Token tok"

    session.logout()
    await client.get("/horarios/")
    assert "Authorization" not in route.calls.last.request.headers
    assert session.identity is None


@pytest.mark.asyncio
async def test_update_notification_setting(api, session, store, patient):
    route = api.patch("/api/auth/user/settings/").respond(200, json={"recibir_notificaciones": False})
    await session.adopt_token("tok", patient)

    identity = await session.update_notification_setting(False)

    assert identity.notifications is False
    assert session.identity.notifications is False
    assert store.identity.notifications is False
    assert json.loads(route.calls.last.request.content) == {"recibir_notificaciones": False}


@pytest.mark.asyncio
async def test_update_notification_setting_requires_session(session):
    session.bootstrap()
    with pytest.raises(errors.AuthenticationFailure):
        await session.update_notification_setting(True)


@pytest.mark.asyncio
async def test_bootstrap_fails_closed_on_non_json_identity(api, session, store, patient):
    api.get("/api/auth/user/").respond(200, text="<html>proxy error</html>")
    store.save("tok-1", patient)

    session.bootstrap()
    state = await asyncio.wait_for(session.wait_until_ready(), 1)

    assert state.status is SessionStatus.ANONYMOUS
    assert store.load() == (None, None)


@pytest.mark.asyncio
async def test_non_json_login_response_is_structured_error(api, session):
    api.post("/api/auth/login/").respond(200, text="<html>captive portal</html>")
    with pytest.raises(errors.PortalError):
        await session.login("ana@example.com", "s3cret!")


@pytest.mark.asyncio
async def test_bootstrap_discards_token_without_identity(api, session, client, store):
    route = api.get("/api/odontologos/").respond(200, json=[])
    store.save("orphan-token", None)

    session.bootstrap()
    await client.get("/odontologos/")

    assert session.status is SessionStatus.ANONYMOUS
    assert store.load() == (None, None)
    assert "Authorization" not in route.calls.last.request.headers


@pytest.mark.asyncio
async def test_late_refresh_failure_keeps_newer_session(api, session, store, patient, receptionist):
    def superseded(request):
        # a new login lands while the old token's check is still out
        store.save("tok-new", receptionist)
        session._set_state(SessionState(status=SessionStatus.AUTHENTICATED, token="tok-new", identity=receptionist))
        return httpx.Response(401, json={"detail": "Token inválido."})

    api.get("/api/auth/user/").mock(side_effect=superseded)
    await session.adopt_token("tok-old", patient)

    assert await session.refresh_identity() == receptionist
    assert session.status is SessionStatus.AUTHENTICATED
    assert store.load() == ("tok-new", receptionist)


@pytest.mark.asyncio
async def test_profile_reads_own_record(api, session, patient):
    api.get("/api/usuario/me").respond(200, json=load("perfil.json"))
    await session.adopt_token("tok", patient)

    profile = await session.profile()

    assert profile.id == 7
    assert profile.phone == "70011223"
    assert profile.sex.value == "F"


@pytest.mark.asyncio
async def test_update_profile_sends_changed_fields_and_replaces_identity(api, session, store, patient):
    updated = {**load("perfil.json"), "nombre": "Ana María", "telefono": "70000000"}
    route = api.patch("/api/usuario/me").respond(200, json=updated)
    await session.adopt_token("tok", patient)
    before = session.state

    profile = await session.update_profile({"first_name": "Ana María", "phone": "70000000"})

    assert json.loads(route.calls.last.request.content) == {"nombre": "Ana María", "telefono": "70000000"}
    assert profile.display_name == "Ana María Pérez"
    assert session.identity.display_name == "Ana María Pérez"
    assert session.identity.role is Role.PATIENT
    assert store.identity == session.identity
    assert before.identity.display_name == "Ana Pérez"


@pytest.mark.asyncio
async def test_update_profile_rejects_role_and_bad_values(api, session, patient):
    route = api.patch("/api/usuario/me").respond(200, json=load("perfil.json"))
    await session.adopt_token("tok", patient)

    with pytest.raises(errors.ValidationFailure) as info:
        await session.update_profile({"idtipousuario": 1})
    assert "idtipousuario" in info.value.fields

    with pytest.raises(errors.ValidationFailure):
        await session.update_profile({"sex": "X"})
    assert route.call_count == 0


@pytest.mark.asyncio
async def test_profile_requires_session(session):
    session.bootstrap()
    with pytest.raises(errors.AuthenticationFailure):
        await session.profile()
