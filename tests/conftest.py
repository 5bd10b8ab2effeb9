import json, pathlib
import httpx
from datetime import datetime
import pytest, pytest_asyncio, respx
from clinic_portal.appointments import AppointmentEngine
from clinic_portal.client import ApiClient
from clinic_portal.models import Identity
from clinic_portal.session import SessionManager
from clinic_portal.token_store import TokenStore

FIX = pathlib.Path(__file__).parent / "fixtures"
BASE = "https://clinic.test"
API_BASE = f"{BASE}/api"
CSRF = "csrf-abc"

# "today" for every booking test
NOW = datetime(2025, 3, 1, 9, 0)


def load(name):
    return json.loads((FIX / name).read_text())


@pytest.fixture
def api():
    """respx router for the backend with the CSRF seed endpoint pre-registered."""
    with respx.mock(base_url=BASE, assert_all_called=False) as m:
        m.get("/api/auth/csrf/", name="csrf").respond(
            200, json={"detail": "CSRF cookie set"}, headers={"Set-Cookie": f"csrftoken={CSRF}; Path=/"}
        )
        yield m


@pytest.fixture
def store():
    return TokenStore()


@pytest_asyncio.fixture
async def client(store):
    c = ApiClient(store, base_url=API_BASE, timeout=5)
    yield c
    await c.aclose()


@pytest.fixture
def session(client):
    return SessionManager(client)


@pytest.fixture
def engine(client, session):
    return AppointmentEngine(client, session, clock=lambda: NOW)


@pytest.fixture
def patient():
    return Identity.from_auth_payload(load("login_success.json"))


@pytest.fixture
def other_patient():
    return Identity(id=8, display_name="Luis Quispe", email="luis@example.com", role="patient")


@pytest.fixture
def receptionist():
    return Identity.from_auth_payload(load("user_receptionist.json"))


@pytest.fixture
def provider():
    return Identity(id=30, display_name="Diego Mamani", email="diego@example.com", role="provider")


@pytest.fixture
def admin():
    return Identity(id=1, display_name="Marta Rojas", email="marta@example.com", role="administrator")


class FakeClinic:
    """Just enough of the backend to exercise the availability guard end to end."""

    SLOTS = {1: "08:00:00", 3: "10:00:00", 4: "11:00:00"}

    def __init__(self, router):
        self.records: dict[int, dict] = {}
        self.next_id = 101
        # simulate a race: availability looks free while the slot is taken
        self.hide_held = False
        self.create_error = None
        # some deployments leave cancelled rows out of the patient listing
        self.hide_cancelled = False
        router.get("/api/pacientes/").respond(200, json=load("pacientes.json"))
        router.get("/api/horarios-disponibles/").mock(side_effect=self.available)
        router.get("/api/consultas/").mock(side_effect=self.list)
        router.post("/api/consultas/").mock(side_effect=self.create)
        router.get(path__regex=r"/api/consultas/(?P<pk>\d+)/$").mock(side_effect=self.detail)
        router.patch(path__regex=r"/api/consultas/(?P<pk>\d+)/$").mock(side_effect=self.update)
        router.post(path__regex=r"/api/consultas/(?P<pk>\d+)/cancelar/$").mock(side_effect=self.cancel)
        router.patch(path__regex=r"/api/consultas/(?P<pk>\d+)/reprogramar/$").mock(side_effect=self.move)

    def _held(self, provider, fecha, exclude=None):
        return {
            r["idhorario"]
            for r in self.records.values()
            if r["cododontologo"] == provider and r["fecha"] == fecha
            and r["idestadoconsulta"] != 3 and r["id"] != exclude
        }

    def available(self, request):
        provider = int(request.url.params["odontologo_id"])
        held = set() if self.hide_held else self._held(provider, request.url.params["fecha"])
        return httpx.Response(200, json=[{"id": k, "hora": v} for k, v in self.SLOTS.items() if k not in held])

    def list(self, request):
        patient = request.url.params.get("codpaciente")
        rows = [r for r in self.records.values() if patient is None or r["codpaciente"] == int(patient)]
        if self.hide_cancelled:
            rows = [r for r in rows if r["idestadoconsulta"] != 3]
        return httpx.Response(200, json={"count": len(rows), "next": None, "previous": None, "results": rows})

    def create(self, request):
        if self.create_error is not None:
            raise self.create_error("simulated", request=request)
        body = json.loads(request.content)
        if body["idhorario"] in self._held(body["cododontologo"], body["fecha"]):
            return httpx.Response(409, json={"detail": "Horario ocupado."})
        record = {**body, "id": self.next_id, "motivo_cancelacion": None}
        self.records[record["id"]] = record
        self.next_id += 1
        return httpx.Response(201, json=record)

    def detail(self, request, pk):
        record = self.records.get(int(pk))
        if record is None:
            return httpx.Response(404, json={"detail": "No encontrado."})
        return httpx.Response(200, json=record)

    def update(self, request, pk):
        record = self.records[int(pk)]
        record.update(json.loads(request.content))
        return httpx.Response(200, json=record)

    def cancel(self, request, pk):
        record = self.records[int(pk)]
        body = json.loads(request.content or b"{}")
        record.update(idestadoconsulta=3, motivo_cancelacion=body.get("motivo_cancelacion"))
        return httpx.Response(200, json=record)

    def move(self, request, pk):
        record = self.records[int(pk)]
        body = json.loads(request.content)
        if body["idhorario"] in self._held(record["cododontologo"], body["fecha"], exclude=record["id"]):
            return httpx.Response(409, json={"detail": "Horario ocupado."})
        record.update(fecha=body["fecha"], idhorario=body["idhorario"], idestadoconsulta=1)
        return httpx.Response(200, json=record)


@pytest.fixture
def clinic(api):
    return FakeClinic(api)
