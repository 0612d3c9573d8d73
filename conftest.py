"""Shared fixtures: a manually driven clock and a scripted backend client."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from handover_sync.errors import NetworkError
from handover_sync.models import SyncResult


async def settle(rounds: int = 25):
    """Let every ready task run until the loop is quiet."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class ManualClock:
    """Clock whose time only moves when a test calls advance()."""

    def __init__(self, start: datetime = datetime(2024, 3, 1, 7, 0, tzinfo=timezone.utc)):
        self.start = start
        self.elapsed = 0.0
        self._sleepers = []

    def now(self) -> datetime:
        return self.start + timedelta(seconds=self.elapsed)

    async def sleep(self, seconds: float) -> None:
        future = asyncio.get_running_loop().create_future()
        self._sleepers.append([self.elapsed + seconds, future])
        await future

    async def advance(self, seconds: float) -> None:
        target = self.elapsed + seconds
        while True:
            await settle()
            self._sleepers = [s for s in self._sleepers if not s[1].done()]
            due = sorted((s for s in self._sleepers if s[0] <= target), key=lambda s: s[0])
            if not due:
                break
            deadline, future = due[0]
            self.elapsed = max(self.elapsed, deadline)
            future.set_result(None)
        self.elapsed = target
        await settle()


class FakeBackend:
    """
    Stands in for HandoverApiClient.

    `responses` is consumed one item per post_sync call: a SyncResult is
    returned, an exception is raised. When `gate` is set, each call waits for
    it before answering, which keeps the run in flight.
    """

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []
        self.gate = None
        self.units = []
        self.unit_results = {}
        self.patients = [{"leito": "10A02-1", "nome": "Paciente A"}]
        self.patient_fetches = 0

    async def post_sync(self, endpoint, request):
        self.calls.append((endpoint, request))
        if self.gate is not None:
            await self.gate.wait()
        response = self.responses.pop(0) if self.responses else SyncResult(True, 0, 0)
        if isinstance(response, Exception):
            raise response
        return response

    async def list_nursing_units(self):
        return list(self.units)

    async def import_unit_evolutions(self, unit_code):
        self.calls.append(("/api/import/evolucoes", unit_code))
        response = self.unit_results.get(unit_code, SyncResult(True, 0, 0))
        if isinstance(response, Exception):
            raise response
        return response

    async def sync_patient(self, leito):
        self.calls.append(("/api/sync/patient", leito))
        return {"leito": leito, "nome": "Paciente"}

    async def sync_patients(self, leitos):
        self.calls.append(("/api/sync/patients", list(leitos)))
        return [{"leito": leito} for leito in leitos]

    async def get_patients(self):
        self.patient_fetches += 1
        return list(self.patients)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def network_error():
    return NetworkError("ConnectError: connection refused")
