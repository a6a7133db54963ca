from __future__ import annotations

import json
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request

from punch_sync.const import PORTAL_PREFIX

from .auth import Principal, principal_dependency

PUNCH_SEQUENCE: tuple[str, ...] = ("entry", "break_start", "break_end", "exit")
MAX_PUNCH_AGE = timedelta(days=7)
FACE_DESCRIPTOR_LENGTH = 128
FACE_MATCH_THRESHOLD = 0.5


class PunchRejected(Exception):
    """A punch the portal refuses to record."""

    def __init__(self, status_code: int, error: str) -> None:
        super().__init__(error)
        self.status_code = status_code
        self.error = error


@dataclass
class Employee:
    employee_id: int
    name: str
    status: str = "active"
    face_descriptor: list[float] | None = None


@dataclass
class PunchRecord:
    employee_id: int
    date: str
    punch_type: str
    punch_time: datetime
    latitude: float | None = None
    longitude: float | None = None
    client_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "punch_type": self.punch_type,
            "punch_time": self.punch_time.isoformat().replace("+00:00", "Z"),
            "latitude": self.latitude,
            "longitude": self.longitude,
        }


@dataclass
class PortalState:
    """In-memory reference implementation of the employee portal punch API."""

    employees: dict[int, Employee] = field(default_factory=dict)
    tokens: dict[str, int] = field(default_factory=dict)
    punches: list[PunchRecord] = field(default_factory=list)

    def add_employee(
        self,
        name: str,
        *,
        token: str,
        status: str = "active",
        face_descriptor: Sequence[float] | None = None,
    ) -> Employee:
        employee_id = max(self.employees, default=0) + 1
        employee = Employee(
            employee_id=employee_id,
            name=name,
            status=status,
            face_descriptor=list(face_descriptor) if face_descriptor is not None else None,
        )
        self.employees[employee_id] = employee
        self.tokens[token] = employee_id
        return employee

    def employee_for_token(self, token: str) -> Employee | None:
        employee_id = self.tokens.get(token)
        if employee_id is None:
            return None
        return self.employees.get(employee_id)

    def punches_for(self, employee_id: int, day: str) -> list[PunchRecord]:
        return sorted(
            (p for p in self.punches if p.employee_id == employee_id and p.date == day),
            key=lambda p: p.punch_time,
        )

    def next_punch_type(self, employee_id: int, day: str) -> str | None:
        done = self.punches_for(employee_id, day)
        if not done:
            return PUNCH_SEQUENCE[0]
        index = PUNCH_SEQUENCE.index(done[-1].punch_type)
        if index + 1 >= len(PUNCH_SEQUENCE):
            return None
        return PUNCH_SEQUENCE[index + 1]

    def record_punch(
        self,
        employee_id: int,
        payload: Mapping[str, Any],
        *,
        now: datetime | None = None,
    ) -> PunchRecord:
        employee = self.employees.get(employee_id)
        if employee is None or employee.status != "active":
            raise PunchRejected(404, "employee not found")
        now = now or datetime.now(tz=UTC)
        client_id = str(payload["id"]) if payload.get("id") else None
        if client_id and any(p.client_id == client_id for p in self.punches):
            raise PunchRejected(409, "punch already registered")

        punch_time = _parse_timestamp(payload.get("timestamp"), default=now)
        if now - punch_time > MAX_PUNCH_AGE:
            raise PunchRejected(422, "punch too old (maximum 7 days)")
        if employee.face_descriptor is not None:
            _verify_face(employee.face_descriptor, payload.get("face_descriptor"))

        day = punch_time.date().isoformat()
        punch_type = self.next_punch_type(employee.employee_id, day)
        if punch_type is None:
            raise PunchRejected(409, "all punches for the day already registered")
        record = PunchRecord(
            employee_id=employee.employee_id,
            date=day,
            punch_type=punch_type,
            punch_time=punch_time,
            latitude=_optional_float(payload.get("latitude")),
            longitude=_optional_float(payload.get("longitude")),
            client_id=client_id,
        )
        self.punches.append(record)
        return record


def _parse_timestamp(value: Any, *, default: datetime) -> datetime:
    if value is None or value == "":
        return default
    if isinstance(value, int | float):
        return datetime.fromtimestamp(float(value) / 1000, tz=UTC)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as err:
        raise PunchRejected(422, "invalid timestamp") from err
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _optional_float(value: Any) -> float | None:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _verify_face(stored: Sequence[float], sent: Any) -> None:
    if len(stored) != FACE_DESCRIPTOR_LENGTH:
        raise PunchRejected(422, "enrolled face data is invalid")
    if not isinstance(sent, list | tuple) or len(sent) != FACE_DESCRIPTOR_LENGTH:
        raise PunchRejected(422, "submitted face data is invalid")
    try:
        distance = math.dist([float(v) for v in stored], [float(v) for v in sent])
    except (TypeError, ValueError) as err:
        raise PunchRejected(422, "submitted face data is invalid") from err
    if distance > FACE_MATCH_THRESHOLD:
        raise PunchRejected(403, "face not recognised")


def _portal(request: Request) -> PortalState:
    return request.app.state.portal


def create_app(state: PortalState | None = None) -> FastAPI:
    app = FastAPI(title="Employee portal punch API")
    app.state.portal = state or PortalState()
    router = APIRouter(prefix=PORTAL_PREFIX)

    @router.get("/server-time")
    async def handle_server_time() -> dict[str, Any]:
        now = datetime.now(tz=UTC)
        return {"server_time": now.isoformat(), "timestamp": int(now.timestamp() * 1000)}

    @router.post("/punch", status_code=201)
    async def handle_punch(
        request: Request,
        principal: Principal = Depends(principal_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        payload = await _json_body(request)
        try:
            record = _portal(request).record_punch(principal.employee_id, payload)
        except PunchRejected as err:
            raise HTTPException(status_code=err.status_code, detail={"error": err.error}) from err
        return {"success": True, **record.to_dict()}

    @router.post("/sync/punches")
    async def handle_sync_punches(
        request: Request,
        principal: Principal = Depends(principal_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        payload = await _json_body(request)
        punches = payload.get("punches")
        if not isinstance(punches, list) or not punches:
            raise HTTPException(status_code=400, detail={"error": "no punches to sync"})
        portal = _portal(request)
        results: list[dict[str, Any]] = []
        errors: list[dict[str, Any]] = []
        for punch in punches:
            punch_id = punch.get("id") if isinstance(punch, Mapping) else None
            if not isinstance(punch, Mapping):
                errors.append({"id": None, "error": "invalid punch"})
                continue
            try:
                record = portal.record_punch(principal.employee_id, punch)
            except PunchRejected as err:
                errors.append({"id": punch_id, "error": err.error})
                continue
            results.append({"id": punch_id, "success": True, "punch_type": record.punch_type, "date": record.date})
        return {
            "success": True,
            "synced": len(results),
            "failed": len(errors),
            "results": results,
            "errors": errors,
        }

    @router.get("/me")
    async def handle_me(
        request: Request,
        principal: Principal = Depends(principal_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        employee = _portal(request).employees[principal.employee_id]
        return {"id": employee.employee_id, "name": employee.name, "status": employee.status}

    @router.get("/attendance/today")
    async def handle_attendance_today(
        request: Request,
        principal: Principal = Depends(principal_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        portal = _portal(request)
        today = datetime.now(tz=UTC).date().isoformat()
        punches = portal.punches_for(principal.employee_id, today)
        return {
            "date": today,
            "punches": [p.to_dict() for p in punches],
            "next_punch": portal.next_punch_type(principal.employee_id, today),
        }

    app.include_router(router)
    return app


async def _json_body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except ValueError as err:
        raise HTTPException(status_code=400, detail={"error": "invalid JSON body"}) from err
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail={"error": "expected a JSON object"})
    return payload


def main() -> None:
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8080)


if __name__ == "__main__":
    main()
