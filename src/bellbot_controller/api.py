"""FastAPI admin API for schools, devices and their assignments, weekly schedules, presets and special days."""

from __future__ import annotations

import asyncio
import datetime
import uuid
from collections.abc import Awaitable
from typing import Annotated, Any, TypeVar

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from bellbot_controller.const import BELLBOT_VERSION, DAY_NAMES
from bellbot_controller.controller import BellController
from bellbot_controller.exceptions import (
    BellbotError,
    DeviceNotFoundError,
    DeviceSilencedError,
    PresetInUseError,
    SchoolNotFoundError,
    StoreConflictError,
    TimetableValidationError,
)
from bellbot_controller.logging_abstraction import get_logger
from bellbot_controller.models import Device, TimeEntry
from bellbot_controller.registry import CorrelationOutcome, CorrelationResult
from bellbot_controller.timetable import validate_device_timetable
from bellbot_controller.tracing import trace_context

logger = get_logger(__name__)

T = TypeVar("T")

_ERROR_STATUS: dict[type[BellbotError], int] = {
    DeviceNotFoundError: 404,
    DeviceSilencedError: 409,
    PresetInUseError: 409,
    SchoolNotFoundError: 404,
    StoreConflictError: 409,
    TimetableValidationError: 422,
}


class DeviceCreate(BaseModel):
    serial: str = Field(min_length=1)
    school_id: str
    location: str = ""
    model: str = "Standard Bell"


class DeviceUpdate(BaseModel):
    school_id: str | None = None
    location: str | None = None
    model: str | None = Field(default=None, min_length=1)


class AssignRequest(BaseModel):
    user_id: str = Field(min_length=1)


class SchoolBody(BaseModel):
    name: str = Field(min_length=1)


class RingRequest(BaseModel):
    duration: int = Field(default=5, ge=1, le=60)
    legacy: bool = False


class SilenceRequest(BaseModel):
    silenced: bool


class TimePushRequest(BaseModel):
    legacy: bool = False


class DayUpdate(BaseModel):
    preset_id: str | None = None
    custom_times: list[TimeEntry] = Field(default_factory=list)
    updated_by: str | None = None


class PresetCreate(BaseModel):
    school_id: str
    name: str = Field(min_length=1)
    description: str = ""
    times: list[TimeEntry] = Field(default_factory=list)


class PresetUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    times: list[TimeEntry] | None = None


class SpecialDayCreate(BaseModel):
    school_id: str
    date: datetime.date
    times: list[TimeEntry] = Field(default_factory=list)
    created_by: str | None = None


def _masked_http_exception(
    operation: str,
    exc: Exception,
    user_message: str,
    status_code: int = 500,
) -> HTTPException:
    """Create a sanitized HTTPException while logging full details server-side."""
    error_id = uuid.uuid4().hex[:8]
    logger.exception("%s error_id=%s unexpected error: %s", operation, error_id, exc)
    return HTTPException(
        status_code=status_code,
        detail={
            "error_id": error_id,
            "message": user_message,
        },
    )


async def _guarded(operation: str, user_message: str, awaitable: Awaitable[T]) -> T:
    try:
        return await awaitable
    except (BellbotError, HTTPException, KeyError, ValueError):
        raise
    except Exception as e:
        raise _masked_http_exception(operation, e, user_message) from e


def _broker_unavailable() -> HTTPException:
    return HTTPException(status_code=503, detail={"message": "MQTT broker unavailable, command not sent"})


def _correlated(result: CorrelationResult | None, serial: str, what: str) -> Any:
    if result is None:
        raise _broker_unavailable()
    if result.outcome is CorrelationOutcome.TIMEOUT:
        raise HTTPException(
            status_code=504,
            detail={"message": f"Device {serial} did not answer the {what} request in time"},
        )
    if result.outcome is CorrelationOutcome.SUPERSEDED:
        raise HTTPException(
            status_code=409,
            detail={"message": f"{what} request for {serial} was superseded by a newer one"},
        )
    return result.payload


def _dump(device: Device) -> dict[str, Any]:
    return device.model_dump(mode="json")


def get_controller(request: Request) -> BellController:
    return request.app.state.controller


Controller = Annotated[BellController, Depends(get_controller)]

router = APIRouter(prefix="/api")


@router.get("/healthcheck")
async def health_check(controller: Controller) -> dict[str, Any]:
    """Health check endpoint to verify if the server is running."""
    return {
        "status": "ok",
        "message": "Bellbot controller is running",
        "mqtt_connected": controller.mqtt_client.is_connected,
        "pending_requests": controller.registry.pending_count,
        "queued_messages": controller.dispatcher.queue_depth,
    }


# ---- devices -----------------------------------------------------------


@router.get("/devices")
async def list_devices(controller: Controller, school_id: str | None = None) -> dict[str, Any]:
    devices = await controller.store.list_devices(school_id)
    return {"devices": [_dump(device) for device in devices]}


@router.get("/devices/{serial}")
async def get_device(serial: str, controller: Controller) -> dict[str, Any]:
    return _dump(await controller.get_device(serial))


@router.post("/devices", status_code=201)
async def create_device(body: DeviceCreate, controller: Controller) -> dict[str, Any]:
    device = await controller.create_device(body.serial, body.school_id, body.location, body.model)
    return _dump(device)


@router.put("/devices/{serial}")
async def update_device(serial: str, body: DeviceUpdate, controller: Controller) -> dict[str, Any]:
    device = await controller.update_device(serial, **body.model_dump(exclude_none=True))
    return _dump(device)


@router.delete("/devices/{serial}")
async def delete_device(serial: str, controller: Controller) -> dict[str, Any]:
    await controller.store.delete_device(serial)
    return {"success": True, "message": f"Device {serial} deleted"}


@router.get("/devices/{serial}/assignments")
async def list_assignments(serial: str, controller: Controller) -> dict[str, Any]:
    assignments = await controller.list_assignments(serial)
    return {"assignments": [assignment.model_dump() for assignment in assignments]}


@router.post("/devices/{serial}/assign", status_code=201)
async def assign_device(serial: str, body: AssignRequest, controller: Controller) -> dict[str, Any]:
    return (await controller.assign_device(serial, body.user_id)).model_dump()


@router.delete("/devices/{serial}/assign/{user_id}")
async def unassign_device(serial: str, user_id: str, controller: Controller) -> dict[str, Any]:
    if not await controller.unassign_device(serial, user_id):
        raise HTTPException(status_code=404, detail={"message": f"{serial} is not assigned to {user_id}"})
    return {"success": True, "message": "Device unassigned"}


@router.post("/devices/{serial}/ring")
async def ring_device(serial: str, controller: Controller, body: RingRequest | None = None) -> dict[str, Any]:
    body = body or RingRequest()
    ok = await _guarded(
        "Ring failed",
        "Failed to send ring command. Check server logs with the error ID.",
        controller.ring(serial, body.duration, legacy=body.legacy),
    )
    if not ok:
        raise _broker_unavailable()
    return {"success": True, "message": "Ring command sent"}


@router.put("/devices/{serial}/silence")
async def set_silence(serial: str, body: SilenceRequest, controller: Controller) -> dict[str, Any]:
    ok = await _guarded(
        "Silence update failed",
        "Failed to update silence. Check server logs with the error ID.",
        controller.set_silence(serial, body.silenced),
    )
    if not ok:
        raise _broker_unavailable()
    return {"success": True, "silenced": body.silenced}


@router.post("/devices/{serial}/status")
async def query_status(serial: str, controller: Controller) -> dict[str, Any]:
    result = await controller.query_status(serial)
    report = _correlated(result, serial, "status")
    return {"success": True, "status": report, "device": _dump(await controller.get_device(serial))}


@router.post("/devices/{serial}/status/legacy")
async def query_legacy_status(serial: str, controller: Controller) -> dict[str, Any]:
    result = await controller.query_legacy_status(serial)
    return {"success": True, "status": _correlated(result, serial, "status")}


@router.post("/devices/{serial}/time")
async def push_time(serial: str, controller: Controller, body: TimePushRequest | None = None) -> dict[str, Any]:
    body = body or TimePushRequest()
    if not await controller.push_time(serial, legacy=body.legacy):
        raise _broker_unavailable()
    return {"success": True, "message": "Time sync sent"}


@router.get("/devices/{serial}/time")
async def query_time(serial: str, controller: Controller) -> dict[str, Any]:
    result = await controller.query_time(serial)
    reply: dict[str, Any] = _correlated(result, serial, "time")
    return {"success": True, **reply}


@router.get("/devices/{serial}/timetable")
async def query_timetable(serial: str, controller: Controller) -> dict[str, Any]:
    result = await controller.query_timetable(serial)
    return {"success": True, "timetable_id": _correlated(result, serial, "timetable")}


@router.post("/devices/{serial}/timetable")
async def push_timetable(serial: str, controller: Controller) -> dict[str, Any]:
    ok = await _guarded(
        "Timetable push failed",
        "Failed to push timetable. Check server logs with the error ID.",
        controller.push_timetable(serial),
    )
    if not ok:
        raise _broker_unavailable()
    return {"success": True, "message": "Timetable sent"}


# ---- schools -----------------------------------------------------------


@router.get("/schools")
async def list_schools(controller: Controller) -> dict[str, Any]:
    devices = await controller.store.list_devices()
    return {
        "schools": [
            {**school.model_dump(), "device_count": sum(1 for d in devices if d.school_id == school.id)}
            for school in await controller.store.list_schools()
        ]
    }


@router.get("/schools/{school_id}")
async def get_school(school_id: str, controller: Controller) -> dict[str, Any]:
    school = await controller.get_school(school_id)
    devices = await controller.store.list_devices(school_id)
    return {**school.model_dump(), "devices": [_dump(device) for device in devices]}


@router.post("/schools", status_code=201)
async def create_school(body: SchoolBody, controller: Controller) -> dict[str, Any]:
    return (await controller.create_school(body.name)).model_dump()


@router.put("/schools/{school_id}")
async def rename_school(school_id: str, body: SchoolBody, controller: Controller) -> dict[str, Any]:
    school, published = await controller.rename_school(school_id, body.name)
    return {"success": True, "school": school.model_dump(), "published": published}


@router.delete("/schools/{school_id}")
async def delete_school(school_id: str, controller: Controller) -> dict[str, Any]:
    await controller.delete_school(school_id)
    return {"success": True, "message": f"School {school_id} deleted"}


# ---- weekly schedules --------------------------------------------------


@router.get("/schools/{school_id}/timetable")
async def get_school_timetable(school_id: str, controller: Controller) -> dict[str, Any]:
    schedule = await controller.store.get_or_create_weekly_schedule(school_id)
    device_timetable = await controller.provisioner.build_for_school(school_id)
    response: dict[str, Any] = {"schedule": schedule.model_dump(mode="json"), "device_timetable": None}
    if device_timetable is not None:
        response["device_timetable"] = device_timetable.to_wire()
        response["validation"] = validate_device_timetable(device_timetable).model_dump()
    return response


@router.put("/schools/{school_id}/timetable/day/{day}")
async def update_day(school_id: str, day: str, body: DayUpdate, controller: Controller) -> dict[str, Any]:
    if day not in DAY_NAMES:
        raise HTTPException(status_code=422, detail={"message": f"Invalid day: {day}", "valid_days": DAY_NAMES})
    try:
        schedule, published = await controller.update_schedule_day(
            school_id,
            day,
            body.preset_id,
            body.custom_times,
            body.updated_by,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail={"message": str(e)}) from e
    return {"success": True, "schedule": schedule.model_dump(mode="json"), "published": published}


@router.post("/schools/{school_id}/timetable/publish")
async def publish_school_timetable(school_id: str, controller: Controller) -> dict[str, Any]:
    published = await _guarded(
        "Timetable publish failed",
        "Failed to publish timetable. Check server logs with the error ID.",
        controller.provisioner.publish_to_school(school_id),
    )
    return {"success": all(published.values()), "published": published}


# ---- presets -----------------------------------------------------------


@router.get("/presets")
async def list_presets(controller: Controller, school_id: str | None = None) -> dict[str, Any]:
    presets = await controller.store.list_presets(school_id)
    return {"presets": [preset.model_dump(mode="json") for preset in presets]}


@router.post("/presets", status_code=201)
async def create_preset(body: PresetCreate, controller: Controller) -> dict[str, Any]:
    preset = await controller.create_preset(body.school_id, body.name, body.description, body.times)
    return preset.model_dump(mode="json")


@router.put("/presets/{preset_id}")
async def update_preset(preset_id: str, body: PresetUpdate, controller: Controller) -> dict[str, Any]:
    changes = body.model_dump(exclude_none=True)
    try:
        preset, published = await controller.update_preset(preset_id, **changes)
    except KeyError as e:
        raise HTTPException(status_code=404, detail={"message": f"Preset not found: {preset_id}"}) from e
    return {"success": True, "preset": preset.model_dump(mode="json"), "published": published}


@router.delete("/presets/{preset_id}")
async def delete_preset(preset_id: str, controller: Controller) -> dict[str, Any]:
    try:
        _ = await controller.delete_preset(preset_id)
    except KeyError as e:
        raise HTTPException(status_code=404, detail={"message": f"Preset not found: {preset_id}"}) from e
    return {"success": True, "message": f"Preset {preset_id} deleted"}


# ---- special days ------------------------------------------------------


@router.post("/special-days", status_code=201)
async def create_special_day(body: SpecialDayCreate, controller: Controller) -> dict[str, Any]:
    special, published = await controller.create_special_day(body.school_id, body.date, body.times, body.created_by)
    return {"success": True, "special_day": special.model_dump(mode="json"), "published": published}


@router.delete("/special-days/{school_id}/{date}")
async def delete_special_day(school_id: str, date: datetime.date, controller: Controller) -> dict[str, Any]:
    deleted, published = await controller.delete_special_day(school_id, date)
    if not deleted:
        raise HTTPException(status_code=404, detail={"message": f"No special day for {school_id} on {date}"})
    return {"success": True, "published": published}


async def _bellbot_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    status_code = next((code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls)), 400)
    detail: dict[str, Any] = {"message": str(exc)}
    if isinstance(exc, TimetableValidationError):
        detail["errors"] = exc.errors
        detail["size_bytes"] = exc.size_bytes
    logger.info("API: %s -> %d", type(exc).__name__, status_code)
    return JSONResponse(status_code=status_code, content={"detail": detail})


def create_app(controller: BellController) -> FastAPI:
    """Build the admin app bound to one controller instance."""
    app = FastAPI(title="Bellbot Controller", version=BELLBOT_VERSION)
    app.state.controller = controller
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def _trace_requests(request: Request, call_next):
        with trace_context():
            return await call_next(request)

    app.add_exception_handler(BellbotError, _bellbot_error_handler)
    app.include_router(router)
    return app


class ApiServer:
    """Runs the admin app under uvicorn for the controller's lifetime."""

    lp = "ApiServer:"
    running: bool = False
    start_task: asyncio.Task[None] | None = None

    def __init__(self, controller: BellController):
        self.controller = controller
        self.host = controller.env.srv_host
        self.port = controller.env.api_port
        self.app = create_app(controller)
        self.uvi_server = uvicorn.Server(
            config=uvicorn.Config(
                self.app,
                host=self.host,
                port=self.port,
                log_config={
                    "version": 1,
                    "disable_existing_loggers": False,
                },
                log_level="info",
            )
        )

    async def start(self):
        """Start the FastAPI server."""
        lp = f"{self.lp}start:"
        logger.info("%s Starting admin API on %s:%s", lp, self.host, self.port)
        self.running = True
        try:
            await self.uvi_server.serve()
        except asyncio.CancelledError:
            logger.info("%s Admin API stopped", lp)
            raise
        except Exception:  # pylint: disable=broad-except
            logger.exception("%s Error running admin API", lp)
        else:
            logger.info("%s Admin API lifecycle completed", lp)
        finally:
            self.running = False

    async def stop(self):
        """Stop the FastAPI server."""
        lp = f"{self.lp}stop:"
        logger.info("%s Stopping admin API...", lp)
        try:
            self.uvi_server.should_exit = True
            await self.uvi_server.shutdown()
        except asyncio.CancelledError:
            logger.info("%s Admin API shutdown cancelled", lp)
            raise
        except Exception:  # pylint: disable=broad-except
            logger.exception("%s Error stopping admin API", lp)
        finally:
            if self.start_task and not self.start_task.done():
                logger.debug("%s FINISHING: Cancelling start task", lp)
                self.start_task.cancel()
