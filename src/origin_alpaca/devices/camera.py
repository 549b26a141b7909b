from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from ..origin.exposure import ExposureState
from ..origin.session import OriginSession
from .utils import (
    ALPACA_NOT_IMPLEMENTED,
    alpaca_response,
    bind_request_context,
    call_session,
    get_session,
    resolve_optional_parameter,
    resolve_parameter,
)

router = APIRouter(dependencies=[Depends(bind_request_context)])
logger = structlog.get_logger(__name__)

DEVICE_KEY = "camera"

CAMERA_STATE_IDLE = 0
CAMERA_STATE_EXPOSING = 2
CAMERA_STATE_READING = 3
CAMERA_STATE_DOWNLOAD = 4
CAMERA_STATE_ERROR = 5

SENSOR_TYPE_COLOR = 1

ISO_MIN = 100
ISO_MAX = 6400


@dataclass(frozen=True)
class SensorProfile:
    name: str
    resolution_x: int
    resolution_y: int
    bits_per_pixel: int
    pixel_size_um: float


ORIGIN_PROFILE = SensorProfile(
    name="Celestron Origin",
    resolution_x=4144,
    resolution_y=2822,
    bits_per_pixel=16,
    pixel_size_um=3.76,
)


@dataclass
class CameraState:
    gain: int = 200
    gain_min: int = ISO_MIN
    gain_max: int = ISO_MAX


_STATE_CODES = {
    ExposureState.REQUESTED: CAMERA_STATE_EXPOSING,
    ExposureState.COUNTING: CAMERA_STATE_EXPOSING,
    ExposureState.AWAITING_IMAGE: CAMERA_STATE_READING,
    ExposureState.DOWNLOADING: CAMERA_STATE_DOWNLOAD,
}


def get_camera_state(request: Request) -> CameraState:
    state = getattr(request.app.state, "camera_state", None)
    if state is None:
        state = CameraState()
        request.app.state.camera_state = state
    return state


def _ensure_connected(session: OriginSession) -> None:
    if not session.is_acquired(DEVICE_KEY):
        raise HTTPException(status_code=400, detail="Camera not connected")


def _format_timestamp(timestamp: float | None) -> str:
    if timestamp is None:
        return ""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def _static_properties(profile: SensorProfile) -> dict[str, object]:
    """Properties that never change for a given sensor."""
    return {
        "description": "Celestron Origin Camera",
        "name": "Origin Camera",
        "driverversion": "0.1.0",
        "driverinfo": "Origin Alpaca Camera Driver",
        "interfaceversion": 3,
        "supportedactions": [],
        "canabortexposure": True,
        "canstopexposure": True,
        "canasymmetricbin": False,
        "canfastreadout": False,
        "cangetcoolerpower": False,
        "cansetccdtemperature": False,
        "canpulseguide": False,
        "hasshutter": False,
        "cooleron": False,
        "cameraxsize": profile.resolution_x,
        "cameraysize": profile.resolution_y,
        "numx": profile.resolution_x,
        "numy": profile.resolution_y,
        "startx": 0,
        "starty": 0,
        "binx": 1,
        "biny": 1,
        "maxbinx": 1,
        "maxbiny": 1,
        "pixelsizex": profile.pixel_size_um,
        "pixelsizey": profile.pixel_size_um,
        "maxadu": (1 << profile.bits_per_pixel) - 1,
        "sensorname": profile.name,
        "sensortype": SENSOR_TYPE_COLOR,
    }


def _constant_endpoint(value: object):
    def endpoint():
        return alpaca_response(value=value)

    return endpoint


for _name, _value in _static_properties(ORIGIN_PROFILE).items():
    router.add_api_route(f"/{_name}", _constant_endpoint(_value), methods=["GET"], name=f"camera_{_name}")


@router.get("/gainmin")
def get_gain_min(state: CameraState = Depends(get_camera_state)):
    return alpaca_response(value=state.gain_min)


@router.get("/gainmax")
def get_gain_max(state: CameraState = Depends(get_camera_state)):
    return alpaca_response(value=state.gain_max)


@router.get("/gain")
def get_gain(state: CameraState = Depends(get_camera_state)):
    return alpaca_response(value=state.gain)


@router.put("/gain")
async def set_gain(
    request: Request,
    Gain: int | None = Query(None, alias="Gain"),
    state: CameraState = Depends(get_camera_state),
):
    value = await resolve_parameter(request, "Gain", int, Gain)
    if value < state.gain_min or value > state.gain_max:
        raise HTTPException(status_code=400, detail="Gain out of range")
    state.gain = value
    return alpaca_response()


@router.get("/ccdtemperature")
def get_ccd_temperature(session: OriginSession = Depends(get_session)):
    return alpaca_response(value=session.status.temperature)


@router.get("/connected")
def get_connected(session: OriginSession = Depends(get_session)):
    return alpaca_response(value=session.is_acquired(DEVICE_KEY))


@router.put("/connected")
async def put_connected(
    request: Request,
    Connected_query: bool | None = Query(None, alias="Connected"),
    session: OriginSession = Depends(get_session),
):
    value = await resolve_parameter(request, "Connected", bool, Connected_query)
    if value:
        if not session.is_acquired(DEVICE_KEY):
            await call_session(session.acquire, DEVICE_KEY)
    elif session.is_acquired(DEVICE_KEY):
        await call_session(session.abort_exposure)
        await call_session(session.release, DEVICE_KEY)
    return alpaca_response()


@router.get("/camerastate")
def get_camera_state_code(session: OriginSession = Depends(get_session)):
    if not session.is_acquired(DEVICE_KEY):
        return alpaca_response(value=CAMERA_STATE_IDLE)
    exposure = session.exposure
    code = _STATE_CODES.get(exposure.state)
    if code is not None:
        return alpaca_response(value=code)
    outcome = exposure.last_outcome
    if outcome is not None and not outcome.succeeded:
        return alpaca_response(value=CAMERA_STATE_ERROR)
    return alpaca_response(value=CAMERA_STATE_IDLE)


@router.get("/percentcompleted")
def get_percent_completed(session: OriginSession = Depends(get_session)):
    return alpaca_response(value=session.exposure.percent_complete())


@router.get("/imageready")
def get_image_ready(session: OriginSession = Depends(get_session)):
    exposure = session.exposure
    outcome = exposure.last_outcome
    ready = exposure.state is ExposureState.IDLE and outcome is not None and outcome.succeeded
    return alpaca_response(value=ready)


@router.get("/lastexposureduration")
def get_last_exposure_duration(session: OriginSession = Depends(get_session)):
    outcome = session.exposure.last_outcome
    if outcome is None:
        return alpaca_response(value=0.0)
    return alpaca_response(value=outcome.exposure if outcome.exposure is not None else outcome.duration)


@router.get("/lastexposurestarttime")
def get_last_exposure_start_time(session: OriginSession = Depends(get_session)):
    outcome = session.exposure.last_outcome
    return alpaca_response(value=_format_timestamp(outcome.start_time if outcome else None))


@router.get("/imagetimestamp")
def get_image_timestamp(session: OriginSession = Depends(get_session)):
    outcome = session.exposure.last_outcome
    timestamp = outcome.end_time if outcome is not None and outcome.succeeded else None
    return alpaca_response(value=_format_timestamp(timestamp))


@router.put("/startexposure")
async def start_exposure(
    request: Request,
    Duration: float | None = Query(None, alias="Duration"),
    Light: bool | None = Query(None, alias="Light"),
    session: OriginSession = Depends(get_session),
    state: CameraState = Depends(get_camera_state),
):
    _ensure_connected(session)
    duration_value = await resolve_parameter(request, "Duration", float, Duration)
    if duration_value <= 0.0:
        raise HTTPException(status_code=400, detail="Duration must be greater than zero")
    light_value = await resolve_optional_parameter(request, "Light", bool, Light)
    logger.info(
        "alpaca.camera.start_exposure_request",
        duration=duration_value,
        light=light_value if light_value is not None else True,
        iso=state.gain,
    )
    await call_session(session.start_exposure, duration_value, state.gain)
    return alpaca_response()


@router.put("/stopexposure")
async def stop_exposure(session: OriginSession = Depends(get_session)):
    await call_session(session.abort_exposure)
    return alpaca_response()


@router.put("/abortexposure")
async def abort_exposure(session: OriginSession = Depends(get_session)):
    await call_session(session.abort_exposure)
    return alpaca_response()


@router.get("/imagefile")
def get_image_file(session: OriginSession = Depends(get_session)):
    """Raw TIFF payload of the last completed exposure."""
    outcome = session.exposure.last_outcome
    if outcome is None or not outcome.succeeded:
        raise HTTPException(status_code=400, detail="Image not ready")
    filename = (outcome.file_location or "origin.tiff").rsplit("/", 1)[-1]
    return Response(
        content=outcome.payload,
        media_type="image/tiff",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/imagearray")
def get_image_array():
    return alpaca_response(
        error_number=ALPACA_NOT_IMPLEMENTED,
        error_message="Pixel arrays are not decoded; fetch the raw TIFF from imagefile",
    )
