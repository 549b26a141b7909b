from __future__ import annotations

from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ..origin.session import OriginSession
from .utils import (
    ALPACA_INVALID_OPERATION,
    alpaca_response,
    bind_request_context,
    call_session,
    get_session,
    resolve_parameter,
)

router = APIRouter(dependencies=[Depends(bind_request_context)])
logger = structlog.get_logger(__name__)

DEVICE_KEY = "telescope"

ALIGNMENT_ALT_AZ = 0
EQUATORIAL_TOPOCENTRIC = 1
TRACKING_SIDEREAL = 0


def _ensure_connected(session: OriginSession) -> None:
    if not session.is_acquired(DEVICE_KEY):
        raise HTTPException(status_code=400, detail="Telescope not connected")


async def _resolve_coordinates(
    request: Request,
    ra_query: float | None,
    dec_query: float | None,
) -> tuple[float, float]:
    ra = await resolve_parameter(request, "RightAscension", float, ra_query)
    dec = await resolve_parameter(request, "Declination", float, dec_query)
    return ra, dec


@router.get("/connected")
def get_connected(session: OriginSession = Depends(get_session)):
    return alpaca_response(value=session.is_acquired(DEVICE_KEY))


@router.put("/connected")
async def put_connected(
    request: Request,
    Connected_query: bool | None = Query(None, alias="Connected", description="Set connection state"),
    session: OriginSession = Depends(get_session),
):
    value = await resolve_parameter(request, "Connected", bool, Connected_query)
    if value:
        if not session.is_acquired(DEVICE_KEY):
            await call_session(session.acquire, DEVICE_KEY)
    elif session.is_acquired(DEVICE_KEY):
        await call_session(session.release, DEVICE_KEY)
    return alpaca_response()


@router.get("/description")
def get_description():
    return alpaca_response(value="Celestron Origin Telescope")


@router.get("/name")
def get_name():
    return alpaca_response(value="Origin Telescope")


@router.get("/driverversion")
def get_driver_version():
    return alpaca_response(value="0.1.0")


@router.get("/driverinfo")
def get_driver_info():
    return alpaca_response(value="Origin Alpaca Telescope Driver")


@router.get("/interfaceversion")
def get_interface_version():
    return alpaca_response(value=3)


@router.get("/supportedactions")
def get_supported_actions():
    return alpaca_response(value=[])


@router.get("/rightascension")
def get_right_ascension(session: OriginSession = Depends(get_session)):
    return alpaca_response(value=session.status.ra_hours)


@router.get("/declination")
def get_declination(session: OriginSession = Depends(get_session)):
    return alpaca_response(value=session.status.dec_degrees)


@router.get("/slewing")
def get_slewing(session: OriginSession = Depends(get_session)):
    return alpaca_response(value=session.status.is_slewing)


@router.get("/tracking")
def get_tracking(session: OriginSession = Depends(get_session)):
    return alpaca_response(value=session.status.is_tracking)


@router.put("/tracking")
async def set_tracking(
    request: Request,
    Tracking_query: bool | None = Query(None, alias="Tracking"),
    session: OriginSession = Depends(get_session),
):
    _ensure_connected(session)
    tracking = await resolve_parameter(request, "Tracking", bool, Tracking_query)
    await call_session(session.set_tracking, tracking)
    return alpaca_response()


@router.get("/atpark")
def get_at_park(session: OriginSession = Depends(get_session)):
    return alpaca_response(value=session.status.is_parked)


@router.get("/athome")
def get_at_home():
    return alpaca_response(value=False)


@router.get("/targetrightascension")
def get_target_right_ascension(session: OriginSession = Depends(get_session)):
    if session.target is None:
        return alpaca_response(
            error_number=ALPACA_INVALID_OPERATION,
            error_message="Target right ascension has not been set",
        )
    return alpaca_response(value=session.target[0])


@router.get("/targetdeclination")
def get_target_declination(session: OriginSession = Depends(get_session)):
    if session.target is None:
        return alpaca_response(
            error_number=ALPACA_INVALID_OPERATION,
            error_message="Target declination has not been set",
        )
    return alpaca_response(value=session.target[1])


@router.put("/slewtocoordinatesasync")
async def slew_to_coordinates_async(
    request: Request,
    RightAscension_query: float | None = Query(None, alias="RightAscension"),
    Declination_query: float | None = Query(None, alias="Declination"),
    session: OriginSession = Depends(get_session),
):
    _ensure_connected(session)
    ra, dec = await _resolve_coordinates(request, RightAscension_query, Declination_query)
    logger.info("alpaca.telescope.slew_request", ra_hours=ra, dec_degrees=dec)
    await call_session(session.goto, ra, dec)
    return alpaca_response()


@router.put("/synctocoordinates")
async def sync_to_coordinates(
    request: Request,
    RightAscension_query: float | None = Query(None, alias="RightAscension"),
    Declination_query: float | None = Query(None, alias="Declination"),
    session: OriginSession = Depends(get_session),
):
    _ensure_connected(session)
    ra, dec = await _resolve_coordinates(request, RightAscension_query, Declination_query)
    logger.info("alpaca.telescope.sync_request", ra_hours=ra, dec_degrees=dec)
    await call_session(session.sync, ra, dec)
    return alpaca_response()


@router.put("/abortslew")
async def abort_slew(session: OriginSession = Depends(get_session)):
    _ensure_connected(session)
    await call_session(session.abort_motion)
    return alpaca_response()


@router.put("/park")
async def park(session: OriginSession = Depends(get_session)):
    _ensure_connected(session)
    await call_session(session.park)
    return alpaca_response()


@router.put("/unpark")
async def unpark(session: OriginSession = Depends(get_session)):
    _ensure_connected(session)
    await call_session(session.unpark)
    return alpaca_response()


@router.get("/utcdate")
def get_utc_date():
    return alpaca_response(value=datetime.now(timezone.utc).isoformat())


@router.get("/alignmentmode")
def get_alignment_mode():
    return alpaca_response(value=ALIGNMENT_ALT_AZ)


@router.get("/equatorialsystem")
def get_equatorial_system():
    return alpaca_response(value=EQUATORIAL_TOPOCENTRIC)


@router.get("/trackingrate")
def get_tracking_rate():
    return alpaca_response(value=TRACKING_SIDEREAL)


@router.get("/trackingrates")
def get_tracking_rates():
    return alpaca_response(value=[TRACKING_SIDEREAL])


@router.get("/doesrefraction")
def get_does_refraction():
    return alpaca_response(value=False)


@router.get("/ispulseguiding")
def get_is_pulse_guiding():
    return alpaca_response(value=False)


_CAPABILITIES = {
    "canfindhome": False,
    "canmoveaxis": False,
    "canpark": True,
    "canpulseguide": False,
    "cansetdeclinationrate": False,
    "cansetguiderates": False,
    "cansetpark": False,
    "cansetpierside": False,
    "cansetrightascensionrate": False,
    "cansettracking": True,
    "canslew": False,
    "canslewaltaz": False,
    "canslewaltazasync": False,
    "canslewasync": True,
    "cansync": True,
    "cansyncaltaz": False,
    "canunpark": True,
}


def _capability_endpoint(value: bool):
    def endpoint():
        return alpaca_response(value=value)

    return endpoint


for _name, _value in _CAPABILITIES.items():
    router.add_api_route(f"/{_name}", _capability_endpoint(_value), methods=["GET"], name=_name)
