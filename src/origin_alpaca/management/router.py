from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ..devices.utils import alpaca_response, bind_request_context
from ..discovery import DEVICE_LIST, MANUFACTURER, MANUFACTURER_VERSION, SERVER_NAME

SERVER_DESCRIPTION = {
    "ServerName": SERVER_NAME,
    "Manufacturer": MANUFACTURER,
    "ManufacturerVersion": MANUFACTURER_VERSION,
    "Location": "Observatory",
}

router = APIRouter(dependencies=[Depends(bind_request_context)])


@router.get("/health")
def healthcheck(request: Request) -> dict[str, str]:
    """Health endpoint reporting the Origin link state."""
    session = getattr(request.app.state, "origin_session", None)
    origin_state = session.state.value if session is not None else "unconfigured"
    return {"status": "ok", "origin": origin_state}


@router.get("/apiversions")
def get_api_versions():
    return alpaca_response(value=[1])


@router.get("/v1/description")
def get_description():
    return alpaca_response(value=SERVER_DESCRIPTION)


@router.get("/v1/configureddevices")
def get_configured_devices():
    return alpaca_response(value=[dict(device) for device in DEVICE_LIST])


@router.get("/v1/devicelist")
def get_device_list():
    return alpaca_response(value=DEVICE_LIST)
