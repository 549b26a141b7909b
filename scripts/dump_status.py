import asyncio
import json
import time
from dataclasses import asdict

from origin_alpaca.config.settings import Settings
from origin_alpaca.origin.session import OriginSession
from origin_alpaca.origin.state import default_state_store


async def main(listen_seconds: float = 3.0) -> None:
    settings = Settings()
    state = default_state_store(settings.state_directory).load()
    if state.last_host:
        settings.origin_host = state.last_host
        if state.last_port:
            settings.origin_port = state.last_port

    session = OriginSession(settings)
    await asyncio.to_thread(session.connect)
    try:
        deadline = time.monotonic() + listen_seconds
        while time.monotonic() < deadline:
            await asyncio.to_thread(session.poll)
            await asyncio.sleep(settings.poll_interval_seconds)
        snapshot = session.status
    finally:
        await asyncio.to_thread(session.shutdown)

    data = asdict(snapshot)
    data["ra_hours"] = snapshot.ra_hours
    data["dec_degrees"] = snapshot.dec_degrees
    print(json.dumps(data, indent=2))


if __name__ == "__main__":
    asyncio.run(main())
