from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

STATE_FILENAME = "origin_state.json"


@dataclass
class ConnectionRecord:
    last_host: Optional[str] = None
    last_port: Optional[int] = None
    last_error: Optional[str] = None
    last_connected_at: Optional[float] = None


@dataclass
class StateStore:
    path: Path
    state: ConnectionRecord = field(default_factory=ConnectionRecord)

    def load(self) -> ConnectionRecord:
        if not self.path.exists():
            return self.state

        try:
            with self.path.open("r", encoding="utf-8") as stream:
                data = json.load(stream)
        except json.JSONDecodeError:
            return self.state

        if not isinstance(data, dict):
            return self.state

        host = data.get("last_host")
        port = data.get("last_port")
        error = data.get("last_error")
        connected_at = data.get("last_connected_at")
        self.state = ConnectionRecord(
            last_host=host.strip() or None if isinstance(host, str) else None,
            last_port=port if isinstance(port, int) and not isinstance(port, bool) and port > 0 else None,
            last_error=error if isinstance(error, str) else None,
            last_connected_at=float(connected_at) if isinstance(connected_at, (int, float)) else None,
        )
        return self.state

    def save(self, state: ConnectionRecord) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as stream:
            json.dump(asdict(state), stream, indent=2)
        self.state = state

    def record_connection(self, host: str, port: int, *, timestamp: float) -> ConnectionRecord:
        self.state = ConnectionRecord(
            last_host=host,
            last_port=port,
            last_error=None,
            last_connected_at=timestamp,
        )
        self.save(self.state)
        return self.state

    def record_error(self, message: str) -> ConnectionRecord:
        self.state.last_error = message
        self.save(self.state)
        return self.state


def default_state_store(state_directory: Path) -> StateStore:
    return StateStore(Path(state_directory) / STATE_FILENAME)


__all__ = ["ConnectionRecord", "STATE_FILENAME", "StateStore", "default_state_store"]
