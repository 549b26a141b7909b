from __future__ import annotations

import threading
from typing import Any, Mapping, Optional

import structlog

from .errors import DispatchError
from .messages import Command, encode_command
from .transport import OriginTransport, TransportClosedError

logger = structlog.get_logger(__name__)

SEQUENCE_BASE = 2000
SEQUENCE_CEILING = 2**31 - 1


class CommandDispatcher:
    """Serializes fire-and-forget commands onto the Origin control channel."""

    def __init__(
        self,
        transport: OriginTransport,
        *,
        sequence_base: int = SEQUENCE_BASE,
        sequence_ceiling: int = SEQUENCE_CEILING,
    ) -> None:
        if sequence_ceiling <= sequence_base:
            raise ValueError("sequence_ceiling must be greater than sequence_base")
        self._transport = transport
        self._sequence_base = sequence_base
        self._sequence_ceiling = sequence_ceiling
        self._next_sequence_id = sequence_base
        self._lock = threading.Lock()

    @property
    def next_sequence_id(self) -> int:
        return self._next_sequence_id

    def _take_sequence_id(self) -> int:
        with self._lock:
            current = self._next_sequence_id
            if current >= self._sequence_ceiling:
                self._next_sequence_id = self._sequence_base
            else:
                self._next_sequence_id = current + 1
        return current

    def dispatch(
        self,
        command: str,
        destination: str,
        params: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """Send ``command`` to ``destination`` and return its sequence id.

        The id is consumed even when the send fails so it is never reused.
        """

        message = Command(
            command=command,
            destination=destination,
            sequence_id=self._take_sequence_id(),
            params=dict(params or {}),
        )
        if not self._transport.connected:
            logger.warning(
                "origin.command.not_connected",
                command=command,
                destination=destination,
                sequence_id=message.sequence_id,
            )
            raise DispatchError(command, destination)

        frame = encode_command(message)
        try:
            self._transport.send_frame(frame)
        except TransportClosedError as exc:
            logger.warning(
                "origin.command.send_failed",
                command=command,
                destination=destination,
                sequence_id=message.sequence_id,
                reason=exc.reason,
            )
            raise DispatchError(command, destination, reason=exc.reason) from exc
        logger.debug(
            "origin.command.sent",
            command=command,
            destination=destination,
            sequence_id=message.sequence_id,
            frame=frame,
        )
        return message.sequence_id


__all__ = ["CommandDispatcher", "SEQUENCE_BASE", "SEQUENCE_CEILING"]
