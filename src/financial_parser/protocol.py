"""
Message protocol between the parser service and the offload worker.

Messages are ``{type, id, payload}`` dicts on multiprocessing queues. For every
``parse`` with id X the worker sends zero or more ``progress`` messages for X and
then exactly one ``result`` or ``error`` for X, unless a ``cancel`` for X arrived
first, in which case nothing more is sent for X. One ``ready`` answers one ``init``.
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class MessageType(str, Enum):
    """Protocol message types."""
    INIT = "init"
    READY = "ready"
    PARSE = "parse"
    PROGRESS = "progress"
    RESULT = "result"
    ERROR = "error"
    CANCEL = "cancel"
    PAUSE = "pause"
    RESUME = "resume"


# Messages that end a request
TERMINAL_TYPES = frozenset({MessageType.RESULT, MessageType.ERROR})


class WorkerMessage(BaseModel):
    """One protocol message."""
    model_config = ConfigDict(frozen=True)

    type: MessageType
    id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> dict:
        """Plain dict for a multiprocessing queue."""
        return {"type": self.type.value, "id": self.id, "payload": dict(self.payload)}

    @classmethod
    def from_wire(cls, raw: dict) -> "WorkerMessage":
        return cls.model_validate(raw)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_TYPES


def init_message(routines: Optional[Dict[str, str]] = None) -> WorkerMessage:
    """Registers exported routines with the worker; every init is answered by a ready."""
    return WorkerMessage(type=MessageType.INIT, payload={"routines": dict(routines or {})})


def ready_message(accelerated_available: bool) -> WorkerMessage:
    return WorkerMessage(type=MessageType.READY, payload={"accelerated_available": accelerated_available})


def parse_message(request_id: str, data, config: dict, options: dict,
                  file_name: Optional[str] = None,
                  streaming_threshold: Optional[int] = None) -> WorkerMessage:
    payload = {"data": data, "config": config, "options": options, "file_name": file_name}
    if streaming_threshold is not None:
        payload["streaming_threshold"] = streaming_threshold
    return WorkerMessage(type=MessageType.PARSE, id=request_id, payload=payload)


def progress_message(request_id: str, progress: dict) -> WorkerMessage:
    return WorkerMessage(type=MessageType.PROGRESS, id=request_id, payload=progress)


def result_message(request_id: str, dataset: dict) -> WorkerMessage:
    return WorkerMessage(type=MessageType.RESULT, id=request_id, payload=dataset)


def error_message(request_id: Optional[str], message: str) -> WorkerMessage:
    return WorkerMessage(type=MessageType.ERROR, id=request_id, payload={"message": message})


def control_message(message_type: MessageType, request_id: str) -> WorkerMessage:
    """cancel, pause or resume for one request."""
    if message_type not in (MessageType.CANCEL, MessageType.PAUSE, MessageType.RESUME):
        raise ValueError(f"{message_type.value} is not a control message")
    return WorkerMessage(type=message_type, id=request_id)
