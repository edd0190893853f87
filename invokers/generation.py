"""
Interface to the remote generation service.

The network/RPC client lives outside this repo; the queue processor only needs
something that streams GenerationEvents for a GenerationRequest, and a
ConnectionProvider telling whether such a service is currently reachable.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Protocol, Tuple, Union

# lowercase fragments that mark an error as transient / network related
CONNECTIVITY_MARKERS = ("connection", "network", "unavailable", "timeout", "refused", "reset")


class GenerationError(RuntimeError):
    pass


@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    negative_prompt: str
    configuration: str
    canvas: Optional[bytes] = None  # tensor, RGB
    mask: Optional[bytes] = None    # PNG
    # hint type -> [(tensor bytes, weight), ...]
    hints: Dict[str, List[Tuple[bytes, float]]] = field(default_factory=dict)


@dataclass(frozen=True)
class ProgressEvent:
    step: int
    total: int
    stage: Optional[str] = None


@dataclass(frozen=True)
class PreviewEvent:
    tensor: bytes


@dataclass(frozen=True)
class ImageEvent:
    tensor: bytes


@dataclass(frozen=True)
class CompletedEvent:
    pass


@dataclass(frozen=True)
class ErrorEvent:
    message: str


GenerationEvent = Union[ProgressEvent, PreviewEvent, ImageEvent, CompletedEvent, ErrorEvent]


class GenerationService(Protocol):
    def generate(self, request: GenerationRequest) -> AsyncIterator[GenerationEvent]:
        """
        Stream events for one request: progress/preview/image events, then
        CompletedEvent or ErrorEvent. Transport failures are raised.
        Cancelling the consuming task must abort the request.
        """


class ConnectionProvider(Protocol):
    @property
    def is_connected(self) -> bool: ...

    @property
    def active_service(self) -> Optional[GenerationService]: ...


def error_message(exc: BaseException) -> str:
    msg = str(exc).strip()
    return msg or type(exc).__name__


def is_connectivity_error(exc: BaseException) -> bool:
    """Transient network failure (pause + retry later) vs. a real generation failure."""
    if isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    text = error_message(exc).lower()
    return any(marker in text for marker in CONNECTIVITY_MARKERS)
