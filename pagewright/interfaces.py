"""Boundary contracts for the collaborators the core consumes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol, Tuple

if TYPE_CHECKING:
    from .hierarchy import Document, IsolatedSession, SubDocument
    from .models import SessionOptions

BoundingBox = Tuple[float, float, float, float]


@dataclass(slots=True)
class ElementState:
    """Snapshot reported by an element probe for one selector."""

    attached: bool = False
    visible: bool = False
    enabled: bool = True
    editable: bool = True
    stable: bool = True
    receives_events: bool = True
    bounding_box: Optional[BoundingBox] = None
    text: Optional[str] = None
    count: int = 0
    attributes: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def detached(cls) -> "ElementState":
        return cls(attached=False, visible=False, count=0)


class ElementProbe(Protocol):
    async def probe(self, frame: "SubDocument", selector: str) -> ElementState:
        ...


class Clock(Protocol):
    def now(self) -> float:
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class Transport(Protocol):
    """Command channel to the controlled browser process.

    Raw dialog, popup and frame events travel the other way through
    :class:`pagewright.dialogs.DialogHub` and :class:`pagewright.hierarchy.Document`.
    """

    async def open_session(self, session: "IsolatedSession", options: "SessionOptions") -> None:
        ...

    async def close_session(self, session: "IsolatedSession") -> None:
        ...

    async def open_document(self, document: "Document") -> None:
        ...

    async def close_document(self, document: "Document") -> None:
        ...

    async def navigate(self, document: "Document", url: str, *, timeout_ms: float) -> None:
        ...

    async def perform(self, frame: "SubDocument", action: str, selector: str, **params: Any) -> Any:
        ...

    async def shutdown(self) -> None:
        ...
