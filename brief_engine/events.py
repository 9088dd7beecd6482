"""
Progress events and persistence callbacks.

The pipeline owns no storage: it reports every state transition through
`on_event`, every committed section through `on_section_added` and the
current authority list through `on_authorities_updated`.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional

from .schemas import DraftSection, FoundLaw, PipelineStage, ProgressEvent, ProgressEventKind

logger = logging.getLogger(__name__)


@dataclass
class PipelineCallbacks:
    on_event: Optional[Callable[[ProgressEvent], Awaitable[None]]] = None
    on_section_added: Optional[Callable[[DraftSection], Awaitable[None]]] = None
    on_authorities_updated: Optional[Callable[[List[FoundLaw]], Awaitable[None]]] = None


class ProgressEmitter:
    """Emits events in order and keeps a copy of each for the run result"""

    def __init__(self, callbacks: Optional[PipelineCallbacks] = None):
        self.callbacks = callbacks or PipelineCallbacks()
        self.events: List[ProgressEvent] = []

    async def emit(
        self,
        kind: ProgressEventKind,
        stage: Optional[PipelineStage] = None,
        message: str = "",
        **detail: Any,
    ) -> ProgressEvent:
        event = ProgressEvent(kind=kind, stage=stage, message=message, detail=detail)
        self.events.append(event)
        logger.debug(f"Event {kind.value} ({stage.value if stage else '-'}): {message}")
        if self.callbacks.on_event:
            await self.callbacks.on_event(event)
        return event

    async def stage_started(self, stage: PipelineStage, message: str = "") -> ProgressEvent:
        return await self.emit(ProgressEventKind.STAGE_STARTED, stage, message)

    async def stage_completed(self, stage: PipelineStage, message: str = "", **detail: Any) -> ProgressEvent:
        return await self.emit(ProgressEventKind.STAGE_COMPLETED, stage, message, **detail)

    async def section_added(self, draft: DraftSection) -> None:
        if self.callbacks.on_section_added:
            await self.callbacks.on_section_added(draft)

    async def authorities_updated(self, laws: List[FoundLaw]) -> None:
        if self.callbacks.on_authorities_updated:
            await self.callbacks.on_authorities_updated(laws)

    def kinds(self) -> List[ProgressEventKind]:
        return [event.kind for event in self.events]
