import logging
from abc import ABC, abstractmethod
from typing import Optional

from sqlmodel.ext.asyncio.session import AsyncSession


logger = logging.getLogger(__name__)


class ApprovalRefHandler(ABC):
    """Applies a received approval outcome to the document it refers to."""

    @abstractmethod
    def supports(self, ref_entity: str, ref_stage: Optional[str]) -> bool:
        ...

    @abstractmethod
    async def handle(
        self,
        session: AsyncSession,
        action: str,
        ref_id: str,
        ref_stage: Optional[str],
        company_id: str,
    ) -> None:
        """Stage the domain change on ``session``; the caller commits."""


class RefHandlerRegistry:
    def __init__(self):
        self._handlers: list[ApprovalRefHandler] = []

    def register(self, handler: ApprovalRefHandler) -> ApprovalRefHandler:
        if handler not in self._handlers:
            self._handlers.append(handler)
            logger.debug(f"Registered approval ref handler: {type(handler).__name__}")
        return handler

    def resolve(self, ref_entity: str, ref_stage: Optional[str]) -> Optional[ApprovalRefHandler]:
        for handler in self._handlers:
            if handler.supports(ref_entity, ref_stage):
                return handler
        return None

    def clear(self) -> None:
        self._handlers.clear()


ref_handler_registry = RefHandlerRegistry()
