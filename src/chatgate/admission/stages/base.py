"""
Abstract base class for admission stages.
"""

from abc import ABC, abstractmethod

from chatgate.admission.models import Reject, StageResult
from chatgate.protocol.errors import GatewayError
from chatgate.protocol.types import IncomingRequest


class Stage(ABC):
    """
    Abstract base for all admission stages.

    Stages must implement `process()`, which returns a StageResult or
    raises a GatewayError; `execute()` turns those errors into Reject.
    Anything else a stage raises is left to the pipeline.
    """

    name: str = "stage"
    order: int = 100

    def __init__(self, enabled: bool = True, order: int | None = None):
        self.enabled = enabled
        if order is not None:
            self.order = order

    @abstractmethod
    async def process(self, request: IncomingRequest) -> StageResult:
        pass

    async def execute(self, request: IncomingRequest) -> StageResult:
        try:
            return await self.process(request)
        except GatewayError as e:
            return Reject(
                code=e.code,
                message=e.message,
                status_code=e.status_code,
                metadata=e.details,
            )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name} order={self.order} enabled={self.enabled}>"
