"""
    Image analysis with a primary and a fallback strategy.

    Each strategy reports an AnalysisOutcome instead of raising, so the
    composite picks a result by inspecting outcomes. A primary failure is
    logged and never surfaced; only a fallback failure is.
"""
import logging
from typing import Optional, Protocol

from image_vault.analysis.models import AnalysisOutcome, AnalysisResult
from image_vault.exceptions import AnalysisException

log = logging.getLogger(__name__)

class PrimaryStrategy(Protocol):
    async def analyze(self, image_bytes: bytes, mime_type: Optional[str] = None) -> AnalysisOutcome: ...

class FallbackStrategy(Protocol):
    async def analyze(
        self,
        image_bytes: bytes,
        mime_type: Optional[str] = None,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
    ) -> AnalysisOutcome: ...

class AnalysisService:
    def __init__(self, primary: PrimaryStrategy, fallback: FallbackStrategy):
        self.primary = primary
        self.fallback = fallback

    async def analyze(
        self,
        image_bytes: bytes,
        mime_type: Optional[str] = None,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
    ) -> AnalysisResult:
        outcome = await self.primary.analyze(image_bytes, mime_type)
        if outcome.ok:
            return outcome.result

        log.warning("Primary analysis unavailable, using fallback: %s", outcome.error)
        fallback = await self.fallback.analyze(image_bytes, mime_type, file_name, file_size)
        if fallback.ok:
            return fallback.result
        raise AnalysisException(f"{outcome.error}; fallback failed: {fallback.error}")
