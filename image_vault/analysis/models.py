from typing import List, Literal, Optional
from pydantic import BaseModel

class AnalysisResult(BaseModel):
    description: str
    tags: List[str] = []
    source: Literal["gemini", "heuristic"] = "gemini"

class AnalysisOutcome(BaseModel):
    """Either a usable result or the reason there is none."""
    result: Optional[AnalysisResult] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.result is not None

    @classmethod
    def success(cls, result: AnalysisResult) -> "AnalysisOutcome":
        return cls(result=result)

    @classmethod
    def failure(cls, error: str) -> "AnalysisOutcome":
        return cls(error=error)
