from typing import Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    error: bool = Field(default=True, description="Always true for error bodies")
    message: str = Field(description="Human readable failure reason")
    reason: str = Field(description="Failure category (timeout, rate_limited, ...)")
    retry_after: Optional[float] = Field(default=None, description="Suggested seconds before retrying")
