from pydantic import BaseModel
from typing import Optional

class SolveResult(BaseModel):
    """Outcome of one solve: a Turnstile token or a cf_clearance value"""
    value: str
    user_agent: Optional[str] = None
    elapsed_seconds: float
    warning: Optional[str] = None

class HealthResponse(BaseModel):
    status: str
    active: int
    queued: int
    maxConcurrent: int
    browserConnected: bool
