from pydantic import BaseModel
from typing import List, Optional, Dict, Any


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    timestamp: str


class ReadinessResponse(BaseModel):
    status: str
    database: bool
    worker_running: bool
    messaging_configured: bool
    llm_configured: bool
    timestamp: str
    messaging_reachable: Optional[bool] = None
    messaging_error: Optional[str] = None


class StatusResponse(BaseModel):
    status: str
    service: str
    version: str
    poll_interval_minutes: int
    features: List[str]
    stats: Dict[str, Any]
    timestamp: str
    note: Optional[str] = None
