from datetime import datetime

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str
    version: str
    environment: str
    simulations_store: str
    configured: dict[str, bool] = Field(default_factory=dict)
    timestamp: datetime
