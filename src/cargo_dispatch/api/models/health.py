from typing import Literal

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: Literal["healthy", "degraded", "unhealthy"]
    database: Literal["healthy", "unhealthy"]
    drivers_indexed: int
    websocket_connections: int
