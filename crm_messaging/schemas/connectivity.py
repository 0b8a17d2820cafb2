from typing import Optional
from pydantic import BaseModel, Field


class ConnectivityStatus(BaseModel):
    """Circuit state for one monitored endpoint."""

    is_reachable: bool = True
    last_checked: float = 0.0
    consecutive_failures: int = 0
    is_circuit_open: bool = False


class EndpointValidation(BaseModel):
    is_valid: bool
    should_configure: bool
    reason: Optional[str] = None


class MonitorStats(BaseModel):
    total_checks: int = 0
    failed_checks: int = 0
    auto_fix_attempts: int = 0
    successful_fixes: int = 0
    last_check: Optional[float] = None
    is_monitoring: bool = False


class ConnectivityCheckRequest(BaseModel):
    url: str = Field(..., min_length=1, description="Endpoint to probe")
