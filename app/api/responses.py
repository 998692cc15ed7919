from datetime import datetime
from typing import Annotated, Any, Generic, Optional, TypeVar

from pydantic import AfterValidator, BaseModel

from app.utils.clock import as_utc

T = TypeVar("T")

# Some backends hand back naive datetimes; the API always speaks aware UTC
UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]

class Envelope(BaseModel, Generic[T]):
    """Response shape the dashboards expect."""
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None

class ErrorEnvelope(BaseModel):
    success: bool = False
    error: str
    details: Optional[Any] = None

def ok(data: Any = None, message: Optional[str] = None) -> dict[str, Any]:
    return {"success": True, "data": data, "message": message}
