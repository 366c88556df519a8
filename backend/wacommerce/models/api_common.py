# wacommerce/models/api_common.py

from pydantic import BaseModel, Field
from typing import Optional, List, Union
from datetime import datetime


class ErrorDetail(BaseModel):
    """Body returned by every HTTP error handler."""
    msg: str
    type: Optional[str] = None
    loc: Optional[List[Union[str, int]]] = None


class RootStatus(BaseModel):
    status: str = Field(..., description="'ok' while the process is serving.")
    project: str
    timestamp: datetime
