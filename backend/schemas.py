from pydantic import BaseModel
from typing import List

STATUS_SUCCESS = "success"

class LabelValuesResponse(BaseModel):
    """Schema for the /api/v1/label/<name>/values payload."""
    status: str
    data: List[str] = []
