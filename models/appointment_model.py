from pydantic import BaseModel
from typing import Optional

class AppointmentCreate(BaseModel):
    doctor_id: str
    date: str  # "2025-06-20"
    time: str  # "10:00"
    reason: str
    doctor_name: Optional[str] = None

class StatusUpdate(BaseModel):
    status: str
