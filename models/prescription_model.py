from pydantic import BaseModel, Field
from typing import List, Optional

class MedicineEntry(BaseModel):
    name: str
    dosage: str = "1 tablet"
    frequency: str = "once daily"
    duration: str = "7 days"
    price: Optional[float] = None
    id: Optional[str] = None  # catalog id when picked from the medicine list

class PrescriptionCreate(BaseModel):
    patient_name: str
    patient_id: Optional[str] = None
    medicines: List[MedicineEntry] = Field(default_factory=list)
    instructions: str = ""
