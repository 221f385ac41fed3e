from pydantic import BaseModel, EmailStr, Field

from typing import Dict, List, Literal, Optional


class Identity(BaseModel):
    uid: str
    email: str
    display_name: str
    token: str
    expires_at: float


class AuthEvent(BaseModel):
    uid: str
    token: str
    identity: Optional[Identity] = None  # None on sign-out


class SignupRequest(BaseModel):
    name: str
    email: EmailStr
    password: str
    userType: Literal["patient", "doctor"] = "patient"
    licenseNumber: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    bloodGroup: Optional[str] = None
    healthStatus: Optional[str] = None
    specialization: Optional[str] = None
    licenseNumber: Optional[str] = None


class CartItemRequest(BaseModel):
    id: str = Field(..., min_length=1)  # medicine id; name, price and image come from the catalog


class QuantityChangeRequest(BaseModel):
    delta: int


class ConsultRequest(BaseModel):
    query: str = Field(..., min_length=1)
    history: List[Dict[str, str]] = []  # [{"sender": "user"|"ai", "text": ...}]


class NutritionRequest(BaseModel):
    age: int
    weight: float
    height: float
    activityLevel: str = "moderate"
    dietaryPreferences: List[str] = []
    healthGoals: List[str] = []
    restrictions: List[str] = []


class MealPlanSaveRequest(BaseModel):
    content: str
    userData: Dict = {}
