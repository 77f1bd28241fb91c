from pydantic import BaseModel, Field, model_validator
from typing import Optional, List, Dict, Literal
from datetime import datetime

GarmentCategory = Literal["upper_body", "lower_body", "dresses"]
PhotoCategory = Literal["model", "cloth", "results"]

# Identity schemas
class Principal(BaseModel):
    """Verified identity extracted from a bearer token"""
    id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    email_verified: bool = False

    class Config:
        frozen = True

# User schemas
class UserResponse(BaseModel):
    id: str
    email: str
    display_name: Optional[str]
    photo_url: Optional[str]
    created_at: datetime
    last_login: datetime
    is_email_verified: bool

    class Config:
        from_attributes = True

class ProfileUpdate(BaseModel):
    display_name: Optional[str] = Field(None, max_length=255)

# Try-on schemas
class TryOnPayload(BaseModel):
    """Body of POST /api/try-on.

    Each image is either inline (URL or base64) or a storage path of a photo
    the caller uploaded earlier.
    """
    model_image: Optional[str] = None
    cloth_image: Optional[str] = None
    category: GarmentCategory = "upper_body"
    garment_description: str = ""
    model_path: Optional[str] = None
    cloth_path: Optional[str] = None

    class Config:
        protected_namespaces = ()

    @model_validator(mode="after")
    def check_images(self):
        if not self.model_image and not self.model_path:
            raise ValueError("model_image or model_path is required")
        if not self.cloth_image and not self.cloth_path:
            raise ValueError("cloth_image or cloth_path is required")
        return self

class TryOnErrorResponse(BaseModel):
    message: str
    isRateLimit: bool = False
    remainingCredits: Optional[str] = None
    rateLimitReset: Optional[str] = None

# Photo schemas
class StoredPhotoResponse(BaseModel):
    path: str
    name: str
    download_url: str
    timestamp: int

# API Response schemas
class MessageResponse(BaseModel):
    message: str

class ValidationErrorDetail(BaseModel):
    loc: List[str]
    msg: str

class ValidationErrorResponse(BaseModel):
    message: str = "Invalid request"
    errors: List[ValidationErrorDetail]

class AuthTestResponse(BaseModel):
    message: str
    user: Principal

class HealthResponse(BaseModel):
    status: str
    services: Dict[str, str]
