from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class GenerateBody(BaseModel):
    userImage: str = Field(..., min_length=1, description="Person photo as a data URI or https URL")
    clothingImages: List[str] = Field(..., min_length=1, description="Garment images, first one drives classification")
    # Informational only; pricing always comes from the account tier and garment count.
    generationType: Optional[Literal["single", "batch"]] = "single"


class PurchaseBody(BaseModel):
    packageName: str = Field(..., min_length=1)
    adminNote: Optional[str] = None


class RegisterBody(BaseModel):
    email: Optional[str] = Field(None, max_length=255)
