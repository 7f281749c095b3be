from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from arbrebio.utils.text import is_valid_name, is_valid_phone


class _VisitorForm(BaseModel):
    first_name: str = Field(..., alias="firstName", min_length=1, max_length=50)
    last_name: str = Field(..., alias="lastName", min_length=1, max_length=50)
    email: EmailStr
    phone: str = Field(..., min_length=1, max_length=20)

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    @field_validator("email", mode="before")
    @classmethod
    def email_length(cls, v):
        if isinstance(v, str) and len(v.strip()) > 100:
            raise ValueError("Email address too long")
        return v

    @field_validator("phone")
    @classmethod
    def phone_characters(cls, v: str) -> str:
        if not is_valid_phone(v):
            raise ValueError("Phone number contains invalid characters")
        return v


class ContactRequest(_VisitorForm):
    interest: str = Field(..., min_length=1, max_length=100)
    message: str = Field(..., min_length=10, max_length=1000)

    @field_validator("first_name", "last_name")
    @classmethod
    def name_characters(cls, v: str) -> str:
        if not is_valid_name(v):
            raise ValueError("Name contains invalid characters")
        return v


QuoteType = Literal["greenhouse", "irrigation", "substrate", "general"]


class QuoteRequest(_VisitorForm):
    location: Optional[str] = Field(None, min_length=1, max_length=100)
    size: Optional[float] = Field(None, ge=1, le=100000)
    timeline: Optional[str] = Field(None, max_length=100)
    requirements: Optional[str] = Field(None, max_length=500)
    product_type: Optional[str] = Field(None, alias="productType", max_length=100)
    quantity: Optional[float] = Field(None, ge=1)
    quote_type: QuoteType = Field("general", alias="quoteType")
