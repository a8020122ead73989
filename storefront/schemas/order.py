from pydantic import BaseModel, Field, field_validator

from storefront.models.domain import CartItem


class OrderCreate(BaseModel):
    ref: str | None = Field(default=None, min_length=1, max_length=64)
    customer_email: str | None = Field(default=None, max_length=255)
    customer_name: str | None = Field(default=None, max_length=255)
    customer_phone: str | None = Field(default=None, max_length=50)
    customer_address: str | None = Field(default=None, max_length=1000)

    cart: list[CartItem] = Field(min_length=1)
    discount: float = Field(default=0, ge=0)
    notes: str | None = Field(default=None, max_length=2000)

    @field_validator("ref", "customer_email", "customer_name", "customer_phone", "customer_address", "notes")
    @classmethod
    def strip_strings(cls, value: str | None) -> str | None:
        if value is None:
            return value
        return value.strip()


class ContactUpdate(BaseModel):
    customer_email: str | None = Field(default=None, max_length=255)
    customer_name: str | None = Field(default=None, max_length=255)
    customer_phone: str | None = Field(default=None, max_length=50)
    customer_address: str | None = Field(default=None, max_length=1000)

    @field_validator("customer_email", "customer_name", "customer_phone", "customer_address")
    @classmethod
    def strip_strings(cls, value: str | None) -> str | None:
        if value is None:
            return value
        return value.strip()


class CartUpdate(BaseModel):
    cart: list[CartItem] = Field(min_length=1)
    discount: float | None = Field(default=None, ge=0)
