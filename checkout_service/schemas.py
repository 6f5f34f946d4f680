"""
Checkout Service — request / response models
"""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class _Input(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)


# ── Checkout request ─────────────────────────────


class CustomerInfo(_Input):
    full_name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    phone: str = Field(min_length=1)


class ShippingAddress(_Input):
    address: str = Field(min_length=1)
    city: str = Field(min_length=1)
    postal_code: str | None = None

    def formatted(self) -> str:
        text = f"{self.address}, {self.city}"
        if self.postal_code:
            text += f", {self.postal_code}"
        return text


class DeliveryMethod(_Input):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    cost: Decimal = Field(ge=0)
    estimated_days: str | None = None
    description: str | None = None


class CheckoutRequest(_Input):
    customer_info: CustomerInfo
    shipping_address: ShippingAddress
    delivery_method: DeliveryMethod
    discount_code: str | None = None


# ── Checkout response ────────────────────────────


class Totals(BaseModel):
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal
    total: Decimal


class OrderLine(BaseModel):
    content_id: str
    title: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class CheckoutConfirmation(BaseModel):
    order_id: str
    order_number: str
    status: str
    totals: Totals
    discount_code: str | None
    customer_info: CustomerInfo
    shipping_address: ShippingAddress
    delivery_method: DeliveryMethod
    items: list[OrderLine]
    warnings: list[str] = []
    message: str = "Order created successfully. Proceed to payment."


# ── Cart requests ────────────────────────────────


class AddToCartRequest(BaseModel):
    content_id: str
    quantity: int = Field(default=1, ge=1)


class UpdateQuantityRequest(BaseModel):
    quantity: int
