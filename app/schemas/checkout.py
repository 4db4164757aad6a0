from pydantic import BaseModel
from typing import Optional


class CreateOrderRequest(BaseModel):
    """
    Checkout form submission.

    Required fields and amounts are validated by the order service so bad
    values produce a 400 with the checkout error shape instead of a 422.
    """
    courseId: Optional[str] = None
    courseName: Optional[str] = None
    amount: Optional[float] = None
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    district: Optional[str] = None
    zipCode: Optional[str] = None
    discountCodes: Optional[str] = None
    totalDiscount: Optional[float] = None
    referralCode: Optional[str] = None
    notes: Optional[str] = None
    locale: Optional[str] = None
    clerkUserId: Optional[str] = None
    userId: Optional[str] = None


class CreateOrderResponse(BaseModel):
    success: bool = True
    orderId: str
    redirectUrl: str
    redirectToDirect: bool = False
    enrollmentSuccess: Optional[bool] = None
    userIdUsed: Optional[str] = None


class OrderLookupResponse(BaseModel):
    success: bool = True
    courseId: str
    courseName: Optional[str] = None
    status: str


class SyncResponse(BaseModel):
    success: bool = True
    synced: int
