from pydantic import BaseModel
from typing import Optional


class WebhookResponse(BaseModel):
    success: bool = True
    orderId: str
    courseId: str
    duplicate: Optional[bool] = None
    enrolled: Optional[bool] = None


class WebhookPing(BaseModel):
    ok: bool = True
    message: str
