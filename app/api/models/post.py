# app/api/models/post.py
from pydantic import BaseModel


class PaymentStatusResponse(BaseModel):
    """
    Response model for the payment status endpoint.
    """
    hasPaid: bool
