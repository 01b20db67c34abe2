"""
Hotmart purchase payloads and processing results.
"""
import re
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

REQUIRED_PURCHASE_FIELDS = ("email", "full_name", "course_id", "transaction_id", "purchase_date")


def missing_fields(body: Mapping[str, Any], required=REQUIRED_PURCHASE_FIELDS) -> List[str]:
    """Required keys that are absent or empty in a raw request body"""
    return [name for name in required if not body.get(name)]


class HotmartPurchaseData(BaseModel):
    email: str
    full_name: str
    phone: Optional[str] = None
    course_id: str
    # Enrollments are keyed by transaction for idempotent redelivery
    transaction_id: str = Field(min_length=1)
    purchase_date: str = Field(min_length=1)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip()
        if not EMAIL_RE.match(v):
            raise ValueError("Invalid email format")
        return v


class EnrollUserRequest(BaseModel):
    user_id: str = Field(min_length=1)
    course_id: str = Field(min_length=1)


class PurchaseResult(BaseModel):
    user: Dict[str, Any]
    enrollment: Dict[str, Any]
    is_new_user: bool
    is_new_enrollment: bool
    transaction_already_processed: bool = False

    @property
    def message(self) -> str:
        if self.transaction_already_processed:
            return "Transaction already processed"
        if self.is_new_user and self.is_new_enrollment:
            return "User created and enrolled"
        if self.is_new_enrollment:
            return "Existing user enrolled"
        return "Existing user was already enrolled - transaction recorded"
