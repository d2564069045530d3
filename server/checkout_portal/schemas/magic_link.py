from datetime import datetime
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field

from checkout_portal.schemas.common import ORMModel


class MagicLinkCreate(BaseModel):
    expires_in_hours: int | None = Field(default=None, ge=1, le=24 * 30)
    max_uses: int | None = Field(default=None, ge=1, le=1000)


class MagicLinkRead(ORMModel):
    contact_id: str
    login_code: str
    expires_at: datetime
    max_uses: int
    usage_count: int
    is_active: bool
    url: str | None = None


class CrmData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    contact: Dict[str, Any]
    sales_orders: List[Dict[str, Any]] = Field(default_factory=list, alias="salesOrders")
    deals: List[Dict[str, Any]] = Field(default_factory=list)
    tasks: List[Dict[str, Any]] = Field(default_factory=list)
    notes: List[Dict[str, Any]] = Field(default_factory=list)


class CrmDataResponse(BaseModel):
    success: bool = True
    data: CrmData


class ErrorResponse(BaseModel):
    error: str
