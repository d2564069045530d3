from typing import List

from pydantic import EmailStr, Field

from checkout_portal.schemas.common import ORMModel, Timestamped


class UserBase(ORMModel):
    email: EmailStr
    full_name: str = Field(min_length=1, max_length=255)


class UserCreate(UserBase):
    password: str = Field(min_length=12, max_length=128)


class UserUpdate(ORMModel):
    full_name: str | None = Field(default=None, min_length=1, max_length=255)
    password: str | None = Field(default=None, min_length=12, max_length=128)


class UserRead(UserBase, Timestamped):
    id: str
    roles: List[str] = Field(default_factory=list)
    is_active: bool = True
    contact_id: str | None = None
