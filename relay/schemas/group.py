# relay/schemas/group.py
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime

GROUP_NAME_MIN = 3


def _clean_name(v):
    v = v.strip()
    if len(v) < GROUP_NAME_MIN:
        raise ValueError(f'Group name must be at least {GROUP_NAME_MIN} characters')
    return v


class GroupCreate(BaseModel):
    """Create new group; the caller becomes its first admin"""
    name: str = Field(..., min_length=GROUP_NAME_MIN, max_length=100, description="Group name")
    description: Optional[str] = Field(None, max_length=500)

    @field_validator('name')
    @classmethod
    def strip_name(cls, v):
        return _clean_name(v)


class GroupUpdate(BaseModel):
    """Update existing group"""
    name: Optional[str] = Field(None, min_length=GROUP_NAME_MIN, max_length=100)
    description: Optional[str] = Field(None, max_length=500)

    @field_validator('name')
    @classmethod
    def strip_name(cls, v):
        return _clean_name(v) if v is not None else v


class MemberRequest(BaseModel):
    """Target user for member/admin operations"""
    userId: int = Field(..., gt=0)


class MemberUser(BaseModel):
    id: int
    firstName: str
    lastName: str
    email: str


class MemberResponse(BaseModel):
    id: int
    isAdmin: bool
    joinedAt: datetime
    user: MemberUser


class GroupResponse(BaseModel):
    """Group response"""
    id: int
    name: str
    description: Optional[str] = None
    createdBy: int
    createdAt: datetime
    updatedAt: datetime
    members: Optional[List[MemberResponse]] = None
