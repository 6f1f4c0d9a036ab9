from __future__ import annotations

from datetime import date, datetime
from typing import Generic, Literal, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


AccountType = Literal["Client", "Channel Partner"]
AccountStatus = Literal["Active", "Inactive"]
UpdateType = Literal["General", "Call", "Meeting", "Email"]

T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    model_config = ConfigDict(populate_by_name=True)

    data: list[T]
    total: int
    page: int
    limit: int
    has_more: bool = Field(alias="hasMore")


class UserCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr
    role: str = "user"
    is_active: bool = True


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str
    role: str
    is_active: bool
    created_at: datetime
    updated_at: datetime


class LeadCreate(BaseModel):
    company_name: str | None = None
    person_name: str | None = None
    email: str | None = None
    phone: str | None = None
    linkedin_profile_url: str | None = None
    country: str | None = None
    status: str = "New"
    notes: str | None = None
    assigned_user_id: UUID | None = None


class LeadUpdate(BaseModel):
    company_name: str | None = None
    person_name: str | None = None
    email: str | None = None
    phone: str | None = None
    linkedin_profile_url: str | None = None
    country: str | None = None
    status: str | None = None
    notes: str | None = None
    assigned_user_id: UUID | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_name: str
    person_name: str
    email: str
    phone: str | None
    linkedin_profile_url: str | None
    country: str | None
    status: str
    notes: str | None
    updated_by: str | None
    assigned_user_id: UUID | None
    created_by_user_id: str | None
    converted_at: datetime | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None


class LeadStatusUpdateRequest(BaseModel):
    status: str | None = None
    notes: str | None = None
    updated_by: str | None = None


class LeadStatusChangeRead(BaseModel):
    id: UUID
    company_name: str
    person_name: str
    previous_status: str
    new_status: str
    updated_at: datetime


class LeadConvertRequest(BaseModel):
    notes: str | None = None


class ConvertedAccountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    type: str
    status: str
    contact_person_name: str | None
    contact_email: str | None
    contact_phone: str | None


class LeadConversionRead(BaseModel):
    lead: LeadStatusChangeRead
    account: ConvertedAccountRead
    created: bool


class BulkAssignRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    lead_ids: list[UUID] | None = Field(default=None, alias="leadIds")
    assigned_user_id: UUID | None = Field(default=None, alias="assignedUserId")


class AssignedUserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str


class BulkAssignRead(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    assigned_leads: list[LeadRead] = Field(alias="assignedLeads")
    assigned_user: AssignedUserRead = Field(alias="assignedUser")
    notification_count: int = Field(alias="notificationCount")


class AccountCreate(BaseModel):
    name: str = Field(min_length=1)
    type: AccountType
    status: AccountStatus = "Active"
    description: str | None = None
    contact_person_name: str | None = None
    contact_email: EmailStr | None = None
    contact_phone: str | None = None
    industry: str | None = None


class AccountUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    type: AccountType | None = None
    status: AccountStatus | None = None
    description: str | None = None
    contact_person_name: str | None = None
    contact_email: EmailStr | None = None
    contact_phone: str | None = None
    industry: str | None = None


class AccountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    type: str
    status: str
    description: str | None
    contact_person_name: str | None
    contact_email: str | None
    contact_phone: str | None
    industry: str | None
    converted_from_lead_id: UUID | None
    created_by_user_id: str | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None


class EntityStatusRead(BaseModel):
    id: UUID
    status: str


class ConversionReversalRead(BaseModel):
    account: EntityStatusRead
    lead: EntityStatusRead


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    lead_id: UUID | None
    message: str
    is_read: bool
    created_at: datetime


class OpportunityCreate(BaseModel):
    name: str | None = None
    associated_account_id: UUID | None = None
    associated_lead_id: UUID | None = None
    description: str | None = None
    amount: float | None = None
    status: str = "Open"
    probability: int = Field(default=50, ge=0, le=100)
    expected_close_date: date | None = None


class OpportunityStatusUpdateRequest(BaseModel):
    status: str | None = None


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    associated_account_id: UUID | None
    associated_lead_id: UUID | None
    description: str | None
    amount: float
    status: str
    probability: int
    expected_close_date: date
    created_by_user_id: str | None
    created_at: datetime
    updated_at: datetime


class CommunicationUpdateCreate(BaseModel):
    account_id: UUID | None = None
    opportunity_id: UUID | None = None
    lead_id: UUID | None = None
    type: UpdateType | None = None
    content: str | None = None
    date: datetime | None = None
    updated_by_user_id: str | None = None


class CommunicationUpdateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    account_id: UUID | None
    opportunity_id: UUID | None
    lead_id: UUID | None
    type: str
    content: str
    date: datetime
    updated_by_user_id: str | None
    created_at: datetime
