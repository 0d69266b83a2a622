"""Pydantic schemas for webhook payloads and API responses."""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


# Webhooks ---------------------------------------------------------

class ContactWebhook(BaseModel):
    """Contact created/updated in the CRM.

    `ext_crm_id` is required by ingestion; it is optional here so that a
    missing id is reported as a validation error listing the field.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    ext_crm_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("ext_crm_id", "ghl_contact_id", "contact_id"),
        description="Contact id in the external CRM",
        examples=["ghl_1"],
    )
    first_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("first_name", "firstName"))
    last_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("last_name", "lastName"))
    email: Optional[str] = Field(default=None, examples=["a@x.com"])
    phone: Optional[str] = Field(default=None, examples=["+1-555-111-2222"])
    company: Optional[str] = None
    visitor_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("visitor_id", "rstk_vid"),
        description="Tracking visitor id captured by the form",
    )
    rstk_adid: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("rstk_adid", "first_adid", "ad_id"),
        description="Ad id captured by the form at creation",
    )
    rstk_source: Optional[str] = Field(default=None, examples=["fb_ad"])
    source: Optional[str] = None
    status: Optional[Literal["lead", "appointment", "client"]] = None


class PaymentWebhook(BaseModel):
    """Payment recorded in the CRM; a completed payment is a sale."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    transaction_id: Optional[str] = Field(default=None, description="Natural key of the payment")
    amount: Optional[Decimal] = Field(default=None, validation_alias=AliasChoices("amount", "monto"))
    ext_crm_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("ext_crm_id", "ghl_contact_id", "contact_id"),
    )
    currency: str = "MXN"
    status: Literal["completed", "pending", "refunded", "failed"] = "completed"
    payment_method: Optional[str] = None
    description: Optional[str] = Field(default=None, validation_alias=AliasChoices("description", "nota"))
    paid_at: Optional[datetime] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class AppointmentWebhook(BaseModel):
    """Appointment booked in the CRM."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    appointment_id: Optional[str] = Field(default=None, description="Natural key of the appointment")
    ext_crm_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("ext_crm_id", "ghl_contact_id", "contact_id"),
    )
    title: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    duration_minutes: int = Field(default=30, validation_alias=AliasChoices("duration_minutes", "duration"))
    status: str = "scheduled"
    notes: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class TouchpointIn(BaseModel):
    ad_id: str
    date: date
    campaign_id: Optional[str] = None
    campaign_name: Optional[str] = None
    adset_id: Optional[str] = None
    adset_name: Optional[str] = None
    ad_name: Optional[str] = None
    spend: Decimal = Decimal("0")
    clicks: int = 0
    reach: int = 0


class TouchpointReplaceRequest(BaseModel):
    """Bulk replacement of one platform's touchpoints for a date range."""
    platform: str = "meta"
    start: date
    end: date
    touchpoints: List[TouchpointIn] = Field(default_factory=list)


# Responses --------------------------------------------------------

class ContactOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    contact_id: str
    ext_crm_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    visitor_id: Optional[str] = None
    rstk_adid: Optional[str] = None
    rstk_source: Optional[str] = None
    source: Optional[str] = None
    status: str
    created_at: datetime


class SessionLinkOut(BaseModel):
    primary_identity_id: str
    visitor_ids: List[str]
    sessions_linked: int
    skipped: bool


class ContactIngestionOut(BaseModel):
    contact: ContactOut
    session_link: Optional[SessionLinkOut] = None


class AttributionOut(BaseModel):
    ad_id: str
    ad_name: Optional[str] = None
    campaign_id: Optional[str] = None
    campaign_name: Optional[str] = None
    adset_id: Optional[str] = None
    adset_name: Optional[str] = None
    touchpoint_date: date
    strategy: Literal["session", "fallback"]
    session_id: Optional[str] = None
    anchor_at: datetime


class ContactAttributionOut(BaseModel):
    contact_id: str
    attributed: bool
    attribution: Optional[AttributionOut] = None
