"""SQLAlchemy ORM models and enums.

This module defines the engine schema: CRM contacts and their dependent
records (payments, appointments), anonymous tracking sessions, the identity
graph (union-find nodes + immutable identifier links), the fingerprint match
review trail, and ad touchpoints synced from ad platforms.

Contacts use their natural string id (`cntct_...`) as the primary key because
every dependent table references it and merges repoint those references.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import (
    Column,
    String,
    DateTime,
    Date,
    Integer,
    Float,
    ForeignKey,
    Numeric,
    JSON,
    Text,
    Boolean,
    UniqueConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base, validates

from .utils.normalize import phone_key


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class ContactStatusEnum(str, enum.Enum):
    """Contact lifecycle status. Ordinal rank lives in STATUS_RANK."""
    lead = "lead"
    appointment = "appointment"
    client = "client"


# Merges may only move a contact up this ladder
STATUS_RANK = {
    ContactStatusEnum.lead.value: 1,
    ContactStatusEnum.appointment.value: 2,
    ContactStatusEnum.client.value: 3,
}


class IdentifierTypeEnum(str, enum.Enum):
    visitor_id = "visitor_id"
    contact_id = "contact_id"
    device_signature = "device_signature"


class PaymentStatusEnum(str, enum.Enum):
    completed = "completed"
    pending = "pending"
    refunded = "refunded"
    failed = "failed"


# CRM -------------------------------------------------------------

class Contact(Base):
    """CRM contact.

    WHAT: One row per real-world person once duplicates are merged
    WHY: Every conversion (lead, appointment, sale) hangs off a contact, and
         `created_at` is the attribution anchor for all of them
    """
    __tablename__ = "contacts"

    contact_id = Column(String, primary_key=True)
    ext_crm_id = Column(String, nullable=True, index=True)

    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    email = Column(String, nullable=True, index=True)
    phone = Column(String, nullable=True)
    # Last 10 digits of the digit-only phone, maintained by the validator below
    phone_key = Column(String, nullable=True, index=True)
    company = Column(String, nullable=True)

    # Tracking / attribution captured at creation
    visitor_id = Column(String, nullable=True, index=True)
    rstk_adid = Column(String, nullable=True)
    rstk_source = Column(String, nullable=True)
    source = Column(String, nullable=True)

    status = Column(String, nullable=False, default=ContactStatusEnum.lead.value)

    # Attribution anchor - merges never touch it
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    payments = relationship("Payment", back_populates="contact")
    appointments = relationship("Appointment", back_populates="contact")

    @validates("phone")
    def _sync_phone_key(self, key, value):
        self.phone_key = phone_key(value)
        return value

    def __str__(self):
        name = " ".join(p for p in [self.first_name, self.last_name] if p)
        return f"{self.contact_id} - {name or self.email or self.phone or 'unknown'}"


class Payment(Base):
    """Completed (or pending/refunded) payment; a Sale conversion when completed."""
    __tablename__ = "payments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    transaction_id = Column(String, nullable=False, unique=True)
    contact_id = Column(String, ForeignKey("contacts.contact_id"), nullable=True, index=True)

    amount = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String, nullable=False, default="MXN")
    status = Column(String, nullable=False, default=PaymentStatusEnum.completed.value)
    payment_method = Column(String, nullable=True)
    description = Column(Text, nullable=True)

    paid_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    contact = relationship("Contact", back_populates="payments")

    def __str__(self):
        return f"{self.transaction_id} - {self.amount} {self.currency} ({self.status})"


class Appointment(Base):
    """Scheduled appointment; an Appointment conversion."""
    __tablename__ = "appointments"

    appointment_id = Column(String, primary_key=True)
    contact_id = Column(String, ForeignKey("contacts.contact_id"), nullable=True, index=True)

    title = Column(String, nullable=True)
    scheduled_at = Column(DateTime, nullable=True)
    duration_minutes = Column(Integer, nullable=False, default=30)
    status = Column(String, nullable=False, default="scheduled")
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    contact = relationship("Contact", back_populates="appointments")

    def __str__(self):
        return f"{self.appointment_id} - {self.title or 'untitled'} @ {self.scheduled_at}"


# Tracking ---------------------------------------------------------

class TrackingSession(Base):
    """One browsing session, written by the tracking ingestion path.

    WHAT: Traffic descriptors + sparse device fingerprint for a single visit
    WHY: Sessions are the evidence for last-touch attribution and for
         probabilistic visitor merging. `contact_id` is written only by the
         session linker (null -> value, never overwritten).
    """
    __tablename__ = "tracking_sessions"
    __table_args__ = (
        Index("ix_tracking_sessions_visitor_started", "visitor_id", "started_at"),
    )

    session_id = Column(String, primary_key=True)
    visitor_id = Column(String, nullable=False, index=True)
    contact_id = Column(String, ForeignKey("contacts.contact_id"), nullable=True, index=True)

    started_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    # Traffic descriptors
    channel = Column(String, nullable=True)
    source_platform = Column(String, nullable=True)
    utm_source = Column(String, nullable=True)
    utm_medium = Column(String, nullable=True)
    utm_campaign = Column(String, nullable=True)
    fbclid = Column(String, nullable=True)
    gclid = Column(String, nullable=True)
    ad_id = Column(String, nullable=True, index=True)
    landing_page = Column(String, nullable=True)
    referrer = Column(String, nullable=True)

    # Contact data typed into a tracked form, if any
    email = Column(String, nullable=True, index=True)
    phone = Column(String, nullable=True)
    phone_key = Column(String, nullable=True, index=True)

    # Fingerprint set (each signal optional)
    canvas_fingerprint = Column(String, nullable=True, index=True)
    webgl_fingerprint = Column(String, nullable=True, index=True)
    audio_fingerprint = Column(String, nullable=True)
    fonts_fingerprint = Column(String, nullable=True)
    screen_fingerprint = Column(String, nullable=True)
    device_signature = Column(String, nullable=True, index=True)
    ip = Column(String, nullable=True)
    timezone = Column(String, nullable=True)

    # Probability of the fingerprint match that attached contact_id (if any)
    fingerprint_probability = Column(Float, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    @validates("phone")
    def _sync_phone_key(self, key, value):
        self.phone_key = phone_key(value)
        return value

    def __str__(self):
        return f"{self.session_id} ({self.visitor_id}) @ {self.started_at}"


# Identity graph ---------------------------------------------------

class IdentityNode(Base):
    """Union-find node for a primary identity.

    WHAT: `parent_id` is NULL for roots; `rank` bounds tree height
    WHY: Identities discovered to be the same person are unioned here while
         the identifier links stay immutable
    """
    __tablename__ = "identity_nodes"

    identity_id = Column(String, primary_key=True)
    parent_id = Column(String, ForeignKey("identity_nodes.identity_id"), nullable=True, index=True)
    rank = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __str__(self):
        return f"{self.identity_id} -> {self.parent_id or 'root'}"


class IdentityLink(Base):
    """Identifier -> primary identity mapping (first link wins, never updated)."""
    __tablename__ = "identity_links"
    __table_args__ = (
        UniqueConstraint("identifier_type", "identifier_value", name="uq_identity_link_identifier"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    primary_identity_id = Column(
        String, ForeignKey("identity_nodes.identity_id"), nullable=False, index=True
    )
    identifier_type = Column(String, nullable=False)
    identifier_value = Column(String, nullable=False)
    source = Column(String, nullable=True)
    confidence = Column(Float, nullable=False, default=1.0)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __str__(self):
        return f"{self.identifier_type}:{self.identifier_value} -> {self.primary_identity_id}"


class IdentityMatchReview(Base):
    """Audit trail of fingerprint candidates seen while linking a conversion.

    WHAT: One row per scored candidate session
    WHY: Matches below the auto-link probability are kept for manual review
    """
    __tablename__ = "identity_match_reviews"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    primary_identity_id = Column(String, nullable=False, index=True)
    contact_id = Column(String, nullable=True, index=True)
    reference_session_id = Column(String, nullable=True)
    candidate_session_id = Column(String, nullable=False)
    candidate_visitor_id = Column(String, nullable=False)
    score = Column(Integer, nullable=False)
    probability = Column(Float, nullable=False)
    matched_signals = Column(JSON, default=list)
    auto_linked = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __str__(self):
        state = "auto-linked" if self.auto_linked else "review"
        return f"{self.candidate_visitor_id} score={self.score} ({state})"


# Ad platform data -------------------------------------------------

class AdTouchpoint(Base):
    """Daily ad delivery row from the ad-platform sync (read-only to the engine).

    WHAT: Spend/clicks/reach per ad per day with its campaign/adset lineage
    WHY: Defines which ad ids exist and on which days they were running
    """
    __tablename__ = "ad_touchpoints"
    __table_args__ = (
        UniqueConstraint("platform", "ad_id", "date", name="uq_ad_touchpoint_day"),
        Index("ix_ad_touchpoints_ad_date", "ad_id", "date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    platform = Column(String, nullable=False, default="meta")
    ad_id = Column(String, nullable=False)
    ad_name = Column(String, nullable=True)
    campaign_id = Column(String, nullable=True, index=True)
    campaign_name = Column(String, nullable=True)
    adset_id = Column(String, nullable=True, index=True)
    adset_name = Column(String, nullable=True)

    date = Column(Date, nullable=False, index=True)
    spend = Column(Numeric(12, 2), nullable=False, default=0)
    clicks = Column(Integer, nullable=False, default=0)
    reach = Column(Integer, nullable=False, default=0)

    synced_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __str__(self):
        return f"{self.ad_id} {self.date} spend={self.spend}"
