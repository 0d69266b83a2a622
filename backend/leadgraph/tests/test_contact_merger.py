"""Contact merger: master selection, field merge, reference migration, cleanup."""

from datetime import datetime
from decimal import Decimal

import pytest

from leadgraph.errors import ContactMergeError
from leadgraph.models import Appointment, Contact, Payment, TrackingSession
from leadgraph.services import contact_merger
from leadgraph.services.contact_duplicates import ContactCandidate, find_duplicates
from leadgraph.services.contact_merger import (
    cleanup_existing_duplicates,
    find_or_create_unified,
    unify,
)
from leadgraph.utils.normalize import phone_key


def _add_payment(db, contact_id, tx, amount):
    db.add(Payment(transaction_id=tx, contact_id=contact_id, amount=Decimal(amount)))
    db.commit()


def _add_appointment(db, contact_id, appointment_id):
    db.add(Appointment(appointment_id=appointment_id, contact_id=contact_id, scheduled_at=datetime(2025, 2, 1)))
    db.commit()


def test_scenario_email_contact_and_client_with_ext_id(test_db_session, make_contact):
    a = make_contact(email="a@x.com", phone="5551112222", created_at=datetime(2025, 1, 1))
    b = make_contact(phone="+1-555-111-2222", ext_crm_id="ghl_1", status="client", created_at=datetime(2025, 1, 2))
    a_created = a.created_at

    master = find_or_create_unified(test_db_session, ContactCandidate(phone="5551112222"))

    assert test_db_session.query(Contact).count() == 1
    assert master.email == "a@x.com"
    assert phone_key(master.phone) == "5551112222"
    assert master.ext_crm_id == "ghl_1"
    assert master.status == "client"
    # B scores higher (client + ext id) and survives with its own anchor
    assert master.contact_id == b.contact_id
    assert master.created_at == datetime(2025, 1, 2)
    assert a_created == datetime(2025, 1, 1)


def test_unify_is_idempotent(test_db_session, make_contact):
    make_contact(email="a@x.com", first_name="Ana", created_at=datetime(2025, 1, 1))
    make_contact(email="A@x.com", last_name="Lopez", phone="5551112222", created_at=datetime(2025, 1, 2))
    candidate = ContactCandidate(email="a@x.com", company="Acme")

    first = find_or_create_unified(test_db_session, candidate)
    snapshot = {f: getattr(first, f) for f in contact_merger.MERGED_FIELDS + ("contact_id", "status")}
    second = find_or_create_unified(test_db_session, candidate)

    assert {f: getattr(second, f) for f in snapshot} == snapshot
    assert test_db_session.query(Contact).count() == 1


def test_no_payment_or_appointment_is_lost(test_db_session, make_contact, make_session):
    a = make_contact(email="a@x.com", created_at=datetime(2025, 1, 1))
    b = make_contact(email="a@x.com", phone="5551112222", created_at=datetime(2025, 1, 2))
    c = make_contact(phone="5551112222", created_at=datetime(2025, 1, 3))
    _add_payment(test_db_session, a.contact_id, "tx1", "100.00")
    _add_payment(test_db_session, b.contact_id, "tx2", "250.50")
    _add_payment(test_db_session, c.contact_id, "tx3", "49.50")
    _add_appointment(test_db_session, a.contact_id, "apt1")
    _add_appointment(test_db_session, c.contact_id, "apt2")
    make_session("v1", datetime(2024, 12, 31), contact_id=c.contact_id)

    before_total = sum(p.amount for p in test_db_session.query(Payment).all())
    master = find_or_create_unified(test_db_session, ContactCandidate(email="a@x.com", phone="5551112222"))

    payments = test_db_session.query(Payment).all()
    assert {p.contact_id for p in payments} == {master.contact_id}
    assert sum(p.amount for p in payments) == before_total == Decimal("400.00")
    assert {a.contact_id for a in test_db_session.query(Appointment).all()} == {master.contact_id}
    assert test_db_session.query(TrackingSession).one().contact_id == master.contact_id


@pytest.mark.parametrize(
    "statuses, incoming, expected",
    [
        (["lead", "client"], None, "client"),
        (["appointment", "lead"], "lead", "appointment"),
        (["lead", "lead"], "appointment", "appointment"),
        (["client", "appointment"], "lead", "client"),
    ],
)
def test_status_never_regresses(test_db_session, make_contact, statuses, incoming, expected):
    contacts = [
        make_contact(email="a@x.com", status=status, created_at=datetime(2025, 1, i + 1))
        for i, status in enumerate(statuses)
    ]

    master = unify(test_db_session, contacts, ContactCandidate(status=incoming))

    assert master.status == expected


def test_master_tie_goes_to_oldest(test_db_session, make_contact):
    newer = make_contact(email="a@x.com", created_at=datetime(2025, 1, 5))
    older = make_contact(email="a@x.com", created_at=datetime(2025, 1, 1))

    master = unify(test_db_session, [newer, older])

    assert master.contact_id == older.contact_id


def test_longer_value_wins_and_empty_never_overwrites(test_db_session, make_contact):
    a = make_contact(email="a@x.com", first_name="Jo", company="Acme", created_at=datetime(2025, 1, 1))
    b = make_contact(email="a@x.com", first_name="Joanna", company="", created_at=datetime(2025, 1, 2))

    master = unify(test_db_session, [a, b], ContactCandidate(first_name=None, company="  "))

    assert master.first_name == "Joanna"
    assert master.company == "Acme"


def test_creates_contact_when_no_duplicates(test_db_session):
    contact = find_or_create_unified(
        test_db_session,
        ContactCandidate(ext_crm_id="ghl_9", email="new@x.com", visitor_id="v1"),
    )

    assert contact.contact_id.startswith("cntct_")
    assert len(contact.contact_id) == len("cntct_") + 16
    assert contact.status == "lead"
    assert contact.source == "Direct"
    assert contact.visitor_id == "v1"


def test_failed_merge_rolls_back(test_db_session, make_contact, monkeypatch):
    make_contact(email="a@x.com", created_at=datetime(2025, 1, 1))
    make_contact(email="a@x.com", created_at=datetime(2025, 1, 2))

    def boom(*args, **kwargs):
        raise RuntimeError("fk violation")

    monkeypatch.setattr(contact_merger, "migrate_references", boom)

    with pytest.raises(ContactMergeError):
        find_or_create_unified(test_db_session, ContactCandidate(email="a@x.com"))

    assert test_db_session.query(Contact).count() == 2


def test_cleanup_merges_connected_components(test_db_session, make_contact):
    # A~B by email, B~C by phone: one person
    make_contact(email="a@x.com", created_at=datetime(2025, 1, 1))
    make_contact(email="a@x.com", phone="5551112222", created_at=datetime(2025, 1, 2))
    make_contact(phone="+1 555 111 2222", created_at=datetime(2025, 1, 3))
    # D~E by email: another person
    make_contact(email="d@x.com", created_at=datetime(2025, 1, 4))
    make_contact(email="D@x.com", created_at=datetime(2025, 1, 5))
    make_contact(email="solo@x.com", created_at=datetime(2025, 1, 6))

    result = cleanup_existing_duplicates(test_db_session, chunk_size=1)

    assert result["email_groups"] == 2
    assert result["phone_groups"] == 1
    assert result["components"] == 2
    assert result["groups_unified"] == 2
    assert result["contacts_removed"] == 3
    assert result["chunks"] == 2
    assert test_db_session.query(Contact).count() == 3
    assert len(find_duplicates(test_db_session, ContactCandidate(email="a@x.com", phone="5551112222"))) == 1


def test_cleanup_is_a_no_op_without_duplicates(test_db_session, make_contact):
    make_contact(email="a@x.com")

    result = cleanup_existing_duplicates(test_db_session)

    assert result["groups_unified"] == 0
    assert result["chunks"] == 0
