"""Duplicate finder: OR over ext id, contact id, normalized email and phone key."""

from datetime import datetime

from leadgraph.services.contact_duplicates import ContactCandidate, find_duplicates, get_duplicate_stats


def test_empty_candidate_matches_nothing(test_db_session, make_contact):
    make_contact(email="a@x.com")

    assert find_duplicates(test_db_session, ContactCandidate()) == []
    assert find_duplicates(test_db_session, ContactCandidate(email="  ", phone="123")) == []


def test_matches_any_field_ordered_by_creation(test_db_session, make_contact):
    by_phone = make_contact(phone="(555) 111-2222", created_at=datetime(2025, 1, 3))
    by_email = make_contact(email=" A@X.com ", created_at=datetime(2025, 1, 1))
    by_ext = make_contact(ext_crm_id="ghl_1", created_at=datetime(2025, 1, 2))
    make_contact(email="other@x.com", phone="5559998888")

    found = find_duplicates(
        test_db_session,
        ContactCandidate(ext_crm_id="ghl_1", email="a@x.com", phone="+1-555-111-2222"),
    )

    assert [c.contact_id for c in found] == [by_email.contact_id, by_ext.contact_id, by_phone.contact_id]


def test_phone_matches_on_last_ten_digits(test_db_session, make_contact):
    local = make_contact(phone="5551112222")

    found = find_duplicates(test_db_session, ContactCandidate(phone="+52 1 555 111 2222"))

    assert [c.contact_id for c in found] == [local.contact_id]


def test_contact_id_is_an_exact_predicate(test_db_session, make_contact):
    target = make_contact(contact_id="cntct_exact")

    assert find_duplicates(test_db_session, ContactCandidate(contact_id="cntct_exact")) == [target]


def test_duplicate_stats(test_db_session, make_contact):
    make_contact(email="a@x.com")
    make_contact(email="A@x.com ")
    make_contact(phone="5551112222")
    make_contact(phone="+1 555 111 2222")
    make_contact(email="solo@x.com", phone="5550000000")

    stats = get_duplicate_stats(test_db_session)

    assert stats["email_duplicate_groups"] == 1
    assert stats["phone_duplicate_groups"] == 1
    assert stats["total_contacts"] == 5
