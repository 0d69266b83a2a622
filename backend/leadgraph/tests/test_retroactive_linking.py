"""Retroactive linking of contacts whose sessions arrived after the webhook."""

from datetime import datetime, timedelta

from leadgraph.errors import SessionLinkError
from leadgraph.models import TrackingSession
from leadgraph.services.identity_graph import IdentityGraph
from leadgraph.services.retroactive_linking import link_orphan_contacts
from leadgraph.services.session_linker import SessionLinker


NOW = datetime(2025, 3, 1, 12, 0, 0)


def test_links_recent_orphans_only(test_db_session, locks, make_contact, make_session):
    orphan = make_contact(visitor_id="v1", created_at=NOW - timedelta(minutes=30))
    make_contact(visitor_id="v_old", created_at=NOW - timedelta(hours=5))
    make_contact(created_at=NOW - timedelta(minutes=10))  # no visitor
    make_session("v1", NOW - timedelta(minutes=40))
    make_session("v_old", NOW - timedelta(hours=6))

    stats = link_orphan_contacts(test_db_session, locks, lookback_hours=2, now=NOW)

    assert stats == {
        "checked": 1, "linked": 1, "no_sessions": 0, "skipped": 0, "failed": 0,
        "sessions_linked": 1, "attribution_backfilled": 0,
    }
    owners = {s.visitor_id: s.contact_id for s in test_db_session.query(TrackingSession).all()}
    assert owners == {"v1": orphan.contact_id, "v_old": None}


def test_contact_owning_a_session_is_not_an_orphan(test_db_session, locks, make_contact, make_session):
    contact = make_contact(visitor_id="v1", created_at=NOW - timedelta(minutes=30))
    make_session("v1", NOW - timedelta(minutes=40), contact_id=contact.contact_id)

    assert link_orphan_contacts(test_db_session, locks, now=NOW)["checked"] == 0


def test_counts_contacts_without_sessions(test_db_session, locks, make_contact):
    make_contact(visitor_id="v1", created_at=NOW - timedelta(minutes=30))

    stats = link_orphan_contacts(test_db_session, locks, now=NOW)

    assert stats["checked"] == 1
    assert stats["no_sessions"] == 1


def test_one_failure_does_not_stop_the_batch(test_db_session, locks, make_contact, make_session):
    make_contact(contact_id="cntct_bad", visitor_id="v_bad", created_at=NOW - timedelta(minutes=50))
    good = make_contact(contact_id="cntct_good", visitor_id="v_good", created_at=NOW - timedelta(minutes=40))
    make_session("v_bad", NOW - timedelta(hours=1))
    make_session("v_good", NOW - timedelta(hours=1))

    class FlakyLinker(SessionLinker):
        def unify_sessions_on_conversion(self, contact_id, current_session, now=None):
            if contact_id == "cntct_bad":
                raise SessionLinkError("lock backend timeout")
            return super().unify_sessions_on_conversion(contact_id, current_session, now=now)

    stats = link_orphan_contacts(
        test_db_session, locks, now=NOW, linker=FlakyLinker(test_db_session, locks)
    )

    assert stats["failed"] == 1
    assert stats["linked"] == 1
    session = test_db_session.query(TrackingSession).filter_by(visitor_id="v_good").one()
    assert session.contact_id == good.contact_id


def test_held_identity_lock_counts_as_skipped(test_db_session, locks, make_contact, make_session):
    make_contact(contact_id="cntct_a", visitor_id="v1", created_at=NOW - timedelta(minutes=30))
    make_session("v1", NOW - timedelta(minutes=40))
    root = IdentityGraph(test_db_session).resolve_or_create("visitor_id", "v1")
    test_db_session.commit()

    handle = locks.acquire(f"identity:{root}")
    try:
        stats = link_orphan_contacts(test_db_session, locks, now=NOW)
    finally:
        locks.release(handle)

    assert stats["skipped"] == 1
    assert stats["linked"] == 0


# ============================================================================
# Form email / phone matching
# ============================================================================

def test_contact_without_visitor_is_matched_by_form_email_and_phone(
    test_db_session, locks, make_contact, make_session
):
    contact = make_contact(
        contact_id="cntct_form", email="ana@x.com", phone="5551112222",
        created_at=NOW - timedelta(minutes=10),
    )
    make_session("v_email", NOW - timedelta(days=2), email=" Ana@X.com")
    make_session("v_phone", NOW - timedelta(hours=3), phone="+1 (555) 111-2222")
    make_session("v_other", NOW - timedelta(hours=1), email="bea@x.com")

    stats = link_orphan_contacts(test_db_session, locks, now=NOW)

    assert stats["checked"] == 1
    assert stats["linked"] == 1
    assert stats["sessions_linked"] == 2
    owners = {s.visitor_id: s.contact_id for s in test_db_session.query(TrackingSession).all()}
    assert owners == {"v_email": "cntct_form", "v_phone": "cntct_form", "v_other": None}
    # The oldest matched visitor becomes the contact's visitor
    test_db_session.refresh(contact)
    assert contact.visitor_id == "v_email"

    graph = IdentityGraph(test_db_session)
    assert graph.resolve("visitor_id", "v_email") == graph.resolve("visitor_id", "v_phone")


def test_stale_or_claimed_sessions_are_not_matched(test_db_session, locks, make_contact, make_session):
    make_contact(contact_id="cntct_owner", created_at=datetime(2025, 1, 1))
    make_contact(contact_id="cntct_form", email="ana@x.com", created_at=NOW - timedelta(minutes=10))
    make_session("v_stale", NOW - timedelta(days=8), email="ana@x.com")
    make_session("v_taken", NOW - timedelta(hours=2), email="ana@x.com", contact_id="cntct_owner")

    stats = link_orphan_contacts(test_db_session, locks, now=NOW)

    assert stats["checked"] == 1
    assert stats["no_sessions"] == 1
    owners = {s.visitor_id: s.contact_id for s in test_db_session.query(TrackingSession).all()}
    assert owners == {"v_stale": None, "v_taken": "cntct_owner"}


# ============================================================================
# Attribution backfill
# ============================================================================

def test_missing_attribution_is_filled_from_first_session(test_db_session, locks, make_contact, make_session):
    contact = make_contact(
        contact_id="cntct_form", email="ana@x.com", rstk_source="crm_form",
        created_at=NOW - timedelta(minutes=10),
    )
    make_session("v1", NOW - timedelta(days=3), email="ana@x.com", ad_id="ad_9", utm_source="facebook")
    make_session("v1", NOW - timedelta(hours=1), ad_id="ad_10", utm_source="google")

    stats = link_orphan_contacts(test_db_session, locks, now=NOW)

    assert stats["attribution_backfilled"] == 1
    test_db_session.refresh(contact)
    assert contact.rstk_adid == "ad_9"
    assert contact.rstk_source == "crm_form"


def test_existing_attribution_is_kept(test_db_session, locks, make_contact, make_session):
    contact = make_contact(
        visitor_id="v1", rstk_adid="ad_1", rstk_source="fb_ad",
        created_at=NOW - timedelta(minutes=10),
    )
    make_session("v1", NOW - timedelta(hours=1), ad_id="ad_9", utm_source="google")

    stats = link_orphan_contacts(test_db_session, locks, now=NOW)

    assert stats["linked"] == 1
    assert stats["attribution_backfilled"] == 0
    test_db_session.refresh(contact)
    assert (contact.rstk_adid, contact.rstk_source) == ("ad_1", "fb_ad")
