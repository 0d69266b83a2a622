"""
Contact Merge Rule Tests (Unit)
===============================

WHAT: Unit tests for the pure merge rules (field picking, status ladder, master choice)
      and the in-memory disjoint set used to group duplicates.
WHY: These rules decide which data survives a merge; they run without a database.

REFERENCES:
- backend/leadgraph/services/contact_merger.py
- backend/leadgraph/services/identity_graph.py:DisjointSet
- backend/leadgraph/utils/normalize.py
"""

import os
from datetime import datetime
from types import SimpleNamespace

import pytest

# The merger imports the engine module, which requires a URL at import time.
# Nothing here touches the database.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from leadgraph.services.contact_merger import (
    completeness_score,
    generate_contact_id,
    pick_best,
    pick_best_status,
    select_master,
)
from leadgraph.services.identity_graph import DisjointSet
from leadgraph.utils.normalize import normalize_email, phone_key


def _contact(contact_id, created_day, status="lead", **fields):
    base = dict.fromkeys(["first_name", "last_name", "email", "phone", "company", "rstk_adid", "ext_crm_id"])
    base.update(fields)
    return SimpleNamespace(contact_id=contact_id, created_at=datetime(2025, 1, created_day), status=status, **base)


# ============================================================================
# Field and status rules
# ============================================================================

@pytest.mark.parametrize(
    "current, new, expected",
    [
        ("Ana", None, "Ana"),
        ("Ana", "", "Ana"),
        ("Ana", "   ", "Ana"),
        (None, "Ana", "Ana"),
        ("", "Ana", "Ana"),
        ("Ana", "Anabel", "Anabel"),
        ("Anabel", "Ana", "Anabel"),
        ("Ana", "Bea", "Ana"),
    ],
)
def test_pick_best(current, new, expected) -> None:
    assert pick_best(current, new) == expected


@pytest.mark.parametrize(
    "current, new, expected",
    [
        ("lead", "appointment", "appointment"),
        ("appointment", "client", "client"),
        ("client", "lead", "client"),
        ("appointment", "lead", "appointment"),
        ("lead", None, "lead"),
        ("lead", "unknown", "lead"),
    ],
)
def test_status_only_moves_up(current, new, expected) -> None:
    assert pick_best_status(current, new) == expected


def test_completeness_score_weights() -> None:
    contact = _contact(
        "c1", 1, status="client",
        first_name="A", last_name="B", email="a@x.com", phone="5551112222",
        company="Acme", rstk_adid="ad_1", ext_crm_id="ghl_1",
    )

    assert completeness_score(contact) == 2 + 2 + 3 + 3 + 1 + 2 + 5 + 10
    assert completeness_score(_contact("c2", 1, email="  ")) == 0


def test_master_is_most_complete() -> None:
    sparse = _contact("c1", 1, email="a@x.com")
    rich = _contact("c2", 5, email="a@x.com", ext_crm_id="ghl_1")

    assert select_master([sparse, rich]).contact_id == "c2"


def test_master_ties_go_to_oldest_then_id() -> None:
    later = _contact("c_a", 3, email="a@x.com")
    oldest = _contact("c_z", 1, email="a@x.com")
    same_day = _contact("c_b", 1, email="a@x.com")

    assert select_master([later, oldest, same_day]).contact_id == "c_b"


def test_generated_contact_ids() -> None:
    ids = {generate_contact_id() for _ in range(50)}

    assert len(ids) == 50
    assert all(i.startswith("cntct_") and len(i) == 22 and i[6:].isalnum() for i in ids)


# ============================================================================
# Normalization
# ============================================================================

@pytest.mark.parametrize(
    "raw, key",
    [
        ("5551112222", "5551112222"),
        ("+1-555-111-2222", "5551112222"),
        ("(555) 111 2222", "5551112222"),
        ("+52 1 555 111 2222", "5551112222"),
        ("555-1234", None),
        (None, None),
    ],
)
def test_phone_key(raw, key) -> None:
    assert phone_key(raw) == key


def test_normalize_email() -> None:
    assert normalize_email("  A@X.com ") == "a@x.com"
    assert normalize_email("   ") is None
    assert normalize_email(None) is None


# ============================================================================
# DisjointSet
# ============================================================================

def test_disjoint_set_groups_transitively() -> None:
    groups = DisjointSet()
    groups.union("a", "b")
    groups.union("c", "d")
    groups.union("b", "c")
    groups.add("e")

    assert groups.find("d") == groups.find("a")
    assert sorted(map(sorted, groups.groups())) == [["a", "b", "c", "d"], ["e"]]
    assert len(groups) == 5
    assert "e" in groups
    assert "z" not in groups


def test_disjoint_set_groups_keep_first_seen_order() -> None:
    groups = DisjointSet(["x", "y"])
    groups.union("y", "x")

    assert groups.groups() == [["x", "y"]]
