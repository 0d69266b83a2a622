"""Touchpoint replacement: range-scoped delete + insert in one transaction."""

from datetime import date
from decimal import Decimal

import pytest

from leadgraph.errors import TouchpointSyncError
from leadgraph.models import AdTouchpoint
from leadgraph.services.touchpoint_sync import TouchpointRecord, replace_touchpoints


def _ads(db):
    return sorted((t.platform, t.ad_id, t.date) for t in db.query(AdTouchpoint).all())


def test_replaces_only_the_platform_range(test_db_session, make_touchpoint):
    make_touchpoint("ad_old", date(2025, 1, 2))
    make_touchpoint("ad_keep", date(2025, 1, 10))
    make_touchpoint("ad_google", date(2025, 1, 2), platform="google")

    result = replace_touchpoints(
        test_db_session,
        "meta",
        date(2025, 1, 1),
        date(2025, 1, 5),
        [
            TouchpointRecord(ad_id="ad_new", date=date(2025, 1, 1), spend=Decimal("12.50"), clicks=3),
            TouchpointRecord(ad_id="ad_new", date=date(2025, 1, 5), spend=Decimal("7.50")),
        ],
    )

    assert result == {"platform": "meta", "deleted": 1, "inserted": 2}
    assert _ads(test_db_session) == [
        ("google", "ad_google", date(2025, 1, 2)),
        ("meta", "ad_keep", date(2025, 1, 10)),
        ("meta", "ad_new", date(2025, 1, 1)),
        ("meta", "ad_new", date(2025, 1, 5)),
    ]


def test_replay_with_the_same_batch_is_stable(test_db_session):
    batch = [TouchpointRecord(ad_id="ad_1", date=date(2025, 1, 3), campaign_id="cmp_1")]

    replace_touchpoints(test_db_session, "meta", date(2025, 1, 1), date(2025, 1, 5), batch)
    second = replace_touchpoints(test_db_session, "meta", date(2025, 1, 1), date(2025, 1, 5), batch)

    assert second["deleted"] == 1
    assert test_db_session.query(AdTouchpoint).count() == 1


def test_empty_batch_clears_the_range(test_db_session, make_touchpoint):
    make_touchpoint("ad_1", date(2025, 1, 3))

    result = replace_touchpoints(test_db_session, "meta", date(2025, 1, 1), date(2025, 1, 5), [])

    assert result["deleted"] == 1
    assert test_db_session.query(AdTouchpoint).count() == 0


def test_out_of_range_record_writes_nothing(test_db_session, make_touchpoint):
    make_touchpoint("ad_1", date(2025, 1, 3))

    with pytest.raises(ValueError):
        replace_touchpoints(
            test_db_session,
            "meta",
            date(2025, 1, 1),
            date(2025, 1, 5),
            [TouchpointRecord(ad_id="ad_2", date=date(2025, 1, 6))],
        )

    assert _ads(test_db_session) == [("meta", "ad_1", date(2025, 1, 3))]


def test_failed_insert_keeps_the_old_rows(test_db_session, make_touchpoint):
    make_touchpoint("ad_1", date(2025, 1, 3))
    # Same (platform, ad_id, date) twice violates the unique constraint
    duplicate_day = [
        TouchpointRecord(ad_id="ad_2", date=date(2025, 1, 2)),
        TouchpointRecord(ad_id="ad_2", date=date(2025, 1, 2)),
    ]

    with pytest.raises(TouchpointSyncError):
        replace_touchpoints(test_db_session, "meta", date(2025, 1, 1), date(2025, 1, 5), duplicate_day)

    assert _ads(test_db_session) == [("meta", "ad_1", date(2025, 1, 3))]
