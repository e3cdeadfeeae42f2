from datetime import datetime, timedelta, timezone

from loupe.tiers import (
    Tier,
    can_access_mobile,
    can_connect_analytics,
    can_use_deploy_scans,
    get_allowed_scan_frequency,
    get_effective_tier,
    get_page_limit,
    validate_scan_frequency,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def test_lapsed_subscription_falls_back_to_free() -> None:
    for status in ("past_due", "canceled", "unpaid"):
        assert get_effective_tier("pro", status, None, NOW) is Tier.FREE


def test_expired_trial_falls_back_to_free() -> None:
    assert get_effective_tier("pro", "trialing", NOW - timedelta(hours=1), NOW) is Tier.FREE
    assert get_effective_tier("pro", "trialing", NOW + timedelta(days=3), NOW) is Tier.PRO


def test_naive_trial_end_is_treated_as_utc() -> None:
    naive_past = (NOW - timedelta(minutes=5)).replace(tzinfo=None)
    assert get_effective_tier("starter", "trialing", naive_past, NOW) is Tier.FREE


def test_unknown_tier_is_free() -> None:
    assert get_effective_tier("enterprise", "active", None, NOW) is Tier.FREE


def test_page_limits_include_bonus_pages() -> None:
    assert get_page_limit("free") == 1
    assert get_page_limit("starter") == 3
    assert get_page_limit("pro", bonus_pages=2) == 12
    assert get_page_limit("pro", bonus_pages=-4) == 10


def test_feature_gates() -> None:
    assert not can_use_deploy_scans("free")
    assert can_use_deploy_scans("starter")
    assert not can_access_mobile("starter")
    assert can_access_mobile("pro")
    assert not can_connect_analytics("free", 0)
    assert can_connect_analytics("starter", 0)
    assert not can_connect_analytics("starter", 1)
    assert can_connect_analytics("pro", 25)


def test_scan_frequency_by_tier() -> None:
    assert get_allowed_scan_frequency("free") == "weekly"
    assert get_allowed_scan_frequency("pro") == "daily"
    assert validate_scan_frequency("free", "daily") == "weekly"
    assert validate_scan_frequency("starter", "weekly") == "weekly"
    assert validate_scan_frequency("starter", None) == "daily"
    assert validate_scan_frequency("free", "hourly") == "weekly"
