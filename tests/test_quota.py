import pytest

from certify.app import db
from certify.models import CertificateType
from certify.services import plans
from certify.services.context import current_core
from certify.services.plans import PlanPolicy, parse_plan_limits
from certify.services.stores import RecipientRow
from certify.shared.errors import QuotaExceeded


def _rows(n, prefix="r"):
    return [RecipientRow(name=f"Person {prefix}{i}", certificate_id=f"{prefix}-{i}") for i in range(n)]


@pytest.fixture
def capped(app):
    app.config["PLAN_LIMITS"] = {"team": {"max_recipients": 10, "bulk_import": True}}


def test_full_quota_accepts_nothing(capped, seed):
    s = seed(plan="team")
    ctx = current_core()
    plans.add_recipients(ctx, s.event.id, s.cert_type.id, _rows(10, "a"), bulk=True)
    result = plans.add_recipients(ctx, s.event.id, s.cert_type.id, _rows(5, "b"), bulk=True)
    assert len(result.accepted) == 0
    assert result.rejected_for_quota == 5


def test_partial_import_fills_remaining_slots_in_order(capped, seed):
    s = seed(plan="team")
    ctx = current_core()
    plans.add_recipients(ctx, s.event.id, s.cert_type.id, _rows(8, "a"), bulk=True)
    result = plans.add_recipients(ctx, s.event.id, s.cert_type.id, _rows(5, "b"), bulk=True)
    assert [r.certificate_id for r in result.accepted] == ["b-0", "b-1"]
    assert result.rejected_for_quota == 3


def test_quota_spans_all_events_of_the_owner(capped, seed):
    first = seed(plan="team")
    second = seed(owner=first.owner, type_name="Second")
    ctx = current_core()
    plans.add_recipients(ctx, first.event.id, first.cert_type.id, _rows(9, "a"), bulk=True)
    result = plans.add_recipients(ctx, second.event.id, second.cert_type.id, _rows(3, "b"), bulk=True)
    assert len(result.accepted) == 1
    assert result.rejected_for_quota == 2


def test_single_add_at_cap_raises(capped, seed):
    s = seed(plan="team")
    ctx = current_core()
    plans.add_recipients(ctx, s.event.id, s.cert_type.id, _rows(10), bulk=True)
    with pytest.raises(QuotaExceeded):
        plans.add_recipient(ctx, s.event.id, s.cert_type.id, RecipientRow(name="Late"))


def test_free_plan_has_no_bulk_import(seed):
    s = seed(plan="free")
    with pytest.raises(QuotaExceeded):
        plans.add_recipients(current_core(), s.event.id, s.cert_type.id, _rows(2), bulk=True)
    result = plans.add_recipient(current_core(), s.event.id, s.cert_type.id, RecipientRow(name="Solo"))
    assert result.accepted[0].certificate_id.startswith("CERT-")


def test_duplicate_registration_numbers_are_skipped(seed):
    s = seed()
    ctx = current_core()
    rows = [RecipientRow(name="A", certificate_id="R-1"), RecipientRow(name="B", certificate_id="r-1")]
    result = plans.add_recipients(ctx, s.event.id, s.cert_type.id, rows, bulk=True)
    assert len(result.accepted) == 1
    assert result.skipped_duplicates == 1


def test_type_cap(seed):
    s = seed(plan="free")
    with pytest.raises(QuotaExceeded):
        plans.ensure_type_quota(current_core(), s.owner)
    s.cert_type.is_active = False
    db.session.commit()
    plans.ensure_type_quota(current_core(), s.owner)
    assert db.session.query(CertificateType).count() == 1


def test_policy_defaults_and_overrides():
    policy = PlanPolicy()
    assert policy.max_recipients("free") == 50
    assert policy.max_recipients("mystery") == 50
    assert policy.can_import_bulk("professional")
    assert policy.max_downloads_per_recipient("free") == 1
    assert policy.can_download("enterprise", 99)
    assert not policy.can_download("free", 1)

    limits = parse_plan_limits({"free": {"max_recipients": 5}, "unlimited": {"max_recipients": None}})
    custom = PlanPolicy(limits)
    assert custom.max_recipients("free") == 5
    assert custom.max_downloads_per_recipient("free") == 1
    assert custom.max_recipients("unlimited") is None
    assert custom.remaining_recipients("unlimited", 10_000) is None


def test_usage_report(seed, add_recipient):
    s = seed(plan="free")
    add_recipient(s.cert_type)
    report = plans.usage(current_core(), s.owner)
    assert report["usage"] == {"recipients": 1, "certificate_types": 1}
    assert report["remaining"] == {"recipients": 49, "certificate_types": 0}
