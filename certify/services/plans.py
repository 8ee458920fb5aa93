from __future__ import annotations

from dataclasses import dataclass

from ..models import Event
from ..shared.errors import NotFound, QuotaExceeded
from .stores import AddResult

FREE_PLAN = "free"


@dataclass(frozen=True)
class PlanLimits:
    max_recipients: int | None
    max_certificate_types: int | None
    bulk_import: bool
    max_downloads_per_recipient: int | None = None


DEFAULT_PLAN_LIMITS: dict[str, PlanLimits] = {
    "free": PlanLimits(
        max_recipients=50,
        max_certificate_types=1,
        bulk_import=False,
        max_downloads_per_recipient=1,
    ),
    "professional": PlanLimits(
        max_recipients=2000, max_certificate_types=5, bulk_import=True
    ),
    "enterprise": PlanLimits(
        max_recipients=25000, max_certificate_types=100, bulk_import=True
    ),
    "premium": PlanLimits(
        max_recipients=50000, max_certificate_types=200, bulk_import=True
    ),
}


def _optional_int(value) -> int | None:
    if value is None:
        return None
    return int(value)


def parse_plan_limits(raw: dict) -> dict[str, PlanLimits]:
    """Build a plan table from JSON such as ``{"free": {"max_recipients": 10}}``.

    Keys missing from an entry inherit the default for that plan (or free).
    """
    table = dict(DEFAULT_PLAN_LIMITS)
    for plan, values in (raw or {}).items():
        if not isinstance(values, dict):
            continue
        base = table.get(plan, DEFAULT_PLAN_LIMITS[FREE_PLAN])
        table[str(plan).lower()] = PlanLimits(
            max_recipients=_optional_int(values.get("max_recipients", base.max_recipients)),
            max_certificate_types=_optional_int(
                values.get("max_certificate_types", base.max_certificate_types)
            ),
            bulk_import=bool(values.get("bulk_import", base.bulk_import)),
            max_downloads_per_recipient=_optional_int(
                values.get(
                    "max_downloads_per_recipient", base.max_downloads_per_recipient
                )
            ),
        )
    return table


class PlanPolicy:
    """Answers plan questions. Unknown plan names get the free limits."""

    def __init__(self, limits: dict[str, PlanLimits] | None = None):
        self.limits = limits or DEFAULT_PLAN_LIMITS

    @classmethod
    def from_config(cls, raw: dict | None) -> "PlanPolicy":
        return cls(parse_plan_limits(raw) if raw else None)

    def limits_for(self, plan: str | None) -> PlanLimits:
        key = (plan or FREE_PLAN).strip().lower()
        return self.limits.get(key) or self.limits.get(FREE_PLAN) or DEFAULT_PLAN_LIMITS[FREE_PLAN]

    def max_recipients(self, plan: str | None) -> int | None:
        return self.limits_for(plan).max_recipients

    def max_certificate_types(self, plan: str | None) -> int | None:
        return self.limits_for(plan).max_certificate_types

    def can_import_bulk(self, plan: str | None) -> bool:
        return self.limits_for(plan).bulk_import

    def max_downloads_per_recipient(self, plan: str | None) -> int | None:
        return self.limits_for(plan).max_downloads_per_recipient

    def remaining_recipients(self, plan: str | None, used: int) -> int | None:
        cap = self.max_recipients(plan)
        if cap is None:
            return None
        return max(cap - used, 0)

    def can_download(self, plan: str | None, download_count: int) -> bool:
        cap = self.max_downloads_per_recipient(plan)
        return cap is None or download_count < cap


def _owner_for_event(ctx, event_id: int):
    event = ctx.session.get(Event, event_id)
    if not event or not event.owner:
        raise NotFound("Event not found.")
    return event.owner


def usage(ctx, owner) -> dict:
    used = ctx.recipients.count_for_owner(owner.id)
    types_used = ctx.templates.count_types_for_owner(owner.id)
    limits = ctx.plans.limits_for(owner.plan)
    remaining_types = (
        None
        if limits.max_certificate_types is None
        else max(limits.max_certificate_types - types_used, 0)
    )
    return {
        "plan": owner.plan,
        "usage": {"recipients": used, "certificate_types": types_used},
        "limits": {
            "max_recipients": limits.max_recipients,
            "max_certificate_types": limits.max_certificate_types,
            "bulk_import": limits.bulk_import,
            "max_downloads_per_recipient": limits.max_downloads_per_recipient,
        },
        "remaining": {
            "recipients": ctx.plans.remaining_recipients(owner.plan, used),
            "certificate_types": remaining_types,
        },
    }


def add_recipients(ctx, event_id: int, type_id: int, rows, *, bulk: bool) -> AddResult:
    """Add rows in input order up to the owner's remaining recipient quota."""
    owner = _owner_for_event(ctx, event_id)
    ctx.templates.get_type(event_id, type_id)
    if bulk and not ctx.plans.can_import_bulk(owner.plan):
        raise QuotaExceeded(
            "Bulk import is not available on your plan.", plan=owner.plan
        )
    remaining = ctx.plans.remaining_recipients(
        owner.plan, ctx.recipients.count_for_owner(owner.id)
    )
    rows = list(rows)
    if not bulk and rows and remaining == 0:
        raise QuotaExceeded(
            "Recipient limit reached for your plan.",
            plan=owner.plan,
            limit=ctx.plans.max_recipients(owner.plan),
        )
    return ctx.recipients.add_recipients(event_id, type_id, rows, limit=remaining)


def add_recipient(ctx, event_id: int, type_id: int, row) -> AddResult:
    return add_recipients(ctx, event_id, type_id, [row], bulk=False)


def ensure_type_quota(ctx, owner) -> None:
    cap = ctx.plans.max_certificate_types(owner.plan)
    if cap is not None and ctx.templates.count_types_for_owner(owner.id) >= cap:
        raise QuotaExceeded(
            "Certificate type limit reached for your plan.", plan=owner.plan, limit=cap
        )
