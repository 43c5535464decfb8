"""
Per-beneficiary JASPEL aggregates and their coherency rules.

Summaries are computed from the database on a miss and cached. Creates and
deletes adjust the counters of cached summaries in place; status, category or
nominal changes and procedure transitions invalidate them instead.
"""
from datetime import date
from decimal import Decimal
from django.db.models import Count, Q, Sum
from django.utils import timezone
import logging

from core.cache_service import cache_service
from . import conf
from .constants import FeeStatus
from .models import FeeRecord

logger = logging.getLogger(__name__)


def month_key(beneficiary_id, year, month):
    return f"jaspel:summary:{beneficiary_id}:{year}:{month:02d}"


def day_key(beneficiary_id, day):
    return f"jaspel:day:{beneficiary_id}:{day.isoformat()}"


def stats_key(beneficiary_id):
    return f"jaspel:stats:{beneficiary_id}"


def creation_counter_key(beneficiary_id):
    return f"jaspel:creations:{beneficiary_id}"


def _aggregate(queryset):
    zero = Decimal("0")
    totals = queryset.aggregate(
        count=Count("id", filter=~Q(validation_status=FeeStatus.REJECTED)),
        total=Sum("nominal", filter=~Q(validation_status=FeeStatus.REJECTED)),
        pending_count=Count("id", filter=Q(validation_status=FeeStatus.PENDING)),
        pending_total=Sum("nominal", filter=Q(validation_status=FeeStatus.PENDING)),
        approved_count=Count("id", filter=Q(validation_status=FeeStatus.APPROVED)),
        approved_total=Sum("nominal", filter=Q(validation_status=FeeStatus.APPROVED)),
        rejected_count=Count("id", filter=Q(validation_status=FeeStatus.REJECTED)),
    )
    return {key: (zero if value is None and key.endswith("total") else value) for key, value in totals.items()}


def beneficiary_month_summary(beneficiary_id, year, month):
    """Counts and totals for a beneficiary's settlement month (rejected records excluded from totals)."""

    def compute():
        return _aggregate(
            FeeRecord.objects.filter(
                beneficiary_id=beneficiary_id, settlement_date__year=year, settlement_date__month=month
            )
        )

    return cache_service.get_or_set(
        month_key(beneficiary_id, year, month), compute, conf.get("JASPEL_SUMMARY_CACHE_TTL")
    )


def beneficiary_day_summary(beneficiary_id, day):
    def compute():
        return _aggregate(FeeRecord.objects.filter(beneficiary_id=beneficiary_id, settlement_date=day))

    return cache_service.get_or_set(day_key(beneficiary_id, day), compute, conf.get("JASPEL_SUMMARY_CACHE_TTL"))


def beneficiary_stats(beneficiary_id):
    """Lifetime approved earnings; a derived statistic, only ever invalidated."""

    def compute():
        stats = _aggregate(FeeRecord.objects.filter(beneficiary_id=beneficiary_id))
        latest = (
            FeeRecord.objects.filter(beneficiary_id=beneficiary_id, validation_status=FeeStatus.APPROVED)
            .order_by("-settlement_date")
            .values_list("settlement_date", flat=True)
            .first()
        )
        stats["last_approved_date"] = latest.isoformat() if latest else None
        return stats

    return cache_service.get_or_set(stats_key(beneficiary_id), compute, conf.get("JASPEL_STATS_CACHE_TTL"))


def _counter_deltas(status, nominal):
    deltas = {f"{status}_count": 1}
    if status != FeeStatus.REJECTED:
        deltas.update({
            "count": 1,
            "total": nominal,
            f"{status}_total": nominal,
        })
    return deltas


def record_created(beneficiary_id, settlement_date, status, nominal):
    """Bump cached counters after a FeeRecord insert."""
    deltas = _counter_deltas(status, nominal)
    ttl = conf.get("JASPEL_COUNTER_CACHE_TTL")
    cache_service.increment(month_key(beneficiary_id, settlement_date.year, settlement_date.month), deltas, ttl)
    cache_service.increment(day_key(beneficiary_id, settlement_date), deltas, ttl)
    cache_service.invalidate(stats_key(beneficiary_id))


def record_deleted(beneficiary_id, settlement_date, status, nominal):
    """Symmetric to :func:`record_created`; counters never go below zero."""
    deltas = _counter_deltas(status, nominal)
    ttl = conf.get("JASPEL_COUNTER_CACHE_TTL")
    cache_service.decrement(month_key(beneficiary_id, settlement_date.year, settlement_date.month), deltas, ttl)
    cache_service.decrement(day_key(beneficiary_id, settlement_date), deltas, ttl)
    cache_service.invalidate(stats_key(beneficiary_id))


def invalidate_beneficiaries(beneficiary_ids, dates=()):
    """
    Drop the current month's summary plus the month and day summaries of every
    date given, and the derived statistics, for each beneficiary.
    """
    today = timezone.localdate()
    keys = []
    for beneficiary_id in {b for b in beneficiary_ids if b}:
        keys.append(month_key(beneficiary_id, today.year, today.month))
        keys.append(stats_key(beneficiary_id))
        for day in {d for d in dates if isinstance(d, date)}:
            keys.append(month_key(beneficiary_id, day.year, day.month))
            keys.append(day_key(beneficiary_id, day))
    return cache_service.invalidate(*sorted(set(keys)))


def invalidate_for_procedure(procedure):
    """Invalidate everything a procedure transition can affect: its performers and its linked records."""
    linked = list(FeeRecord.objects.filter(source_procedure=procedure).values_list("beneficiary_id", "settlement_date"))
    beneficiaries = set(procedure.performer_ids()) | {b for b, _ in linked}
    dates = {procedure.settlement_date} | {d for _, d in linked}
    keys = invalidate_beneficiaries(beneficiaries, dates)
    logger.debug(f"Procedure {procedure.pk} transition invalidated {len(keys)} cache keys")
    return keys
