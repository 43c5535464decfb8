"""
Integrity guard for FeeRecord writes.

Every create, update and delete of a FeeRecord goes through :class:`IntegrityGuard`
before it reaches the database. Hard rules raise; anomaly heuristics are
recorded on the record and logged, and only the dummy-pattern heuristic blocks
writes when the engine runs in production mode.
"""
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from django.db.models import Sum
from django.utils import timezone
import logging

from core.cache_service import cache_service
from core.permissions import VALIDATE_FEE, has_capability
from . import conf
from .cache import creation_counter_key
from .constants import (
    FLAG_DUMMY_PATTERN,
    FLAG_ORPHAN_CONSULTATION,
    FLAG_POSSIBLE_DUPLICATE,
    FLAG_RAPID_CREATION,
    FLAG_ROUND_NUMBER,
    FeeCategory,
    FeeStatus,
)
from .exceptions import (
    AmountOutOfRange,
    DateOutOfRange,
    InvalidCategory,
    InvalidTransition,
    RecordImmutable,
    SuspectedTestData,
    Unauthorized,
)
from .models import FeeRecord

logger = logging.getLogger(__name__)

ROUND_NUMBER_FLOOR = Decimal("100000")
ROUND_NUMBER_STEP = Decimal("10000")


def snapshot(record):
    """Values the update and delete rules compare against."""
    return {
        "pk": record.pk,
        "beneficiary_id": record.beneficiary_id,
        "settlement_date": record.settlement_date,
        "category": record.category,
        "nominal": record.nominal,
        "total": record.total,
        "validation_status": record.validation_status,
        "created_at": record.created_at,
    }


class IntegrityGuard:
    def __init__(self, clock=None):
        self.clock = clock or timezone.now

    # Field rules

    def validate_amount(self, nominal):
        try:
            nominal = Decimal(str(nominal))
        except (InvalidOperation, TypeError, ValueError):
            raise AmountOutOfRange(f"Nominal JASPEL tidak valid: {nominal!r}")
        if nominal <= 0:
            raise AmountOutOfRange("Nominal JASPEL harus lebih dari 0.", nominal=nominal)
        ceiling = conf.max_nominal()
        if nominal > ceiling:
            raise AmountOutOfRange(
                f"Nominal JASPEL melebihi batas maksimum {ceiling:,.0f}.", nominal=nominal, ceiling=ceiling
            )
        return nominal

    def validate_settlement_date(self, settlement_date):
        today = timezone.localdate(self.clock())
        earliest = today - timedelta(days=conf.get("JASPEL_DATE_PAST_DAYS"))
        latest = today + timedelta(days=conf.get("JASPEL_DATE_FUTURE_DAYS"))
        if settlement_date is None or settlement_date > latest:
            raise DateOutOfRange(
                f"Tanggal JASPEL tidak boleh lebih dari {conf.get('JASPEL_DATE_FUTURE_DAYS')} hari ke depan.",
                settlement_date=settlement_date,
            )
        if settlement_date < earliest:
            raise DateOutOfRange(
                "Tanggal JASPEL tidak boleh lebih dari satu tahun ke belakang.", settlement_date=settlement_date
            )

    def validate_category(self, category):
        if category not in FeeCategory.values:
            raise InvalidCategory(f"Jenis JASPEL tidak valid: {category!r}", category=category)

    def validate_fields(self, record):
        record.nominal = self.validate_amount(record.nominal)
        self.validate_settlement_date(record.settlement_date)
        self.validate_category(record.category)

    # Create

    def validate_create(self, record, actor=None):
        """
        Apply create defaults, enforce field rules and run anomaly detection.

        Flags are stored on ``record.anomaly_flags``. Raises SuspectedTestData
        for dummy patterns in production mode.
        """
        if not record.validation_status:
            record.validation_status = FeeStatus.PENDING
        if not record.created_by_id and actor is not None and getattr(actor, "is_authenticated", False):
            record.created_by = actor

        self.validate_fields(record)
        if record.total is None:
            record.total = record.nominal

        flags = self.detect_anomalies(record)
        if FLAG_DUMMY_PATTERN in flags and conf.production_mode():
            logger.error(
                f"Blocked suspected test data: beneficiary={record.beneficiary_id} "
                f"nominal={record.nominal} category={record.category}"
            )
            raise SuspectedTestData(nominal=record.nominal, beneficiary=record.beneficiary_id)

        record.anomaly_flags = sorted(set(record.anomaly_flags or []) | set(flags))
        if flags:
            logger.warning(
                f"JASPEL anomaly flags {flags} for beneficiary={record.beneficiary_id} "
                f"nominal={record.nominal} category={record.category}"
            )
        return flags

    def detect_anomalies(self, record):
        flags = []
        nominal = record.nominal

        if nominal >= ROUND_NUMBER_FLOOR and nominal % ROUND_NUMBER_STEP == 0:
            flags.append(FLAG_ROUND_NUMBER)

        if nominal in conf.dummy_patterns():
            flags.append(FLAG_DUMMY_PATTERN)

        if record.category == FeeCategory.SPECIAL_CONSULTATION and not record.source_procedure_id:
            flags.append(FLAG_ORPHAN_CONSULTATION)

        window_start = self.clock() - timedelta(seconds=conf.get("JASPEL_RAPID_CREATION_WINDOW"))
        recent = FeeRecord.objects.filter(beneficiary_id=record.beneficiary_id, created_at__gte=window_start).count()
        if recent > conf.get("JASPEL_RAPID_CREATION_LIMIT"):
            flags.append(FLAG_RAPID_CREATION)
        return flags

    def track_creation_rate(self, beneficiary_id):
        created = cache_service.bump(
            creation_counter_key(beneficiary_id), conf.get("JASPEL_RAPID_CREATION_WINDOW")
        ) + 1
        if created > conf.get("JASPEL_CREATION_ALERT_LIMIT"):
            logger.critical(
                f"ALERT: excessive JASPEL creation for beneficiary {beneficiary_id}: "
                f"{created} records within {conf.get('JASPEL_RAPID_CREATION_WINDOW')}s"
            )
        return created

    def after_create(self, record):
        """Post-insert checks; warnings only."""
        self.track_creation_rate(record.beneficiary_id)
        flags = []
        duplicates = FeeRecord.objects.filter(
            beneficiary_id=record.beneficiary_id,
            settlement_date=record.settlement_date,
            category=record.category,
            nominal=record.nominal,
        ).exclude(pk=record.pk)
        if duplicates.exists():
            flags.append(FLAG_POSSIBLE_DUPLICATE)
            logger.warning(
                f"Possible duplicate JASPEL {record.pk}: matches {list(duplicates.values_list('pk', flat=True))} "
                f"(beneficiary={record.beneficiary_id}, date={record.settlement_date}, nominal={record.nominal})"
            )
            record.anomaly_flags = sorted(set(record.anomaly_flags or []) | set(flags))
            FeeRecord.objects.filter(pk=record.pk).update(anomaly_flags=record.anomaly_flags)

        daily_total = (
            FeeRecord.objects.filter(beneficiary_id=record.beneficiary_id, settlement_date=record.settlement_date)
            .exclude(validation_status=FeeStatus.REJECTED)
            .aggregate(total=Sum("nominal"))["total"]
            or Decimal("0")
        )
        if daily_total > Decimal(str(conf.get("JASPEL_HIGH_DAILY_TOTAL"))):
            logger.warning(
                f"High daily JASPEL total for beneficiary {record.beneficiary_id} on "
                f"{record.settlement_date}: {daily_total}"
            )
        return flags

    # Update / delete

    def is_protected(self, original):
        if original["validation_status"] == FeeStatus.APPROVED:
            return True
        created_at = original.get("created_at")
        retention = timedelta(days=conf.get("JASPEL_RETENTION_DAYS"))
        return created_at is not None and created_at < self.clock() - retention

    def validate_update(self, record, original, actor=None):
        """
        Enforce protection of settled data on update.

        ``original`` is the :func:`snapshot` of the stored row. Approving
        requires the validate-fee capability and stamps the validator.
        """
        if original["validation_status"] == FeeStatus.APPROVED and record.nominal != original["nominal"]:
            logger.warning(
                f"Blocked nominal change on approved JASPEL {original['pk']}: "
                f"{original['nominal']} -> {record.nominal}"
            )
            raise RecordImmutable(
                "Nominal JASPEL yang sudah disetujui tidak dapat diubah.", fee_record=original["pk"]
            )

        if self.is_protected(original):
            logger.warning(
                f"Blocked update of protected JASPEL {original['pk']} "
                f"(status={original['validation_status']}, created_at={original['created_at']})"
            )
            raise RecordImmutable(fee_record=original["pk"])

        self.validate_fields(record)
        if record.nominal != original["nominal"] and (
            record.total is None or record.total == original["total"]
        ):
            record.total = record.nominal

        if record.validation_status not in FeeStatus.values:
            raise InvalidTransition(f"Status validasi tidak valid: {record.validation_status!r}")

        becoming_approved = (
            record.validation_status == FeeStatus.APPROVED
            and original["validation_status"] != FeeStatus.APPROVED
        )
        if becoming_approved:
            if not has_capability(actor, VALIDATE_FEE):
                logger.warning(
                    f"Unauthorized approval attempt on JASPEL {original['pk']} by "
                    f"{getattr(actor, 'pk', None)}"
                )
                raise Unauthorized(fee_record=original["pk"])
            record.validated_by = actor
            record.validated_at = self.clock()

    def validate_delete(self, record, actor=None):
        logger.warning(
            f"Deletion requested for JASPEL {record.pk} (status={record.validation_status}, "
            f"nominal={record.nominal}) by {getattr(actor, 'pk', None)}"
        )
        if record.validation_status == FeeStatus.APPROVED:
            raise RecordImmutable("JASPEL yang sudah disetujui tidak dapat dihapus.", fee_record=record.pk)
