"""
The only write path for FeeRecord rows.

Each operation runs as explicit stages: validate through the integrity guard,
persist inside a transaction, publish events after commit, and keep the
beneficiary caches coherent.
"""
from django.db import IntegrityError, transaction
from django.utils import timezone
import logging

from . import cache as jaspel_cache
from .constants import FeeCategory, FeeStatus, SIGNIFICANT_FIELDS
from .events import (
    FeeRecordCreated,
    FeeRecordRejectedCascade,
    ValidationStatusReset,
    fee_record_created,
    fee_record_rejected_cascade,
    publish,
    validation_status_reset,
)
from .exceptions import FeeValidationError
from .integrity import IntegrityGuard, snapshot
from .models import FeeRecord

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("nominal", "total", "category", "settlement_date", "validation_status", "note")


class FeeRecordWriter:
    """Validate -> Persist -> Emit -> Invalidate for every FeeRecord mutation"""

    def __init__(self, guard=None):
        self.guard = guard or IntegrityGuard()

    def create(
        self,
        *,
        beneficiary,
        settlement_date,
        category,
        nominal,
        actor=None,
        source_procedure=None,
        source_patient_count=None,
        validation_status=FeeStatus.PENDING,
        validated_by=None,
        validated_at=None,
        total=None,
        note="",
        ignore_conflicts=False,
    ):
        """
        Create a FeeRecord through the guard.

        With ``ignore_conflicts`` a row that already exists for the same natural
        key (procedure + beneficiary, or doctor + date for daily patient counts)
        is left alone and None is returned.
        """
        record = FeeRecord(
            beneficiary=beneficiary,
            settlement_date=settlement_date,
            category=category,
            nominal=nominal,
            total=total,
            source_procedure=source_procedure,
            source_patient_count=source_patient_count,
            validation_status=validation_status,
            validated_by=validated_by,
            validated_at=validated_at,
            note=note,
        )

        with transaction.atomic():
            self.guard.validate_create(record, actor)

            try:
                with transaction.atomic():
                    record.save()
            except IntegrityError:
                if ignore_conflicts and self._natural_key_taken(record):
                    logger.info(
                        f"JASPEL already settled for beneficiary={record.beneficiary_id} "
                        f"procedure={record.source_procedure_id} date={record.settlement_date} "
                        f"category={record.category}; skipping"
                    )
                    return None
                raise

            self.guard.after_create(record)
            logger.info(
                f"JASPEL created: id={record.pk} beneficiary={record.beneficiary_id} "
                f"category={record.category} nominal={record.nominal} status={record.validation_status}"
            )

            publish(
                fee_record_created,
                FeeRecordCreated(
                    fee_record_id=record.pk,
                    beneficiary_id=str(record.beneficiary_id),
                    amount=record.nominal,
                    category=record.category,
                    status=record.validation_status,
                    source_procedure_id=record.source_procedure_id,
                ),
            )
            values = (record.beneficiary_id, record.settlement_date, record.validation_status, record.nominal)
            transaction.on_commit(lambda: jaspel_cache.record_created(*values))

        return record

    def update(self, record, changes, actor=None):
        """Apply ``changes`` (field -> value) to a record under the update guard."""
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise FeeValidationError(f"Field tidak dapat diubah: {', '.join(sorted(unknown))}")

        with transaction.atomic():
            locked = FeeRecord.objects.select_for_update().get(pk=record.pk)
            original = snapshot(locked)
            for field, value in changes.items():
                setattr(locked, field, value)

            self.guard.validate_update(locked, original, actor)
            locked.save()

            changed = [f for f in SIGNIFICANT_FIELDS if getattr(locked, f) != original[f]]
            if changed:
                logger.info(
                    f"JASPEL {locked.pk} significant change: "
                    + ", ".join(f"{f}: {original[f]} -> {getattr(locked, f)}" for f in changed)
                )
            if changed or locked.settlement_date != original["settlement_date"]:
                beneficiaries = {locked.beneficiary_id}
                dates = {locked.settlement_date, original["settlement_date"]}
                transaction.on_commit(lambda: jaspel_cache.invalidate_beneficiaries(beneficiaries, dates))

        return locked

    def delete(self, record, actor=None):
        with transaction.atomic():
            locked = FeeRecord.objects.select_for_update().get(pk=record.pk)
            self.guard.validate_delete(locked, actor)
            values = (locked.beneficiary_id, locked.settlement_date, locked.validation_status, locked.nominal)
            locked.delete()
            logger.info(f"JASPEL {record.pk} deleted by {getattr(actor, 'pk', None)}")
            transaction.on_commit(lambda: jaspel_cache.record_deleted(*values))

    def reset_status(self, record, actor=None, note=""):
        """
        Return a record to pending for an audit correction.

        Bypasses the protection rule; the only write besides the rejection
        cascade allowed to touch approved records.
        """
        with transaction.atomic():
            locked = FeeRecord.objects.select_for_update().get(pk=record.pk)
            original_status = locked.validation_status
            audit_note = f"[Reset audit {timezone.now():%Y-%m-%d %H:%M}] {note}".strip()
            locked.validation_status = FeeStatus.PENDING
            locked.validated_by = None
            locked.validated_at = None
            locked.note = f"{locked.note}\n{audit_note}".strip()
            FeeRecord.objects.filter(pk=locked.pk).update(
                validation_status=locked.validation_status,
                validated_by=None,
                validated_at=None,
                note=locked.note,
                updated_at=timezone.now(),
            )
            logger.warning(
                f"JASPEL {locked.pk} status reset {original_status} -> pending by {getattr(actor, 'pk', None)}"
            )

            publish(
                validation_status_reset,
                ValidationStatusReset(
                    model_type="fee_record",
                    model_id=locked.pk,
                    original_status=original_status,
                    new_status=FeeStatus.PENDING,
                ),
            )
            beneficiaries, dates = {locked.beneficiary_id}, {locked.settlement_date}
            transaction.on_commit(lambda: jaspel_cache.invalidate_beneficiaries(beneficiaries, dates))
        return locked

    def cascade_reject(self, procedure, actor=None, comment=""):
        """
        Reject every record settled from ``procedure``, whatever its status.

        Rejection of the parent procedure overrides record protection.
        Returns the number of records affected.
        """
        note = f"Ditolak otomatis: tindakan #{procedure.pk} ditolak."
        if comment:
            note += f" Alasan: {comment}"
        with transaction.atomic():
            count = self._reject_linked(
                FeeRecord.objects.filter(source_procedure=procedure), actor, note, f"procedure {procedure.pk}"
            )
            if count:
                publish(
                    fee_record_rejected_cascade,
                    FeeRecordRejectedCascade(procedure_id=procedure.pk, affected_count=count),
                )
        return count

    def cascade_reject_patient_count(self, patient_count, actor=None, comment=""):
        """Same override as :meth:`cascade_reject` for records settled from a daily patient count."""
        note = f"Ditolak otomatis: jumlah pasien harian #{patient_count.pk} ditolak."
        if comment:
            note += f" Alasan: {comment}"
        with transaction.atomic():
            return self._reject_linked(
                FeeRecord.objects.filter(source_patient_count=patient_count),
                actor,
                note,
                f"patient count {patient_count.pk}",
            )

    def _reject_linked(self, queryset, actor, note, source_label):
        linked = queryset.select_for_update()
        affected = list(linked.values_list("pk", "beneficiary_id", "settlement_date", "validation_status"))
        if not affected:
            return 0

        now = timezone.now()
        count = linked.update(
            validation_status=FeeStatus.REJECTED,
            validated_by=actor,
            validated_at=now,
            note=note,
            updated_at=now,
        )
        for pk, _, _, previous in affected:
            logger.info(f"JASPEL {pk} cascade-rejected ({previous} -> rejected) with {source_label}")

        beneficiaries = {row[1] for row in affected}
        dates = {row[2] for row in affected}
        transaction.on_commit(lambda: jaspel_cache.invalidate_beneficiaries(beneficiaries, dates))
        return count

    def _natural_key_taken(self, record):
        if record.source_procedure_id:
            return FeeRecord.objects.filter(
                source_procedure_id=record.source_procedure_id, beneficiary_id=record.beneficiary_id
            ).exists()
        if record.category == FeeCategory.PATIENT_COUNT_DAILY:
            return FeeRecord.objects.filter(
                beneficiary_id=record.beneficiary_id,
                settlement_date=record.settlement_date,
                category=record.category,
            ).exists()
        return False


fee_record_writer = FeeRecordWriter()
