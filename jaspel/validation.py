"""
Validation state machine for procedures (tindakan).

A procedure moves from pending (or any prior decision) to approved or
rejected. Approval settles a fee for each paid performer; rejection cascades
to every fee record settled from the procedure. Settlement is best effort:
the approval itself always stands.
"""
from django.db import transaction
from django.db.models import F
from django.utils import timezone
import logging

from clinical.models import Procedure, ValidationStatus
from . import cache as jaspel_cache
from .calculator import FeeCalculationService
from .constants import Decision, FeeStatus, ROLE_CATEGORY_PRIORITY
from .events import (
    ProcedureValidationChanged,
    ValidationStatusReset,
    procedure_validation_changed,
    publish,
    validation_status_reset,
)
from .exceptions import ConfigurationError, InvalidTransition, JaspelError, StaleProcedureError
from .ledger import fee_record_writer
from .models import FeeRecord

logger = logging.getLogger(__name__)

DECISION_STATUS = {
    Decision.APPROVE: ValidationStatus.APPROVED,
    Decision.REJECT: ValidationStatus.REJECTED,
}


def primary_performer(procedure):
    """
    Performer a procedure is settled to, with its fee category.

    Procedures are attributed to their primary performer: the first role, in
    doctor > paramedic > non-paramedic order, that has a paid share, or failing
    that the first role with a performer at all. Returns ``(None, category)``
    when nobody performed the procedure.
    """
    shares = {role: (performer, share) for role, performer, share in procedure.performer_shares()}
    for role, category in ROLE_CATEGORY_PRIORITY:
        performer, share = shares[role]
        if performer is not None and share > 0:
            return performer, category
    for role, category in ROLE_CATEGORY_PRIORITY:
        if shares[role][0] is not None:
            return shares[role][0], category
    return None, ROLE_CATEGORY_PRIORITY[0][1]


class ProcedureSettlementService:
    """Creates the fee record owed for an approved procedure"""

    def __init__(self, writer=None):
        self.writer = writer or fee_record_writer

    def settle(self, procedure):
        """
        Settle an approved procedure; returns the records created.

        One record per procedure, for the primary performer, so the amount
        settled never exceeds ``tariff * percentage``. Idempotent: nothing is
        created when the beneficiary is already settled, and the storage
        constraint absorbs concurrent attempts.
        """
        beneficiary, category = primary_performer(procedure)
        if beneficiary is None:
            logger.warning(f"Procedure {procedure.pk} approved without any performer; nothing to settle")
            return []

        if FeeRecord.objects.filter(source_procedure=procedure, beneficiary=beneficiary).exists():
            logger.info(f"JASPEL already exists for procedure {procedure.pk} and beneficiary {beneficiary.pk}")
            return []

        amount = FeeCalculationService.compute_percentage_fee(procedure.tariff, procedure.procedure_type)
        if amount <= 0:
            logger.warning(
                f"Procedure {procedure.pk} approved but no JASPEL amount calculated "
                f"(tariff={procedure.tariff}, percentage={procedure.procedure_type.fee_percentage})"
            )
            return []

        record = self.writer.create(
            beneficiary=beneficiary,
            settlement_date=procedure.settlement_date,
            category=category,
            nominal=amount,
            actor=procedure.validated_by,
            source_procedure=procedure,
            validation_status=FeeStatus.APPROVED,
            validated_by=procedure.validated_by,
            validated_at=procedure.validated_at or timezone.now(),
            note=f"AUTO-CREATED: JASPEL {procedure.procedure_type.name} - {category} - tervalidasi",
            ignore_conflicts=True,
        )
        return [record] if record is not None else []


class ProcedureValidationService:
    def __init__(self, settlement=None, writer=None):
        self.writer = writer or fee_record_writer
        self.settlement = settlement or ProcedureSettlementService(self.writer)

    def submit(self, procedure_id, decision, validator, comment="", expected_version=None):
        """
        Approve or reject a procedure.

        Returns a dict with the new status, the new version and the ids of the
        fee records created or rejected. Raises InvalidTransition for an
        unknown decision and StaleProcedureError when ``expected_version`` no
        longer matches.
        """
        try:
            new_status = DECISION_STATUS[Decision(decision)]
        except ValueError:
            raise InvalidTransition(f"Keputusan validasi tidak dikenal: {decision!r}", decision=decision)

        settlement_error = None
        with transaction.atomic():
            procedure, previous_status = self._transition(procedure_id, new_status, validator, comment, expected_version)

            settled, rejected_count = [], 0
            if new_status == ValidationStatus.APPROVED:
                settled, settlement_error = self._settle_best_effort(procedure)
            else:
                rejected_count = self.writer.cascade_reject(procedure, validator, comment)

            logger.info(
                f"Procedure {procedure.pk} {previous_status} -> {new_status} by {getattr(validator, 'pk', None)} "
                f"(version {procedure.version}, settled={len(settled)}, rejected={rejected_count})"
            )
            publish(
                procedure_validation_changed,
                ProcedureValidationChanged(
                    procedure_id=procedure.pk,
                    new_status=new_status,
                    previous_status=previous_status,
                    validator_id=str(validator.pk) if validator is not None else None,
                    settled_records=len(settled),
                ),
            )
            transaction.on_commit(lambda: jaspel_cache.invalidate_for_procedure(procedure))

        return {
            "procedure": procedure.pk,
            "validation_status": new_status,
            "version": procedure.version,
            "fee_records": [record.pk for record in settled],
            "rejected_fee_records": rejected_count,
            "settlement_error": settlement_error,
        }

    def reset(self, procedure_id, actor=None, note=""):
        """Return a decided procedure to pending for re-validation."""
        with transaction.atomic():
            procedure = Procedure.objects.select_for_update().get(pk=procedure_id)
            previous_status = procedure.validation_status
            if previous_status == ValidationStatus.PENDING:
                return procedure

            procedure.validation_status = ValidationStatus.PENDING
            procedure.validated_by = None
            procedure.validated_at = None
            procedure.validation_comment = note or "Validasi direset untuk koreksi."
            procedure.version += 1
            Procedure.objects.filter(pk=procedure.pk).update(
                validation_status=procedure.validation_status,
                validated_by=None,
                validated_at=None,
                validation_comment=procedure.validation_comment,
                version=procedure.version,
                updated_at=timezone.now(),
            )
            logger.warning(
                f"Procedure {procedure.pk} validation reset {previous_status} -> pending by {getattr(actor, 'pk', None)}"
            )
            publish(
                validation_status_reset,
                ValidationStatusReset(
                    model_type="procedure",
                    model_id=procedure.pk,
                    original_status=previous_status,
                    new_status=ValidationStatus.PENDING,
                ),
            )
            transaction.on_commit(lambda: jaspel_cache.invalidate_for_procedure(procedure))
        return procedure

    def _transition(self, procedure_id, new_status, validator, comment, expected_version):
        procedure = (
            Procedure.objects.select_for_update()
            .select_related("procedure_type", "doctor", "paramedic", "non_paramedic")
            .get(pk=procedure_id)
        )
        if expected_version is not None and procedure.version != int(expected_version):
            raise StaleProcedureError(
                procedure=procedure.pk, expected_version=expected_version, current_version=procedure.version
            )

        now = timezone.now()
        updated = Procedure.objects.filter(pk=procedure.pk, version=procedure.version).update(
            validation_status=new_status,
            validated_by=validator,
            validated_at=now,
            validation_comment=comment or "",
            version=F("version") + 1,
            updated_at=now,
        )
        if not updated:
            raise StaleProcedureError(procedure=procedure.pk, current_version=procedure.version)

        previous_status = procedure.validation_status
        procedure.refresh_from_db()
        return procedure, previous_status

    def _settle_best_effort(self, procedure):
        try:
            with transaction.atomic():
                return self.settlement.settle(procedure), None
        except ConfigurationError as e:
            logger.critical(
                f"JASPEL formula misconfigured; procedure {procedure.pk} approved but unsettled: {e.message}"
            )
            return [], e.code
        except JaspelError as e:
            logger.error(f"Procedure {procedure.pk} approved but settlement rejected by guard: {e.message}")
            return [], e.code
        except Exception as e:
            logger.exception(f"Unexpected settlement failure for procedure {procedure.pk}; queued for retry: {str(e)}")
            from .tasks import settle_approved_procedure

            transaction.on_commit(lambda: settle_approved_procedure.delay(procedure.pk))
            return [], "settlement_deferred"


procedure_validation_service = ProcedureValidationService()


def submit_procedure_validation(procedure_id, decision, validator, comment="", expected_version=None):
    return procedure_validation_service.submit(procedure_id, decision, validator, comment, expected_version)


def reset_procedure_validation(procedure_id, actor=None, note=""):
    return procedure_validation_service.reset(procedure_id, actor, note)
