"""
Celery tasks for asynchronous JASPEL settlement

Daily patient counts are settled here after approval. Tasks are idempotent:
a re-run for input that is already settled creates nothing.
"""

import logging
from datetime import timedelta
from typing import Dict, Any
from celery import shared_task
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from . import conf
from .events import SettlementFailed, publish, settlement_failed
from .exceptions import ConfigurationError, JaspelError
from .settlement import patient_count_settlement_service, unsettled_patient_counts

logger = logging.getLogger(__name__)

def _max_attempts():
    return conf.get("JASPEL_SETTLEMENT_MAX_ATTEMPTS")


def _backoff(retries):
    # 10s, 30s, 90s with the default base
    return conf.get("JASPEL_SETTLEMENT_RETRY_BASE") * (3 ** retries)


def _deadline_passed(first_attempt_at):
    started = parse_datetime(first_attempt_at) if first_attempt_at else None
    if started is None:
        return False
    return timezone.now() - started > timedelta(seconds=conf.get("JASPEL_SETTLEMENT_DEADLINE"))


@shared_task(bind=True, default_retry_delay=10, acks_late=True,
             soft_time_limit=120, time_limit=180)
def settle_daily_patient_count(self, patient_count_id: int, first_attempt_at: str = None) -> Dict[str, Any]:
    """
    Settle an approved daily patient count (batch settlement job)

    Args:
        patient_count_id: DailyPatientCount primary key
        first_attempt_at: ISO timestamp of the first attempt, carried across retries

    Returns:
        Dict describing the outcome
    """
    first_attempt_at = first_attempt_at or timezone.now().isoformat()
    attempt = self.request.retries + 1
    max_attempts = _max_attempts()

    try:
        record = patient_count_settlement_service.settle(patient_count_id)
        if record is None:
            return {'patient_count': patient_count_id, 'settled': False}
        return {
            'patient_count': patient_count_id,
            'settled': True,
            'fee_record': record.pk,
            'nominal': str(record.nominal),
        }

    except ConfigurationError as e:
        # Needs an operator to fix the formula; retrying cannot help
        logger.critical(
            f"JASPEL formula configuration error settling patient count {patient_count_id}: {e.message}"
        )
        _report_failure(patient_count_id, e.code, attempt)
        return {'patient_count': patient_count_id, 'settled': False, 'error': e.code}

    except JaspelError as e:
        logger.error(f"Settlement of patient count {patient_count_id} rejected by integrity guard: {e.message}")
        return {'patient_count': patient_count_id, 'settled': False, 'error': e.code}

    except Exception as e:
        logger.error(
            f"Settlement attempt {attempt}/{max_attempts} failed for patient count {patient_count_id}: {str(e)}",
            exc_info=True,
        )
        if attempt >= max_attempts or _deadline_passed(first_attempt_at):
            logger.critical(
                f"JASPEL settlement permanently failed for patient count {patient_count_id} after "
                f"{attempt} attempts; manual reconciliation required"
            )
            _report_failure(patient_count_id, str(e), attempt)
            raise

        raise self.retry(
            exc=e,
            countdown=_backoff(self.request.retries),
            max_retries=max_attempts - 1,
            args=(patient_count_id,),
            kwargs={'first_attempt_at': first_attempt_at},
        )


def _report_failure(patient_count_id, reason, attempts):
    publish(
        settlement_failed,
        SettlementFailed(patient_count_id=patient_count_id, reason=reason, attempts=attempts),
    )


@shared_task(bind=True, default_retry_delay=10, acks_late=True)
def settle_approved_procedure(self, procedure_id: int) -> Dict[str, Any]:
    """Settle an approved procedure whose inline settlement did not complete"""
    from django.db import transaction
    from clinical.models import Procedure, ValidationStatus
    from .validation import ProcedureSettlementService

    try:
        procedure = Procedure.objects.select_related(
            'procedure_type', 'doctor', 'paramedic', 'non_paramedic', 'validated_by'
        ).filter(pk=procedure_id).first()
        if procedure is None or procedure.validation_status != ValidationStatus.APPROVED:
            logger.info(f"Procedure {procedure_id} is not approved (anymore); skipping settlement")
            return {'procedure': procedure_id, 'settled': 0}

        with transaction.atomic():
            records = ProcedureSettlementService().settle(procedure)
        return {'procedure': procedure_id, 'settled': len(records), 'fee_records': [r.pk for r in records]}

    except ConfigurationError as e:
        logger.critical(f"JASPEL formula configuration error settling procedure {procedure_id}: {e.message}")
        return {'procedure': procedure_id, 'settled': 0, 'error': e.code}

    except JaspelError as e:
        logger.error(f"Settlement of procedure {procedure_id} rejected by integrity guard: {e.message}")
        return {'procedure': procedure_id, 'settled': 0, 'error': e.code}

    except Exception as e:
        logger.error(f"Settlement failed for procedure {procedure_id}: {str(e)}", exc_info=True)
        max_attempts = _max_attempts()
        if self.request.retries + 1 >= max_attempts:
            logger.critical(
                f"JASPEL settlement permanently failed for procedure {procedure_id}; manual reconciliation required"
            )
            raise
        raise self.retry(exc=e, countdown=_backoff(self.request.retries), max_retries=max_attempts - 1)


@shared_task
def requeue_unsettled_patient_counts(days: int = 7) -> Dict[str, Any]:
    """
    Re-queue settlement for approved patient counts that still have no fee record

    Scheduled daily by Celery Beat as a safety net for lost or failed jobs.
    """
    today = timezone.localdate()
    pending = list(
        unsettled_patient_counts(today - timedelta(days=days), today).values_list('pk', flat=True)
    )
    for patient_count_id in pending:
        settle_daily_patient_count.delay(patient_count_id)

    if pending:
        logger.warning(f"Re-queued settlement for {len(pending)} unsettled patient counts: {pending}")
    return {'requeued': pending}
