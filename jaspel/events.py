"""
Outbound events of the fee-settlement engine.

Each event is a Django signal sent after the surrounding transaction commits,
so receivers (notification dispatchers, reporting) never observe rolled-back
settlements. Receivers get the payload as the ``event`` keyword argument.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Tuple
from django.db import transaction
from django.dispatch import Signal
import logging

logger = logging.getLogger(__name__)

fee_record_created = Signal()
procedure_validation_changed = Signal()
fee_record_rejected_cascade = Signal()
validation_status_reset = Signal()
settlement_failed = Signal()


@dataclass(frozen=True)
class FeeRecordCreated:
    fee_record_id: int
    beneficiary_id: str
    amount: Decimal
    category: str
    status: str
    source_procedure_id: Optional[int] = None


@dataclass(frozen=True)
class ProcedureValidationChanged:
    procedure_id: int
    new_status: str
    previous_status: str
    validator_id: Optional[str] = None
    settled_records: int = 0


@dataclass(frozen=True)
class FeeRecordRejectedCascade:
    procedure_id: int
    affected_count: int


@dataclass(frozen=True)
class ValidationStatusReset:
    model_type: str
    model_id: int
    original_status: str
    new_status: str
    changed_fields: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class SettlementFailed:
    patient_count_id: int
    reason: str
    attempts: int


def publish(signal, event):
    """Send ``event`` on ``signal`` once the current transaction commits."""

    def _send():
        # A failing receiver must not break the settlement that already committed
        for receiver, response in signal.send_robust(sender=type(event), event=event):
            if isinstance(response, Exception):
                logger.error(f"Receiver {receiver!r} failed on {type(event).__name__}: {response}")

    transaction.on_commit(_send)
