from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from django.utils import timezone
import logging

from . import conf
from .constants import PayerType
from .exceptions import InvalidFormula, NoActiveFormula

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class FormulaOverride:
    """Ad-hoc threshold formula used by previews; same attributes as FeeFormula."""

    threshold: int
    general_tier: Decimal
    insurance_tier: Decimal
    shift_window: str = "override"
    pk: int = None

    def tier_for(self, payer_type):
        if payer_type == PayerType.GENERAL:
            return self.general_tier
        if payer_type == PayerType.INSURANCE:
            return self.insurance_tier
        return None


def quantize_money(amount):
    """Round to the currency minor unit, half up."""
    return Decimal(amount).quantize(conf.currency_quantum(), rounding=ROUND_HALF_UP)


def _as_decimal(value, label):
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidFormula(f"{label} bukan angka yang valid: {value!r}")


class FeeCalculationService:
    """Fee arithmetic for procedure and daily patient-count settlement"""

    @staticmethod
    def compute_percentage_fee(tariff, formula) -> Decimal:
        """
        Fee for a procedure: ``tariff * percentage / 100``, half-up rounded.

        ``formula`` is a ProcedureType (its ``fee_percentage`` is used) or a
        bare percentage.
        """
        percentage = getattr(formula, "fee_percentage", formula)
        tariff = _as_decimal(tariff, "Tarif")
        percentage = _as_decimal(percentage, "Persentase")

        if tariff < 0:
            raise InvalidFormula(f"Tarif tidak boleh negatif: {tariff}", tariff=tariff)
        if percentage < 0 or percentage > HUNDRED:
            raise InvalidFormula(
                f"Persentase jasa harus di antara 0 dan 100, bukan {percentage}", percentage=percentage
            )

        return quantize_money(tariff * percentage / HUNDRED)

    @staticmethod
    def compute_threshold_fee(total_patients, subgroup_count, formula, payer_type) -> Decimal:
        """
        Fee for one payer subgroup of a daily patient count.

        The threshold is checked against the aggregate total, but once it is
        exceeded every patient in the subgroup is paid, not only those above it.
        """
        if total_patients < 0 or subgroup_count < 0:
            raise ValueError("Patient counts cannot be negative")

        threshold = getattr(formula, "threshold", None)
        if threshold is None or threshold < 0:
            raise InvalidFormula(f"Ambang batas formula tidak valid: {threshold}")

        tier = formula.tier_for(payer_type)
        if tier is None:
            raise InvalidFormula(f"Jenis pembayar tidak dikenal: {payer_type}", payer_type=payer_type)
        tier = _as_decimal(tier, "Tarif per pasien")
        if tier < 0:
            raise InvalidFormula(f"Tarif per pasien tidak boleh negatif: {tier}")

        if total_patients <= threshold:
            return quantize_money(0)
        return quantize_money(subgroup_count * tier)

    @staticmethod
    def compute_patient_count_fee(general_patients, insurance_patients, formula) -> dict:
        """
        Combined fee for a daily patient count with its breakdown.

        Returns:
            dict with keys total_patients, threshold, threshold_met,
            general_fee, insurance_fee, total and formula (id or None)
        """
        total_patients = general_patients + insurance_patients
        general_fee = FeeCalculationService.compute_threshold_fee(
            total_patients, general_patients, formula, PayerType.GENERAL
        )
        insurance_fee = FeeCalculationService.compute_threshold_fee(
            total_patients, insurance_patients, formula, PayerType.INSURANCE
        )
        return {
            'total_patients': total_patients,
            'general_patients': general_patients,
            'insurance_patients': insurance_patients,
            'threshold': formula.threshold,
            'threshold_met': total_patients > formula.threshold,
            'general_tier': quantize_money(formula.general_tier),
            'insurance_tier': quantize_money(formula.insurance_tier),
            'general_fee': general_fee,
            'insurance_fee': insurance_fee,
            'total': general_fee + insurance_fee,
            'formula': getattr(formula, "pk", None),
            'shift_window': formula.shift_window,
        }

    @staticmethod
    def resolve_shift_window(at=None) -> str:
        """Shift window for a wall-clock moment; hours outside every window fall back to morning."""
        at = at or timezone.now()
        if isinstance(at, datetime) and timezone.is_aware(at):
            at = timezone.localtime(at)
        moment = at.time() if isinstance(at, datetime) else at

        for window, (start, end) in conf.get("JASPEL_SHIFT_WINDOWS").items():
            if start <= moment < end:
                return window
        return conf.get("JASPEL_FALLBACK_SHIFT")

    @staticmethod
    def select_formula(shift_window=None, as_of=None):
        """
        Current active formula for a shift window.

        Falls back to any active formula, and raises NoActiveFormula when none
        is configured at all.
        """
        from .models import FeeFormula

        window = shift_window or FeeCalculationService.resolve_shift_window(as_of)
        active = FeeFormula.objects.filter(is_active=True).order_by("-updated_at", "-id")

        formula = active.filter(shift_window=window).first()
        if formula is None:
            formula = active.first()
            if formula is not None:
                logger.warning(
                    f"No active JASPEL formula for shift '{window}', falling back to formula {formula.pk} "
                    f"({formula.shift_window})"
                )
        if formula is None:
            raise NoActiveFormula(f"Tidak ada formula JASPEL aktif untuk shift '{window}'", shift_window=window)
        return formula
