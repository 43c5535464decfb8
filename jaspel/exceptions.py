"""Exception hierarchy for the JASPEL fee-settlement engine."""


class JaspelError(Exception):
    """Base error for the fee-settlement engine."""

    code = "jaspel_error"
    default_message = "JASPEL operation failed."

    def __init__(self, message=None, **context):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def as_dict(self):
        payload = {"code": self.code, "message": self.message}
        if self.context:
            payload["context"] = {k: str(v) for k, v in self.context.items()}
        return payload


class FeeValidationError(JaspelError):
    """The guard rejected the write; correctable by the caller."""

    code = "validation_error"


class AmountOutOfRange(FeeValidationError):
    code = "amount_out_of_range"
    default_message = "Nominal JASPEL harus lebih dari 0 dan tidak melebihi batas maksimum."


class DateOutOfRange(FeeValidationError):
    code = "date_out_of_range"
    default_message = "Tanggal JASPEL berada di luar rentang yang diizinkan."


class InvalidCategory(FeeValidationError):
    code = "invalid_category"
    default_message = "Jenis JASPEL tidak valid."


class SuspectedTestData(FeeValidationError):
    code = "suspected_test_data"
    default_message = "Nominal terdeteksi sebagai data uji (dummy) dan diblokir di mode produksi."


class InvalidTransition(FeeValidationError):
    code = "invalid_transition"
    default_message = "Transisi status validasi tidak diizinkan."


class StaleProcedureError(FeeValidationError):
    """Optimistic version check failed: the procedure changed since it was read."""

    code = "stale_procedure"
    default_message = "Data tindakan telah berubah. Muat ulang lalu coba lagi."


class AuthorizationError(JaspelError):
    code = "authorization_error"


class Unauthorized(AuthorizationError):
    code = "unauthorized"
    default_message = "Anda tidak memiliki izin untuk memvalidasi JASPEL."


class ImmutabilityError(JaspelError):
    code = "immutability_error"


class RecordImmutable(ImmutabilityError):
    code = "record_immutable"
    default_message = "JASPEL yang sudah disetujui atau melewati masa retensi tidak dapat diubah."


class ConfigurationError(JaspelError):
    """Missing or malformed fee formula; needs operator action."""

    code = "configuration_error"


class NoActiveFormula(ConfigurationError):
    code = "no_active_formula"
    default_message = "Tidak ada formula JASPEL aktif."


class InvalidFormula(ConfigurationError):
    code = "invalid_formula"
    default_message = "Formula JASPEL tidak valid."


class TransientError(JaspelError):
    """Queue or storage failure during batch settlement; retried automatically."""

    code = "transient_error"
    default_message = "Gangguan sementara saat settlement JASPEL."
