from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView
from drf_spectacular.utils import extend_schema, OpenApiParameter, OpenApiResponse
from django.shortcuts import get_object_or_404
from django.utils import timezone

from clinical.models import DailyPatientCount, Procedure
from core.api_mixins import DomainErrorMixin, ParticipantScopedMixin
from core.permissions import HasCapability, VALIDATE_FEE, VALIDATE_PROCEDURE, has_capability
from .cache import beneficiary_month_summary
from .exceptions import (
    AuthorizationError,
    ConfigurationError,
    FeeValidationError,
    ImmutabilityError,
    Unauthorized,
)
from .ledger import fee_record_writer
from .models import FeeRecord
from .serializers import (
    FeePreviewSerializer,
    FeeRecordSerializer,
    FeeRecordUpdateSerializer,
    PatientCountStatusSerializer,
    ProcedureStatusSerializer,
    ProcedureValidationSerializer,
    RecalculateSerializer,
    SummaryQuerySerializer,
    ValidationNoteSerializer,
)
from .settlement import approve_patient_count, preview_fee, recalculate_settlement, reject_patient_count
from .validation import reset_procedure_validation, submit_procedure_validation

JASPEL_ERROR_STATUS = (
    (FeeValidationError, status.HTTP_400_BAD_REQUEST),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (ImmutabilityError, status.HTTP_409_CONFLICT),
    (ConfigurationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
)


class JaspelAPIView(DomainErrorMixin, APIView):
    """Base view for engine operations; maps engine errors to HTTP statuses"""
    permission_classes = [IsAuthenticated, HasCapability]
    error_status_map = JASPEL_ERROR_STATUS


@extend_schema(tags=['JASPEL'])
class FeeRecordViewSet(DomainErrorMixin, ParticipantScopedMixin, mixins.ListModelMixin,
                       mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    """Fee records; participants without the validate-fee capability only see their own"""
    queryset = FeeRecord.objects.select_related('beneficiary', 'validated_by').all()
    serializer_class = FeeRecordSerializer
    permission_classes = [IsAuthenticated]
    error_status_map = JASPEL_ERROR_STATUS
    scope_field = 'beneficiary'
    scope_bypass_capability = VALIDATE_FEE
    # Records are created only by settlement, never over the API
    http_method_names = ['get', 'patch', 'delete', 'head', 'options']
    # Amount and category edits need the validate-fee capability
    financial_fields = ('nominal', 'total', 'category')

    def get_queryset(self):
        queryset = super().get_queryset()
        params = self.request.query_params
        if params.get('status'):
            queryset = queryset.filter(validation_status=params['status'])
        if params.get('category'):
            queryset = queryset.filter(category=params['category'])
        if params.get('beneficiary'):
            queryset = queryset.filter(beneficiary_id=params['beneficiary'])
        if params.get('start_date'):
            queryset = queryset.filter(settlement_date__gte=params['start_date'])
        if params.get('end_date'):
            queryset = queryset.filter(settlement_date__lte=params['end_date'])
        return queryset

    @extend_schema(request=FeeRecordUpdateSerializer, responses={200: FeeRecordSerializer, 409: dict, 403: dict})
    def partial_update(self, request, pk=None):
        """Update a fee record through the integrity guard"""
        record = self.get_object()
        serializer = FeeRecordUpdateSerializer(data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        touched = [f for f in self.financial_fields if f in serializer.validated_data]
        if touched and not has_capability(request.user, VALIDATE_FEE):
            raise Unauthorized(
                f"Perubahan {', '.join(touched)} JASPEL hanya dapat dilakukan oleh bendahara.", fields=touched
            )

        updated = fee_record_writer.update(record, serializer.validated_data, actor=request.user)
        return Response(FeeRecordSerializer(updated).data)

    @extend_schema(responses={204: None, 409: dict})
    def destroy(self, request, pk=None):
        """Delete a fee record; approved records cannot be deleted"""
        record = self.get_object()
        fee_record_writer.delete(record, actor=request.user)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @extend_schema(
        summary="Monthly JASPEL summary for a beneficiary",
        parameters=[
            OpenApiParameter('beneficiary', str, description='Participant uid (defaults to the caller)'),
            OpenApiParameter('year', int),
            OpenApiParameter('month', int),
        ],
        responses={200: OpenApiResponse(description="Cached monthly aggregate")},
    )
    @action(detail=False, methods=['get'])
    def summary(self, request):
        query = SummaryQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        today = timezone.localdate()
        beneficiary_id = query.validated_data.get('beneficiary') or request.user.pk
        if beneficiary_id != request.user.pk and not has_capability(request.user, VALIDATE_FEE):
            raise Unauthorized("Anda hanya dapat melihat ringkasan JASPEL milik sendiri.")

        year = query.validated_data.get('year', today.year)
        month = query.validated_data.get('month', today.month)
        data = dict(beneficiary_month_summary(beneficiary_id, year, month))
        data.update({'beneficiary': str(beneficiary_id), 'year': year, 'month': month})
        return Response(data)


@extend_schema(tags=['JASPEL'])
class ProcedureValidationView(JaspelAPIView):
    required_capability = VALIDATE_PROCEDURE

    @extend_schema(
        summary="Approve or reject a procedure",
        request=ProcedureValidationSerializer,
        responses={200: dict, 400: dict, 403: dict},
    )
    def post(self, request, pk):
        procedure = get_object_or_404(Procedure, pk=pk)
        serializer = ProcedureValidationSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = submit_procedure_validation(
            procedure.pk,
            data['decision'],
            request.user,
            comment=data.get('comment', ''),
            expected_version=data.get('expected_version'),
        )
        if data['decision'] == 'approve':
            result['message'] = 'Tindakan disetujui. JASPEL akan tercatat setelah proses settlement.'
        else:
            result['message'] = 'Tindakan ditolak.'
        return Response(result)


@extend_schema(tags=['JASPEL'])
class ProcedureResetView(JaspelAPIView):
    required_capability = VALIDATE_PROCEDURE

    @extend_schema(summary="Return a procedure to pending", request=ValidationNoteSerializer,
                   responses={200: ProcedureStatusSerializer})
    def post(self, request, pk):
        procedure = get_object_or_404(Procedure, pk=pk)
        serializer = ValidationNoteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        procedure = reset_procedure_validation(procedure.pk, request.user, serializer.validated_data['note'])
        return Response(ProcedureStatusSerializer(procedure).data)


@extend_schema(tags=['JASPEL'])
class PatientCountApproveView(JaspelAPIView):
    required_capability = VALIDATE_PROCEDURE

    @extend_schema(summary="Approve a daily patient count", request=ValidationNoteSerializer,
                   responses={200: PatientCountStatusSerializer})
    def post(self, request, pk):
        patient_count = get_object_or_404(DailyPatientCount, pk=pk)
        serializer = ValidationNoteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        patient_count = approve_patient_count(patient_count.pk, request.user, serializer.validated_data['note'])
        return Response(PatientCountStatusSerializer(patient_count).data)


@extend_schema(tags=['JASPEL'])
class PatientCountRejectView(JaspelAPIView):
    required_capability = VALIDATE_PROCEDURE

    @extend_schema(summary="Reject a daily patient count", request=ValidationNoteSerializer,
                   responses={200: PatientCountStatusSerializer})
    def post(self, request, pk):
        patient_count = get_object_or_404(DailyPatientCount, pk=pk)
        serializer = ValidationNoteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        patient_count = reject_patient_count(patient_count.pk, request.user, serializer.validated_data['note'])
        return Response(PatientCountStatusSerializer(patient_count).data)


@extend_schema(tags=['JASPEL'])
class FeePreviewView(JaspelAPIView):
    """Calculate a fee without persisting anything"""

    @extend_schema(summary="Preview a JASPEL amount", request=FeePreviewSerializer, responses={200: dict, 422: dict})
    def post(self, request):
        serializer = FeePreviewSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        override = data.get('formula_override')
        if data.get('procedure') is not None:
            override = data.get('percentage_override')
        result = preview_fee(
            procedure=data.get('procedure'),
            patient_count=data.get('patient_count'),
            formula_override=override,
            general_patients=data.get('general_patients'),
            insurance_patients=data.get('insurance_patients'),
        )
        return Response(result)


@extend_schema(tags=['JASPEL'])
class RecalculateSettlementView(JaspelAPIView):
    required_capability = VALIDATE_FEE

    @extend_schema(summary="Invalidate caches and re-queue missing settlements", request=RecalculateSerializer,
                   responses={202: dict})
    def post(self, request):
        serializer = RecalculateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        result = recalculate_settlement(data['beneficiary'], data['start_date'], data['end_date'])
        return Response(result, status=status.HTTP_202_ACCEPTED)
