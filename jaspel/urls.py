from django.urls import path, include
from rest_framework.routers import DefaultRouter
from . import views

app_name = 'jaspel'

router = DefaultRouter()
router.register(r'fee-records', views.FeeRecordViewSet, basename='fee-record')

urlpatterns = [
    path('', include(router.urls)),
    path('procedures/<int:pk>/validation/', views.ProcedureValidationView.as_view(), name='procedure-validation'),
    path('procedures/<int:pk>/reset/', views.ProcedureResetView.as_view(), name='procedure-reset'),
    path('patient-counts/<int:pk>/approve/', views.PatientCountApproveView.as_view(), name='patient-count-approve'),
    path('patient-counts/<int:pk>/reject/', views.PatientCountRejectView.as_view(), name='patient-count-reject'),
    path('preview/', views.FeePreviewView.as_view(), name='fee-preview'),
    path('recalculate/', views.RecalculateSettlementView.as_view(), name='recalculate'),
]
