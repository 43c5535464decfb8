import django.core.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ('clinical', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='FeeFormula',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(blank=True, max_length=120)),
                ('shift_window', models.CharField(choices=[('morning', 'Pagi'), ('afternoon', 'Sore')], default='morning', max_length=20)),
                ('threshold', models.PositiveIntegerField(help_text='Minimum total patients; fee is paid only above this')),
                ('general_tier', models.DecimalField(decimal_places=2, default=0, help_text='Fee per general-payer patient', max_digits=12, validators=[django.core.validators.MinValueValidator(0)])),
                ('insurance_tier', models.DecimalField(decimal_places=2, default=0, help_text='Fee per insurance (BPJS) patient', max_digits=12, validators=[django.core.validators.MinValueValidator(0)])),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'jaspel_fee_formulas',
                'ordering': ['shift_window', '-updated_at'],
                'constraints': [models.UniqueConstraint(condition=models.Q(('is_active', True)), fields=('shift_window',), name='unique_active_formula_per_shift')],
            },
        ),
        migrations.CreateModel(
            name='FeeRecord',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('settlement_date', models.DateField()),
                ('category', models.CharField(choices=[('doctor_shift_morning', 'Dokter Jaga Pagi'), ('doctor_shift_afternoon', 'Dokter Jaga Siang'), ('doctor_shift_night', 'Dokter Jaga Malam'), ('emergency_procedure', 'Tindakan Emergency'), ('special_consultation', 'Konsultasi Khusus'), ('paramedic', 'Paramedis'), ('non_paramedic', 'Non-Paramedis'), ('general_doctor', 'Dokter Umum'), ('specialist_doctor', 'Dokter Spesialis'), ('patient_count_daily', 'Jaspel Jumlah Pasien Harian')], max_length=40)),
                ('nominal', models.DecimalField(decimal_places=2, max_digits=15)),
                ('total', models.DecimalField(blank=True, decimal_places=2, max_digits=15, null=True)),
                ('validation_status', models.CharField(choices=[('pending', 'Pending'), ('approved', 'Disetujui'), ('rejected', 'Ditolak')], db_index=True, default='pending', max_length=20)),
                ('validated_at', models.DateTimeField(blank=True, null=True)),
                ('note', models.TextField(blank=True)),
                ('anomaly_flags', models.JSONField(blank=True, default=list)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('beneficiary', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='fee_records', to=settings.AUTH_USER_MODEL)),
                ('created_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='created_fee_records', to=settings.AUTH_USER_MODEL)),
                ('source_patient_count', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='fee_records', to='clinical.dailypatientcount')),
                ('source_procedure', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='fee_records', to='clinical.procedure')),
                ('validated_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='validated_fee_records', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'jaspel_fee_records',
                'ordering': ['-settlement_date', '-created_at'],
                'permissions': [('validate_fee', 'Can approve JASPEL fee records'), ('validate_procedure', 'Can validate procedures and patient counts for settlement')],
                'indexes': [models.Index(fields=['beneficiary', 'settlement_date'], name='fee_beneficiary_date_idx'), models.Index(fields=['validation_status', 'settlement_date'], name='fee_status_date_idx')],
                'constraints': [models.UniqueConstraint(condition=models.Q(('source_procedure__isnull', False)), fields=('source_procedure', 'beneficiary'), name='unique_fee_per_procedure_beneficiary'), models.UniqueConstraint(condition=models.Q(('category', 'patient_count_daily')), fields=('beneficiary', 'settlement_date', 'category'), name='unique_daily_patient_count_fee')],
            },
        ),
    ]
