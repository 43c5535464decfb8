import django.core.validators
import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Patient',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('medical_record_number', models.CharField(max_length=50, unique=True)),
                ('full_name', models.CharField(max_length=255)),
                ('date_of_birth', models.DateField(blank=True, null=True)),
                ('gender', models.CharField(blank=True, max_length=20)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'db_table': 'patients',
                'ordering': ['full_name'],
            },
        ),
        migrations.CreateModel(
            name='ProcedureType',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('code', models.CharField(max_length=30, unique=True)),
                ('name', models.CharField(max_length=255)),
                ('default_tariff', models.DecimalField(decimal_places=2, default=0, max_digits=15)),
                ('fee_percentage', models.DecimalField(decimal_places=2, default=0, help_text='Percentage of the tariff paid out as JASPEL', max_digits=5, validators=[django.core.validators.MinValueValidator(0), django.core.validators.MaxValueValidator(100)])),
                ('category', models.CharField(choices=[('general', 'Umum'), ('emergency', 'Gawat Darurat'), ('specialist', 'Spesialis'), ('consultation', 'Konsultasi'), ('nursing', 'Keperawatan'), ('laboratory', 'Laboratorium')], default='general', max_length=30)),
                ('is_active', models.BooleanField(default=True)),
            ],
            options={
                'db_table': 'procedure_types',
                'ordering': ['name'],
            },
        ),
        migrations.CreateModel(
            name='Procedure',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('performed_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('tariff', models.DecimalField(decimal_places=2, max_digits=15, validators=[django.core.validators.MinValueValidator(0)])),
                ('doctor_fee', models.DecimalField(decimal_places=2, default=0, max_digits=15)),
                ('paramedic_fee', models.DecimalField(decimal_places=2, default=0, max_digits=15)),
                ('non_paramedic_fee', models.DecimalField(decimal_places=2, default=0, max_digits=15)),
                ('validation_status', models.CharField(choices=[('pending', 'Pending'), ('approved', 'Disetujui'), ('rejected', 'Ditolak')], db_index=True, default='pending', max_length=20)),
                ('validated_at', models.DateTimeField(blank=True, null=True)),
                ('validation_comment', models.TextField(blank=True)),
                ('version', models.PositiveIntegerField(default=1, help_text='Incremented on every validation transition')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('doctor', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='procedures_as_doctor', to=settings.AUTH_USER_MODEL)),
                ('input_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='entered_procedures', to=settings.AUTH_USER_MODEL)),
                ('non_paramedic', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='procedures_as_non_paramedic', to=settings.AUTH_USER_MODEL)),
                ('paramedic', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='procedures_as_paramedic', to=settings.AUTH_USER_MODEL)),
                ('patient', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='procedures', to='clinical.patient')),
                ('procedure_type', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='procedures', to='clinical.proceduretype')),
                ('validated_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='validated_procedures', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'procedures',
                'ordering': ['-performed_at'],
                'indexes': [models.Index(fields=['validation_status', 'performed_at'], name='procedure_status_date_idx'), models.Index(fields=['doctor', 'performed_at'], name='procedure_doctor_date_idx')],
            },
        ),
        migrations.CreateModel(
            name='DailyPatientCount',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('date', models.DateField()),
                ('clinic_unit', models.CharField(choices=[('general', 'Poli Umum'), ('dental', 'Poli Gigi')], default='general', max_length=20)),
                ('shift', models.CharField(blank=True, choices=[('morning', 'Pagi'), ('afternoon', 'Sore'), ('public_holiday', 'Hari Libur Besar')], max_length=20)),
                ('general_patients', models.PositiveIntegerField(default=0, help_text='Pasien umum')),
                ('insurance_patients', models.PositiveIntegerField(default=0, help_text='Pasien BPJS')),
                ('validation_status', models.CharField(choices=[('pending', 'Pending'), ('approved', 'Disetujui'), ('rejected', 'Ditolak')], db_index=True, default='pending', max_length=20)),
                ('validated_at', models.DateTimeField(blank=True, null=True)),
                ('validation_note', models.TextField(blank=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('doctor', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='patient_counts', to=settings.AUTH_USER_MODEL)),
                ('input_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='entered_patient_counts', to=settings.AUTH_USER_MODEL)),
                ('validated_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='validated_patient_counts', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'daily_patient_counts',
                'ordering': ['-date'],
                'indexes': [models.Index(fields=['doctor', 'date'], name='patient_count_doctor_date_idx'), models.Index(fields=['validation_status', 'date'], name='patient_count_status_date_idx')],
            },
        ),
    ]
