"""
Management command for auditing stored JASPEL data.

Reports:
- Amounts that are not positive or exceed the configured ceiling
- Records whose total does not match the nominal
- Approved records without an approval timestamp
- Future-dated and long-pending records
- Duplicate settlements and known dummy amounts

Usage:
    python manage.py validate_jaspel_integrity
    python manage.py validate_jaspel_integrity --fix
"""
from datetime import timedelta
from django.core.management.base import BaseCommand
from django.db.models import Count, F, Q
from django.utils import timezone

from jaspel import conf
from jaspel.constants import FeeCategory, FeeStatus
from jaspel.models import FeeRecord


class Command(BaseCommand):
    help = 'Audit JASPEL fee records for integrity problems'

    def add_arguments(self, parser):
        parser.add_argument(
            '--fix',
            action='store_true',
            help='Repair what can be repaired safely (only records that are still mutable)',
        )
        parser.add_argument(
            '--stale-days',
            type=int,
            default=30,
            help='Pending records older than this are reported',
        )

    def handle(self, *args, **options):
        fix = options['fix']

        self.stdout.write(self.style.WARNING(
            '\n' + '=' * 70 + '\n'
            '  JASPEL INTEGRITY REPORT\n'
            + '=' * 70 + '\n'
        ))

        total_issues = 0
        total_repairs = 0
        for check in (
            self._check_amounts,
            self._check_totals,
            self._check_approvals,
            self._check_dates,
            lambda fix: self._check_stale(fix, options['stale_days']),
            self._check_duplicates,
            self._check_dummy_patterns,
        ):
            issues, repairs = check(fix)
            total_issues += issues
            total_repairs += repairs

        self.stdout.write('\n' + '=' * 70)
        if total_issues == 0:
            self.stdout.write(self.style.SUCCESS('\n✅ No JASPEL integrity issues found.\n'))
        elif fix:
            self.stdout.write(self.style.WARNING(
                f'\n⚠️  Found {total_issues} issues, repaired {total_repairs}.\n'
            ))
        else:
            self.stdout.write(self.style.WARNING(
                f'\n⚠️  Found {total_issues} issues. Run with --fix to repair what is safe.\n'
            ))
        self.stdout.write('=' * 70 + '\n')

    def _report(self, queryset, label):
        count = queryset.count()
        self.stdout.write(f'\n🔎 {label}: ', ending='')
        if count == 0:
            self.stdout.write(self.style.SUCCESS('✅'))
            return count
        self.stdout.write(self.style.ERROR(f'{count}'))
        for record in queryset[:20]:
            self.stdout.write(
                f'    ❌ #{record.pk} beneficiary={record.beneficiary_id} date={record.settlement_date} '
                f'nominal={record.nominal} total={record.total} status={record.validation_status}'
            )
        return count

    def _mutable(self, queryset):
        cutoff = timezone.now() - timedelta(days=conf.get('JASPEL_RETENTION_DAYS'))
        return queryset.exclude(validation_status=FeeStatus.APPROVED).filter(created_at__gte=cutoff)

    def _check_amounts(self, fix):
        invalid = FeeRecord.objects.filter(Q(nominal__lte=0) | Q(nominal__gt=conf.max_nominal()))
        return self._report(invalid, 'Amounts out of range'), 0

    def _check_totals(self, fix):
        mismatched = FeeRecord.objects.filter(Q(total__isnull=True) | ~Q(total=F('nominal')))
        issues = self._report(mismatched, 'Total differs from nominal')
        repairs = 0
        if fix and issues:
            repairs = self._mutable(mismatched).update(total=F('nominal'), updated_at=timezone.now())
            self.stdout.write(self.style.SUCCESS(f'      ✅ Repaired {repairs}'))
        return issues, repairs

    def _check_approvals(self, fix):
        unstamped = FeeRecord.objects.filter(validation_status=FeeStatus.APPROVED, validated_at__isnull=True)
        issues = self._report(unstamped, 'Approved without approval time')
        repairs = 0
        if fix and issues:
            # Approved rows are immutable for amounts only; the timestamp is metadata
            repairs = unstamped.update(validated_at=F('updated_at'))
            self.stdout.write(self.style.SUCCESS(f'      ✅ Repaired {repairs}'))
        return issues, repairs

    def _check_dates(self, fix):
        latest = timezone.localdate() + timedelta(days=conf.get('JASPEL_DATE_FUTURE_DAYS'))
        return self._report(FeeRecord.objects.filter(settlement_date__gt=latest), 'Dated in the future'), 0

    def _check_stale(self, fix, stale_days):
        cutoff = timezone.now() - timedelta(days=stale_days)
        stale = FeeRecord.objects.filter(validation_status=FeeStatus.PENDING, created_at__lt=cutoff)
        return self._report(stale, f'Pending for more than {stale_days} days'), 0

    def _check_duplicates(self, fix):
        self.stdout.write('\n🔎 Duplicate settlements: ', ending='')
        by_procedure = (
            FeeRecord.objects.filter(source_procedure__isnull=False)
            .values('source_procedure', 'beneficiary')
            .annotate(n=Count('id'))
            .filter(n__gt=1)
        )
        by_day = (
            FeeRecord.objects.filter(category=FeeCategory.PATIENT_COUNT_DAILY)
            .values('beneficiary', 'settlement_date')
            .annotate(n=Count('id'))
            .filter(n__gt=1)
        )
        groups = list(by_procedure) + list(by_day)
        if not groups:
            self.stdout.write(self.style.SUCCESS('✅'))
            return 0, 0
        self.stdout.write(self.style.ERROR(f'{len(groups)}'))
        for group in groups:
            self.stdout.write(f'    ❌ {group}')
        return len(groups), 0

    def _check_dummy_patterns(self, fix):
        suspicious = FeeRecord.objects.filter(nominal__in=sorted(conf.dummy_patterns()))
        return self._report(suspicious, 'Known dummy amounts'), 0
