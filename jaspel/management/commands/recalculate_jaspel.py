from datetime import date
from django.core.management.base import BaseCommand, CommandError

from jaspel.exceptions import JaspelError
from jaspel.settlement import recalculate_settlement


class Command(BaseCommand):
    help = 'Invalidate cached JASPEL aggregates and re-queue missing settlements for a beneficiary'

    def add_arguments(self, parser):
        parser.add_argument('--beneficiary', required=True, help='Participant uid')
        parser.add_argument('--start', required=True, type=date.fromisoformat, help='First date (YYYY-MM-DD)')
        parser.add_argument('--end', required=True, type=date.fromisoformat, help='Last date (YYYY-MM-DD)')

    def handle(self, *args, **options):
        try:
            result = recalculate_settlement(options['beneficiary'], options['start'], options['end'])
        except (JaspelError, ValueError) as e:
            raise CommandError(str(e))

        self.stdout.write(self.style.SUCCESS(
            f"✅ {result['invalidated_keys']} cache keys invalidated; "
            f"re-queued {len(result['requeued_patient_counts'])} patient counts "
            f"and {len(result['requeued_procedures'])} procedures"
        ))
