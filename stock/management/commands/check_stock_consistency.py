"""
Stock — Management Command: check_stock_consistency

Compares every stock aggregate with the totals derived from the movement
ledger and lists the keys that drifted.

Usage::

    python manage.py check_stock_consistency [--product <uuid>]

Exits with an error when drift is found. Read-only.

@file stock/management/commands/check_stock_consistency.py
"""

import logging

from django.core.management.base import BaseCommand, CommandError

from stock.ledger import AggregateService

logger = logging.getLogger('freshstock')


class Command(BaseCommand):
    help = 'Verify that stock aggregates match the movement ledger.'

    def add_arguments(self, parser):
        parser.add_argument('--product', dest='product_id', help='Limit the check to one product.')

    def handle(self, *args, **options):
        drift = AggregateService.find_drift(product_id=options.get('product_id'))
        if not drift:
            self.stdout.write(self.style.SUCCESS('Stock aggregates match the ledger.'))
            return

        for row in drift:
            self.stdout.write(
                f'  {row["product_id"]} batch={row["batch_id"]} zone={row["zone"]}: '
                f'ledger={_fmt(row["ledger"])} aggregate={_fmt(row["aggregate"])}'
            )
        logger.error('Stock drift detected on %s key(s)', len(drift))
        raise CommandError(f'{len(drift)} aggregate key(s) differ from the ledger.')


def _fmt(totals: dict) -> str:
    return ', '.join(f'{field}={value}' for field, value in totals.items())
