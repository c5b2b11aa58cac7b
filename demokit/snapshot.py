"""
Read model for the availability computations.

Every operation that needs availability takes a fresh snapshot right before it
writes. Snapshots are plain lists and are never cached across writes.

Active loans are always read in full, since every one of them counts against
availability. Products and demo cases are capped at ``DEMOKIT_LIST_LIMIT``.
"""

import logging
from collections import namedtuple

from django.conf import settings

from .models import DemoCase, Loan, Product

logger = logging.getLogger(__name__)

InventorySnapshot = namedtuple('InventorySnapshot', ['products', 'demo_cases', 'active_loans'])


def _capped(queryset, limit, label):
    rows = list(queryset[:limit + 1])
    if len(rows) > limit:
        logger.warning('Snapshot truncated to %d %s; raise DEMOKIT_LIST_LIMIT', limit, label)
        rows = rows[:limit]
    return rows


def take_snapshot():
    limit = settings.DEMOKIT_LIST_LIMIT
    products = _capped(Product.objects.order_by('article_reference', 'item_identifier'), limit, 'products')
    demo_cases = _capped(DemoCase.objects.order_by('case_name'), limit, 'demo cases')
    active_loans = list(Loan.objects.filter(status__in=Loan.ACTIVE_STATUSES).order_by('-created_at'))
    return InventorySnapshot(products, demo_cases, active_loans)


def with_extra_loans(snapshot, loans):
    """Snapshot that also counts ``loans`` (e.g. ones created earlier in a batch)."""
    return snapshot._replace(active_loans=list(snapshot.active_loans) + list(loans))
