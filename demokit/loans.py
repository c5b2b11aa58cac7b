"""
Loan lifecycle: lending, returning and case-level bulk operations.

Status graph::

    out ----> returned
    sample -> returned

``returned`` is terminal. Availability is checked against a fresh snapshot
right before each write; there is no row locking, so two clients lending the
last unit at the same moment can both succeed.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from django.conf import settings
from django.db import DatabaseError, transaction
from django.utils import timezone

from .audit import log_activity
from .availability import case_members, get_availability, is_overdue
from .exceptions import InvalidState, OutOfStock, PolicyViolation, ValidationError
from .models import Loan, TeamMember
from .snapshot import take_snapshot, with_extra_loans

logger = logging.getLogger(__name__)


@dataclass
class BulkResult:
    """Outcome of a fan-out batch. Successful writes stay committed on partial failure."""
    succeeded: list = field(default_factory=list)
    failed: list = field(default_factory=list)

    def add_failure(self, ident, error):
        self.failed.append({'id': ident, 'error': str(error)})

    @property
    def success_count(self):
        return len(self.succeeded)

    @property
    def failure_count(self):
        return len(self.failed)


def responsible_name_for(email):
    """Full name of the team member with this email, else the email itself."""
    member = TeamMember.objects.filter(email=email).first() if email else None
    return member.full_name if member else (email or '')


def default_return_date(today=None):
    today = today or timezone.localdate()
    return today + timedelta(weeks=settings.DEMOKIT_DEFAULT_LOAN_WEEKS)


def kit_name_for(product):
    if product.belongs_to_case and product.demo_case_id and product.demo_case:
        return product.demo_case.case_name
    return ''


def create_loan(product, customer_name, responsible_email, lent_by_email,
                is_sample=False, return_date=None, notes='', customer_address=None,
                snapshot=None, kit_name=None, case_context=False, audit=True):
    """Lend one unit of ``product``.

    ``case_context`` is set by case-level bulk lending, which is the only way
    to lend a product that belongs to a case and cannot be lent separately.
    """
    customer_name = (customer_name or '').strip()
    if not customer_name:
        raise ValidationError('Customer name is required.')

    if product.belongs_to_case and not product.can_lend_separately and not case_context:
        case_name = kit_name_for(product) or 'its demo case'
        raise PolicyViolation(
            f'{product.label} cannot be lent separately. '
            f'It must be lent as part of {case_name}.'
        )

    if snapshot is None:
        snapshot = take_snapshot()
    availability = get_availability(product, snapshot.products, snapshot.active_loans)
    if availability.has_individual_items:
        # Loans on the zeroed article record are not counted against its items
        raise ValidationError(
            f'{product.article_reference} is tracked per item; lend an individual item instead.'
        )
    if availability.available <= 0:
        raise OutOfStock(f'{product.label} is not available (0 of {availability.total} free).')

    today = timezone.localdate()
    if is_sample:
        expected_return_date = None
    else:
        expected_return_date = return_date or default_return_date(today)

    responsible_name = responsible_name_for(responsible_email)

    loan = Loan.objects.create(
        product=product,
        product_article=product.label,
        product_description=product.description,
        kit_name=kit_name if kit_name is not None else kit_name_for(product),
        customer_name=customer_name,
        customer_address=customer_address or None,
        responsible_email=responsible_email or '',
        responsible_name=responsible_name,
        lent_by_email=lent_by_email or '',
        lent_date=today,
        expected_return_date=expected_return_date,
        status='sample' if is_sample else 'out',
        notes=notes or '',
    )
    logger.info('Loan %s: %s lent to %s', loan.id, product.label, customer_name)

    if audit:
        log_activity(
            'Lend',
            f'Lent {product.label} to {customer_name} (Resp: {responsible_name})',
            lent_by_email,
            'Loan',
            loan.id,
        )
    return loan


def return_loan(loan, user_email):
    """Mark an active loan returned today. Returning twice raises InvalidState."""
    if loan.status not in Loan.ACTIVE_STATUSES:
        raise InvalidState(
            f'Loan of {loan.product_article} to {loan.customer_name} is already returned.'
        )

    loan.status = 'returned'
    loan.actual_return_date = timezone.localdate()
    loan.save(update_fields=['status', 'actual_return_date'])
    logger.info('Loan %s returned by %s', loan.id, loan.customer_name)

    log_activity(
        'Return',
        f'Returned {loan.product_article} from {loan.customer_name}',
        user_email,
        'Loan',
        loan.id,
    )
    return loan


def bulk_return_case(loans, user_email):
    """Return every loan in ``loans`` independently and report per-loan results."""
    result = BulkResult()
    for loan in loans:
        try:
            with transaction.atomic():
                return_loan(loan, user_email)
        except (InvalidState, DatabaseError) as e:
            logger.warning('Bulk return skipped loan %s: %s', loan.id, e)
            result.add_failure(loan.id, e)
        else:
            result.succeeded.append(loan)

    kit_names = sorted({l.kit_name for l in result.succeeded if l.kit_name})
    log_activity(
        'Bulk Return Case',
        f'Returned {result.success_count} items'
        + (f' of {", ".join(kit_names)}' if kit_names else '')
        + (f' ({result.failure_count} failed)' if result.failed else ''),
        user_email,
        'Loan',
    )
    return result


def bulk_lend_case(demo_case, product_ids, customer_name, responsible_email, lent_by_email,
                   is_sample=False, return_date=None, notes='', customer_address=None):
    """Lend the selected members of a demo case to one customer.

    Every loan carries ``kit_name = demo_case.case_name``. Each product is
    re-checked against availability at submit time; unavailable or foreign
    products are skipped and reported, the rest are still lent.
    """
    if not product_ids:
        raise ValidationError('Please select at least one product to lend.')
    if not (customer_name or '').strip():
        raise ValidationError('Customer name is required.')

    snapshot = take_snapshot()
    members = {p.id: p for p in case_members(demo_case, snapshot.products)}
    created = []
    result = BulkResult()

    for product_id in product_ids:
        product = members.get(product_id)
        if product is None:
            result.add_failure(product_id, f'Product {product_id} is not part of {demo_case.case_name}.')
            continue
        try:
            with transaction.atomic():
                loan = create_loan(
                    product, customer_name, responsible_email, lent_by_email,
                    is_sample=is_sample,
                    return_date=return_date,
                    notes=notes,
                    customer_address=customer_address,
                    snapshot=with_extra_loans(snapshot, created),
                    kit_name=demo_case.case_name,
                    case_context=True,
                    audit=False,
                )
        except (OutOfStock, DatabaseError) as e:
            logger.warning('Bulk lend skipped product %s: %s', product_id, e)
            result.add_failure(product_id, e)
        else:
            created.append(loan)
            result.succeeded.append(loan)

    log_activity(
        'Bulk Lend Case',
        f'Lent {result.success_count} items from {demo_case.case_name} to {customer_name.strip()} '
        f'(Resp: {responsible_name_for(responsible_email)})'
        + (f' ({result.failure_count} skipped)' if result.failed else ''),
        lent_by_email,
        'Loan',
        demo_case.id,
    )
    return result


def overdue_loans(loans, today=None):
    today = today or timezone.localdate()
    return [l for l in loans if is_overdue(l, today)]
