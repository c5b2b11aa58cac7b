"""
Availability engine.

Everything here is a pure function of the product, demo case and loan
collections passed in. Nothing is cached or persisted: callers recompute
after every fetch.

``available`` is returned signed. A negative value means the data holds more
active loans than units, so audits can see it; use ``display_available`` when
presenting.
"""

from collections import Counter, namedtuple

from .models import Loan

Availability = namedtuple('Availability', ['available', 'total', 'has_individual_items'])

CaseStatus = namedtuple('CaseStatus', ['status', 'available', 'total', 'loans'])

CaseLocation = namedtuple('CaseLocation', ['type', 'label', 'address', 'customers'])

InventoryStats = namedtuple(
    'InventoryStats', ['total_units', 'out', 'samples', 'available', 'overdue']
)

ACTIVE_STATUSES = Loan.ACTIVE_STATUSES


def active_loan_counts(loans):
    """Number of active loans per product id."""
    return Counter(l.product_id for l in loans if l.status in ACTIVE_STATUSES)


def individual_items_of(article, products):
    return [
        p for p in products
        if p.is_individual_item and p.parent_article_id == article.id
    ]


def _availability(product, children, counts):
    if product.is_individual_item:
        total = product.quantity
        return Availability(total - counts[product.id], total, False)
    if children:
        # The article's own quantity is 0 once split; capacity lives in the items
        available = sum(1 - counts[c.id] for c in children)
        return Availability(available, len(children), True)
    return Availability(product.quantity - counts[product.id], product.quantity, False)


def get_availability(product, products, active_loans):
    """Compute ``Availability(available, total, has_individual_items)`` for one product."""
    children = [] if product.is_individual_item else individual_items_of(product, products)
    return _availability(product, children, active_loan_counts(active_loans))


def availability_map(products, active_loans):
    """Availability for every product, keyed by id, in a single pass."""
    counts = active_loan_counts(active_loans)
    children_by_parent = {}
    for p in products:
        if p.is_individual_item and p.parent_article_id is not None:
            children_by_parent.setdefault(p.parent_article_id, []).append(p)
    return {
        p.id: _availability(p, children_by_parent.get(p.id, []), counts)
        for p in products
    }


def display_available(availability):
    return max(availability.available, 0)


def case_members(demo_case, products):
    """Products that make up a demo case.

    A split article is represented by its individual items, so the zeroed
    article record itself is left out.
    """
    split_articles = {
        p.parent_article_id for p in products
        if p.is_individual_item and p.parent_article_id is not None
    }
    return [
        p for p in products
        if p.demo_case_id == demo_case.id and p.id not in split_articles
    ]


def case_status(demo_case, products, active_loans):
    """Classify a demo case as empty, complete, allout or incomplete.

    A member counts as available when it has no active loan at all.
    """
    members = case_members(demo_case, products)
    if not members:
        return CaseStatus('empty', 0, 0, [])

    loans_by_product = {}
    for loan in active_loans:
        if loan.status in ACTIVE_STATUSES:
            loans_by_product.setdefault(loan.product_id, []).append(loan)

    available = 0
    case_loans = []
    for p in members:
        product_loans = loans_by_product.get(p.id, [])
        if product_loans:
            case_loans.extend(product_loans)
        else:
            available += 1

    total = len(members)
    if available == total:
        return CaseStatus('complete', available, total, [])
    if available == 0:
        return CaseStatus('allout', available, total, case_loans)
    return CaseStatus('incomplete', available, total, case_loans)


def case_location(demo_case, status):
    """Where the physical case is: at the office, with one customer, or split."""
    if status.status in ('complete', 'empty'):
        return CaseLocation(
            'office', demo_case.base_location or 'Office', demo_case.base_address, []
        )

    customers = []
    for loan in status.loans:
        if loan.customer_name not in customers:
            customers.append(loan.customer_name)

    if status.status == 'allout' and len(customers) == 1:
        loan = status.loans[0]
        return CaseLocation('customer', loan.customer_name, loan.customer_address, customers)

    out_count = status.total - status.available
    label = f"Split: Office ({status.available}), {', '.join(customers)} ({out_count})"
    return CaseLocation('split', label, None, customers)


def is_overdue(loan, today):
    """Only loans that are out can be overdue; samples never are."""
    return (
        loan.status == 'out'
        and loan.expected_return_date is not None
        and loan.expected_return_date < today
    )


def inventory_stats(products, active_loans, today):
    # Split articles carry quantity 0 and each item 1, so plain summing is exact
    total_units = sum(p.quantity for p in products)
    out = sum(1 for l in active_loans if l.status == 'out')
    samples = sum(1 for l in active_loans if l.status == 'sample')
    overdue = sum(1 for l in active_loans if is_overdue(l, today))
    return InventoryStats(total_units, out, samples, total_units - out - samples, overdue)
