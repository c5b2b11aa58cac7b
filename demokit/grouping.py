"""
Group active loans by demo case and customer for case-level display and return.

A loan joins a group by its own ``kit_name`` when set. Otherwise, if its
product is a member of a known demo case, it joins that case's group and the
group is flagged ``needs_data_fix`` until ``fix_demo_case_data`` back-fills
the missing ``kit_name``. Everything else is standalone.
"""

import logging
from dataclasses import dataclass, field

from .audit import log_activity
from .availability import case_members
from .models import Loan

logger = logging.getLogger(__name__)


@dataclass
class LoanGroup:
    case_name: str
    customer_name: str
    customer_address: str = None
    loans: list = field(default_factory=list)
    needs_data_fix: bool = False
    # Whether the customer holds every member of the case
    is_complete: bool = False

    @property
    def key(self):
        return (self.case_name, self.customer_name)


def group_loans(loans, products, demo_cases):
    """Split active loans into ``(groups, standalone)``, both in input order."""
    products_by_id = {p.id: p for p in products}
    cases_by_id = {c.id: c for c in demo_cases}
    groups = {}
    standalone = []

    for loan in loans:
        if loan.status not in Loan.ACTIVE_STATUSES:
            continue

        needs_fix = False
        if loan.kit_name:
            case_name = loan.kit_name
        else:
            product = products_by_id.get(loan.product_id)
            demo_case = None
            if product is not None and product.belongs_to_case and product.demo_case_id:
                demo_case = cases_by_id.get(product.demo_case_id)
            if demo_case is None:
                standalone.append(loan)
                continue
            case_name = demo_case.case_name
            needs_fix = True

        key = (case_name, loan.customer_name)
        group = groups.get(key)
        if group is None:
            group = groups[key] = LoanGroup(case_name, loan.customer_name)
        group.loans.append(loan)
        group.needs_data_fix = group.needs_data_fix or needs_fix
        if not group.customer_address and loan.customer_address:
            group.customer_address = loan.customer_address

    cases_by_name = {}
    for c in demo_cases:
        cases_by_name.setdefault(c.case_name, c)
    for group in groups.values():
        demo_case = cases_by_name.get(group.case_name)
        if demo_case is None:
            continue
        member_ids = {p.id for p in case_members(demo_case, products)}
        lent_ids = {l.product_id for l in group.loans}
        group.is_complete = bool(member_ids) and member_ids <= lent_ids

    return list(groups.values()), standalone


def fix_demo_case_data(group, user_email):
    """Back-fill ``kit_name`` on the group's loans. Returns how many were updated.

    Running it on an already consistent group changes nothing and logs nothing.
    """
    stale = [l for l in group.loans if l.kit_name != group.case_name]
    for loan in stale:
        loan.kit_name = group.case_name
        loan.save(update_fields=['kit_name'])
    group.needs_data_fix = False

    if stale:
        logger.info('Back-filled kit name %r on %d loans', group.case_name, len(stale))
        log_activity(
            'Fix Demo Case Data',
            f'Set kit name "{group.case_name}" on {len(stale)} loans for {group.customer_name}',
            user_email,
            'Loan',
        )
    return len(stale)
