"""
Bulk product import from pasted spreadsheet text.

One product per line, tab separated when the line contains a tab, otherwise
comma separated::

    article_reference, brand, description[, case_name[, quantity]]
"""

import logging
from collections import namedtuple
from dataclasses import dataclass, field

from django.db import transaction

from .audit import log_activity
from .models import DemoCase, Product

logger = logging.getLogger(__name__)

ImportRow = namedtuple('ImportRow', ['article_reference', 'brand', 'description', 'case_name', 'quantity'])


@dataclass
class ImportResult:
    products: list = field(default_factory=list)
    created_cases: list = field(default_factory=list)
    skipped: list = field(default_factory=list)


def _parse_quantity(raw):
    try:
        quantity = int(raw.strip())
    except (ValueError, AttributeError):
        return 1
    return quantity if quantity > 0 else 1


def parse_import_text(text):
    """Parse pasted rows. Lines with fewer than three fields are dropped."""
    rows = []
    for line in (text or '').strip().splitlines():
        parts = line.split('\t') if '\t' in line else line.split(',')
        if len(parts) < 3:
            continue
        rows.append(ImportRow(
            article_reference=parts[0].strip(),
            brand=parts[1].strip(),
            description=parts[2].strip(),
            case_name=parts[3].strip() if len(parts) > 3 else '',
            quantity=_parse_quantity(parts[4]) if len(parts) > 4 else 1,
        ))
    return rows


def new_case_names(rows, demo_cases):
    """Case names referenced by ``rows`` that match no existing case (case-insensitive)."""
    existing = {c.case_name.lower() for c in demo_cases}
    names = []
    seen = set()
    for row in rows:
        key = row.case_name.lower()
        if row.case_name and key not in existing and key not in seen:
            seen.add(key)
            names.append(row.case_name)
    return names


def import_products(rows, user_email):
    """Create products from parsed rows, creating any demo cases they name.

    Rows without a reference, or whose reference already exists, are skipped.
    """
    result = ImportResult()
    valid = []
    seen_refs = set()
    existing_refs = set(
        Product.objects.filter(is_individual_item=False).values_list('article_reference', flat=True)
    )
    for row in rows:
        if not row.article_reference:
            result.skipped.append((row, 'Missing article reference'))
        elif row.article_reference in existing_refs or row.article_reference in seen_refs:
            result.skipped.append((row, f'Reference "{row.article_reference}" already exists'))
        else:
            seen_refs.add(row.article_reference)
            valid.append(row)

    if not valid:
        return result

    with transaction.atomic():
        cases_by_name = {c.case_name.lower(): c for c in DemoCase.objects.all()}
        for name in new_case_names(valid, cases_by_name.values()):
            demo_case = DemoCase.objects.create(
                case_name=name,
                case_type='Custom',
                description='Auto-created from import',
            )
            cases_by_name[name.lower()] = demo_case
            result.created_cases.append(demo_case)

        for row in valid:
            demo_case = cases_by_name.get(row.case_name.lower()) if row.case_name else None
            result.products.append(Product.objects.create(
                article_reference=row.article_reference,
                brand=row.brand,
                description=row.description,
                quantity=row.quantity,
                belongs_to_case=demo_case is not None,
                demo_case=demo_case,
                can_lend_separately=True,
            ))

    logger.info('Imported %d products, created %d demo cases',
                len(result.products), len(result.created_cases))
    details = f'Imported {len(result.products)} products'
    if result.created_cases:
        details += f' and created {len(result.created_cases)} demo cases'
    log_activity('Bulk Import', details, user_email, 'Product')
    return result
