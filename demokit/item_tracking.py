"""
Switch a product between article-level quantity tracking and per-unit items.

Split and merge each run in one database transaction: either every child
record is written and the article updated, or nothing changes.
"""

import logging

from django.db import transaction

from .audit import log_activity
from .exceptions import InvalidState, ValidationError
from .models import Loan, Product

logger = logging.getLogger(__name__)


def item_identifier(article_reference, sequence):
    return f"{article_reference}-{sequence:03d}"


def split_to_items(article, user_email):
    """Replace an article's quantity with that many individual item records.

    Returns the new items; the article is left with quantity 0.
    """
    if article.is_individual_item:
        raise ValidationError(f'{article.label} is already an individual item.')
    if article.items.exists():
        raise InvalidState(f'{article.article_reference} is already tracked per item.')
    if article.quantity <= 1:
        raise ValidationError(
            f'{article.article_reference} needs a quantity above 1 to be split into items.'
        )
    if Loan.objects.filter(product=article, status__in=Loan.ACTIVE_STATUSES).exists():
        raise InvalidState(
            f'{article.article_reference} has active loans; return them before splitting.'
        )

    with transaction.atomic():
        items = []
        for sequence in range(1, article.quantity + 1):
            items.append(Product.objects.create(
                article_reference=article.article_reference,
                brand=article.brand,
                description=article.description,
                quantity=1,
                is_individual_item=True,
                parent_article=article,
                item_identifier=item_identifier(article.article_reference, sequence),
                serial_number=None,
                belongs_to_case=article.belongs_to_case,
                demo_case_id=article.demo_case_id,
                can_lend_separately=article.can_lend_separately,
            ))
        article.quantity = 0
        article.save(update_fields=['quantity', 'updated_at'])

    logger.info('Split %s into %d items', article.article_reference, len(items))
    log_activity(
        'Split to Items',
        f'Split {article.article_reference} into {len(items)} individual items',
        user_email,
        'Product',
        article.id,
    )
    return items


def merge_to_article(article, items, user_email):
    """Delete the article's individual items and restore its quantity.

    Items with an active loan block the merge, so no loan is left pointing at
    a deleted item.
    """
    items = list(items)
    if not items:
        raise ValidationError(f'{article.article_reference} has no individual items to merge.')
    foreign = [i for i in items if not i.is_individual_item or i.parent_article_id != article.id]
    if foreign:
        raise ValidationError(
            f'{", ".join(i.label for i in foreign)} do not belong to {article.article_reference}.'
        )
    on_loan = list(
        Loan.objects.filter(product__in=items, status__in=Loan.ACTIVE_STATUSES)
        .values_list('product_article', flat=True)
    )
    if on_loan:
        raise InvalidState(f'Cannot merge while items are on loan: {", ".join(on_loan)}.')

    with transaction.atomic():
        Product.objects.filter(id__in=[i.id for i in items]).delete()
        article.quantity = len(items)
        article.save(update_fields=['quantity', 'updated_at'])

    logger.info('Merged %d items back into %s', len(items), article.article_reference)
    log_activity(
        'Merge Items',
        f'Merged {len(items)} individual items back into {article.article_reference}',
        user_email,
        'Product',
        article.id,
    )
    return article


def set_serial_number(item, serial_number, user_email):
    if not item.is_individual_item:
        raise ValidationError('Serial numbers are set per individual item once an article is split.')
    old = item.serial_number or ''
    item.serial_number = (serial_number or '').strip() or None
    item.save(update_fields=['serial_number', 'updated_at'])

    if old != (item.serial_number or ''):
        log_activity(
            'Edit Serial Number',
            f'{item.item_identifier}: {old or "-"} -> {item.serial_number or "-"}',
            user_email,
            'Product',
            item.id,
        )
    return item
