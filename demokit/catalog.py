"""
Create, edit and delete rules for products, demo cases and team members.
"""

import logging
from decimal import Decimal, InvalidOperation

from django.db import transaction

from .audit import log_activity
from .exceptions import DuplicateError, InvalidState, ValidationError
from .models import DemoCase, Loan, Product, TeamMember

logger = logging.getLogger(__name__)


def as_bool(value):
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def _text(data, key, default=''):
    value = data.get(key, default)
    return '' if value is None else str(value).strip()


def _has_active_loans(products):
    return Loan.objects.filter(product__in=products, status__in=Loan.ACTIVE_STATUSES).exists()


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------

PRODUCT_FIELDS = (
    'article_reference', 'brand', 'description', 'quantity', 'serial_number',
    'purchase_value', 'photo_url', 'belongs_to_case', 'demo_case_id', 'can_lend_separately',
)


def _clean_product(data, product=None):
    """Validate product form data, falling back to the current values on edit."""
    current = {}
    if product is not None:
        current = {f: getattr(product, f) for f in PRODUCT_FIELDS}
    merged = dict(current)
    merged.update({k: v for k, v in data.items() if k in PRODUCT_FIELDS})

    cleaned = {
        'article_reference': _text(merged, 'article_reference'),
        'brand': _text(merged, 'brand'),
        'description': _text(merged, 'description'),
        'photo_url': _text(merged, 'photo_url'),
        'belongs_to_case': as_bool(merged.get('belongs_to_case', False)),
        'can_lend_separately': as_bool(merged.get('can_lend_separately', True)),
    }
    if not cleaned['article_reference']:
        raise ValidationError('Article reference is required.')
    if not cleaned['brand']:
        raise ValidationError('Brand is required.')

    try:
        cleaned['quantity'] = int(merged.get('quantity', 1))
    except (ValueError, TypeError):
        raise ValidationError('Quantity must be a whole number.')
    if cleaned['quantity'] < 0:
        raise ValidationError('Quantity cannot be negative.')

    purchase_value = merged.get('purchase_value')
    if purchase_value in (None, ''):
        cleaned['purchase_value'] = None
    else:
        try:
            cleaned['purchase_value'] = Decimal(str(purchase_value))
        except InvalidOperation:
            raise ValidationError('Purchase value must be a number.')

    serial_number = _text(merged, 'serial_number')
    cleaned['serial_number'] = serial_number or None

    cleaned['demo_case'] = None
    if cleaned['belongs_to_case']:
        case_id = merged.get('demo_case_id')
        if not case_id:
            raise ValidationError('Select the demo case this product belongs to.')
        cleaned['demo_case'] = DemoCase.objects.filter(id=case_id).first()
        if cleaned['demo_case'] is None:
            raise ValidationError(f'Demo case {case_id} does not exist.')
    return cleaned


def _check_reference_free(article_reference, exclude_id=None):
    existing = Product.objects.filter(article_reference=article_reference, is_individual_item=False)
    if exclude_id is not None:
        existing = existing.exclude(id=exclude_id)
    if existing.exists():
        raise DuplicateError(f'A product with reference "{article_reference}" already exists.')


def create_product(data, user_email):
    cleaned = _clean_product(data)
    _check_reference_free(cleaned['article_reference'])
    product = Product.objects.create(**cleaned)
    log_activity('Add Product', f'Added {product.article_reference}', user_email, 'Product', product.id)
    return product


def update_product(product, data, user_email):
    cleaned = _clean_product(data, product)

    if product.is_individual_item:
        # Items keep their parent's reference and a capacity of one
        cleaned['article_reference'] = product.article_reference
        cleaned['quantity'] = 1
    else:
        _check_reference_free(cleaned['article_reference'], exclude_id=product.id)
        if product.items.exists():
            if cleaned['quantity'] != 0:
                raise ValidationError(
                    f'{product.article_reference} is tracked per item; merge the items to edit its quantity.'
                )
            # Serial numbers live on the items once split
            cleaned['serial_number'] = None

    for name, value in cleaned.items():
        setattr(product, name, value)
    with transaction.atomic():
        product.save()
        if not product.is_individual_item:
            # Items follow their article's case membership and lend policy
            product.items.update(
                belongs_to_case=product.belongs_to_case,
                demo_case=product.demo_case,
                can_lend_separately=product.can_lend_separately,
            )
    log_activity('Edit Product', f'Updated {product.label}', user_email, 'Product', product.id)
    return product


def delete_product(product, user_email):
    if _has_active_loans([product]):
        raise InvalidState(f'{product.label} is currently on loan and cannot be deleted.')
    if not product.is_individual_item and product.items.exists():
        raise InvalidState(
            f'{product.article_reference} still has individual items; merge or delete them first.'
        )
    label = product.label
    product_id = product.id
    product.delete()
    log_activity('Delete Product', f'Deleted {label}', user_email, 'Product', product_id)


# ---------------------------------------------------------------------------
# Demo cases
# ---------------------------------------------------------------------------

DEMO_CASE_FIELDS = (
    'case_name', 'case_type', 'software_version', 'serial_number', 'base_location',
    'base_address', 'description', 'notes',
)


def _clean_demo_case(data, demo_case=None):
    cleaned = {}
    for name in DEMO_CASE_FIELDS:
        default = getattr(demo_case, name) if demo_case is not None else ''
        cleaned[name] = _text(data, name, default)
    if not cleaned['case_name']:
        raise ValidationError('Case name is required.')
    cleaned['case_type'] = cleaned['case_type'] or 'Custom'
    if cleaned['case_type'] not in dict(DemoCase.CASE_TYPE_CHOICES):
        raise ValidationError(f'Unknown case type "{cleaned["case_type"]}".')
    return cleaned


def create_demo_case(data, user_email):
    demo_case = DemoCase.objects.create(**_clean_demo_case(data))
    log_activity('Add Demo Case', f'Created {demo_case.case_name}', user_email, 'DemoCase', demo_case.id)
    return demo_case


def update_demo_case(demo_case, data, user_email):
    for name, value in _clean_demo_case(data, demo_case).items():
        setattr(demo_case, name, value)
    demo_case.save()
    log_activity('Edit Demo Case', f'Updated {demo_case.case_name}', user_email, 'DemoCase', demo_case.id)
    return demo_case


def delete_demo_case(demo_case, user_email):
    """Delete a case after unlinking its products. Blocked while any member is on loan."""
    members = Product.objects.filter(demo_case=demo_case)
    if _has_active_loans(members):
        raise InvalidState(
            f'{demo_case.case_name} has items on loan; return them before deleting the case.'
        )

    case_name = demo_case.case_name
    case_id = demo_case.id
    with transaction.atomic():
        unlinked = members.update(belongs_to_case=False, demo_case=None)
        demo_case.delete()

    logger.info('Deleted demo case %s, unlinked %d products', case_name, unlinked)
    log_activity(
        'Delete Demo Case',
        f'Deleted {case_name} and unlinked {unlinked} products',
        user_email,
        'DemoCase',
        case_id,
    )
    return unlinked


# ---------------------------------------------------------------------------
# Team members
# ---------------------------------------------------------------------------

def _clean_member(data, member=None):
    cleaned = {}
    for name in ('first_name', 'last_name', 'email', 'role', 'status'):
        default = getattr(member, name) if member is not None else ''
        cleaned[name] = _text(data, name, default)
    cleaned['email'] = cleaned['email'].lower()
    cleaned['role'] = cleaned['role'] or 'member'
    cleaned['status'] = cleaned['status'] or 'active'

    if not cleaned['first_name'] or not cleaned['last_name']:
        raise ValidationError('First and last name are required.')
    if not cleaned['email'] or '@' not in cleaned['email']:
        raise ValidationError('A valid email address is required.')
    if cleaned['role'] not in dict(TeamMember.ROLE_CHOICES):
        raise ValidationError(f'Unknown role "{cleaned["role"]}".')
    if cleaned['status'] not in dict(TeamMember.STATUS_CHOICES):
        raise ValidationError(f'Unknown status "{cleaned["status"]}".')

    taken = TeamMember.objects.filter(email__iexact=cleaned['email'])
    if member is not None:
        taken = taken.exclude(id=member.id)
    if taken.exists():
        raise DuplicateError(f'A team member with email "{cleaned["email"]}" already exists.')
    return cleaned


def create_team_member(data, user_email):
    member = TeamMember.objects.create(**_clean_member(data))
    log_activity('Add Team Member', f'Added {member.full_name}', user_email, 'TeamMember', member.id)
    return member


def update_team_member(member, data, user_email):
    for name, value in _clean_member(data, member).items():
        setattr(member, name, value)
    member.save()
    log_activity('Edit Team Member', f'Updated {member.full_name}', user_email, 'TeamMember', member.id)
    return member


def toggle_member_status(member, user_email):
    member.status = 'inactive' if member.status == 'active' else 'active'
    member.save(update_fields=['status'])
    log_activity(
        'Update Status',
        f'Changed {member.first_name} to {member.status}',
        user_email,
        'TeamMember',
        member.id,
    )
    return member


def active_team_members():
    """Members that can be picked as responsible for a loan."""
    return list(TeamMember.objects.filter(status='active').order_by('first_name', 'last_name'))
