import json
import logging
from functools import wraps

from django.contrib.auth import logout
from django.db import DatabaseError
from django.http import Http404, HttpResponse, JsonResponse
from django.shortcuts import get_object_or_404
from django.utils import timezone
from django.utils.dateparse import parse_date
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from . import catalog, grouping, importer, item_tracking, loans
from .audit import export_activity_csv
from .availability import (
    availability_map, case_location, case_members, case_status, display_available,
    get_availability, inventory_stats, is_overdue,
)
from .exceptions import DemoKitError, StoreError, ValidationError
from .models import ActivityLog, DemoCase, Loan, Product, TeamMember
from .snapshot import take_snapshot

logger = logging.getLogger(__name__)


def _error(message, status):
    return JsonResponse({'success': False, 'error': message}, status=status)


def api_view(view):
    """Translate domain and database errors into JSON error responses."""
    @wraps(view)
    def wrapper(request, *args, **kwargs):
        try:
            return view(request, *args, **kwargs)
        except DemoKitError as e:
            return _error(e.message, e.status_code)
        except Http404:
            return _error('Not found', 404)
        except json.JSONDecodeError:
            return _error('Invalid JSON data', 400)
        except DatabaseError as e:
            logger.exception('Database error in %s', view.__name__)
            err = StoreError(f'Database error: {e}')
            return _error(err.message, err.status_code)
        except Exception as e:
            logger.exception('Unhandled error in %s', view.__name__)
            return _error(str(e), 500)
    return wrapper


def _body(request):
    if not request.body:
        return {}
    return json.loads(request.body)


def _current_email(request):
    return request.user.email or request.user.get_username()


def _parse_date(value, label):
    if not value:
        return None
    parsed = parse_date(str(value))
    if parsed is None:
        raise ValidationError(f'{label} must be a date (YYYY-MM-DD).')
    return parsed


def _parse_id(value, label):
    try:
        return int(value)
    except (ValueError, TypeError):
        raise ValidationError(f'{label} must be an id.')


def _id_list(values, label):
    try:
        return [int(v) for v in values or []]
    except (ValueError, TypeError):
        raise ValidationError(f'{label} must be a list of ids.')


# ---- Serializers ----

def _product_dict(product, availability, case_names):
    return {
        'id': product.id,
        'article_reference': product.article_reference,
        'brand': product.brand,
        'description': product.description,
        'quantity': product.quantity,
        'is_individual_item': product.is_individual_item,
        'parent_article_id': product.parent_article_id,
        'item_identifier': product.item_identifier,
        'serial_number': product.serial_number,
        'purchase_value': str(product.purchase_value) if product.purchase_value is not None else None,
        'photo_url': product.photo_url,
        'belongs_to_case': product.belongs_to_case,
        'demo_case_id': product.demo_case_id,
        'demo_case_name': case_names.get(product.demo_case_id, ''),
        'can_lend_separately': product.can_lend_separately,
        'available': availability.available,
        'display_available': display_available(availability),
        'total': availability.total,
        'has_individual_items': availability.has_individual_items,
    }


def _loan_dict(loan, today):
    return {
        'id': loan.id,
        'product_id': loan.product_id,
        'product_article': loan.product_article,
        'product_description': loan.product_description,
        'kit_name': loan.kit_name,
        'customer_name': loan.customer_name,
        'customer_address': loan.customer_address,
        'responsible_email': loan.responsible_email,
        'responsible_name': loan.responsible_name,
        'lent_by_email': loan.lent_by_email,
        'lent_date': loan.lent_date.isoformat(),
        'expected_return_date': loan.expected_return_date.isoformat() if loan.expected_return_date else None,
        'actual_return_date': loan.actual_return_date.isoformat() if loan.actual_return_date else None,
        'status': loan.status,
        'notes': loan.notes,
        'is_overdue': is_overdue(loan, today),
    }


def _case_dict(demo_case):
    return {
        'id': demo_case.id,
        'case_name': demo_case.case_name,
        'case_type': demo_case.case_type,
        'software_version': demo_case.software_version,
        'serial_number': demo_case.serial_number,
        'base_location': demo_case.base_location,
        'base_address': demo_case.base_address,
        'description': demo_case.description,
        'notes': demo_case.notes,
    }


def _member_dict(member):
    return {
        'id': member.id,
        'first_name': member.first_name,
        'last_name': member.last_name,
        'full_name': member.full_name,
        'email': member.email,
        'role': member.role,
        'status': member.status,
    }


def _bulk_dict(result, today):
    return {
        'success': not result.failed,
        'succeeded': [_loan_dict(l, today) for l in result.succeeded],
        'failed': result.failed,
        'success_count': result.success_count,
        'failure_count': result.failure_count,
    }


def _import_row_dict(row):
    return row._asdict()


# ---- Identity ----

@api_view
@require_http_methods(["GET"])
def me(request):
    """The signed-in user, with the role of the matching team member if any."""
    user = request.user
    email = _current_email(request)
    member = TeamMember.objects.filter(email__iexact=email).first()
    if member is not None:
        role = member.role
    else:
        role = 'admin' if user.is_superuser else 'member'
    return JsonResponse({
        'email': email,
        'first_name': user.first_name or (member.first_name if member else ''),
        'last_name': user.last_name or (member.last_name if member else ''),
        'role': role,
        'photo_url': '',
    })


@csrf_exempt
@require_http_methods(["POST"])
def logout_api(request):
    logout(request)
    return JsonResponse({'success': True})


# ---- Products ----

@api_view
@require_http_methods(["GET"])
def product_list(request):
    """Products with live availability. ``?q=`` searches reference, brand, description."""
    q = request.GET.get('q', '').strip().lower()
    snapshot = take_snapshot()
    avail = availability_map(snapshot.products, snapshot.active_loans)
    case_names = {c.id: c.case_name for c in snapshot.demo_cases}

    rows = []
    for p in snapshot.products:
        if q and not any(q in (value or '').lower() for value in (
                p.article_reference, p.brand, p.description, p.item_identifier,
                case_names.get(p.demo_case_id, ''))):
            continue
        rows.append(_product_dict(p, avail[p.id], case_names))
    return JsonResponse({'products': rows, 'count': len(rows)})


@api_view
@require_http_methods(["GET"])
def product_availability(request, product_id):
    product = get_object_or_404(Product, id=product_id)
    snapshot = take_snapshot()
    avail = get_availability(product, snapshot.products, snapshot.active_loans)
    return JsonResponse({
        'product_id': product.id,
        'available': avail.available,
        'total': avail.total,
        'has_individual_items': avail.has_individual_items,
    })


@csrf_exempt
@api_view
@require_http_methods(["POST"])
def product_create(request):
    product = catalog.create_product(_body(request), _current_email(request))
    return JsonResponse({'success': True, 'id': product.id}, status=201)


@csrf_exempt
@api_view
@require_http_methods(["POST"])
def product_edit(request, product_id):
    product = get_object_or_404(Product, id=product_id)
    catalog.update_product(product, _body(request), _current_email(request))
    return JsonResponse({'success': True, 'id': product.id})


@csrf_exempt
@api_view
@require_http_methods(["POST"])
def product_delete(request, product_id):
    product = get_object_or_404(Product, id=product_id)
    catalog.delete_product(product, _current_email(request))
    return JsonResponse({'success': True})


@csrf_exempt
@api_view
@require_http_methods(["POST"])
def product_split(request, product_id):
    article = get_object_or_404(Product, id=product_id)
    items = item_tracking.split_to_items(article, _current_email(request))
    return JsonResponse({
        'success': True,
        'items': [{'id': i.id, 'item_identifier': i.item_identifier} for i in items],
    })


@csrf_exempt
@api_view
@require_http_methods(["POST"])
def product_merge(request, product_id):
    article = get_object_or_404(Product, id=product_id)
    item_tracking.merge_to_article(article, article.items.all(), _current_email(request))
    return JsonResponse({'success': True, 'quantity': article.quantity})


@csrf_exempt
@api_view
@require_http_methods(["POST"])
def item_serial(request, item_id):
    item = get_object_or_404(Product, id=item_id)
    data = _body(request)
    item_tracking.set_serial_number(item, data.get('serial_number'), _current_email(request))
    return JsonResponse({'success': True, 'serial_number': item.serial_number})


# ---- Demo cases ----

@api_view
@require_http_methods(["GET"])
def demo_case_list(request):
    """Demo cases with member availability, status and current whereabouts."""
    snapshot = take_snapshot()
    avail = availability_map(snapshot.products, snapshot.active_loans)
    case_names = {c.id: c.case_name for c in snapshot.demo_cases}

    rows = []
    for demo_case in snapshot.demo_cases:
        status = case_status(demo_case, snapshot.products, snapshot.active_loans)
        location = case_location(demo_case, status)
        row = _case_dict(demo_case)
        row.update({
            'status': status.status,
            'available': status.available,
            'total': status.total,
            'location': location._asdict(),
            'products': [
                _product_dict(p, avail[p.id], case_names)
                for p in case_members(demo_case, snapshot.products)
            ],
        })
        rows.append(row)
    return JsonResponse({'demo_cases': rows, 'count': len(rows)})


@csrf_exempt
@api_view
@require_http_methods(["POST"])
def demo_case_create(request):
    demo_case = catalog.create_demo_case(_body(request), _current_email(request))
    return JsonResponse({'success': True, 'id': demo_case.id}, status=201)


@csrf_exempt
@api_view
@require_http_methods(["POST"])
def demo_case_edit(request, case_id):
    demo_case = get_object_or_404(DemoCase, id=case_id)
    catalog.update_demo_case(demo_case, _body(request), _current_email(request))
    return JsonResponse({'success': True, 'id': demo_case.id})


@csrf_exempt
@api_view
@require_http_methods(["POST"])
def demo_case_delete(request, case_id):
    demo_case = get_object_or_404(DemoCase, id=case_id)
    unlinked = catalog.delete_demo_case(demo_case, _current_email(request))
    return JsonResponse({'success': True, 'unlinked_products': unlinked})


@csrf_exempt
@api_view
@require_http_methods(["POST"])
def demo_case_lend(request, case_id):
    """Lend the selected members of a case; reports the products that were skipped."""
    demo_case = get_object_or_404(DemoCase, id=case_id)
    data = _body(request)
    email = _current_email(request)
    result = loans.bulk_lend_case(
        demo_case,
        _id_list(data.get('product_ids'), 'product_ids'),
        data.get('customer_name', ''),
        data.get('responsible_email') or email,
        email,
        is_sample=catalog.as_bool(data.get('is_sample', False)),
        return_date=_parse_date(data.get('return_date'), 'Return date'),
        notes=data.get('notes', ''),
        customer_address=data.get('customer_address'),
    )
    return JsonResponse(_bulk_dict(result, timezone.localdate()))


# ---- Loans ----

@api_view
@require_http_methods(["GET"])
def loan_list(request):
    """Active loans grouped by case and customer. ``?mine=1`` limits to my responsibility."""
    snapshot = take_snapshot()
    active = snapshot.active_loans
    if request.GET.get('mine', '') == '1':
        email = _current_email(request).lower()
        active = [l for l in active if l.responsible_email.lower() == email]

    today = timezone.localdate()
    groups, standalone = grouping.group_loans(active, snapshot.products, snapshot.demo_cases)
    return JsonResponse({
        'groups': [{
            'case_name': g.case_name,
            'customer_name': g.customer_name,
            'customer_address': g.customer_address,
            'needs_data_fix': g.needs_data_fix,
            'is_complete': g.is_complete,
            'loans': [_loan_dict(l, today) for l in g.loans],
        } for g in groups],
        'standalone': [_loan_dict(l, today) for l in standalone],
        'count': len(active),
    })


@csrf_exempt
@api_view
@require_http_methods(["POST"])
def loan_create(request):
    data = _body(request)
    product = get_object_or_404(Product, id=_parse_id(data.get('product_id'), 'product_id'))
    email = _current_email(request)
    loan = loans.create_loan(
        product,
        data.get('customer_name', ''),
        data.get('responsible_email') or email,
        email,
        is_sample=catalog.as_bool(data.get('is_sample', False)),
        return_date=_parse_date(data.get('return_date'), 'Return date'),
        notes=data.get('notes', ''),
        customer_address=data.get('customer_address'),
    )
    return JsonResponse({'success': True, 'loan': _loan_dict(loan, timezone.localdate())}, status=201)


@csrf_exempt
@api_view
@require_http_methods(["POST"])
def loan_return(request, loan_id):
    loan = get_object_or_404(Loan, id=loan_id)
    loans.return_loan(loan, _current_email(request))
    return JsonResponse({'success': True, 'loan': _loan_dict(loan, timezone.localdate())})


@csrf_exempt
@api_view
@require_http_methods(["POST"])
def loan_bulk_return(request):
    data = _body(request)
    loan_ids = _id_list(data.get('loan_ids'), 'loan_ids')
    if not loan_ids:
        raise ValidationError('Missing loan_ids')
    batch = list(Loan.objects.filter(id__in=loan_ids))
    found = {l.id for l in batch}
    result = loans.bulk_return_case(batch, _current_email(request))
    for missing in [i for i in loan_ids if i not in found]:
        result.add_failure(missing, 'Loan not found')
    return JsonResponse(_bulk_dict(result, timezone.localdate()))


@csrf_exempt
@api_view
@require_http_methods(["POST"])
def loan_fix_case_data(request):
    """Back-fill kit names for one case/customer group."""
    data = _body(request)
    case_name = data.get('case_name', '')
    customer_name = data.get('customer_name', '')
    snapshot = take_snapshot()
    groups, _ = grouping.group_loans(snapshot.active_loans, snapshot.products, snapshot.demo_cases)
    group = next((g for g in groups if g.key == (case_name, customer_name)), None)
    if group is None:
        raise Http404
    updated = grouping.fix_demo_case_data(group, _current_email(request))
    return JsonResponse({'success': True, 'updated_count': updated})


@api_view
@require_http_methods(["GET"])
def overdue_loans_api(request):
    """Loans that are out past their expected return date."""
    today = timezone.localdate()
    overdue = loans.overdue_loans(
        Loan.objects.filter(status='out').order_by('expected_return_date'), today
    )
    rows = []
    for loan in overdue:
        row = _loan_dict(loan, today)
        row['days_overdue'] = (today - loan.expected_return_date).days
        rows.append(row)
    return JsonResponse({'overdue_loans': rows, 'count': len(rows)})


@api_view
@require_http_methods(["GET"])
def report_api(request):
    """Dashboard counters."""
    snapshot = take_snapshot()
    stats = inventory_stats(snapshot.products, snapshot.active_loans, timezone.localdate())
    data = stats._asdict()
    data['generated_at'] = timezone.now().isoformat()
    return JsonResponse(data)


# ---- Team ----

@api_view
@require_http_methods(["GET"])
def team_list(request):
    """All team members, or only those who can be responsible (``?active=1``)."""
    if request.GET.get('active', '') == '1':
        members = catalog.active_team_members()
    else:
        members = TeamMember.objects.all()
    return JsonResponse({'members': [_member_dict(m) for m in members]})


@csrf_exempt
@api_view
@require_http_methods(["POST"])
def team_create(request):
    member = catalog.create_team_member(_body(request), _current_email(request))
    return JsonResponse({'success': True, 'member': _member_dict(member)}, status=201)


@csrf_exempt
@api_view
@require_http_methods(["POST"])
def team_edit(request, member_id):
    member = get_object_or_404(TeamMember, id=member_id)
    catalog.update_team_member(member, _body(request), _current_email(request))
    return JsonResponse({'success': True, 'member': _member_dict(member)})


@csrf_exempt
@api_view
@require_http_methods(["POST"])
def team_toggle_status(request, member_id):
    member = get_object_or_404(TeamMember, id=member_id)
    catalog.toggle_member_status(member, _current_email(request))
    return JsonResponse({'success': True, 'status': member.status})


# ---- Import ----

@csrf_exempt
@api_view
@require_http_methods(["POST"])
def import_preview(request):
    rows = importer.parse_import_text(_body(request).get('text', ''))
    return JsonResponse({
        'rows': [_import_row_dict(r) for r in rows],
        'new_cases': importer.new_case_names(rows, DemoCase.objects.all()),
    })


@csrf_exempt
@api_view
@require_http_methods(["POST"])
def import_run(request):
    rows = importer.parse_import_text(_body(request).get('text', ''))
    if not rows:
        raise ValidationError('No valid rows to import.')
    result = importer.import_products(rows, _current_email(request))
    return JsonResponse({
        'success': True,
        'created_products': len(result.products),
        'created_cases': [c.case_name for c in result.created_cases],
        'skipped': [{'row': _import_row_dict(r), 'reason': reason} for r, reason in result.skipped],
    })


# ---- Activity log ----

@api_view
@require_http_methods(["GET"])
def activity_list(request):
    logs = ActivityLog.objects.order_by('-created_date')[:100]
    return JsonResponse({'logs': [{
        'id': log.id,
        'action': log.action,
        'details': log.details,
        'user_email': log.user_email,
        'entity_type': log.entity_type,
        'entity_id': log.entity_id,
        'created_date': log.created_date.isoformat(),
    } for log in logs]})


def export_activity_log(request):
    """Download the activity log as CSV."""
    logs = ActivityLog.objects.order_by('-created_date')
    response = HttpResponse(export_activity_csv(logs), content_type='text/csv; charset=utf-8')
    filename = f"activity_log_{timezone.localdate().strftime('%Y%m%d')}.csv"
    response['Content-Disposition'] = f'attachment; filename="{filename}"'
    return response
