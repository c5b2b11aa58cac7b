"""
Test suite for the demo case tracker.

Covers the availability engine, the loan lifecycle, per-item tracking,
demo-case grouping, catalog rules, bulk import, the audit trail and the JSON
API. Scenario names follow the inventory walkthroughs used by the sales team
(AP-H100 handle article, "Kit A" demo case, customer "Acme").
"""

import json
from datetime import date, timedelta
from unittest import mock

from django.contrib.auth import get_user_model
from django.db import DatabaseError
from django.test import TestCase, Client, override_settings
from django.utils import timezone

from . import catalog, grouping, importer, item_tracking, loans
from .audit import export_activity_csv, log_activity
from .availability import (
    availability_map, case_location, case_status, display_available, get_availability,
    inventory_stats, is_overdue,
)
from .exceptions import DuplicateError, InvalidState, OutOfStock, PolicyViolation, ValidationError
from .models import ActivityLog, DemoCase, Loan, Product, TeamMember
from .snapshot import take_snapshot


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

USER = 'alice@example.com'


def _product(ref='AP-H100', quantity=3, **overrides):
    data = {
        'article_reference': ref,
        'brand': 'ASSA ABLOY',
        'description': 'Aperio H100 handle',
        'quantity': quantity,
    }
    data.update(overrides)
    return Product.objects.create(**data)


def _case_product(demo_case, ref, quantity=1, **overrides):
    return _product(ref, quantity, belongs_to_case=True, demo_case=demo_case, **overrides)


def _availability(product):
    snapshot = take_snapshot()
    return get_availability(product, snapshot.products, snapshot.active_loans)


def _lend(product, customer='Acme', **kwargs):
    return loans.create_loan(product, customer, USER, USER, **kwargs)


def _raw_loan(product, customer='Acme', kit_name='', status='out', **overrides):
    """Loan row written straight to the table, bypassing lifecycle checks."""
    data = {
        'product': product,
        'product_article': product.label,
        'product_description': product.description,
        'kit_name': kit_name,
        'customer_name': customer,
        'lent_date': timezone.localdate(),
        'expected_return_date': timezone.localdate() + timedelta(days=14),
        'status': status,
    }
    data.update(overrides)
    return Loan.objects.create(**data)


# ===================================================================
# 1. Availability Engine
# ===================================================================

class TestAvailability(TestCase):
    """Availability for plain articles, individual items and split articles."""

    def test_plain_article_lend_and_return(self):
        """AP-H100 qty 3: 3/3, lend one 2/3, return it 3/3."""
        article = _product(quantity=3)
        self.assertEqual(tuple(_availability(article)), (3, 3, False))

        loan = _lend(article)
        self.assertEqual(tuple(_availability(article)), (2, 3, False))

        loans.return_loan(loan, USER)
        self.assertEqual(tuple(_availability(article)), (3, 3, False))

    def test_split_article_counts_children(self):
        """After a split the article reports its items' capacity."""
        article = _product(quantity=3)
        items = item_tracking.split_to_items(article, USER)

        self.assertEqual([i.item_identifier for i in items],
                         ['AP-H100-001', 'AP-H100-002', 'AP-H100-003'])
        article.refresh_from_db()
        self.assertEqual(article.quantity, 0)
        self.assertEqual(tuple(_availability(article)), (3, 3, True))

        _lend(items[1])
        self.assertEqual(_availability(article).available, 2)
        self.assertEqual(tuple(_availability(items[1])), (0, 1, False))
        self.assertEqual(tuple(_availability(items[0])), (1, 1, False))

    def test_conservation_over_children(self):
        """available + active loans on children == number of children."""
        article = _product(quantity=4)
        items = item_tracking.split_to_items(article, USER)
        _lend(items[0])
        _lend(items[3], is_sample=True)

        avail = _availability(article)
        on_loan = Loan.objects.filter(product__in=items, status__in=Loan.ACTIVE_STATUSES).count()
        self.assertEqual(avail.total, 4)
        self.assertEqual(avail.available + on_loan, 4)

    def test_returned_loans_are_ignored(self):
        article = _product(quantity=1)
        _raw_loan(article, status='returned', actual_return_date=timezone.localdate())
        snapshot = take_snapshot()
        self.assertEqual(get_availability(article, snapshot.products, snapshot.active_loans).available, 1)
        # Even when a returned loan slips into the collection
        all_loans = list(Loan.objects.all())
        self.assertEqual(get_availability(article, snapshot.products, all_loans).available, 1)

    def test_corrupted_data_reports_negative(self):
        """More active loans than units gives a negative raw value."""
        article = _product(quantity=1)
        _raw_loan(article)
        _raw_loan(article, customer='Globex')

        avail = _availability(article)
        self.assertEqual(avail.available, -1)
        self.assertEqual(display_available(avail), 0)

    @override_settings(DEMOKIT_LIST_LIMIT=2)
    def test_active_loans_not_capped_by_list_limit(self):
        """Every active loan counts, however many there are."""
        article = _product(quantity=5)
        for n in range(4):
            _raw_loan(article, customer=f'Cust{n}')
        self.assertEqual(len(take_snapshot().active_loans), 4)
        self.assertEqual(_availability(article).available, 1)

    @override_settings(DEMOKIT_LIST_LIMIT=2)
    def test_truncated_product_list_is_logged(self):
        for ref in ('P1', 'P2', 'P3'):
            _product(ref)
        with self.assertLogs('demokit.snapshot', level='WARNING'):
            snapshot = take_snapshot()
        self.assertEqual(len(snapshot.products), 2)

    def test_availability_map_matches_single_lookups(self):
        article = _product(quantity=3)
        items = item_tracking.split_to_items(article, USER)
        other = _product('SA-100', quantity=2)
        _lend(items[2])
        _lend(other)

        snapshot = take_snapshot()
        mapped = availability_map(snapshot.products, snapshot.active_loans)
        for p in snapshot.products:
            self.assertEqual(mapped[p.id], get_availability(p, snapshot.products, snapshot.active_loans))


# ===================================================================
# 2. Loan Lifecycle
# ===================================================================

class TestLoanLifecycle(TestCase):

    def setUp(self):
        self.member = TeamMember.objects.create(
            first_name='Alice', last_name='Martin', email=USER, role='admin',
        )

    def test_create_loan_snapshots_product(self):
        demo_case = DemoCase.objects.create(case_name='Kit A', case_type='Aperio Kit')
        product = _case_product(demo_case, 'AP-H100', quantity=2)
        loan = _lend(product, customer_address='Rue de la Loi 123, 1040 Brussels', notes='Trade show')

        self.assertEqual(loan.status, 'out')
        self.assertEqual(loan.product_article, 'AP-H100')
        self.assertEqual(loan.product_description, 'Aperio H100 handle')
        self.assertEqual(loan.kit_name, 'Kit A')
        self.assertEqual(loan.responsible_name, 'Alice Martin')
        self.assertEqual(loan.lent_by_email, USER)
        self.assertEqual(loan.lent_date, timezone.localdate())
        self.assertEqual(loan.customer_address, 'Rue de la Loi 123, 1040 Brussels')

    def test_snapshot_not_kept_in_sync(self):
        product = _product(quantity=1)
        loan = _lend(product)
        product.description = 'Renamed'
        product.save()
        loan.refresh_from_db()
        self.assertEqual(loan.product_description, 'Aperio H100 handle')

    def test_default_return_date_two_weeks(self):
        loan = _lend(_product())
        self.assertEqual(loan.expected_return_date, timezone.localdate() + timedelta(weeks=2))

    def test_explicit_return_date(self):
        due = timezone.localdate() + timedelta(days=3)
        loan = _lend(_product(), return_date=due)
        self.assertEqual(loan.expected_return_date, due)

    def test_sample_has_no_return_date(self):
        loan = _lend(_product(), is_sample=True, return_date=timezone.localdate())
        self.assertEqual(loan.status, 'sample')
        self.assertIsNone(loan.expected_return_date)

    def test_unknown_responsible_falls_back_to_email(self):
        loan = loans.create_loan(_product(), 'Acme', 'bob@example.com', USER)
        self.assertEqual(loan.responsible_name, 'bob@example.com')

    def test_customer_name_required(self):
        with self.assertRaises(ValidationError):
            _lend(_product(), customer='  ')
        self.assertEqual(Loan.objects.count(), 0)

    def test_second_loan_on_single_unit_is_out_of_stock(self):
        product = _product(quantity=1)
        _lend(product)
        with self.assertRaises(OutOfStock):
            _lend(product, customer='Globex')
        self.assertEqual(Loan.objects.filter(product=product, status__in=Loan.ACTIVE_STATUSES).count(), 1)

    def test_split_article_record_cannot_be_lent(self):
        """With every item free, the zeroed article itself still refuses loans."""
        article = _product(quantity=2)
        items = item_tracking.split_to_items(article, USER)
        for n in range(3):
            with self.assertRaises(ValidationError):
                _lend(article, customer=f'Cust{n}')

        self.assertFalse(Loan.objects.filter(product=article).exists())
        self.assertEqual(tuple(_availability(article)), (2, 2, True))
        _lend(items[0])
        self.assertEqual(_availability(article).available, 1)

    def test_case_bound_item_cannot_be_lent_separately(self):
        demo_case = DemoCase.objects.create(case_name='Kit A')
        product = _case_product(demo_case, 'CLIQ-KEY', quantity=5, can_lend_separately=False)
        with self.assertRaises(PolicyViolation) as ctx:
            _lend(product)
        self.assertIn('Kit A', ctx.exception.message)
        self.assertEqual(Loan.objects.count(), 0)

    def test_case_bound_item_allowed_in_case_context(self):
        demo_case = DemoCase.objects.create(case_name='Kit A')
        product = _case_product(demo_case, 'CLIQ-KEY', can_lend_separately=False)
        loan = _lend(product, case_context=True, kit_name='Kit A')
        self.assertEqual(loan.kit_name, 'Kit A')

    def test_lend_writes_activity_log(self):
        product = _product()
        loan = _lend(product)
        entry = ActivityLog.objects.get(action='Lend')
        self.assertEqual(entry.entity_type, 'Loan')
        self.assertEqual(entry.entity_id, str(loan.id))
        self.assertEqual(entry.user_email, USER)
        self.assertIn('AP-H100', entry.details)
        self.assertIn('Acme', entry.details)

    def test_audit_failure_does_not_roll_back_loan(self):
        product = _product()
        with mock.patch('demokit.audit.ActivityLog.objects.create', side_effect=DatabaseError('down')):
            with self.assertLogs('demokit.audit', level='ERROR'):
                loan = _lend(product)
        self.assertTrue(Loan.objects.filter(id=loan.id).exists())
        self.assertEqual(ActivityLog.objects.count(), 0)

    def test_return_sets_status_and_date(self):
        loan = _lend(_product())
        loans.return_loan(loan, USER)
        loan.refresh_from_db()
        self.assertEqual(loan.status, 'returned')
        self.assertEqual(loan.actual_return_date, timezone.localdate())
        self.assertTrue(ActivityLog.objects.filter(action='Return', entity_id=str(loan.id)).exists())

    def test_return_sample(self):
        loan = _lend(_product(), is_sample=True)
        loans.return_loan(loan, USER)
        self.assertEqual(loan.status, 'returned')

    def test_return_twice_is_rejected(self):
        loan = _lend(_product())
        loans.return_loan(loan, USER)
        Loan.objects.filter(id=loan.id).update(actual_return_date=date(2020, 1, 1))
        loan.refresh_from_db()

        with self.assertRaises(InvalidState):
            loans.return_loan(loan, USER)
        loan.refresh_from_db()
        self.assertEqual(loan.actual_return_date, date(2020, 1, 1))
        self.assertEqual(ActivityLog.objects.filter(action='Return').count(), 1)


# ===================================================================
# 3. Overdue Detection
# ===================================================================

class TestOverdue(TestCase):

    def setUp(self):
        self.today = timezone.localdate()
        self.product = _product(quantity=5)

    def test_out_past_due_is_overdue(self):
        loan = _raw_loan(self.product, expected_return_date=self.today - timedelta(days=1))
        self.assertTrue(is_overdue(loan, self.today))
        self.assertTrue(loan.is_overdue)

    def test_due_today_is_not_overdue(self):
        loan = _raw_loan(self.product, expected_return_date=self.today)
        self.assertFalse(is_overdue(loan, self.today))

    def test_samples_never_overdue(self):
        loan = _raw_loan(self.product, status='sample', expected_return_date=self.today - timedelta(days=30))
        self.assertFalse(is_overdue(loan, self.today))

    def test_returned_not_overdue(self):
        loan = _raw_loan(self.product, status='returned', expected_return_date=self.today - timedelta(days=30))
        self.assertFalse(is_overdue(loan, self.today))

    def test_overdue_loans_filter(self):
        late = _raw_loan(self.product, expected_return_date=self.today - timedelta(days=2))
        _raw_loan(self.product, customer='Globex')
        _raw_loan(self.product, customer='Initech', status='sample', expected_return_date=None)
        self.assertEqual(loans.overdue_loans(Loan.objects.all(), self.today), [late])

    def test_inventory_stats(self):
        _raw_loan(self.product, expected_return_date=self.today - timedelta(days=2))
        _raw_loan(self.product, customer='Initech', status='sample', expected_return_date=None)
        _product('SA-100', quantity=2)
        snapshot = take_snapshot()
        stats = inventory_stats(snapshot.products, snapshot.active_loans, self.today)
        self.assertEqual(stats.total_units, 7)
        self.assertEqual(stats.out, 1)
        self.assertEqual(stats.samples, 1)
        self.assertEqual(stats.available, 5)
        self.assertEqual(stats.overdue, 1)


# ===================================================================
# 4. Bulk Case Operations
# ===================================================================

class TestBulkCaseOperations(TestCase):

    def setUp(self):
        self.case = DemoCase.objects.create(case_name='Kit A', case_type='CLIQ System')
        self.p1 = _case_product(self.case, 'CLIQ-CYL')
        self.p2 = _case_product(self.case, 'CLIQ-KEY', can_lend_separately=False)
        self.p3 = _case_product(self.case, 'CLIQ-PROG')

    def test_bulk_lend_skips_unavailable(self):
        _raw_loan(self.p3, customer='Globex')
        result = loans.bulk_lend_case(
            self.case, [self.p1.id, self.p2.id, self.p3.id], 'Acme', USER, USER,
        )
        self.assertEqual(result.success_count, 2)
        self.assertEqual(result.failure_count, 1)
        self.assertEqual(result.failed[0]['id'], self.p3.id)
        for loan in result.succeeded:
            self.assertEqual(loan.kit_name, 'Kit A')
            self.assertEqual(loan.customer_name, 'Acme')

    def test_bulk_lend_logs_once(self):
        loans.bulk_lend_case(self.case, [self.p1.id, self.p2.id], 'Acme', USER, USER)
        self.assertEqual(ActivityLog.objects.filter(action='Bulk Lend Case').count(), 1)
        self.assertEqual(ActivityLog.objects.filter(action='Lend').count(), 0)

    def test_bulk_lend_rejects_foreign_product(self):
        outsider = _product('SA-100', quantity=1)
        result = loans.bulk_lend_case(self.case, [self.p1.id, outsider.id], 'Acme', USER, USER)
        self.assertEqual(result.success_count, 1)
        self.assertEqual(result.failed[0]['id'], outsider.id)
        self.assertFalse(Loan.objects.filter(product=outsider).exists())

    def test_bulk_lend_counts_loans_made_in_same_batch(self):
        result = loans.bulk_lend_case(self.case, [self.p1.id, self.p1.id], 'Acme', USER, USER)
        self.assertEqual(result.success_count, 1)
        self.assertEqual(result.failure_count, 1)
        self.assertEqual(Loan.objects.filter(product=self.p1).count(), 1)

    def test_bulk_lend_skips_split_article_record(self):
        """A split member is lent through its items, never through the zeroed article."""
        article = _case_product(self.case, 'CLIQ-CYL-SET', quantity=2)
        items = item_tracking.split_to_items(article, USER)
        result = loans.bulk_lend_case(
            self.case, [article.id, items[0].id, items[1].id], 'Acme', USER, USER,
        )
        self.assertEqual(result.success_count, 2)
        self.assertEqual([f['id'] for f in result.failed], [article.id])
        self.assertFalse(Loan.objects.filter(product=article).exists())

    def test_bulk_lend_requires_selection(self):
        with self.assertRaises(ValidationError):
            loans.bulk_lend_case(self.case, [], 'Acme', USER, USER)

    def test_bulk_lend_sample(self):
        result = loans.bulk_lend_case(self.case, [self.p1.id], 'Acme', USER, USER, is_sample=True)
        self.assertEqual(result.succeeded[0].status, 'sample')
        self.assertIsNone(result.succeeded[0].expected_return_date)

    def test_bulk_return_reports_partial_failure(self):
        result = loans.bulk_lend_case(self.case, [self.p1.id, self.p2.id, self.p3.id], 'Acme', USER, USER)
        batch = list(result.succeeded)
        loans.return_loan(batch[1], USER)

        returned = loans.bulk_return_case(batch, USER)
        self.assertEqual(returned.success_count, 2)
        self.assertEqual(returned.failure_count, 1)
        self.assertEqual(returned.failed[0]['id'], batch[1].id)
        self.assertEqual(Loan.objects.filter(status='returned').count(), 3)
        self.assertTrue(ActivityLog.objects.filter(action='Bulk Return Case').exists())


# ===================================================================
# 5. Item Tracking (split / merge)
# ===================================================================

class TestItemTracking(TestCase):

    def test_split_inherits_article_fields(self):
        demo_case = DemoCase.objects.create(case_name='Kit A')
        article = _case_product(demo_case, 'AP-H100', quantity=2, can_lend_separately=False,
                                serial_number='SN-ART')
        items = item_tracking.split_to_items(article, USER)

        self.assertEqual(len(items), 2)
        for item in items:
            self.assertTrue(item.is_individual_item)
            self.assertEqual(item.parent_article_id, article.id)
            self.assertEqual(item.quantity, 1)
            self.assertEqual(item.brand, 'ASSA ABLOY')
            self.assertEqual(item.demo_case_id, demo_case.id)
            self.assertTrue(item.belongs_to_case)
            self.assertFalse(item.can_lend_separately)
            self.assertIsNone(item.serial_number)
        self.assertTrue(ActivityLog.objects.filter(action='Split to Items').exists())

    def test_identifiers_are_sequential_and_unique(self):
        article = _product('AP-H100', quantity=12)
        items = item_tracking.split_to_items(article, USER)
        identifiers = [i.item_identifier for i in items]
        self.assertEqual(identifiers[0], 'AP-H100-001')
        self.assertEqual(identifiers[-1], 'AP-H100-012')
        self.assertEqual(len(set(identifiers)), 12)

    def test_split_requires_quantity_above_one(self):
        article = _product(quantity=1)
        with self.assertRaises(ValidationError):
            item_tracking.split_to_items(article, USER)
        self.assertEqual(Product.objects.filter(is_individual_item=True).count(), 0)

    def test_split_twice_rejected(self):
        article = _product(quantity=3)
        item_tracking.split_to_items(article, USER)
        with self.assertRaises(InvalidState):
            item_tracking.split_to_items(article, USER)
        self.assertEqual(article.items.count(), 3)

    def test_split_individual_item_rejected(self):
        article = _product(quantity=2)
        items = item_tracking.split_to_items(article, USER)
        with self.assertRaises(ValidationError):
            item_tracking.split_to_items(items[0], USER)

    def test_split_with_active_loan_rejected(self):
        article = _product(quantity=3)
        _lend(article)
        with self.assertRaises(InvalidState):
            item_tracking.split_to_items(article, USER)
        article.refresh_from_db()
        self.assertEqual(article.quantity, 3)
        self.assertFalse(article.items.exists())

    def test_split_failure_writes_nothing(self):
        article = _product(quantity=3)
        real_create = Product.objects.create
        calls = []

        def flaky_create(**kwargs):
            calls.append(kwargs)
            if len(calls) == 3:
                raise DatabaseError('disk full')
            return real_create(**kwargs)

        with mock.patch.object(Product.objects, 'create', side_effect=flaky_create):
            with self.assertRaises(DatabaseError):
                item_tracking.split_to_items(article, USER)

        article.refresh_from_db()
        self.assertEqual(article.quantity, 3)
        self.assertEqual(Product.objects.filter(is_individual_item=True).count(), 0)

    def test_split_then_merge_restores_quantity(self):
        article = _product(quantity=3)
        item_tracking.split_to_items(article, USER)
        item_tracking.merge_to_article(article, article.items.all(), USER)

        article.refresh_from_db()
        self.assertEqual(article.quantity, 3)
        self.assertFalse(Product.objects.filter(parent_article=article).exists())
        self.assertEqual(tuple(_availability(article)), (3, 3, False))

    def test_merge_blocked_by_active_loan(self):
        article = _product(quantity=3)
        items = item_tracking.split_to_items(article, USER)
        _lend(items[0])
        with self.assertRaises(InvalidState):
            item_tracking.merge_to_article(article, items, USER)
        self.assertEqual(article.items.count(), 3)

    def test_merge_after_return_keeps_loan_history(self):
        article = _product(quantity=2)
        items = item_tracking.split_to_items(article, USER)
        loan = _lend(items[0])
        loans.return_loan(loan, USER)

        item_tracking.merge_to_article(article, items, USER)
        loan.refresh_from_db()
        self.assertIsNone(loan.product_id)
        self.assertEqual(loan.product_article, 'AP-H100-001')

    def test_merge_rejects_foreign_items(self):
        article = _product('AP-H100', quantity=2)
        other = _product('SA-100', quantity=2)
        other_items = item_tracking.split_to_items(other, USER)
        with self.assertRaises(ValidationError):
            item_tracking.merge_to_article(article, other_items, USER)

    def test_merge_without_items_rejected(self):
        article = _product(quantity=2)
        with self.assertRaises(ValidationError):
            item_tracking.merge_to_article(article, [], USER)

    def test_serial_number_per_item(self):
        article = _product(quantity=2)
        items = item_tracking.split_to_items(article, USER)
        item_tracking.set_serial_number(items[0], ' SN-0001 ', USER)
        items[0].refresh_from_db()
        items[1].refresh_from_db()
        self.assertEqual(items[0].serial_number, 'SN-0001')
        self.assertIsNone(items[1].serial_number)
        self.assertEqual(items[0].item_identifier, 'AP-H100-001')

    def test_serial_number_not_on_article(self):
        article = _product(quantity=2)
        with self.assertRaises(ValidationError):
            item_tracking.set_serial_number(article, 'SN-1', USER)


# ===================================================================
# 6. Demo Case Status and Grouping
# ===================================================================

class TestCaseStatus(TestCase):

    def setUp(self):
        self.case = DemoCase.objects.create(
            case_name='Kit A', base_location='Office Shelf B3', base_address='Rue de la Loi 123',
        )

    def _status(self):
        snapshot = take_snapshot()
        return case_status(self.case, snapshot.products, snapshot.active_loans)

    def test_empty_case(self):
        status = self._status()
        self.assertEqual((status.status, status.available, status.total), ('empty', 0, 0))
        self.assertEqual(case_location(self.case, status).type, 'office')

    def test_complete_case(self):
        _case_product(self.case, 'P1')
        _case_product(self.case, 'P2')
        status = self._status()
        self.assertEqual((status.status, status.available, status.total), ('complete', 2, 2))
        location = case_location(self.case, status)
        self.assertEqual(location.label, 'Office Shelf B3')
        self.assertEqual(location.address, 'Rue de la Loi 123')

    def test_incomplete_case(self):
        """P1 on loan to Acme, P2 free: incomplete, 1 of 2 available."""
        p1 = _case_product(self.case, 'P1')
        _case_product(self.case, 'P2')
        _lend(p1)
        status = self._status()
        self.assertEqual((status.status, status.available, status.total), ('incomplete', 1, 2))
        location = case_location(self.case, status)
        self.assertEqual(location.type, 'split')
        self.assertEqual(location.label, 'Split: Office (1), Acme (1)')

    def test_allout_single_customer(self):
        p1 = _case_product(self.case, 'P1')
        p2 = _case_product(self.case, 'P2')
        _lend(p1, customer_address='Main St 1')
        _lend(p2, customer_address='Main St 1')
        status = self._status()
        self.assertEqual(status.status, 'allout')
        location = case_location(self.case, status)
        self.assertEqual((location.type, location.label, location.address), ('customer', 'Acme', 'Main St 1'))

    def test_split_article_counted_by_items(self):
        article = _case_product(self.case, 'AP-H100', quantity=2)
        items = item_tracking.split_to_items(article, USER)
        _lend(items[0])
        status = self._status()
        self.assertEqual((status.status, status.available, status.total), ('incomplete', 1, 2))


class TestLoanGrouping(TestCase):

    def setUp(self):
        self.case = DemoCase.objects.create(case_name='Kit A')
        self.p1 = _case_product(self.case, 'P1')
        self.p2 = _case_product(self.case, 'P2')

    def _group(self):
        snapshot = take_snapshot()
        return grouping.group_loans(snapshot.active_loans, snapshot.products, snapshot.demo_cases)

    def test_fallback_group_needs_fix_and_repair_is_idempotent(self):
        _raw_loan(self.p1, kit_name='Kit A')
        stale = _raw_loan(self.p2, kit_name='', customer_address='Main St 1')

        groups, standalone = self._group()
        self.assertEqual(len(groups), 1)
        self.assertEqual(standalone, [])
        group = groups[0]
        self.assertEqual(group.key, ('Kit A', 'Acme'))
        self.assertEqual(len(group.loans), 2)
        self.assertTrue(group.needs_data_fix)
        self.assertTrue(group.is_complete)
        self.assertEqual(group.customer_address, 'Main St 1')

        self.assertEqual(grouping.fix_demo_case_data(group, USER), 1)
        stale.refresh_from_db()
        self.assertEqual(stale.kit_name, 'Kit A')

        groups, _ = self._group()
        self.assertFalse(groups[0].needs_data_fix)
        self.assertEqual(grouping.fix_demo_case_data(groups[0], USER), 0)
        self.assertEqual(ActivityLog.objects.filter(action='Fix Demo Case Data').count(), 1)

    def test_groups_split_by_customer(self):
        _raw_loan(self.p1, kit_name='Kit A', customer='Acme')
        _raw_loan(self.p2, kit_name='Kit A', customer='Globex')
        groups, _ = self._group()
        self.assertEqual({g.customer_name for g in groups}, {'Acme', 'Globex'})
        self.assertTrue(all(not g.is_complete for g in groups))

    def test_loose_products_are_standalone(self):
        loose = _product('SA-100', quantity=1)
        loan = _raw_loan(loose)
        groups, standalone = self._group()
        self.assertEqual(groups, [])
        self.assertEqual(standalone, [loan])

    def test_kit_name_wins_over_case_membership(self):
        loose = _product('SA-100', quantity=1)
        _raw_loan(loose, kit_name='Roadshow Kit')
        groups, standalone = self._group()
        self.assertEqual(groups[0].case_name, 'Roadshow Kit')
        self.assertFalse(groups[0].needs_data_fix)
        self.assertEqual(standalone, [])


# ===================================================================
# 7. Catalog Rules
# ===================================================================

class TestCatalog(TestCase):

    def test_create_product_and_duplicate(self):
        catalog.create_product({'article_reference': 'AP-H100', 'brand': 'ASSA ABLOY', 'quantity': '2'}, USER)
        with self.assertRaises(DuplicateError):
            catalog.create_product({'article_reference': 'AP-H100', 'brand': 'Yale'}, USER)
        self.assertEqual(Product.objects.count(), 1)
        self.assertTrue(ActivityLog.objects.filter(action='Add Product').exists())

    def test_create_product_requires_reference_and_brand(self):
        with self.assertRaises(ValidationError):
            catalog.create_product({'article_reference': '', 'brand': 'Yale'}, USER)
        with self.assertRaises(ValidationError):
            catalog.create_product({'article_reference': 'Y-1', 'brand': ''}, USER)

    def test_create_product_rejects_bad_quantity(self):
        with self.assertRaises(ValidationError):
            catalog.create_product({'article_reference': 'Y-1', 'brand': 'Yale', 'quantity': 'many'}, USER)
        with self.assertRaises(ValidationError):
            catalog.create_product({'article_reference': 'Y-1', 'brand': 'Yale', 'quantity': -1}, USER)

    def test_case_link_cleared_when_not_in_case(self):
        demo_case = DemoCase.objects.create(case_name='Kit A')
        product = catalog.create_product({
            'article_reference': 'Y-1', 'brand': 'Yale',
            'belongs_to_case': False, 'demo_case_id': demo_case.id,
        }, USER)
        self.assertIsNone(product.demo_case_id)

    def test_edit_split_article_quantity_rejected(self):
        article = _product(quantity=2)
        item_tracking.split_to_items(article, USER)
        with self.assertRaises(ValidationError):
            catalog.update_product(article, {'quantity': 5}, USER)
        catalog.update_product(article, {'description': 'New text'}, USER)
        article.refresh_from_db()
        self.assertEqual(article.description, 'New text')
        self.assertEqual(article.quantity, 0)

    def test_edit_split_article_updates_items_case_fields(self):
        demo_case = DemoCase.objects.create(case_name='Kit A')
        article = _product(quantity=2)
        items = item_tracking.split_to_items(article, USER)

        catalog.update_product(article, {
            'belongs_to_case': True, 'demo_case_id': demo_case.id, 'can_lend_separately': 'false',
        }, USER)
        for item in items:
            item.refresh_from_db()
            self.assertTrue(item.belongs_to_case)
            self.assertEqual(item.demo_case_id, demo_case.id)
            self.assertFalse(item.can_lend_separately)
        with self.assertRaises(PolicyViolation):
            _lend(items[0])

    def test_delete_product_blocked_by_active_loan(self):
        product = _product(quantity=1)
        loan = _lend(product)
        with self.assertRaises(InvalidState):
            catalog.delete_product(product, USER)
        loans.return_loan(loan, USER)
        catalog.delete_product(product, USER)
        self.assertFalse(Product.objects.filter(article_reference='AP-H100').exists())

    def test_delete_split_article_blocked(self):
        article = _product(quantity=2)
        item_tracking.split_to_items(article, USER)
        with self.assertRaises(InvalidState):
            catalog.delete_product(article, USER)

    def test_delete_demo_case_unlinks_products(self):
        """Deleting a case with a member on loan fails; after the return it unlinks."""
        demo_case = DemoCase.objects.create(case_name='Kit A')
        product = _case_product(demo_case, 'P1')
        loan = _lend(product)

        with self.assertRaises(InvalidState):
            catalog.delete_demo_case(demo_case, USER)
        self.assertTrue(DemoCase.objects.filter(id=demo_case.id).exists())

        loans.return_loan(loan, USER)
        self.assertEqual(catalog.delete_demo_case(demo_case, USER), 1)
        product.refresh_from_db()
        self.assertFalse(DemoCase.objects.filter(case_name='Kit A').exists())
        self.assertFalse(product.belongs_to_case)
        self.assertIsNone(product.demo_case_id)

    def test_demo_case_validation(self):
        with self.assertRaises(ValidationError):
            catalog.create_demo_case({'case_name': ''}, USER)
        with self.assertRaises(ValidationError):
            catalog.create_demo_case({'case_name': 'Kit B', 'case_type': 'Spaceship'}, USER)
        demo_case = catalog.create_demo_case({'case_name': 'Kit B'}, USER)
        self.assertEqual(demo_case.case_type, 'Custom')

    def test_team_member_email_unique(self):
        catalog.create_team_member({'first_name': 'Bob', 'last_name': 'Stone', 'email': 'bob@example.com'}, USER)
        with self.assertRaises(DuplicateError):
            catalog.create_team_member({'first_name': 'Rob', 'last_name': 'Stone', 'email': 'BOB@example.com'}, USER)

    def test_only_active_members_are_responsibles(self):
        bob = catalog.create_team_member({'first_name': 'Bob', 'last_name': 'Stone', 'email': 'bob@example.com'}, USER)
        catalog.create_team_member({'first_name': 'Cara', 'last_name': 'Lee', 'email': 'cara@example.com'}, USER)
        catalog.toggle_member_status(bob, USER)
        self.assertEqual(bob.status, 'inactive')
        self.assertEqual([m.email for m in catalog.active_team_members()], ['cara@example.com'])


# ===================================================================
# 8. Bulk Import
# ===================================================================

class TestImport(TestCase):

    def test_parse_tab_and_comma_rows(self):
        text = (
            'AP-H100\tASSA ABLOY\tAperio handle\tKit A\t4\n'
            'Y-1,Yale,Smart lock\n'
            'too,short\n'
            'SA-100,SMARTair,Wall reader,,abc\n'
        )
        rows = importer.parse_import_text(text)
        self.assertEqual(len(rows), 3)
        self.assertEqual(rows[0], importer.ImportRow('AP-H100', 'ASSA ABLOY', 'Aperio handle', 'Kit A', 4))
        self.assertEqual(rows[1].case_name, '')
        self.assertEqual(rows[1].quantity, 1)
        self.assertEqual(rows[2].quantity, 1)

    def test_new_case_names_case_insensitive(self):
        DemoCase.objects.create(case_name='Kit A')
        rows = importer.parse_import_text('P1,B,D,kit a\nP2,B,D,Kit B\nP3,B,D,KIT B\n')
        self.assertEqual(importer.new_case_names(rows, DemoCase.objects.all()), ['Kit B'])

    def test_import_creates_cases_and_links_products(self):
        existing = DemoCase.objects.create(case_name='Kit A')
        _product('DUP-1', quantity=1)
        rows = importer.parse_import_text(
            'P1,ASSA,Cylinder,kit a,2\nP2,ASSA,Key,Kit B\nDUP-1,ASSA,Again\nP3,ASSA,Loose\n'
        )
        result = importer.import_products(rows, USER)

        self.assertEqual(len(result.products), 3)
        self.assertEqual([c.case_name for c in result.created_cases], ['Kit B'])
        self.assertEqual(len(result.skipped), 1)

        p1 = Product.objects.get(article_reference='P1')
        self.assertEqual(p1.demo_case_id, existing.id)
        self.assertEqual(p1.quantity, 2)
        p3 = Product.objects.get(article_reference='P3')
        self.assertFalse(p3.belongs_to_case)
        kit_b = DemoCase.objects.get(case_name='Kit B')
        self.assertEqual(kit_b.description, 'Auto-created from import')
        self.assertTrue(ActivityLog.objects.filter(action='Bulk Import').exists())


# ===================================================================
# 9. Audit Trail
# ===================================================================

class TestAudit(TestCase):

    def test_log_activity_never_raises(self):
        with mock.patch('demokit.audit.ActivityLog.objects.create', side_effect=DatabaseError('down')):
            with self.assertLogs('demokit.audit', level='ERROR'):
                self.assertIsNone(log_activity('Lend', 'x', USER, 'Loan'))

    def test_csv_export_escapes_quotes(self):
        log_activity('Edit Product', 'Renamed "Kit A" to Kit B', '', 'Product')
        csv_text = export_activity_csv(ActivityLog.objects.all())
        lines = csv_text.strip().split('\n')
        self.assertEqual(lines[0], '"Date","User","Action","Details"')
        self.assertIn('"System"', lines[1])
        self.assertTrue(lines[1].endswith('"Renamed ""Kit A"" to Kit B"'))


# ===================================================================
# 10. JSON API
# ===================================================================

class TestApi(TestCase):

    def setUp(self):
        self.user = get_user_model().objects.create_user('alice', USER, 'pw-123456')
        self.client = Client()
        self.client.force_login(self.user)

    def _post(self, url, data=None):
        return self.client.post(url, json.dumps(data or {}), content_type='application/json')

    def test_unauthenticated_api_gets_401(self):
        resp = Client().get('/api/products/')
        self.assertEqual(resp.status_code, 401)

    def test_unauthenticated_page_redirects(self):
        resp = Client().get('/export/activity-log.csv')
        self.assertEqual(resp.status_code, 302)
        self.assertIn('/accounts/login/', resp['Location'])

    def test_me(self):
        TeamMember.objects.create(first_name='Alice', last_name='Martin', email=USER, role='admin')
        data = self.client.get('/api/me/').json()
        self.assertEqual(data['email'], USER)
        self.assertEqual(data['role'], 'admin')
        self.assertEqual(data['first_name'], 'Alice')

    def test_lend_out_of_stock_and_policy(self):
        product = _product(quantity=1)
        resp = self._post('/api/loans/create/', {'product_id': product.id, 'customer_name': 'Acme'})
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()['loan']['responsible_email'], USER)

        resp = self._post('/api/loans/create/', {'product_id': product.id, 'customer_name': 'Globex'})
        self.assertEqual(resp.status_code, 409)
        self.assertFalse(resp.json()['success'])

        demo_case = DemoCase.objects.create(case_name='Kit A')
        bound = _case_product(demo_case, 'CLIQ-KEY', can_lend_separately=False)
        resp = self._post('/api/loans/create/', {'product_id': bound.id, 'customer_name': 'Acme'})
        self.assertEqual(resp.status_code, 403)

    def test_lend_is_sample_string_false(self):
        product = _product()
        resp = self._post('/api/loans/create/', {
            'product_id': product.id, 'customer_name': 'Acme', 'is_sample': 'false',
        })
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()['loan']['status'], 'out')

        resp = self._post('/api/loans/create/', {
            'product_id': product.id, 'customer_name': 'Acme', 'is_sample': 'true',
        })
        self.assertEqual(resp.json()['loan']['status'], 'sample')

    def test_lend_non_numeric_product_id(self):
        resp = self._post('/api/loans/create/', {'product_id': 'abc', 'customer_name': 'Acme'})
        self.assertEqual(resp.status_code, 400)
        resp = self._post('/api/loans/create/', {'customer_name': 'Acme'})
        self.assertEqual(resp.status_code, 400)

    def test_lend_split_article_400(self):
        article = _product(quantity=2)
        item_tracking.split_to_items(article, USER)
        resp = self._post('/api/loans/create/', {'product_id': article.id, 'customer_name': 'Acme'})
        self.assertEqual(resp.status_code, 400)
        self.assertFalse(Loan.objects.exists())

    def test_lend_bad_return_date(self):
        product = _product()
        resp = self._post('/api/loans/create/', {
            'product_id': product.id, 'customer_name': 'Acme', 'return_date': 'next week',
        })
        self.assertEqual(resp.status_code, 400)

    def test_return_twice(self):
        loan = _lend(_product())
        self.assertEqual(self._post(f'/api/loans/{loan.id}/return/').status_code, 200)
        resp = self._post(f'/api/loans/{loan.id}/return/')
        self.assertEqual(resp.status_code, 409)

    def test_invalid_json(self):
        resp = self.client.post('/api/products/create/', 'not json', content_type='application/json')
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['error'], 'Invalid JSON data')

    def test_missing_product_404(self):
        resp = self.client.get('/api/products/9999/availability/')
        self.assertEqual(resp.status_code, 404)

    def test_split_merge_and_availability(self):
        article = _product(quantity=3)
        resp = self._post(f'/api/products/{article.id}/split/')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual([i['item_identifier'] for i in resp.json()['items']],
                         ['AP-H100-001', 'AP-H100-002', 'AP-H100-003'])

        data = self.client.get(f'/api/products/{article.id}/availability/').json()
        self.assertEqual((data['available'], data['total'], data['has_individual_items']), (3, 3, True))

        resp = self._post(f'/api/products/{article.id}/merge/')
        self.assertEqual(resp.json()['quantity'], 3)

    def test_product_list_search(self):
        _product('AP-H100')
        _product('Y-1', brand='Yale', description='Smart lock')
        data = self.client.get('/api/products/?q=yale').json()
        self.assertEqual(data['count'], 1)
        self.assertEqual(data['products'][0]['article_reference'], 'Y-1')

    def test_duplicate_product_409(self):
        _product('AP-H100')
        resp = self._post('/api/products/create/', {'article_reference': 'AP-H100', 'brand': 'ASSA'})
        self.assertEqual(resp.status_code, 409)

    def test_case_lend_list_and_bulk_return(self):
        demo_case = DemoCase.objects.create(case_name='Kit A')
        p1 = _case_product(demo_case, 'P1')
        p2 = _case_product(demo_case, 'P2', can_lend_separately=False)
        resp = self._post(f'/api/demo-cases/{demo_case.id}/lend/', {
            'product_ids': [p1.id, p2.id], 'customer_name': 'Acme',
        })
        body = resp.json()
        self.assertTrue(body['success'])
        self.assertEqual(body['success_count'], 2)

        cases = self.client.get('/api/demo-cases/').json()['demo_cases']
        self.assertEqual(cases[0]['status'], 'allout')
        self.assertEqual(cases[0]['location']['type'], 'customer')

        groups = self.client.get('/api/loans/').json()['groups']
        self.assertEqual(len(groups), 1)
        self.assertTrue(groups[0]['is_complete'])

        loan_ids = [l['id'] for l in groups[0]['loans']]
        resp = self._post('/api/loans/bulk-return/', {'loan_ids': loan_ids + [9999]})
        body = resp.json()
        self.assertEqual(body['success_count'], 2)
        self.assertEqual(body['failed'], [{'id': 9999, 'error': 'Loan not found'}])

    def test_fix_case_data_endpoint(self):
        demo_case = DemoCase.objects.create(case_name='Kit A')
        p1 = _case_product(demo_case, 'P1')
        _raw_loan(p1, kit_name='')
        resp = self._post('/api/loans/fix-case-data/', {'case_name': 'Kit A', 'customer_name': 'Acme'})
        self.assertEqual(resp.json()['updated_count'], 1)
        resp = self._post('/api/loans/fix-case-data/', {'case_name': 'Kit B', 'customer_name': 'Acme'})
        self.assertEqual(resp.status_code, 404)

    def test_delete_case_with_loan_409(self):
        demo_case = DemoCase.objects.create(case_name='Kit A')
        _lend(_case_product(demo_case, 'P1'))
        resp = self._post(f'/api/demo-cases/{demo_case.id}/delete/')
        self.assertEqual(resp.status_code, 409)

    def test_overdue_and_report(self):
        product = _product(quantity=2)
        _raw_loan(product, expected_return_date=timezone.localdate() - timedelta(days=3))
        data = self.client.get('/api/overdue/').json()
        self.assertEqual(data['count'], 1)
        self.assertEqual(data['overdue_loans'][0]['days_overdue'], 3)

        report = self.client.get('/api/report/').json()
        self.assertEqual(report['total_units'], 2)
        self.assertEqual(report['out'], 1)
        self.assertEqual(report['overdue'], 1)

    def test_team_endpoints(self):
        resp = self._post('/api/team/create/', {
            'first_name': 'Bob', 'last_name': 'Stone', 'email': 'bob@example.com',
        })
        self.assertEqual(resp.status_code, 201)
        member_id = resp.json()['member']['id']
        self._post(f'/api/team/{member_id}/toggle-status/')
        self.assertEqual(self.client.get('/api/team/?active=1').json()['members'], [])

    def test_import_preview_and_run(self):
        text = 'P1,ASSA,Cylinder,Kit A,2\nP2,ASSA,Key\n'
        preview = self._post('/api/import/preview/', {'text': text}).json()
        self.assertEqual(len(preview['rows']), 2)
        self.assertEqual(preview['new_cases'], ['Kit A'])

        result = self._post('/api/import/', {'text': text}).json()
        self.assertEqual(result['created_products'], 2)
        self.assertEqual(result['created_cases'], ['Kit A'])

    def test_activity_csv_export(self):
        _lend(_product())
        resp = self.client.get('/export/activity-log.csv')
        self.assertEqual(resp.status_code, 200)
        self.assertIn('text/csv', resp['Content-Type'])
        self.assertIn('activity_log_', resp['Content-Disposition'])
        self.assertIn('"Lend"', resp.content.decode())
