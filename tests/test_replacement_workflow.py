"""Replacement workflow at the service layer: create, triage, factory steps, delete."""
from decimal import Decimal

import pytest

from models import db, Customer, LedgerEntry, Product, Replacement
from routes.errors import NotFoundError, StateError, ValidationError
from routes import replacement_utils
from routes.replacement_utils import (create_replacement, triage_replacement, send_to_factory,
                                      receive_from_factory, delete_replacement, replacement_stats,
                                      dealer_summary)


def _triage_row(product_id, good=6, repairable=2, bad=1, damage=1):
    return {'product_id': product_id, 'good_qty': good, 'repairable_qty': repairable,
            'bad_qty': bad, 'damage_qty': damage}


def _stock(product_id):
    product = db.session.get(Product, product_id)
    db.session.refresh(product)
    return product.good_qty, product.repair_qty, product.bad_qty, product.damage_qty


@pytest.fixture
def pending_case(ctx, manager, dealer_id, product_id):
    return create_replacement(dealer_id, 'Green Tel', [{'product_id': product_id, 'claimed_qty': 10}], manager)


@pytest.fixture
def checked_case(pending_case, manager, product_id):
    case, _ = triage_replacement(pending_case.id, [_triage_row(product_id)], manager)
    return case


class TestCreate:

    def test_create_records_claim_without_side_effects(self, pending_case, dealer_id, product_id):
        assert pending_case.status == 'Pending'
        assert pending_case.replacement_no == 'GT-RPL-00001'
        assert pending_case.total_claimed == 10
        assert [i.product_name for i in pending_case.items] == ['GT-100 Charger']
        assert _stock(product_id) == (50, 0, 0, 0)
        assert LedgerEntry.query.filter_by(customer_id=dealer_id).count() == 0

    def test_numbers_are_sequential_per_brand(self, pending_case, manager, dealer_id, product_id):
        second = create_replacement(dealer_id, 'Green Tel', [{'product_id': product_id, 'claimed_qty': 1}], manager)
        other_brand = create_replacement(dealer_id, 'Green Star', [{'product_id': product_id, 'claimed_qty': 1}], manager)
        assert second.replacement_no == 'GT-RPL-00002'
        assert other_brand.replacement_no == 'GS-RPL-00001'

    def test_rejects_non_dealer(self, ctx, manager, retail_id, product_id):
        with pytest.raises(ValidationError, match='Invalid dealer'):
            create_replacement(retail_id, 'Green Tel', [{'product_id': product_id, 'claimed_qty': 1}], manager)

    def test_rejects_unknown_dealer(self, ctx, manager, product_id):
        with pytest.raises(ValidationError, match='Invalid dealer'):
            create_replacement(9999, 'Green Tel', [{'product_id': product_id, 'claimed_qty': 1}], manager)

    def test_rejects_unknown_brand(self, ctx, manager, dealer_id, product_id):
        with pytest.raises(ValidationError, match='Unknown brand'):
            create_replacement(dealer_id, 'Blue Tel', [{'product_id': product_id, 'claimed_qty': 1}], manager)

    @pytest.mark.parametrize('items, message', [
        ([], 'At least one item'),
        ([{'product_id': 9999, 'claimed_qty': 1}], 'Product not found'),
        ([{'product_id': None, 'claimed_qty': 0}], 'Product not found'),
        ([{'product_id': 1.9, 'claimed_qty': 1}], 'product_id must be a whole number'),
    ])
    def test_rejects_bad_items(self, ctx, manager, dealer_id, items, message):
        with pytest.raises(ValidationError, match=message):
            create_replacement(dealer_id, 'Green Tel', items, manager)

    def test_rejects_zero_claim(self, ctx, manager, dealer_id, product_id):
        with pytest.raises(ValidationError, match='at least 1'):
            create_replacement(dealer_id, 'Green Tel', [{'product_id': product_id, 'claimed_qty': 0}], manager)

    def test_rejects_duplicate_products(self, ctx, manager, dealer_id, product_id):
        items = [{'product_id': product_id, 'claimed_qty': 2}, {'product_id': product_id, 'claimed_qty': 3}]
        with pytest.raises(ValidationError, match='Duplicate product'):
            create_replacement(dealer_id, 'Green Tel', items, manager)
        assert Replacement.query.count() == 0


class TestTriage:

    def test_triage_moves_stock_and_credits_once(self, pending_case, manager, dealer_id, product_id):
        case, warnings = triage_replacement(pending_case.id, [_triage_row(product_id)], manager)

        assert warnings == []
        assert case.status == 'Checked'
        assert case.is_ledger_adjusted is True
        assert case.is_stock_added is True
        assert (case.total_good, case.total_repairable, case.total_bad, case.total_damage) == (6, 2, 1, 1)
        assert case.total_rejected == 2
        assert case.items[0].unit_price == Decimal('100.00')

        assert _stock(product_id) == (56, 2, 1, 1)

        entries = LedgerEntry.query.filter_by(customer_id=dealer_id).all()
        assert len(entries) == 1
        assert entries[0].type == 'Replacement'
        assert entries[0].credit == Decimal('800.00')
        assert entries[0].debit == Decimal('0.00')
        assert entries[0].balance == Decimal('-800.00')
        assert entries[0].reference_no == case.replacement_no

        dealer = db.session.get(Customer, dealer_id)
        assert dealer.total_adjust == Decimal('800.00')
        assert dealer.total_dues == Decimal('-800.00')

    def test_mismatched_sum_is_a_warning(self, pending_case, manager, product_id):
        _, warnings = triage_replacement(pending_case.id, [_triage_row(product_id, good=5)], manager)
        assert len(warnings) == 1
        assert 'classified 9 of 10' in warnings[0]

    def test_second_triage_rejected_and_stock_not_doubled(self, checked_case, manager, dealer_id, product_id):
        with pytest.raises(StateError):
            triage_replacement(checked_case.id, [_triage_row(product_id)], manager)
        assert _stock(product_id) == (56, 2, 1, 1)
        assert LedgerEntry.query.filter_by(customer_id=dealer_id).count() == 1

    def test_zero_credit_leaves_ledger_untouched(self, pending_case, manager, dealer_id, product_id):
        case, _ = triage_replacement(pending_case.id, [_triage_row(product_id, good=0, repairable=0, bad=5, damage=5)],
                                     manager)
        assert case.status == 'Checked'
        assert case.is_ledger_adjusted is False
        assert LedgerEntry.query.filter_by(customer_id=dealer_id).count() == 0
        assert _stock(product_id) == (50, 0, 5, 5)

    def test_price_falls_back_to_sales_price(self, ctx, manager, dealer_id, second_product_id):
        case = create_replacement(dealer_id, 'Green Tel', [{'product_id': second_product_id, 'claimed_qty': 2}], manager)
        case, _ = triage_replacement(case.id, [_triage_row(second_product_id, good=2, repairable=0, bad=0, damage=0)],
                                     manager)
        entry = LedgerEntry.query.filter_by(customer_id=dealer_id).one()
        assert entry.credit == Decimal('50.00')

    def test_triage_must_cover_every_line(self, ctx, manager, dealer_id, product_id, second_product_id):
        case = create_replacement(dealer_id, 'Green Tel', [
            {'product_id': product_id, 'claimed_qty': 1},
            {'product_id': second_product_id, 'claimed_qty': 1},
        ], manager)
        with pytest.raises(ValidationError, match='missing items'):
            triage_replacement(case.id, [_triage_row(product_id, 1, 0, 0, 0)], manager)
        assert db.session.get(Replacement, case.id).status == 'Pending'
        assert _stock(product_id) == (50, 0, 0, 0)

    def test_triage_rejects_foreign_product(self, pending_case, manager, second_product_id):
        with pytest.raises(ValidationError, match='not part of replacement'):
            triage_replacement(pending_case.id, [_triage_row(second_product_id)], manager)

    def test_triage_rejects_negative_quantity(self, pending_case, manager, product_id):
        with pytest.raises(ValidationError, match='at least 0'):
            triage_replacement(pending_case.id, [_triage_row(product_id, good=-1)], manager)

    def test_triage_rejects_fractional_product_id(self, pending_case, manager, product_id):
        row = dict(_triage_row(product_id), product_id=product_id + 0.9)
        with pytest.raises(ValidationError, match='product_id must be a whole number'):
            triage_replacement(pending_case.id, [row], manager)
        assert _stock(product_id) == (50, 0, 0, 0)

    def test_failure_after_claim_rolls_everything_back(self, pending_case, manager, dealer_id, product_id,
                                                       monkeypatch):
        def broken_post_entry(*args, **kwargs):
            raise RuntimeError('ledger unavailable')

        monkeypatch.setattr(replacement_utils, 'post_entry', broken_post_entry)
        with pytest.raises(RuntimeError):
            triage_replacement(pending_case.id, [_triage_row(product_id)], manager)

        case = db.session.get(Replacement, pending_case.id)
        db.session.refresh(case)
        assert case.status == 'Pending'
        assert case.is_ledger_adjusted is False
        assert _stock(product_id) == (50, 0, 0, 0)
        assert LedgerEntry.query.filter_by(customer_id=dealer_id).count() == 0

    def test_unknown_case(self, ctx, manager, product_id):
        with pytest.raises(NotFoundError):
            triage_replacement(9999, [_triage_row(product_id)], manager)


class TestFactory:

    def test_send_then_send_again_rejected(self, checked_case, manager):
        case = send_to_factory(checked_case.id, manager)
        assert case.status == 'Sent to Factory'
        assert case.sent_date is not None

        with pytest.raises(StateError, match='must be Checked'):
            send_to_factory(checked_case.id, manager)

    def test_send_requires_pending_triage(self, pending_case, manager):
        with pytest.raises(StateError):
            send_to_factory(pending_case.id, manager)

    def test_send_requires_repairable_units(self, pending_case, manager, product_id):
        triage_replacement(pending_case.id, [_triage_row(product_id, good=10, repairable=0, bad=0, damage=0)], manager)
        with pytest.raises(ValidationError, match='no repairable units'):
            send_to_factory(pending_case.id, manager)

    def test_receive_over_repairable_rejected(self, checked_case, manager, product_id):
        send_to_factory(checked_case.id, manager)
        with pytest.raises(ValidationError, match=r'Total repaired \(3\) exceeds repairable quantity \(2\)'):
            receive_from_factory(checked_case.id, 2, 1, manager)
        assert db.session.get(Replacement, checked_case.id).status == 'Sent to Factory'
        assert _stock(product_id)[0] == 56

    def test_receive_returns_repairable_units_to_good_stock(self, checked_case, manager, product_id):
        send_to_factory(checked_case.id, manager)
        case = receive_from_factory(checked_case.id, 1, 1, manager, repair_note='PCB replaced on one unit')

        assert case.status == 'Repaired'
        assert case.received_date is not None
        assert (case.high_cost_qty, case.low_cost_qty) == (1, 1)
        assert case.repair_note == 'PCB replaced on one unit'
        assert case.total_repair_cost == Decimal('650.00')
        assert _stock(product_id) == (58, 2, 1, 1)

    def test_receive_before_send_rejected(self, checked_case, manager):
        with pytest.raises(StateError, match='not at Factory stage'):
            receive_from_factory(checked_case.id, 1, 1, manager)

    def test_receive_twice_rejected(self, checked_case, manager, product_id):
        send_to_factory(checked_case.id, manager)
        receive_from_factory(checked_case.id, 1, 1, manager)
        with pytest.raises(StateError):
            receive_from_factory(checked_case.id, 0, 0, manager)
        assert _stock(product_id)[0] == 58


class TestDelete:

    def test_delete_pending(self, pending_case, admin):
        assert delete_replacement(pending_case.id, admin) == 'GT-RPL-00001'
        assert Replacement.query.count() == 0

    def test_delete_after_triage_rejected(self, checked_case, admin):
        with pytest.raises(StateError, match='Cannot delete processed replacement'):
            delete_replacement(checked_case.id, admin)
        assert Replacement.query.count() == 1

    def test_delete_unknown(self, ctx, admin):
        with pytest.raises(NotFoundError):
            delete_replacement(9999, admin)


class TestReads:

    def test_stats_follow_the_case(self, checked_case, manager):
        stats = replacement_stats('Green Tel')
        assert stats['pending']['total_qty'] == 2
        assert stats['pending']['total_value'] == '160.00'
        assert stats['in_factory']['total_qty'] == 0

        send_to_factory(checked_case.id, manager)
        stats = replacement_stats()
        assert stats['pending']['items'] == []
        assert stats['in_factory']['items'][0]['product_name'] == 'GT-100 Charger'
        assert stats['in_factory']['total_qty'] == 2

        assert replacement_stats('Green Star')['in_factory']['total_qty'] == 0

    def test_dealer_summary(self, checked_case, dealer_id):
        dealer, cases, summary = dealer_summary(dealer_id)
        assert dealer.id == dealer_id
        assert [c.id for c in cases] == [checked_case.id]
        assert summary['total_good'] == 6
        assert summary['total_credit'] == '800.00'

    def test_dealer_summary_unknown(self, ctx):
        with pytest.raises(NotFoundError):
            dealer_summary(9999)
