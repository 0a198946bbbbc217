"""
Concurrent access: keyed locks, case numbering, double triage and ledger appends.

Threads each push their own app context, so every worker has its own
session and connection.
"""
import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

from models import db, Customer, LedgerEntry, Product, User
from routes.concurrency import KeyedLockRegistry
from routes.errors import StateError
from routes.ledger_utils import record_payment, reconcile_customer
from routes.replacement_utils import create_replacement, triage_replacement


class TestKeyedLockRegistry:

    def test_same_key_is_mutually_exclusive(self):
        registry = KeyedLockRegistry()
        counter = {'value': 0}
        barrier = threading.Barrier(8)

        def bump():
            barrier.wait()
            for _ in range(200):
                with registry.hold('counter'):
                    current = counter['value']
                    counter['value'] = current + 1

        threads = [threading.Thread(target=bump) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert counter['value'] == 1600
        assert len(registry) == 0

    def test_multi_key_hold_in_any_order_does_not_deadlock(self):
        registry = KeyedLockRegistry()
        done = []

        def worker(keys):
            for _ in range(100):
                with registry.hold(*keys):
                    pass
            done.append(keys)

        threads = [threading.Thread(target=worker, args=(('a', 'b'),)),
                   threading.Thread(target=worker, args=(('b', 'a'),))]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert len(done) == 2
        assert len(registry) == 0

    def test_lock_released_on_error(self):
        registry = KeyedLockRegistry()
        try:
            with registry.hold('k'):
                raise RuntimeError('boom')
        except RuntimeError:
            pass
        with registry.hold('k'):
            assert len(registry) == 1
        assert len(registry) == 0


class TestConcurrentWorkflow:

    def test_concurrent_creates_get_distinct_numbers(self, app, users, dealer_id, product_id):
        num_cases = 20

        def create(_):
            with app.app_context():
                actor = db.session.get(User, users['Manager'])
                case = create_replacement(dealer_id, 'Green Tel',
                                          [{'product_id': product_id, 'claimed_qty': 1}], actor)
                return case.replacement_no

        with ThreadPoolExecutor(max_workers=8) as executor:
            numbers = list(executor.map(create, range(num_cases)))

        assert len(set(numbers)) == num_cases
        assert sorted(numbers) == [f'GT-RPL-{i:05d}' for i in range(1, num_cases + 1)]

    def test_concurrent_triage_applies_once(self, app, users, dealer_id, product_id):
        with app.app_context():
            actor = db.session.get(User, users['Manager'])
            case_id = create_replacement(dealer_id, 'Green Tel',
                                         [{'product_id': product_id, 'claimed_qty': 10}], actor).id

        rows = [{'product_id': product_id, 'good_qty': 6, 'repairable_qty': 2, 'bad_qty': 1, 'damage_qty': 1}]
        barrier = threading.Barrier(4)

        def triage(_):
            with app.app_context():
                actor = db.session.get(User, users['Manager'])
                barrier.wait()
                try:
                    triage_replacement(case_id, rows, actor)
                    return 'ok'
                except StateError:
                    return 'rejected'

        with ThreadPoolExecutor(max_workers=4) as executor:
            outcomes = list(executor.map(triage, range(4)))

        assert sorted(outcomes) == ['ok', 'rejected', 'rejected', 'rejected']
        with app.app_context():
            product = db.session.get(Product, product_id)
            assert (product.good_qty, product.repair_qty, product.bad_qty, product.damage_qty) == (56, 2, 1, 1)
            assert LedgerEntry.query.filter_by(customer_id=dealer_id, type='Replacement').count() == 1

    def test_concurrent_payments_keep_chain_intact(self, app, users, dealer_id):
        def pay(_):
            with app.app_context():
                actor = db.session.get(User, users['Admin'])
                record_payment(dealer_id, 'Green Tel', Decimal('10.00'), actor)

        with ThreadPoolExecutor(max_workers=8) as executor:
            list(executor.map(pay, range(25)))

        with app.app_context():
            customer = db.session.get(Customer, dealer_id)
            assert customer.total_dues == Decimal('-250.00')
            report = reconcile_customer(customer)
            assert report['consistent'] is True
            assert report['brands']['Green Tel']['entries'] == 25
