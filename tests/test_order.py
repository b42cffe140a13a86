import concurrent.futures
import threading

from batchkeeper.lib.database import Database, InMemoryAdapter
from batchkeeper.lib.order import OrderStore


def test_get_next_order_starts_at_one_and_increments():
    db = InMemoryAdapter()
    store = OrderStore(db.Session)
    assert [store.get_next_order() for _ in range(3)] == [1, 2, 3]


def test_counters_are_independent():
    db = InMemoryAdapter()
    a = OrderStore(db.Session, name="a")
    b = OrderStore(db.Session, name="b")
    assert a.get_next_order() == 1
    assert a.get_next_order() == 2
    assert b.get_next_order() == 1


def test_concurrent_orders_are_dense(tmp_path):
    db = Database(str(tmp_path / "orders.db"))
    db.init_db()
    store = OrderStore(db.Session)
    workers = 8
    barrier = threading.Barrier(workers)

    def _next(_):
        barrier.wait()
        return store.get_next_order()

    with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as ex:
        values = list(ex.map(_next, range(workers)))

    assert sorted(values) == list(range(1, workers + 1))
