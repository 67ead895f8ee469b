import threading

import crud
from errors import EngineError


def _race(engine_factory, calls):
    """calls: list of fn(engine). 全スレッドを Barrier で同時に走らせる"""
    barrier = threading.Barrier(len(calls))
    outcomes = [None] * len(calls)

    def runner(idx, fn, engine):
        barrier.wait()
        try:
            fn(engine)
            outcomes[idx] = "ok"
        except EngineError as exc:
            outcomes[idx] = exc.code

    engines = [engine_factory() for _ in calls]
    threads = [
        threading.Thread(target=runner, args=(i, fn, engines[i])) for i, fn in enumerate(calls)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return outcomes


def test_concurrent_reserve_of_one_asset_item(db_session, engine_factory, make_employee, make_asset_item):
    emp = make_employee()
    item = make_asset_item()
    setup = engine_factory()
    loan_ids = [setup.open_loan(emp.id).id for _ in range(6)]

    outcomes = _race(
        engine_factory,
        [lambda e, lid=lid: e.add_line(lid, asset_item_id=item.id) for lid in loan_ids],
    )

    assert outcomes.count("ok") == 1
    assert outcomes.count("CONFLICT") == len(loan_ids) - 1

    db_session.expire_all()
    assert crud.get_asset_item(db_session, item.id).status == "PRETE"
    open_lines = [
        line
        for lid in loan_ids
        for line in crud.get_loan(db_session, lid).lines
        if line.returned_at is None
    ]
    assert len(open_lines) == 1


def test_concurrent_stock_reservations_never_overbook(db_session, engine_factory, make_employee, make_stock_item):
    emp = make_employee()
    stock = make_stock_item(quantity=5)
    setup = engine_factory()
    loan_ids = [setup.open_loan(emp.id).id for _ in range(2)]

    outcomes = _race(
        engine_factory,
        [lambda e, lid=lid: e.add_line(lid, stock_item_id=stock.id, quantity=3) for lid in loan_ids],
    )

    assert sorted(outcomes) == ["INSUFFICIENT_STOCK", "ok"]
    db_session.expire_all()
    assert crud.get_stock_item(db_session, stock.id).loaned == 3


def test_concurrent_operations_on_one_loan(db_session, engine_factory, make_employee, make_stock_item):
    emp = make_employee()
    stock = make_stock_item(quantity=10)
    setup = engine_factory()
    loan = setup.open_loan(emp.id)

    calls = [lambda e: e.add_line(loan.id, stock_item_id=stock.id, quantity=1) for _ in range(4)]
    calls.append(lambda e: e.close_loan(loan.id))
    outcomes = _race(engine_factory, calls)

    db_session.expire_all()
    final = crud.get_loan(db_session, loan.id)
    added = outcomes[:4].count("ok")

    # close は明細ゼロのときだけ通る。通ったら後続の追加は全部 INVALID_STATE
    assert len(final.lines) == added
    assert crud.get_stock_item(db_session, stock.id).loaned == added
    if outcomes[4] == "ok":
        assert final.status == "CLOSED"
        assert added == 0
    else:
        assert outcomes[4] == "INVALID_STATE"
        assert final.status == "OPEN"
