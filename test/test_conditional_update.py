"""
The conditional UPDATE compiled for every contended order write.
"""
import pytest

from courier_dispatch.db import NOW, Not, build_conditional_update
from courier_dispatch.order_state import OrderStatus, PaymentStatus


def test_claim_compiles_to_single_guarded_update():
    sql, args = build_conditional_update(
        "ord-1",
        {"status": "ready_for_dispatch", "assigned_driver_id": None},
        {"status": OrderStatus.ASSIGNED, "assigned_driver_id": "drv-1", "assigned_at": NOW},
    )
    assert sql == (
        "UPDATE orders SET status = $2, assigned_driver_id = $3, assigned_at = NOW(), updated_at = NOW() "
        "WHERE id = $1 AND status = $4 AND assigned_driver_id IS NULL RETURNING *;"
    )
    assert args == ["ord-1", "assigned", "drv-1", "ready_for_dispatch"]


def test_not_predicates():
    sql, args = build_conditional_update(
        "ord-1",
        {"payment_status": Not(PaymentStatus.PAID), "pickup_proof_at": Not(None)},
        {"status": "en_route"},
    )
    assert "payment_status IS DISTINCT FROM $3" in sql
    assert "pickup_proof_at IS NOT NULL" in sql
    assert args == ["ord-1", "en_route", "paid"]


def test_collection_predicate_uses_any():
    sql, args = build_conditional_update("ord-1", {"status": ("assigned", OrderStatus.EN_ROUTE)}, {"rejection_reason": "x"})
    assert "status = ANY($3)" in sql
    assert args[2] == ["assigned", "en_route"]


def test_explicit_updated_at_is_not_duplicated():
    sql, _ = build_conditional_update("ord-1", {}, {"updated_at": NOW})
    assert sql.count("updated_at") == 1


def test_unknown_columns_are_refused():
    with pytest.raises(ValueError):
        build_conditional_update("ord-1", {"status; DROP TABLE orders": "x"}, {})
    with pytest.raises(ValueError):
        build_conditional_update("ord-1", {}, {"not_a_column": 1})
