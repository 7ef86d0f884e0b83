from datetime import timedelta

import pytest
from sqlalchemy import select, text

from gametrust.models import AuditLog, LedgerEntryKind, Order, OrderStatus, SettlementStatus
from gametrust.models.api_key import ApiScope
from gametrust.models.ledger import EscrowLedgerEntry, SettlementIntent
from gametrust.schemas.order import OrderCreate
from gametrust.security import CurrentUser
from gametrust.services import deadlines, ledger
from gametrust.services import orders as order_service
from gametrust.utils.errors import PermissionDeniedError, StateConflictError, ValidationError
from gametrust.utils.time import utcnow

BUYER_ID = "buyer-1"
SELLER_ID = "seller-1"


def _kinds(db_session, order_id):
    return [(entry.kind, entry.amount) for entry in ledger.entries(db_session, order_id)]


def test_checkout_places_hold_and_moves_to_escrow(db_session, make_order, emitter):
    order = make_order(70000)

    assert order.status == OrderStatus.IN_ESCROW
    assert order.settlement_status == SettlementStatus.CONFIRMED
    assert order.buyer_id == BUYER_ID
    assert _kinds(db_session, order.id) == [(LedgerEntryKind.HOLD, 70000)]
    assert emitter.types() == ["order.created", "order.payment_captured"]


def test_delivered_then_confirmed_releases_full_hold(db_session, make_order, buyer, seller, emitter):
    order = make_order(70000)

    order = order_service.mark_delivered(db_session, order.id, actor=seller, expected_version=order.version)
    assert order.status == OrderStatus.DELIVERED
    assert order.delivery_deadline - order.delivered_at == timedelta(hours=48)

    order = order_service.confirm_delivery(db_session, order.id, actor=buyer, expected_version=order.version)

    assert order.status == OrderStatus.COMPLETED
    assert order.settlement_status == SettlementStatus.CONFIRMED
    assert _kinds(db_session, order.id) == [
        (LedgerEntryKind.HOLD, 70000),
        (LedgerEntryKind.RELEASE, 70000),
    ]
    totals = ledger.balance(db_session, order.id)
    assert totals.remaining == 0
    assert deadlines.pending_timers(db_session) == []
    assert "order.completed" in emitter.types()
    assert emitter.of_type("order.completed")[0].data["via"] == "BUYER_CONFIRM"
    assert emitter.types()[-1] == "settlement.confirmed"


def test_order_timeline_lists_transitions_in_order(db_session, delivered_order, buyer):
    order = delivered_order()
    order_service.confirm_delivery(db_session, order.id, actor=buyer, expected_version=order.version)

    actions = [row.action for row in order_service.order_timeline(db_session, order.id, actor=buyer)]
    assert actions == [
        "ORDER_CREATED",
        "ORDER_PAYMENT_CAPTURED",
        "ORDER_MARK_DELIVERED",
        "ORDER_BUYER_CONFIRM",
    ]


def test_version_mismatch_fails_without_side_effects(db_session, make_order, seller, timer_runner, emitter):
    order = make_order()
    stale_version = order.version - 1

    with pytest.raises(StateConflictError) as excinfo:
        order_service.mark_delivered(db_session, order.id, actor=seller, expected_version=stale_version)

    assert excinfo.value.code == "VERSION_CONFLICT"
    db_session.refresh(order)
    assert order.status == OrderStatus.IN_ESCROW
    assert order.delivered_at is None
    assert deadlines.pending_timers(db_session) == []
    assert timer_runner.armed == {}
    assert "order.delivered" not in emitter.types()


def test_concurrent_write_detected_at_flush(db_session, make_order, seller, timer_runner):
    order = make_order()
    # Another writer bumps the row behind this session's back.
    db_session.execute(text("UPDATE orders SET version = version + 1 WHERE id = :id"), {"id": order.id})
    db_session.commit()

    with pytest.raises(StateConflictError) as excinfo:
        order_service.mark_delivered(db_session, order.id, actor=seller, expected_version=order.version)

    assert excinfo.value.code == "VERSION_CONFLICT"
    reloaded = db_session.get(Order, order.id)
    assert reloaded.status == OrderStatus.IN_ESCROW
    assert deadlines.pending_timers(db_session) == []
    assert timer_runner.armed == {}


def test_only_seller_marks_delivered_and_only_buyer_confirms(db_session, make_order, buyer, seller):
    order = make_order()

    with pytest.raises(PermissionDeniedError):
        order_service.mark_delivered(db_session, order.id, actor=buyer, expected_version=order.version)

    order = order_service.mark_delivered(db_session, order.id, actor=seller, expected_version=order.version)
    with pytest.raises(PermissionDeniedError):
        order_service.confirm_delivery(db_session, order.id, actor=seller, expected_version=order.version)


def test_get_order_visible_to_parties_and_staff_only(db_session, make_order, buyer, seller, agent):
    order = make_order()

    assert order_service.get_order(db_session, order.id, actor=buyer).id == order.id
    assert order_service.get_order(db_session, order.id, actor=seller).id == order.id
    assert order_service.get_order(db_session, order.id, actor=agent).id == order.id
    with pytest.raises(PermissionDeniedError):
        order_service.get_order(db_session, order.id, actor=CurrentUser(id="stranger", role=ApiScope.user))


def test_buyer_cannot_buy_own_listing(db_session, buyer):
    payload = OrderCreate(seller_id=BUYER_ID, listing_id="listing-self", amount=1000)

    with pytest.raises(ValidationError) as excinfo:
        order_service.create_order(db_session, payload, buyer=buyer)
    assert excinfo.value.code == "SELF_PURCHASE"


def test_create_is_idempotent_per_key(db_session, buyer, gateway):
    payload = OrderCreate(seller_id=SELLER_ID, listing_id="listing-1", amount=5000)

    first = order_service.create_order(db_session, payload, buyer=buyer, idempotency_key="checkout-1")
    second = order_service.create_order(db_session, payload, buyer=buyer, idempotency_key="checkout-1")

    assert first.id == second.id
    assert [call[0] for call in gateway.calls] == ["hold"]
    holds = db_session.scalars(select(EscrowLedgerEntry).where(EscrowLedgerEntry.order_id == first.id)).all()
    assert len(holds) == 1


def test_idempotency_key_reuse_by_other_buyer_conflicts(db_session, buyer):
    payload = OrderCreate(seller_id=SELLER_ID, listing_id="listing-1", amount=5000)
    order_service.create_order(db_session, payload, buyer=buyer, idempotency_key="checkout-2")

    other = CurrentUser(id="buyer-2", role=ApiScope.user)
    with pytest.raises(StateConflictError) as excinfo:
        order_service.create_order(db_session, payload, buyer=other, idempotency_key="checkout-2")
    assert excinfo.value.code == "IDEMPOTENCY_KEY_REUSED"


def test_declined_hold_cancels_order(db_session, make_order, gateway, emitter):
    gateway.decline_buyers.add(BUYER_ID)

    order = make_order()

    assert order.status == OrderStatus.CANCELLED
    assert order.settlement_status is None
    assert ledger.entries(db_session, order.id) == []
    assert ledger.hold_declined(db_session, order.id)
    cancelled = emitter.of_type("order.cancelled")
    assert cancelled and cancelled[0].data["reason"] == "payment_declined"


def test_terminal_order_rejects_further_transitions(db_session, delivered_order, buyer, seller):
    order = delivered_order()
    order = order_service.confirm_delivery(db_session, order.id, actor=buyer, expected_version=order.version)

    with pytest.raises(StateConflictError) as excinfo:
        order_service.confirm_delivery(db_session, order.id, actor=buyer, expected_version=order.version)
    assert excinfo.value.code == "INVALID_TRANSITION"

    with pytest.raises(StateConflictError):
        order_service.mark_delivered(db_session, order.id, actor=seller, expected_version=order.version)

    assert _kinds(db_session, order.id).count((LedgerEntryKind.RELEASE, 70000)) == 1


def test_manual_confirm_beats_late_auto_confirm(db_session, session_factory, delivered_order):
    order = delivered_order(delivered_at=utcnow() - timedelta(hours=49))
    order_id, version = order.id, order.version
    db_session.commit()

    # The buyer confirms through another worker's session while this one still
    # holds the DELIVERED snapshot.
    other = session_factory()
    try:
        confirmed = order_service.confirm_delivery(
            other,
            order_id,
            actor=CurrentUser(id=BUYER_ID, role=ApiScope.user),
            expected_version=version,
        )
        assert confirmed.status == OrderStatus.COMPLETED
    finally:
        other.close()

    assert order.status == OrderStatus.DELIVERED
    assert order_service.auto_confirm(db_session, order_id) is None

    db_session.expire_all()
    reloaded = db_session.get(Order, order_id)
    assert reloaded.status == OrderStatus.COMPLETED
    releases = [entry for entry in ledger.entries(db_session, order_id) if entry.kind == LedgerEntryKind.RELEASE]
    assert len(releases) == 1
    auto = db_session.scalars(
        select(AuditLog).where(AuditLog.entity_id == order_id, AuditLog.action == "ORDER_AUTO_CONFIRM")
    ).all()
    assert auto == []


def test_list_orders_filters_by_role_and_status(db_session, make_order, delivered_order, buyer, seller):
    make_order(1000)
    delivered = delivered_order(2000)

    assert {o.id for o in order_service.list_orders(db_session, actor=buyer, role="buyer")} >= {delivered.id}
    assert order_service.list_orders(db_session, actor=buyer, role="seller") == []
    as_seller = order_service.list_orders(db_session, actor=seller, status=OrderStatus.DELIVERED)
    assert [o.id for o in as_seller] == [delivered.id]

    newest_first = order_service.list_orders(db_session, actor=buyer)
    assert newest_first[0].id == delivered.id
    assert len(order_service.list_orders(db_session, actor=buyer, limit=1)) == 1


def test_resume_pending_settlement_after_interrupted_worker(db_session, delivered_order, buyer):
    order = delivered_order()
    # Transition committed, worker died before calling the gateway.
    with order_service.versioned_commit(db_session, order):
        order_service.apply_transition(
            db_session,
            order,
            order_service.OrderEvent.BUYER_CONFIRM,
            expected_version=order.version,
            actor=buyer.id,
        )
        ledger.record_intent(db_session, order, LedgerEntryKind.RELEASE)
        order.settlement_status = SettlementStatus.PENDING

    resumed = order_service.resume_pending_settlements(
        db_session, older_than=timedelta(0), now=utcnow() + timedelta(minutes=1)
    )

    assert resumed == 1
    assert order.settlement_status == SettlementStatus.CONFIRMED
    assert ledger.balance(db_session, order.id).released == 70000
    intent = db_session.scalars(
        select(SettlementIntent).where(
            SettlementIntent.order_id == order.id,
            SettlementIntent.kind == LedgerEntryKind.RELEASE,
        )
    ).one()
    assert intent.attempts == 1


def test_transition_notes_kept_on_timeline(db_session, make_order, buyer, seller):
    order = make_order(70000)

    order = order_service.mark_delivered(
        db_session, order.id, actor=seller, expected_version=order.version, note="  Login sent by chat  "
    )
    order = order_service.confirm_delivery(
        db_session, order.id, actor=buyer, expected_version=order.version, note="All good"
    )

    timeline = {entry.action: entry.data_json for entry in order_service.order_timeline(db_session, order.id, actor=buyer)}
    assert timeline["ORDER_MARK_DELIVERED"]["note"] == "Login sent by chat"
    assert timeline["ORDER_BUYER_CONFIRM"]["note"] == "All good"
    assert "note" not in timeline["ORDER_PAYMENT_CAPTURED"]
