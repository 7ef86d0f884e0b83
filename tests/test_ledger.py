import pytest
from sqlalchemy import select

from gametrust.models import Alert, IntentStatus, LedgerEntryKind, OrderStatus, SettlementStatus
from gametrust.models.ledger import SettlementIntent
from gametrust.services import ledger
from gametrust.services import orders as order_service
from gametrust.utils.errors import (
    PaymentProviderError,
    PermissionDeniedError,
    StateConflictError,
    ValidationError,
)


def _intent(db_session, order_id, kind):
    return db_session.scalars(
        select(SettlementIntent).where(SettlementIntent.order_id == order_id, SettlementIntent.kind == kind)
    ).one()


def test_derived_keys_and_backoff():
    assert ledger.derive_idempotency_key(42, LedgerEntryKind.RELEASE) == "order:42:RELEASE"
    assert [ledger.backoff_delay(n, base=1.0, cap=60.0) for n in range(1, 9)] == [
        1.0,
        2.0,
        4.0,
        8.0,
        16.0,
        32.0,
        60.0,
        60.0,
    ]


def test_release_is_idempotent(db_session, make_order, gateway):
    order = make_order(70000)

    first = ledger.release(db_session, order.id)
    second = ledger.release(db_session, order.id)

    assert first.id == second.id
    assert first.idempotency_key == f"order:{order.id}:RELEASE"
    assert [call[0] for call in gateway.calls].count("release") == 1
    totals = ledger.balance(db_session, order.id)
    assert (totals.held, totals.released, totals.refunded, totals.remaining) == (70000, 70000, 0, 0)


def test_caller_supplied_key_is_used(db_session, make_order):
    order = make_order(1000)

    entry = ledger.refund(db_session, order.id, idempotency_key="support-ticket-88")

    assert entry.idempotency_key == "support-ticket-88"
    assert entry.kind == LedgerEntryKind.REFUND
    assert entry.amount == 1000


def test_settlement_requires_a_hold(db_session, make_order, gateway):
    gateway.decline_buyers.add("buyer-1")
    order = make_order()
    assert order.status == OrderStatus.CANCELLED

    with pytest.raises(StateConflictError) as excinfo:
        ledger.release(db_session, order.id)
    assert excinfo.value.code == "NO_HOLD"
    assert "release" not in [call[0] for call in gateway.calls]


def test_fully_settled_hold_rejects_more_outflows(db_session, make_order):
    order = make_order(5000)
    ledger.release(db_session, order.id)

    with pytest.raises(StateConflictError) as excinfo:
        ledger.refund(db_session, order.id)
    assert excinfo.value.code == "ALREADY_SETTLED"

    with pytest.raises(StateConflictError):
        ledger.hold(db_session, order.id, 5000, idempotency_key="second-hold")


def test_partial_refund_must_leave_a_remainder(db_session, make_order):
    order = make_order(5000)

    with pytest.raises(ValidationError):
        ledger.partial_refund(db_session, order.id, 5000)
    with pytest.raises(ValidationError):
        ledger.refund(db_session, order.id, 1200)

    ledger.partial_refund(db_session, order.id, 1200)
    release = ledger.release(db_session, order.id)

    assert release.amount == 3800
    totals = ledger.balance(db_session, order.id)
    assert totals.held == totals.released + totals.refunded


def test_transient_failures_are_retried_with_backoff(db_session, delivered_order, buyer, gateway, sleeps):
    order = delivered_order()
    gateway.fail_release = 2

    order = order_service.confirm_delivery(db_session, order.id, actor=buyer, expected_version=order.version)

    assert order.settlement_status == SettlementStatus.CONFIRMED
    assert sleeps == [1.0, 2.0]
    intent = _intent(db_session, order.id, LedgerEntryKind.RELEASE)
    assert intent.status == IntentStatus.CONFIRMED
    assert intent.attempts == 3
    assert intent.last_error is None
    assert ledger.balance(db_session, order.id).released == 70000


def test_exhausted_retries_flag_failed_settlement(db_session, delivered_order, buyer, gateway, sleeps, emitter):
    order = delivered_order()
    gateway.fail_release = 10

    order = order_service.confirm_delivery(db_session, order.id, actor=buyer, expected_version=order.version)

    assert order.status == OrderStatus.COMPLETED
    assert order.settlement_status == SettlementStatus.FAILED_SETTLEMENT
    assert sleeps == [1.0, 2.0, 4.0, 8.0, 16.0]
    intent = _intent(db_session, order.id, LedgerEntryKind.RELEASE)
    assert intent.status == IntentStatus.FAILED
    assert intent.attempts == 6
    assert intent.last_error == "gateway timeout"
    # Nothing is assumed moved until the gateway confirms.
    assert ledger.balance(db_session, order.id).released == 0

    alerts = db_session.scalars(select(Alert).where(Alert.order_id == order.id)).all()
    assert [alert.type for alert in alerts] == ["SETTLEMENT_FAILED"]
    assert alerts[0].payload_json["attempts"] == 6
    failed = emitter.of_type("settlement.failed")
    assert failed and failed[0].data["kind"] == "RELEASE"
    assert "settlement.confirmed" not in emitter.types()


def test_failed_intent_blocks_other_outflows(db_session, delivered_order, buyer, gateway):
    order = delivered_order()
    gateway.fail_release = 10
    order_service.confirm_delivery(db_session, order.id, actor=buyer, expected_version=order.version)

    with pytest.raises(StateConflictError) as excinfo:
        ledger.refund(db_session, order.id, idempotency_key="manual-refund")
    assert excinfo.value.code == "ALREADY_SETTLED"


def test_operator_retry_completes_failed_settlement(db_session, delivered_order, buyer, admin, gateway, sleeps):
    order = delivered_order()
    gateway.fail_release = 10
    order = order_service.confirm_delivery(db_session, order.id, actor=buyer, expected_version=order.version)
    assert order.settlement_status == SettlementStatus.FAILED_SETTLEMENT

    gateway.fail_release = 0
    order = order_service.retry_settlement(db_session, order.id, actor=admin)

    assert order.settlement_status == SettlementStatus.CONFIRMED
    releases = [e for e in ledger.entries(db_session, order.id) if e.kind == LedgerEntryKind.RELEASE]
    assert len(releases) == 1
    assert releases[0].amount == 70000
    assert _intent(db_session, order.id, LedgerEntryKind.RELEASE).status == IntentStatus.CONFIRMED
    actions = [row.action for row in order_service.order_timeline(db_session, order.id, actor=admin)]
    assert "SETTLEMENT_FAILED" in actions
    assert actions[-1] == "SETTLEMENT_RETRY"


def test_retry_settlement_guards(db_session, make_order, agent, admin):
    order = make_order()

    with pytest.raises(PermissionDeniedError):
        order_service.retry_settlement(db_session, order.id, actor=agent)
    with pytest.raises(StateConflictError) as excinfo:
        order_service.retry_settlement(db_session, order.id, actor=admin)
    assert excinfo.value.code == "NOT_FAILED_SETTLEMENT"


def test_fatal_gateway_error_is_not_retried(db_session, make_order, gateway, sleeps):
    order = make_order()
    gateway.fail_refund = 1
    gateway.transient = False

    with pytest.raises(PaymentProviderError) as excinfo:
        ledger.refund(db_session, order.id)

    assert excinfo.value.transient is False
    assert sleeps == []
    intent = _intent(db_session, order.id, LedgerEntryKind.REFUND)
    assert intent.status == IntentStatus.FAILED
    assert intent.attempts == 1


def test_ledger_entries_are_immutable(db_session, make_order):
    order = make_order()
    (hold,) = ledger.entries(db_session, order.id)

    hold.amount = 1
    with pytest.raises(RuntimeError):
        db_session.flush()
    db_session.rollback()

    assert ledger.balance(db_session, order.id).held == 70000


def test_release_without_hold_reference_is_refused(db_session, make_order, gateway):
    order = make_order(70000)
    intent = SettlementIntent(
        order_id=order.id, kind=LedgerEntryKind.RELEASE, amount=70000, idempotency_key="manual-release"
    )

    with pytest.raises(StateConflictError) as excinfo:
        ledger._call_gateway(gateway, intent, order, None)

    assert excinfo.value.code == "NO_HOLD"
    assert "release" not in [call[0] for call in gateway.calls]
