import json
from datetime import timedelta

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from paygate import signatures
from paygate.errors import PaymentExpired
from paygate.models import IdempotencyRecord, utcnow
from paygate.schemas import UpdateStatusRequest
from paygate.sweeper import SWEEP_REASON, ExpirySweeper, main, run_forever
from paygate.upstream import OrderSystemClient


@pytest.fixture
def later():
    return utcnow() + timedelta(minutes=16)


def test_expired_payment_is_hidden_then_swept(db, services, make_payment, order_system, load_payment, events, later):
    make_payment()

    with pytest.raises(PaymentExpired):
        services.payments.get_payment_status(db, "K1", now=later)

    result = services.sweeper.sweep(db, now=later)

    assert result.as_dict() == {"scanned": 1, "cancelled": 1, "skipped": 0, "notified": 1, "notify_failed": 0, "errors": 0}
    payment = load_payment("K1")
    assert payment.status == "cancelled"
    assert payment.gateway_data["cancellation"]["reason"] == SWEEP_REASON
    assert events("K1")[-1] == "cancelled"
    assert db.get(IdempotencyRecord, "K1") is None

    cancels = order_system.calls_to("/orders/O1/cancel")
    assert len(cancels) == 1
    assert json.loads(cancels[0].content) == {"reason": SWEEP_REASON, "payment_id": "K1"}
    assert cancels[0].headers["X-Signature"] == signatures.sign({"order_id": "O1"}, "order-secret")

    assert services.sweeper.sweep(db, now=later).scanned == 0
    assert len(order_system.calls_to("/cancel")) == 1


def test_live_payments_are_left_alone(db, services, make_payment, load_payment):
    make_payment()
    result = services.sweeper.sweep(db)

    assert result.scanned == 0
    assert load_payment("K1").status == "pending"


def test_only_one_run_cancels_a_record(db, services, make_payment, later):
    make_payment()
    candidates = services.sweeper.candidates(db, later)

    assert services.sweeper.expire(db, candidates[0], later) is not None
    assert services.sweeper.expire(db, candidates[0], later) is None


def test_completion_between_scan_and_lock_wins(db, services, make_payment, load_payment, later):
    make_payment()
    candidates = services.sweeper.candidates(db, later)

    update = UpdateStatusRequest(status="completed", transaction_id="FT1")
    signature = signatures.sign(signatures.status_update_payload("K1", "completed", "FT1"), "order-secret")
    services.payments.update_status(db, "K1", update, signature)

    assert services.sweeper.expire(db, candidates[0], later) is None
    assert load_payment("K1").status == "completed"


def test_batch_is_bounded_and_oldest_first(db, services, settings, make_payment, load_payment, later):
    for n in range(3):
        make_payment(key=f"K{n}", order_id=f"O{n}")
    sweeper = ExpirySweeper(settings.model_copy(update={"SWEEP_BATCH_SIZE": 2}), services.ledger, services.orders)

    result = sweeper.sweep(db, now=later)

    assert result.cancelled == 2
    assert [load_payment(f"K{n}").status for n in range(3)] == ["cancelled", "cancelled", "pending"]
    assert sweeper.sweep(db, now=later).cancelled == 1


def test_upstream_failure_does_not_stop_the_batch(db, services, settings, make_payment, load_payment, later):
    make_payment(key="K1", order_id="O1")
    make_payment(key="K2", order_id="O2")
    unreachable = OrderSystemClient(
        settings, httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(500, text="boom")))
    )

    result = ExpirySweeper(settings, services.ledger, unreachable).sweep(db, now=later)

    assert result.cancelled == 2
    assert result.notify_failed == 2
    assert load_payment("K2").status == "cancelled"


def test_cli_runs_a_single_sweep(mocker):
    services = mocker.MagicMock()
    mocker.patch("paygate.dependencies.build_services", return_value=services)
    mocker.patch("paygate.database.init_db")
    run = mocker.patch("paygate.sweeper.run_forever")

    main(["--once", "--interval", "5"])

    args, kwargs = run.call_args
    assert args[0] is services.sweeper
    assert args[3] == 5
    assert kwargs["once"] is True


class _Stop(Exception):
    pass


def test_loop_survives_a_failed_run(mocker):
    sweeper = mocker.MagicMock()
    sweeper.sweep.side_effect = [OperationalError("SELECT", {}, Exception("database is locked")), None]
    notifier = mocker.MagicMock()
    sleep = mocker.patch("paygate.sweeper.time.sleep", side_effect=[None, _Stop()])

    with pytest.raises(_Stop):
        run_forever(sweeper, notifier, mocker.MagicMock, interval_seconds=5)

    assert sweeper.sweep.call_count == 2
    assert notifier.retry_due.call_count == 1
    assert sleep.call_count == 2


def test_single_run_reports_database_errors(mocker):
    sweeper = mocker.MagicMock()
    sweeper.sweep.side_effect = OperationalError("SELECT", {}, Exception("database is locked"))

    with pytest.raises(OperationalError):
        run_forever(sweeper, mocker.MagicMock(), mocker.MagicMock, interval_seconds=5, once=True)
