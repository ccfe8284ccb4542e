from dataclasses import dataclass
from functools import lru_cache

import httpx

from paygate.config import Settings, get_settings
from paygate.gateways import GatewayRegistry
from paygate.idempotency import IdempotencyLedger
from paygate.reconciliation import Reconciler
from paygate.service import PaymentService
from paygate.sweeper import ExpirySweeper
from paygate.upstream import OrderSystemClient, UpstreamNotifier


@dataclass
class Services:
    settings: Settings
    gateways: GatewayRegistry
    ledger: IdempotencyLedger
    orders: OrderSystemClient
    notifier: UpstreamNotifier
    payments: PaymentService
    reconciler: Reconciler
    sweeper: ExpirySweeper


def build_services(
    settings: Settings,
    gateway_http: httpx.Client = None,
    upstream_http: httpx.Client = None,
) -> Services:
    """Wire every component from one Settings object."""
    gateways = GatewayRegistry.from_settings(settings, gateway_http)
    ledger = IdempotencyLedger(settings)
    orders = OrderSystemClient(settings, upstream_http)
    notifier = UpstreamNotifier(settings, orders)
    return Services(
        settings=settings,
        gateways=gateways,
        ledger=ledger,
        orders=orders,
        notifier=notifier,
        payments=PaymentService(settings, gateways, ledger, orders, notifier),
        reconciler=Reconciler(settings, gateways, notifier),
        sweeper=ExpirySweeper(settings, ledger, orders),
    )


@lru_cache()
def get_services() -> Services:
    """FastAPI dependency: process-wide components."""
    return build_services(get_settings())
