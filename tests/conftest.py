"""
Shared pytest fixtures available to every test file automatically.
No imports needed in test files — pytest discovers this by convention.
"""

from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.charges import DeferredChargeQueue
from app.deps import (
    can_cancel_booking,
    can_clear_charges,
    can_dispute_charges,
    can_grant_balances,
    can_process_settlements,
    can_read_ledger,
    can_read_settlements,
    can_write_charges,
    get_charge_lock,
    get_config,
    get_current_user,
    get_payments_client,
    get_store,
)
from app.ledger import FundingLedger
from app.orchestrator import SettlementOrchestrator
from app.outbox import get_notifier
from app.reconciler import PaymentIntentReconciler
from app.routers import bookings, charges, ledger, refunds

from .factories import CONFIG, make_admin, make_guest, make_trip_service
from .fakes import FakeGateway, FakeLock, InMemoryStore, fake_notifier

ROUTERS = (bookings.router, charges.router, refunds.router, ledger.router)
SCOPE_DEPS = (
    can_cancel_booking,
    can_dispute_charges,
    can_write_charges,
    can_read_ledger,
    can_read_settlements,
    can_process_settlements,
    can_clear_charges,
    can_grant_balances,
    get_current_user,
)


@pytest.fixture()
def anyio_backend():
    return "asyncio"


# ---------------------------------------------------------------------------
# Service doubles
# ---------------------------------------------------------------------------


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def notifier():
    return fake_notifier()


@pytest.fixture()
def lock() -> FakeLock:
    return FakeLock()


@pytest.fixture()
def ledger_service(store) -> FundingLedger:
    return FundingLedger(store)


@pytest.fixture()
def reconciler(store, gateway) -> PaymentIntentReconciler:
    return PaymentIntentReconciler(store, gateway)


@pytest.fixture()
def queue(store, gateway, notifier, lock) -> DeferredChargeQueue:
    return DeferredChargeQueue(store, gateway, notifier, lock, CONFIG)


@pytest.fixture()
def orchestrator(store, gateway, notifier, lock) -> SettlementOrchestrator:
    return SettlementOrchestrator(store, gateway, notifier, lock, CONFIG)


# ---------------------------------------------------------------------------
# App builder — used by all client fixtures
# ---------------------------------------------------------------------------


def include_routers(app: FastAPI) -> FastAPI:
    for router in ROUTERS:
        app.include_router(router)
    return app


def build_app(current_user, store=None, gateway=None, notifier=None, lock=None) -> FastAPI:
    """
    Fresh FastAPI app with auth/scope dependencies overridden to return
    `current_user` unconditionally, and the store, gateway, notifier and
    lock replaced by in-memory doubles.
    """
    app = include_routers(FastAPI())

    async def _user():
        return current_user

    for dep in SCOPE_DEPS:
        app.dependency_overrides[dep] = _user

    st = store if store is not None else InMemoryStore()
    gw = gateway if gateway is not None else FakeGateway()
    nt = notifier if notifier is not None else fake_notifier()
    lk = lock if lock is not None else FakeLock()
    app.dependency_overrides[get_store] = lambda: st
    app.dependency_overrides[get_payments_client] = lambda: gw
    app.dependency_overrides[get_notifier] = lambda: nt
    app.dependency_overrides[get_charge_lock] = lambda: lk
    app.dependency_overrides[get_config] = lambda: CONFIG

    return app


# ---------------------------------------------------------------------------
# Reusable client fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def guest_client(store, gateway, notifier, lock):
    return TestClient(
        build_app(make_guest(), store, gateway, notifier, lock), raise_server_exceptions=True
    )


@pytest.fixture()
def trip_client(store, gateway, notifier, lock):
    return TestClient(
        build_app(make_trip_service(), store, gateway, notifier, lock),
        raise_server_exceptions=True,
    )


@pytest.fixture()
def admin_client(store, gateway, notifier, lock):
    return TestClient(
        build_app(make_admin(), store, gateway, notifier, lock), raise_server_exceptions=True
    )


@pytest.fixture()
def anon_app(store, gateway, notifier, lock):
    """
    App with the real auth/scope deps and only the service doubles swapped.
    Use this when you want real scope/auth deps to run so you can assert 401/403/422.
    """
    app = include_routers(FastAPI())
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_payments_client] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_charge_lock] = lambda: lock
    app.dependency_overrides[get_config] = lambda: CONFIG
    return app


@pytest.fixture()
def client_factory(store, gateway, notifier, lock):
    def _make(current_user) -> TestClient:
        return TestClient(
            build_app(current_user, store, gateway, notifier, lock),
            raise_server_exceptions=True,
        )

    return _make
