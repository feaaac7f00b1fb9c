"""
Tests for the FastAPI dependencies that establish the per-request context.

Requests go through TestClient against a small app; upstream authentication
is stood in for by a middleware that copies the `X-Actor-Id` header onto
`request.state.actor_id`.
"""
from __future__ import annotations

from types import SimpleNamespace

import pytest
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import Session

from orgscope.security.context import SecurityContext, current_context
from orgscope.security.dependencies import (
    get_scope_services,
    get_scoped_session,
    get_security_context,
    install_scope,
    load_actor,
)
from orgscope.security.descriptors import EntityRegistry
from orgscope.security.levels import VisibilityTier
from orgscope.settings import Settings
from scoped_entities import ORDERS, Order, add_actor, add_tenants


@pytest.fixture
def app(session_factory, db_session):
    add_tenants(db_session, 1)
    add_actor(db_session, 42, unit_id=0, tiers=(VisibilityTier.UNIT,))
    add_actor(db_session, 43, is_admin=True)
    add_actor(db_session, 44, status=2)
    db_session.add_all([Order(id=1, tenant_id=1, owner_id=42), Order(id=2, tenant_id=1, owner_id=43)])
    db_session.commit()

    app = FastAPI()
    install_scope(
        app,
        settings=Settings(redis_url=None),
        session_factory=session_factory,
        registry=EntityRegistry([ORDERS]),
    )

    @app.middleware("http")
    async def authenticate(request: Request, call_next):
        actor_id = request.headers.get("X-Actor-Id")
        if actor_id is not None:
            request.state.actor_id = int(actor_id)
        return await call_next(request)

    @app.get("/orders")
    def list_orders(db: Session = Depends(get_scoped_session)):
        return [order.id for order in db.scalars(select(Order).order_by(Order.id)).all()]

    @app.get("/me")
    async def me(context: SecurityContext = Depends(get_security_context)):
        bound = current_context()
        return {
            "actor_id": context.actor_id,
            "tier": int(context.effective_tier),
            "is_admin": context.is_admin,
            "bound": bound is context,
        }

    return app


@pytest.fixture
def client(app):
    return TestClient(app)


def test_get_scope_services_requires_install():
    request = SimpleNamespace(app=FastAPI())
    with pytest.raises(RuntimeError):
        get_scope_services(request)


def test_load_actor_rejects_missing_and_inactive(app, session_factory):
    assert load_actor(session_factory, 42).id == 42

    for actor_id in (44, 999):
        with pytest.raises(HTTPException) as exc_info:
            load_actor(session_factory, actor_id)
        assert exc_info.value.status_code == 401


def test_scoped_session_filters_rows(client):
    response = client.get("/orders", headers={"X-Actor-Id": "42"})

    assert response.status_code == 200
    assert response.json() == [1]
    assert current_context() is None


def test_requests_do_not_leak_context(client):
    for _ in range(3):
        assert client.get("/orders", headers={"X-Actor-Id": "42"}).json() == [1]
        assert client.get("/orders", headers={"X-Actor-Id": "43"}).json() == [1, 2]


def test_context_is_bound_for_the_route(client):
    body = client.get("/me", headers={"X-Actor-Id": "42"}).json()

    assert body == {"actor_id": 42, "tier": int(VisibilityTier.UNIT), "is_admin": False, "bound": True}


def test_admin_gets_all_tier(client):
    body = client.get("/me", headers={"X-Actor-Id": "43"}).json()

    assert body["is_admin"] is True
    assert body["tier"] == int(VisibilityTier.ALL)


def test_missing_or_inactive_actor_is_401(client):
    assert client.get("/orders").status_code == 401
    assert client.get("/orders", headers={"X-Actor-Id": "44"}).status_code == 401
    assert client.get("/me", headers={"X-Actor-Id": "999"}).status_code == 401
