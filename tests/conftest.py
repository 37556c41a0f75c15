import json
from types import SimpleNamespace
from decimal import Decimal
from datetime import timedelta

import pytest
import razorpay
from flask_jwt_extended import create_access_token
from werkzeug.security import generate_password_hash

from storefront import create_app
from storefront.extensions import db
from storefront.model import (
    DiscountRule,
    DiscountRuleCondition,
    DiscountTier,
    Store,
    TokenPackage,
    TokenPurchase,
    User,
)
from storefront.services.model_client import Completion
from storefront.utils.dates import utcnow


class FakeModelClient:
    """Stands in for OpenRouterClient; replies are queued strings, dicts or exceptions."""

    def __init__(self, *replies, model="fake/model"):
        self.replies = list(replies)
        self.model = model
        self.calls = []

    def queue(self, *replies):
        self.replies.extend(replies)

    def complete(self, system_prompt, messages):
        self.calls.append({"system_prompt": system_prompt, "messages": messages})
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, dict):
            reply = json.dumps(reply)
        return Completion(content=reply, model=self.model)


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text or json.dumps(body or {})

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakeHttp:
    """Minimal requests.Session replacement: queued responses or exceptions, recorded calls."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append({"url": url, **kwargs})
        resp = self.responses.pop(0)
        if isinstance(resp, Exception):
            raise resp
        return resp


class FakeRazorpayClient:
    """razorpay.Client with a scripted order API; signature checks use the real SDK."""

    def __init__(self, *orders, auth=("rzp_test_key", "rzp_test_secret")):
        self.orders = list(orders)
        self.calls = []
        self.order = SimpleNamespace(create=self._create_order)
        self.utility = razorpay.Client(auth=auth).utility

    def _create_order(self, data=None, **kwargs):
        self.calls.append({"data": data, **kwargs})
        outcome = self.orders.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def app():
    app = create_app({"TESTING": True})
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def session(app):
    return db.session


@pytest.fixture
def make_user(session):
    def _make(email="owner@example.com", role="user", password="secret123"):
        u = User(email=email, name=email.split("@")[0], role=role,
                 password_hash=generate_password_hash(password))
        session.add(u)
        session.commit()
        return u
    return _make


@pytest.fixture
def owner(make_user):
    return make_user()


@pytest.fixture
def store(session, owner):
    s = Store(owner_id=owner.id, name="Chai Corner", description="Tea and snacks")
    session.add(s)
    session.commit()
    return s


@pytest.fixture
def auth_headers(app):
    def _headers(user):
        token = create_access_token(identity=str(user.id))
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def make_rule(session):
    """Builds rules directly, bypassing admin validation."""
    def _make(store, rule_type, *, tiers=(), conditions=(), order_type="all", status="active",
              name=None, start=None, expiry=None, created_at=None):
        now = utcnow()
        rule = DiscountRule(
            store_id=store.id,
            rule_name=name or f"{rule_type} rule",
            rule_type=rule_type,
            order_type=order_type,
            status=status,
            start_date=start or now - timedelta(days=1),
            expiry_date=expiry or now + timedelta(days=1),
            created_at=created_at or now,
        )
        for i, (min_value, dtype, value) in enumerate(tiers):
            rule.tiers.append(DiscountTier(
                tier_order=i, min_order_value=min_value, discount_type=dtype, discount_value=value))
        for rule_value, dtype, value in conditions:
            rule.conditions.append(DiscountRuleCondition(
                rule_value=rule_value, discount_type=dtype, discount_value=value))
        session.add(rule)
        session.commit()
        return rule
    return _make


@pytest.fixture
def make_purchase(session):
    def _make(store, tokens=5, status="active", expires_at=None, created_at=None, **kw):
        p = TokenPurchase(
            store_id=store.id,
            tokens_purchased=tokens,
            tokens_remaining=tokens if status == "active" else 0,
            tokens_used=0,
            amount_paid=0,
            status=status,
            expires_at=expires_at,
            created_at=created_at or utcnow(),
            **kw,
        )
        session.add(p)
        session.commit()
        return p
    return _make


@pytest.fixture
def package(session):
    p = TokenPackage(name="Starter", tokens_included=10, price=Decimal("99.00"), currency="INR", display_order=0)
    session.add(p)
    session.commit()
    return p


@pytest.fixture
def fake_model(app):
    fake = FakeModelClient()
    app.extensions["design_model_client"] = fake
    return fake


@pytest.fixture
def fake_payment_client(app):
    fake = FakeRazorpayClient()
    app.extensions["payment_client"] = fake
    return fake
