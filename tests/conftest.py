# =============================================================================
# tests/conftest.py - Pytest Configuration
# =============================================================================
# Environment is set before any project import: db.py and app.py read it at
# import time. Upstream Pi calls go through FakeSession, never the network.
# =============================================================================

import os
import tempfile

_TMP = tempfile.mkdtemp(prefix="dailypimart-tests-")
os.environ.setdefault("DATA_ROOT", _TMP)
os.environ.setdefault("SQLITE_DB_PATH", os.path.join(_TMP, "boot.sqlite"))
os.environ.setdefault("APP_SECRET_KEY", "test-secret")
os.environ["SESSION_COOKIE_SECURE"] = "false"
os.environ.pop("PI_SERVER_API_KEY", None)
os.environ.pop("PI_PLATFORM_API_KEY", None)
os.environ.pop("SMTP_HOST", None)

import pytest

import db
from pi_client import PiClient
from tests.helpers import FakeSession, make_response


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def fresh_db(tmp_path, monkeypatch):
    """Each test gets its own seeded SQLite file."""
    monkeypatch.setattr(db, "DB_PATH", str(tmp_path / "app.sqlite"))
    db.init_db()
    db.seed_catalog()
    return db.DB_PATH


@pytest.fixture
def no_sleep(monkeypatch):
    sleeps = []
    monkeypatch.setattr("pi_client.time.sleep", sleeps.append)
    return sleeps


@pytest.fixture
def upstream():
    return FakeSession()


@pytest.fixture
def relay(monkeypatch, upstream, no_sleep):
    """Test client for the payment relay with a configured server key."""
    import pi_functions

    monkeypatch.setenv("PI_SERVER_API_KEY", "test-server-key")
    monkeypatch.setattr(pi_functions, "get_client",
                        lambda key: PiClient(api_key=key, session=upstream))
    return pi_functions.app.test_client()


@pytest.fixture
def store(monkeypatch, upstream):
    """Test client for the storefront; Pi /me answers come from `upstream`."""
    import app as store_module

    monkeypatch.setattr(store_module, "pi_client", lambda: PiClient(session=upstream))
    return store_module.app.test_client()


@pytest.fixture
def signed_in(store, upstream):
    upstream.queue(make_response(200, {"uid": "uid-1", "username": "alice"}))
    resp = store.post("/api/auth/pi", json={"accessToken": "tok-abc"})
    assert resp.status_code == 200
    return store


@pytest.fixture
def make_order():
    """Insert a pending order directly; returns its id."""
    def _make(amount=0.65, status="pending", payment_id=None, email=None, user_pi_uid="uid-9"):
        with db.conn() as cx:
            row = cx.execute("SELECT id FROM users WHERE pi_uid=?", (user_pi_uid,)).fetchone()
            if row:
                uid = row["id"]
            else:
                uid = cx.execute("INSERT INTO users(pi_uid, pi_username, created_at) VALUES(?,?,0)",
                                 (user_pi_uid, "bob")).lastrowid
            oid = cx.execute("""INSERT INTO orders(user_id, pi_amount, status, pi_payment_id,
                                buyer_email, created_at) VALUES(?,?,?,?,?,0)""",
                             (uid, amount, status, payment_id, email)).lastrowid
            pid = cx.execute("SELECT id FROM products WHERE slug='ground-coffee-250g'").fetchone()["id"]
            cx.execute("""INSERT INTO order_items(order_id, product_id, title, unit_price, qty)
                          VALUES(?,?,?,?,1)""", (oid, pid, "Ground Coffee (250 g)", amount))
        return oid
    return _make


