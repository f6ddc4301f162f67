# =============================================================================
# tests/helpers.py - Upstream fakes shared by the test modules
# =============================================================================

import json

import requests

import db


def make_response(status=200, body=None, url="https://api.minepi.com/v2/test"):
    """Real requests.Response carrying a canned body."""
    r = requests.Response()
    r.status_code = status
    r.url = url
    r.encoding = "utf-8"
    if body is None:
        body = {}
    r._content = body.encode("utf-8") if isinstance(body, str) else json.dumps(body).encode("utf-8")
    r.headers["Content-Type"] = "application/json"
    return r


class FakeSession:
    """Stands in for requests.Session; replies are consumed in order."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def queue(self, *replies):
        self.replies.extend(replies)

    def request(self, method, url, **kw):
        self.calls.append({"method": method, "url": url, **kw})
        if not self.replies:
            raise AssertionError(f"unexpected upstream call {method} {url}")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def payment_record(payment_id="pay_123456", amount=0.65, order_id=None, approved=False,
                   verified=False, completed=False, txid=None, cancelled=False):
    return {
        "identifier": payment_id,
        "user_uid": "uid-1",
        "amount": amount,
        "memo": "Daily Pi Mart order",
        "metadata": {"order_id": order_id} if order_id else {},
        "from_address": "GFROM",
        "to_address": "GTO",
        "direction": "user_to_app",
        "created_at": "2026-01-01T00:00:00Z",
        "network": "Pi Testnet",
        "status": {
            "developer_approved": approved,
            "transaction_verified": verified,
            "developer_completed": completed,
            "cancelled": cancelled,
            "user_cancelled": False,
        },
        "transaction": {"txid": txid, "verified": verified, "_link": "https://x"} if txid else None,
    }


def order_row(order_id):
    with db.conn() as cx:
        return cx.execute("SELECT * FROM orders WHERE id=?", (order_id,)).fetchone()
