import os, re, json, logging, sqlite3
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from db import conn, now_i
from emailer import send_receipt

log = logging.getLogger(__name__)

PAYMENT_ID_RE = re.compile(r"^[A-Za-z0-9_\-:.]{6,200}$")
PI_QUANT = Decimal("0.0000001")  # Pi amounts carry 7 decimal places


def require_order() -> bool:
    return os.getenv("PI_REQUIRE_ORDER", "false").lower() == "true"


class PaymentRejected(Exception):
    """A payment failed an app-side check. Carries the HTTP status to answer with."""

    def __init__(self, error: str, status: int = 409):
        self.error = error
        self.status = status
        super().__init__(error)


# ---------- input checks ----------
def is_valid_payment_id(value) -> bool:
    return isinstance(value, str) and bool(PAYMENT_ID_RE.match(value))

def is_valid_completion_field(value) -> bool:
    return isinstance(value, str) and 6 < len(value) <= 300

def try_parse(text: str):
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return text

def quantize_pi(value) -> Decimal:
    try:
        return Decimal(str(value)).quantize(PI_QUANT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        raise PaymentRejected("Amount mismatch")


# ---------- payment record ----------
def _status(payment: dict) -> dict:
    return (payment or {}).get("status") or {}

def payment_txid(payment: dict) -> str | None:
    tx = (payment or {}).get("transaction") or {}
    return tx.get("txid")

def order_id_of(payment: dict) -> int | None:
    meta = (payment or {}).get("metadata") or {}
    if not isinstance(meta, dict):
        return None
    try:
        oid = int(meta.get("order_id"))
    except (TypeError, ValueError):
        return None
    return oid if oid > 0 else None

def check_completable(payment: dict, txid: str) -> bool:
    """
    Mandatory state checks before completing a payment with Pi.
    Returns True when the payment is already completed (idempotent success),
    False when completion should proceed; raises PaymentRejected otherwise.
    """
    st = _status(payment)
    if not st.get("developer_approved"):
        raise PaymentRejected("Payment not approved by app")
    if st.get("developer_completed"):
        return True
    if not st.get("transaction_verified"):
        raise PaymentRejected("Transaction not verified by Pi")
    if payment_txid(payment) != txid:
        raise PaymentRejected("txid mismatch")
    return False


# ---------- order hook ----------
def validate_payment_for_order(payment: dict):
    """
    App-level approval guard: the order exists, is still open, is not bound to a
    different payment, and the amount matches. Returns the order row (or None
    when the payment carries no order and orders are optional).
    """
    payment_id = payment.get("identifier")
    oid = order_id_of(payment)
    if oid is None:
        if require_order():
            raise PaymentRejected("Payment has no order")
        log.info("PI_APPROVE_NO_ORDER payment=%s", payment_id)
        return None

    with conn() as cx:
        order = cx.execute("SELECT * FROM orders WHERE id=?", (oid,)).fetchone()
    if not order:
        raise PaymentRejected("Unknown order")
    if order["status"] == "cancelled":
        raise PaymentRejected("Order cancelled")
    if order["status"] == "paid":
        raise PaymentRejected("Order already paid")
    if order["pi_payment_id"] and order["pi_payment_id"] != payment_id:
        raise PaymentRejected("Order bound to another payment")
    if quantize_pi(payment.get("amount")) != quantize_pi(order["pi_amount"]):
        raise PaymentRejected("Amount mismatch")
    return order


# ---------- order state ----------
def reserve_payment(order_id: int, payment_id: str):
    """
    Claim an open order for one payment before asking Pi to approve it.
    A single conditional UPDATE, so two payments racing for the same order
    cannot both win.
    """
    try:
        with conn() as cx:
            cur = cx.execute("""UPDATE orders SET pi_payment_id=?, updated_at=?
                                WHERE id=? AND status IN ('pending','approved')
                                  AND (pi_payment_id IS NULL OR pi_payment_id=?)""",
                             (payment_id, now_i(), order_id, payment_id))
    except sqlite3.IntegrityError:
        raise PaymentRejected("Payment bound to another order")
    if cur.rowcount == 0:
        raise PaymentRejected("Order bound to another payment")

def release_payment(order_id: int, payment_id: str):
    """Undo a reservation when Pi did not approve; approved orders keep theirs."""
    with conn() as cx:
        cx.execute("""UPDATE orders SET pi_payment_id=NULL, updated_at=?
                      WHERE id=? AND pi_payment_id=? AND status='pending'""",
                   (now_i(), order_id, payment_id))

def bind_payment(order_id: int, payment_id: str):
    with conn() as cx:
        cx.execute("""UPDATE orders SET status='approved', updated_at=?
                      WHERE id=? AND pi_payment_id=? AND status IN ('pending','approved')""",
                   (now_i(), order_id, payment_id))

def _order_for_payment(cx, payment: dict):
    payment_id = payment.get("identifier")
    if payment_id:
        row = cx.execute("SELECT * FROM orders WHERE pi_payment_id=?", (payment_id,)).fetchone()
        if row:
            return row
    oid = order_id_of(payment)
    if oid is None:
        return None
    row = cx.execute("SELECT * FROM orders WHERE id=?", (oid,)).fetchone()
    if row and row["pi_payment_id"] and row["pi_payment_id"] != payment_id:
        return None
    return row

def mark_paid(payment: dict) -> bool:
    """Flip the payment's order to paid. Returns True only on the first transition."""
    with conn() as cx:
        order = _order_for_payment(cx, payment)
        if not order or order["status"] == "paid":
            return False
        cx.execute("""UPDATE orders SET status='paid', pi_payment_id=?, pi_txid=?,
                      pi_status_json=?, updated_at=? WHERE id=?""",
                   (payment.get("identifier"), payment_txid(payment),
                    json.dumps(_status(payment)), now_i(), order["id"]))
        order = cx.execute("SELECT * FROM orders WHERE id=?", (order["id"],)).fetchone()
        items = cx.execute("SELECT * FROM order_items WHERE order_id=?", (order["id"],)).fetchall()
        for it in items:
            cx.execute("UPDATE products SET stock_qty = MAX(0, stock_qty - ?) WHERE id=?",
                       (it["qty"], it["product_id"]))

    log.info("ORDER_PAID order=%s payment=%s", order["id"], payment.get("identifier"))
    if order["buyer_email"]:
        send_receipt(dict(order), [dict(i) for i in items])
    return True

def mark_cancelled(payment_id: str) -> bool:
    with conn() as cx:
        cur = cx.execute("""UPDATE orders SET status='cancelled', updated_at=?
                            WHERE pi_payment_id=? AND status IN ('pending','approved')""",
                         (now_i(), payment_id))
    return cur.rowcount > 0

def record_observed(payment: dict):
    """Remember the last status Pi reported for an incomplete payment. No transitions."""
    with conn() as cx:
        order = _order_for_payment(cx, payment)
        if order:
            cx.execute("UPDATE orders SET pi_status_json=?, updated_at=? WHERE id=?",
                       (json.dumps(_status(payment)), now_i(), order["id"]))
    return order["id"] if order else None
