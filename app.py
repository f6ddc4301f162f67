import os, json, uuid, time, hmac, base64, hashlib, logging
from decimal import Decimal, ROUND_HALF_UP
from datetime import timedelta
from flask import Flask, request, session, jsonify
from dotenv import load_dotenv
from db import init_db, seed_catalog, conn, now_i
from pi_client import PiClient

# ----------------- ENV -----------------
load_dotenv()
PI_SANDBOX = os.getenv("PI_SANDBOX", "false").lower() == "true"
APP_NAME   = os.getenv("APP_NAME", "Daily Pi Mart")
TOKEN_TTL  = int(os.getenv("LOGIN_TOKEN_TTL", str(7 * 24 * 3600)))

log = logging.getLogger(__name__)

# ----------------- APP -----------------
app = Flask(__name__)

_secret = os.getenv("APP_SECRET_KEY") or os.urandom(32)
app.secret_key = _secret
app.config.update(
    SESSION_COOKIE_NAME="dailypimart_session",
    SESSION_COOKIE_SAMESITE="None",
    SESSION_COOKIE_SECURE=os.getenv("SESSION_COOKIE_SECURE", "true").lower() == "true",
    SESSION_COOKIE_HTTPONLY=True,
    PERMANENT_SESSION_LIFETIME=timedelta(days=7),
)

init_db()
seed_catalog()

def _ok(**kw):
    out = {"ok": True}; out.update(kw); return jsonify(out)
def _err(reason="unknown", status=400):
    return jsonify({"ok": False, "reason": str(reason)}), status

def pi_client() -> PiClient:
    return PiClient()

# ---- Pi amount rounding helpers (7 dp) ----
PI_QUANT = Decimal("0.0000001")
def qpi(x) -> float:
    """Quantize/round to 7 decimal places using Decimal; return float for storage/JSON."""
    return float(Decimal(str(x)).quantize(PI_QUANT, rounding=ROUND_HALF_UP))

# ----------------- LOGIN TOKENS -----------------
# Pi Browser drops third-party cookies in some webviews; a signed token in the
# Authorization header stands in for the session cookie.
def _b64url(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")
def _b64url_dec(s: str) -> bytes:
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s + pad)
def _key_bytes() -> bytes:
    return app.secret_key if isinstance(app.secret_key, bytes) else app.secret_key.encode("utf-8")

def mint_login_token(user_id: int, ttl: int = TOKEN_TTL) -> str:
    payload = {"uid": user_id, "exp": int(time.time()) + ttl, "v": 1}
    body = _b64url(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    sig = hmac.new(_key_bytes(), body.encode("utf-8"), hashlib.sha256).digest()
    return body + "." + _b64url(sig)

def verify_login_token(token: str):
    try:
        body, sig = token.split(".")
        want = hmac.new(_key_bytes(), body.encode("utf-8"), hashlib.sha256).digest()
        if not hmac.compare_digest(_b64url(want), sig):
            return None
        payload = json.loads(_b64url_dec(body))
        if payload.get("exp", 0) < int(time.time()):
            return None
        return int(payload.get("uid"))
    except (ValueError, TypeError, AttributeError):
        return None

def get_bearer_token_from_request() -> str | None:
    auth = request.headers.get("Authorization", "")
    if auth and auth.lower().startswith("bearer "):
        return auth.split(" ", 1)[1].strip()
    return None

def current_user_row():
    uid = session.get("user_id")
    if not uid:
        tok = get_bearer_token_from_request()
        if tok:
            uid = verify_login_token(tok)
    if not uid:
        return None
    with conn() as cx:
        return cx.execute("SELECT * FROM users WHERE id=?", (uid,)).fetchone()

def _user_json(u):
    return {"id": u["id"], "uid": u["pi_uid"], "username": u["pi_username"], "email": u["email"]}

# ----------------- HEALTH -----------------
@app.get("/health")
def health():
    return _ok(app=APP_NAME, sandbox=PI_SANDBOX)

# ----------------- AUTH -----------------
@app.post("/api/auth/pi")
def auth_pi():
    data = request.get_json(silent=True) or {}
    token = data.get("accessToken")
    if not token or not isinstance(token, str):
        return _err("missing_token")

    try:
        r = pi_client().me(token)
    except Exception:
        log.exception("AUTH_PI_ERROR")
        return _err("server_error", 500)
    if r.status_code != 200:
        log.info("AUTH_PI_REJECTED status=%s", r.status_code)
        return _err("token_invalid", 401)

    try:
        me = r.json()
    except ValueError:
        me = None
    uid = me.get("uid") if isinstance(me, dict) else None
    if not uid:
        return _err("bad_pi_response", 502)
    username = me.get("username")

    with conn() as cx:
        row = cx.execute("SELECT * FROM users WHERE pi_uid=?", (uid,)).fetchone()
        if not row:
            cx.execute("""INSERT INTO users(pi_uid, pi_username, created_at, last_login_at)
                          VALUES(?,?,?,?)""", (uid, username, now_i(), now_i()))
        else:
            cx.execute("UPDATE users SET pi_username=COALESCE(?, pi_username), last_login_at=? WHERE id=?",
                       (username, now_i(), row["id"]))
        row = cx.execute("SELECT * FROM users WHERE pi_uid=?", (uid,)).fetchone()

    session["user_id"] = row["id"]
    session.permanent = True
    _attach_cart_to_user(row["id"])
    return _ok(user=_user_json(row), token=mint_login_token(row["id"]))

@app.post("/api/auth/logout")
def auth_logout():
    session.clear()
    return _ok()

@app.get("/api/account")
def account():
    u = current_user_row()
    if not u: return _err("auth_required", 401)
    with conn() as cx:
        n = cx.execute("SELECT COUNT(*) AS n FROM orders WHERE user_id=?", (u["id"],)).fetchone()["n"]
    return _ok(user=_user_json(u), order_count=n)

@app.post("/api/account")
def account_update():
    u = current_user_row()
    if not u: return _err("auth_required", 401)
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip() or None
    if email and "@" not in email:
        return _err("bad_email")
    with conn() as cx:
        cx.execute("UPDATE users SET email=? WHERE id=?", (email, u["id"]))
        u = cx.execute("SELECT * FROM users WHERE id=?", (u["id"],)).fetchone()
    return _ok(user=_user_json(u))

# ----------------- CATALOG -----------------
def _product_json(p):
    return {
        "id": p["id"], "slug": p["slug"], "title": p["title"], "category": p["category"],
        "description": p["description"], "image_url": p["image_url"],
        "price": float(p["pi_price"]), "stock": int(p["stock_qty"]),
    }

@app.get("/api/products")
def products():
    sql = "SELECT * FROM products WHERE active=1"
    args = []
    category = (request.args.get("category") or "").strip().lower()
    q = (request.args.get("q") or "").strip()
    if category:
        sql += " AND category=?"; args.append(category)
    if q:
        sql += " AND (title LIKE ? OR description LIKE ?)"; args += [f"%{q}%", f"%{q}%"]
    sql += " ORDER BY category, title"
    with conn() as cx:
        rows = cx.execute(sql, args).fetchall()
    return _ok(products=[_product_json(p) for p in rows])

@app.get("/api/products/<slug>")
def product_detail(slug):
    with conn() as cx:
        p = cx.execute("SELECT * FROM products WHERE slug=? AND active=1", (slug,)).fetchone()
    if not p: return _err("not_found", 404)
    return _ok(product=_product_json(p))

@app.get("/api/categories")
def categories():
    with conn() as cx:
        rows = cx.execute("""SELECT category, COUNT(*) AS n FROM products
                             WHERE active=1 GROUP BY category ORDER BY category""").fetchall()
    return _ok(categories=[{"name": r["category"], "count": r["n"]} for r in rows])

# ----------------- CART -----------------
def get_or_create_cart() -> str:
    cid = session.get("cart_id")
    with conn() as cx:
        if cid and cx.execute("SELECT 1 FROM carts WHERE id=?", (cid,)).fetchone():
            return cid
        cid = uuid.uuid4().hex[:12]
        cx.execute("INSERT INTO carts(id, user_id, created_at) VALUES(?,?,?)",
                   (cid, session.get("user_id"), now_i()))
    session["cart_id"] = cid
    return cid

def _attach_cart_to_user(user_id: int):
    cid = session.get("cart_id")
    if cid:
        with conn() as cx:
            cx.execute("UPDATE carts SET user_id=? WHERE id=?", (user_id, cid))

def _cart_rows(cx, cid):
    return cx.execute("""
      SELECT cart_items.qty, products.*
      FROM cart_items JOIN products ON products.id=cart_items.product_id
      WHERE cart_items.cart_id=? ORDER BY cart_items.id
    """, (cid,)).fetchall()

def _cart_json(cid):
    with conn() as cx:
        rows = _cart_rows(cx, cid)
    lines = [{"product": _product_json(r), "qty": r["qty"],
              "line_total": qpi(Decimal(str(r["pi_price"])) * r["qty"])} for r in rows]
    total = qpi(sum((Decimal(str(r["pi_price"])) * r["qty"] for r in rows), Decimal(0)))
    return {"id": cid, "items": lines, "count": sum(r["qty"] for r in rows), "total": total}

def _parse_qty(raw, default=1):
    try:
        return int(raw if raw is not None else default)
    except (TypeError, ValueError):
        return None

def _load_product(cx, product_id):
    try:
        pid = int(product_id)
    except (TypeError, ValueError):
        return None
    return cx.execute("SELECT * FROM products WHERE id=? AND active=1", (pid,)).fetchone()

@app.get("/api/cart")
def cart_view():
    return _ok(cart=_cart_json(get_or_create_cart()))

@app.post("/api/cart/add")
def cart_add():
    data = request.get_json(silent=True) or {}
    qty = _parse_qty(data.get("qty"))
    if qty is None or qty < 1:
        return _err("bad_qty")
    cid = get_or_create_cart()
    with conn() as cx:
        p = _load_product(cx, data.get("product_id"))
        if not p: return _err("unknown_product", 404)
        have = cx.execute("SELECT qty FROM cart_items WHERE cart_id=? AND product_id=?",
                          (cid, p["id"])).fetchone()
        new_qty = min((have["qty"] if have else 0) + qty, int(p["stock_qty"]))
        if new_qty < 1:
            return _err("out_of_stock", 409)
        cx.execute("""INSERT INTO cart_items(cart_id, product_id, qty) VALUES(?,?,?)
                      ON CONFLICT(cart_id, product_id) DO UPDATE SET qty=excluded.qty""",
                   (cid, p["id"], new_qty))
    return _ok(cart=_cart_json(cid))

@app.post("/api/cart/update")
def cart_update():
    data = request.get_json(silent=True) or {}
    qty = _parse_qty(data.get("qty"), default=None)
    if qty is None or qty < 0:
        return _err("bad_qty")
    cid = get_or_create_cart()
    with conn() as cx:
        p = _load_product(cx, data.get("product_id"))
        if not p: return _err("unknown_product", 404)
        new_qty = min(qty, int(p["stock_qty"]))
        if qty > 0 and new_qty < 1:
            cx.execute("DELETE FROM cart_items WHERE cart_id=? AND product_id=?", (cid, p["id"]))
            return _err("out_of_stock", 409)
        if new_qty == 0:
            cx.execute("DELETE FROM cart_items WHERE cart_id=? AND product_id=?", (cid, p["id"]))
        else:
            cx.execute("""INSERT INTO cart_items(cart_id, product_id, qty) VALUES(?,?,?)
                          ON CONFLICT(cart_id, product_id) DO UPDATE SET qty=excluded.qty""",
                       (cid, p["id"], new_qty))
    return _ok(cart=_cart_json(cid))

@app.post("/api/cart/remove")
def cart_remove():
    data = request.get_json(silent=True) or {}
    cid = get_or_create_cart()
    with conn() as cx:
        cx.execute("DELETE FROM cart_items WHERE cart_id=? AND product_id=?",
                   (cid, _parse_qty(data.get("product_id"), default=0)))
    return _ok(cart=_cart_json(cid))

@app.post("/api/cart/clear")
def cart_clear():
    cid = get_or_create_cart()
    with conn() as cx:
        cx.execute("DELETE FROM cart_items WHERE cart_id=?", (cid,))
    return _ok(cart=_cart_json(cid))

# ----------------- CHECKOUT + ORDERS -----------------
@app.post("/api/checkout")
def checkout():
    """
    Turns the cart into a pending order and hands back what Pi.createPayment needs.
    The payment itself is approved and completed through the relay in pi_functions.
    """
    u = current_user_row()
    if not u: return _err("auth_required", 401)
    cid = get_or_create_cart()

    with conn() as cx:
        rows = _cart_rows(cx, cid)
        if not rows:
            return _err("empty_cart")
        short = [r["slug"] for r in rows if r["qty"] > int(r["stock_qty"])]
        if short:
            return jsonify({"ok": False, "reason": "insufficient_stock", "products": short}), 409

        empty = [r["slug"] for r in rows if r["qty"] < 1]
        if empty:
            return jsonify({"ok": False, "reason": "bad_qty", "products": empty}), 409

        total = qpi(sum((Decimal(str(r["pi_price"])) * r["qty"] for r in rows), Decimal(0)))
        if total <= 0:
            return _err("zero_total", 409)
        cur = cx.execute("""INSERT INTO orders(user_id, pi_amount, status, buyer_email, created_at, updated_at)
                            VALUES(?,?, 'pending', ?,?,?)""",
                         (u["id"], total, u["email"], now_i(), now_i()))
        oid = cur.lastrowid
        memo = f"{APP_NAME} order #{oid}"
        cx.execute("UPDATE orders SET memo=? WHERE id=?", (memo, oid))
        cx.executemany("""INSERT INTO order_items(order_id, product_id, title, unit_price, qty)
                          VALUES(?,?,?,?,?)""",
                       [(oid, r["id"], r["title"], float(r["pi_price"]), r["qty"]) for r in rows])
        cx.execute("DELETE FROM cart_items WHERE cart_id=?", (cid,))

    log.info("ORDER_CREATED order=%s user=%s amount=%s", oid, u["id"], total)
    return _ok(order_id=oid, payment={"amount": total, "memo": memo, "metadata": {"order_id": oid}})

def _order_json(cx, o):
    items = cx.execute("SELECT * FROM order_items WHERE order_id=? ORDER BY id", (o["id"],)).fetchall()
    return {
        "id": o["id"], "status": o["status"], "amount": float(o["pi_amount"]), "memo": o["memo"],
        "payment_id": o["pi_payment_id"], "txid": o["pi_txid"],
        "created_at": o["created_at"], "updated_at": o["updated_at"],
        "items": [{"product_id": i["product_id"], "title": i["title"],
                   "unit_price": float(i["unit_price"]), "qty": i["qty"]} for i in items],
    }

@app.get("/api/orders")
def orders():
    u = current_user_row()
    if not u: return _err("auth_required", 401)
    with conn() as cx:
        rows = cx.execute("SELECT * FROM orders WHERE user_id=? ORDER BY created_at DESC, id DESC",
                          (u["id"],)).fetchall()
        out = [_order_json(cx, o) for o in rows]
    return _ok(orders=out)

@app.get("/api/orders/<int:order_id>")
def order_detail(order_id):
    u = current_user_row()
    if not u: return _err("auth_required", 401)
    with conn() as cx:
        o = cx.execute("SELECT * FROM orders WHERE id=? AND user_id=?", (order_id, u["id"])).fetchone()
        if not o: return _err("not_found", 404)
        out = _order_json(cx, o)
    return _ok(order=out)
