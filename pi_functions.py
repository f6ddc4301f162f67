# pi_functions.py
# Pi payment relay: the only code allowed to approve, complete or cancel a payment.
# Mounted under /functions/v1 by wsgi.py.
import logging
from flask import Flask, request, jsonify, Response
from flask_cors import CORS
from dotenv import load_dotenv
from pi_client import PiClient, server_key
from payments import (
    PaymentRejected, is_valid_payment_id, is_valid_completion_field, try_parse,
    check_completable, validate_payment_for_order, reserve_payment, release_payment,
    bind_payment, mark_paid, mark_cancelled, record_observed,
)

load_dotenv()

log = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app,
     origins="*",
     send_wildcard=True,
     allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
     methods=["POST", "GET", "OPTIONS"])

@app.after_request
def _no_store(resp):
    resp.headers["Cache-Control"] = "no-store"
    return resp

@app.errorhandler(405)
def _method_not_allowed(_e):
    return _json({"error": "Method Not Allowed"}, 405)


# ---------- helpers ----------
def get_client(key: str) -> PiClient:
    return PiClient(api_key=key)

def _json(body, status=200):
    return jsonify(body), status

def _passthrough(text: str, status=200):
    return Response(text, status=status, mimetype="application/json")

def _upstream_fail(r, error: str, tag: str):
    log.error("%s status=%s body=%s", tag, r.status_code, r.text[:2000])
    return _json({"error": error, "details": try_parse(r.text)}, r.status_code)

def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}

def _missing_key(tag: str):
    log.error("%s missing PI_SERVER_API_KEY", tag)
    return _json({"error": "Server not configured"}, 500)

def _fetch_payment(client: PiClient, payment_id: str):
    """Returns (payment, None) or (None, error response)."""
    r = client.get_payment(payment_id)
    if not r.ok:
        return None, _upstream_fail(r, "Failed to fetch payment", "PI_FETCH_FAIL")
    try:
        payment = r.json()
    except ValueError:
        payment = None
    if not isinstance(payment, dict):
        log.error("PI_FETCH_BAD_RESPONSE payment=%s body=%s", payment_id, r.text[:2000])
        return None, _json({"error": "Invalid Pi response"}, 502)
    payment.setdefault("identifier", payment_id)
    return payment, None


# ---------- user ----------
@app.post("/pi-verify-user")
def pi_verify_user():
    token = _body().get("accessToken")
    if not token or not isinstance(token, str):
        return _json({"error": "Access token is required"}, 400)

    try:
        r = get_client(server_key()).me(token)
        if not r.ok:
            if r.status_code == 401:
                return _json({"error": "Invalid or expired access token"}, 401)
            log.error("PI_VERIFY_FAIL status=%s", r.status_code)
            return _json({"error": "Pi verification failed"}, 502)

        try:
            me = r.json()
        except ValueError:
            me = None
        if not isinstance(me, dict) or not isinstance(me.get("uid"), str) or not me["uid"]:
            log.error("PI_VERIFY_BAD_RESPONSE %r", me)
            return _json({"error": "Invalid Pi response"}, 502)

        return _json({
            "uid": me["uid"],
            "username": me.get("username"),
            "credentials": me.get("credentials"),
        })
    except Exception:
        log.exception("PI_VERIFY_ERROR")
        return _json({"error": "Internal server error"}, 500)


# ---------- payments ----------
@app.post("/pi-approve-payment")
def pi_approve_payment():
    payment_id = _body().get("paymentId")
    if not is_valid_payment_id(payment_id):
        return _json({"error": "Invalid or missing paymentId"}, 400)

    key = server_key()
    if not key:
        return _missing_key("PI_APPROVE")

    try:
        client = get_client(key)
        payment, err = _fetch_payment(client, payment_id)
        if err:
            return err

        order = validate_payment_for_order(payment)
        if order is not None:
            reserve_payment(order["id"], payment_id)

        # Pi treats a repeated approve of the same payment as a no-op
        try:
            r = client.approve_payment(payment_id)
        except Exception:
            if order is not None:
                release_payment(order["id"], payment_id)
            raise
        if not r.ok:
            if order is not None:
                release_payment(order["id"], payment_id)
            return _upstream_fail(r, "Pi approve failed", "PI_APPROVE_FAIL")

        if order is not None:
            bind_payment(order["id"], payment_id)
        log.info("PI_APPROVED payment=%s order=%s", payment_id, order["id"] if order else None)
        return _passthrough(r.text)
    except PaymentRejected as e:
        log.warning("PI_APPROVE_REJECTED payment=%s reason=%s", payment_id, e.error)
        return _json({"error": e.error}, e.status)
    except Exception:
        log.exception("PI_APPROVE_ERROR payment=%s", payment_id)
        return _json({"error": "Internal server error"}, 500)


@app.post("/pi-complete-payment")
def pi_complete_payment():
    data = _body()
    payment_id = data.get("paymentId")
    txid = data.get("txid")
    if not is_valid_completion_field(payment_id) or not is_valid_completion_field(txid):
        return _json({"error": "paymentId and txid are required"}, 400)

    key = server_key()
    if not key:
        return _missing_key("PI_COMPLETE")

    try:
        client = get_client(key)
        payment, err = _fetch_payment(client, payment_id)
        if err:
            return err

        if check_completable(payment, txid):
            mark_paid(payment)
            return _json(payment)

        r = client.complete_payment(payment_id, txid)
        if not r.ok:
            return _upstream_fail(r, "Pi complete failed", "PI_COMPLETE_FAIL")

        completed = try_parse(r.text)
        if not isinstance(completed, dict):
            completed = payment
        completed.setdefault("identifier", payment_id)
        mark_paid(completed)
        log.info("PI_COMPLETED payment=%s txid=%s", payment_id, txid)
        return _passthrough(r.text)
    except PaymentRejected as e:
        log.warning("PI_COMPLETE_REJECTED payment=%s reason=%s", payment_id, e.error)
        return _json({"error": e.error}, e.status)
    except Exception:
        log.exception("PI_COMPLETE_ERROR payment=%s", payment_id)
        return _json({"error": "Internal server error"}, 500)


@app.post("/pi-incomplete-payment")
def pi_incomplete_payment():
    """Incomplete payments reported at sign-in are observed only, never auto-resolved."""
    payment_id = _body().get("paymentId")
    if not is_valid_payment_id(payment_id):
        return _json({"error": "Invalid or missing paymentId"}, 400)

    key = server_key()
    if not key:
        return _missing_key("PI_INCOMPLETE")

    try:
        payment, err = _fetch_payment(get_client(key), payment_id)
        if err:
            return err

        order_id = record_observed(payment)
        log.info("PI_INCOMPLETE_OBSERVED payment=%s order=%s status=%s",
                 payment_id, order_id, payment.get("status"))
        return _json({"ok": True, "action": "observed", "status": payment.get("status")})
    except Exception:
        log.exception("PI_INCOMPLETE_ERROR payment=%s", payment_id)
        return _json({"error": "Internal server error"}, 500)


@app.post("/pi-cancel-payment")
def pi_cancel_payment():
    payment_id = _body().get("paymentId")
    if not is_valid_payment_id(payment_id):
        return _json({"error": "Invalid or missing paymentId"}, 400)

    key = server_key()
    if not key:
        return _missing_key("PI_CANCEL")

    try:
        r = get_client(key).cancel_payment(payment_id)
        if not r.ok:
            return _upstream_fail(r, "Pi cancel failed", "PI_CANCEL_FAIL")

        changed = mark_cancelled(payment_id)
        log.info("PI_CANCELLED payment=%s order_changed=%s", payment_id, changed)
        return _passthrough(r.text)
    except Exception:
        log.exception("PI_CANCEL_ERROR payment=%s", payment_id)
        return _json({"error": "Internal server error"}, 500)


@app.get("/pi-get-payment/<payment_id>")
def pi_get_payment(payment_id):
    if not is_valid_payment_id(payment_id):
        return _json({"error": "Invalid or missing paymentId"}, 400)

    key = server_key()
    if not key:
        return _missing_key("PI_GET")

    try:
        r = get_client(key).get_payment(payment_id)
        if not r.ok:
            return _upstream_fail(r, "Failed to fetch payment", "PI_GET_FAIL")
        return _passthrough(r.text)
    except Exception:
        log.exception("PI_GET_ERROR payment=%s", payment_id)
        return _json({"error": "Internal server error"}, 500)
