# emailer.py
import os, smtplib, ssl, logging
from email.message import EmailMessage
from html import escape

log = logging.getLogger(__name__)

SMTP_HOST  = os.getenv("SMTP_HOST", "")                 # e.g. smtp.gmail.com
SMTP_PORT  = int(os.getenv("SMTP_PORT", "587"))         # 587 STARTTLS, 465 SSL
SMTP_USER  = os.getenv("SMTP_USER", "")
SMTP_PASS  = (os.getenv("SMTP_PASS", "")).replace(" ", "")  # app passwords are pasted with spaces
APP_NAME   = os.getenv("APP_NAME", "Daily Pi Mart")

FROM_EMAIL = os.getenv("FROM_EMAIL") or SMTP_USER or "no-reply@dailypimart.shop"

def _smtp_client():
    if not SMTP_HOST:
        raise RuntimeError("SMTP_HOST not set")
    if SMTP_PORT == 465:
        server = smtplib.SMTP_SSL(SMTP_HOST, SMTP_PORT, context=ssl.create_default_context(), timeout=20)
    else:
        server = smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=20)
        server.ehlo()
        try:
            server.starttls(context=ssl.create_default_context())
            server.ehlo()
        except smtplib.SMTPException:
            # provider negotiated TLS on its own
            pass
    if SMTP_USER:
        server.login(SMTP_USER, SMTP_PASS)
    return server

def send_email(to: str, subject: str, html: str, reply_to: str | None = None) -> bool:
    """
    Send an HTML email with a text fallback.
    Returns True/False; failures are logged, never raised.
    """
    if not to:
        log.warning("EMAIL_SKIP missing recipient")
        return False
    if not SMTP_HOST:
        log.warning("EMAIL_SKIP SMTP not configured (SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASS)")
        return False

    try:
        msg = EmailMessage()
        msg["From"] = FROM_EMAIL
        msg["To"] = to
        msg["Subject"] = subject
        if reply_to:
            msg["Reply-To"] = reply_to

        text_fallback = (html or "").replace("<br>", "\n").replace("<br/>", "\n")
        msg.set_content(text_fallback or " ")
        msg.add_alternative(html or "<p></p>", subtype="html")

        with _smtp_client() as s:
            s.send_message(msg)

        log.info("EMAIL_SENT to=%r subject=%r", to, subject)
        return True
    except (OSError, smtplib.SMTPException, RuntimeError) as e:
        log.error("EMAIL_FAIL %s: %s host=%s port=%s user_set=%s",
                  type(e).__name__, e, SMTP_HOST, SMTP_PORT, bool(SMTP_USER))
        return False

def render_receipt(order: dict, items: list[dict]) -> str:
    rows = "".join(
        f"<tr><td>{escape(str(i.get('title') or ''))}</td>"
        f"<td>{int(i.get('qty') or 0)}</td>"
        f"<td>{float(i.get('unit_price') or 0):.7f} π</td></tr>"
        for i in items
    )
    return (
        f"<h2>Thanks for shopping at {escape(APP_NAME)}!</h2>"
        f"<p>Order #{order['id']} is paid.</p>"
        f"<table>{rows}</table>"
        f"<p><b>Total:</b> {float(order['pi_amount']):.7f} π<br>"
        f"<b>Transaction:</b> {escape(str(order.get('pi_txid') or '-'))}</p>"
    )

def send_receipt(order: dict, items: list[dict]) -> bool:
    return send_email(order.get("buyer_email"),
                      f"{APP_NAME} receipt for order #{order['id']}",
                      render_receipt(order, items))
