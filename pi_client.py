# pi_client.py
import os, time, logging
from urllib.parse import quote
import requests
from dotenv import load_dotenv

load_dotenv()

log = logging.getLogger(__name__)

# ---------- ENV ----------
PI_API_BASE     = (os.getenv("PI_PLATFORM_API_URL") or "https://api.minepi.com").rstrip("/")
REQUEST_TIMEOUT = float(os.getenv("PI_REQUEST_TIMEOUT", "15"))
RETRY_ATTEMPTS  = int(os.getenv("PI_RETRY_ATTEMPTS", "3"))


def server_key() -> str:
    """Server API key, read per call so a rotated secret needs no restart."""
    return (os.getenv("PI_SERVER_API_KEY") or os.getenv("PI_PLATFORM_API_KEY") or "").strip()


class PiConfigError(RuntimeError):
    pass


class PiNetworkError(Exception):
    """Every attempt against the Pi API failed (transport errors or 429/5xx)."""

    def __init__(self, last_error=None):
        self.last_error = last_error
        super().__init__(str(last_error) if last_error else "Network error")


def _retryable(status: int) -> bool:
    return status == 429 or 500 <= status < 600


class PiClient:
    """
    Thin transport over the Pi Platform REST API (v2).
    Never decides payment state; callers inspect the returned responses.
    """

    def __init__(self, api_key=None, base_url=PI_API_BASE, attempts=RETRY_ATTEMPTS,
                 timeout=REQUEST_TIMEOUT, session=None):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.attempts = max(1, int(attempts))
        self.timeout = timeout
        self.session = session or requests.Session()

    # ---------- headers ----------
    def key_headers(self):
        if not self.api_key:
            raise PiConfigError("PI_SERVER_API_KEY is required")
        return {"Authorization": f"Key {self.api_key}"}

    @staticmethod
    def bearer_headers(access_token: str):
        return {"Authorization": f"Bearer {access_token}"}

    # ---------- transport ----------
    def request(self, method: str, path: str, headers: dict, json=None, attempts=None):
        url = f"{self.base_url}/v2{path}"
        attempts = self.attempts if attempts is None else max(1, int(attempts))
        last_err = None

        for i in range(attempts):
            try:
                r = self.session.request(method, url, headers=headers, json=json, timeout=self.timeout)
            except requests.RequestException as e:
                last_err = e
                log.warning("PI_RETRY %s %s attempt=%s err=%s: %s",
                            method, path, i + 1, type(e).__name__, e)
                if i + 1 < attempts:
                    time.sleep(0.4 * (i + 1))
                continue

            if _retryable(r.status_code):
                log.warning("PI_RETRY %s %s attempt=%s status=%s", method, path, i + 1, r.status_code)
                if i + 1 < attempts:
                    time.sleep(0.5 * (i + 1))
                continue

            return r

        raise PiNetworkError(last_err)

    # ---------- payments ----------
    @staticmethod
    def _payment_path(payment_id: str, action: str = "") -> str:
        path = f"/payments/{quote(payment_id, safe='')}"
        return f"{path}/{action}" if action else path

    def get_payment(self, payment_id: str):
        return self.request("GET", self._payment_path(payment_id), self.key_headers())

    def approve_payment(self, payment_id: str):
        return self.request("POST", self._payment_path(payment_id, "approve"), self.key_headers())

    def complete_payment(self, payment_id: str, txid: str):
        headers = {**self.key_headers(), "Content-Type": "application/json"}
        return self.request("POST", self._payment_path(payment_id, "complete"), headers,
                            json={"txid": txid})

    def cancel_payment(self, payment_id: str):
        return self.request("POST", self._payment_path(payment_id, "cancel"), self.key_headers())

    # ---------- users ----------
    def me(self, access_token: str):
        # single shot: a failed token check is answered, not retried
        return self.session.request("GET", f"{self.base_url}/v2/me",
                                    headers=self.bearer_headers(access_token), timeout=self.timeout)
