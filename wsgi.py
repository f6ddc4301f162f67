# wsgi.py
import os, logging
from werkzeug.middleware.dispatcher import DispatcherMiddleware
from app import app as store_app
from pi_functions import app as functions_app

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

# Payment relay lives under /functions/v1, the path the browser client already calls
application = DispatcherMiddleware(store_app, {
    "/functions/v1": functions_app
})
