"""
Gunicorn config: bind to 0.0.0.0 and PORT for Railway/Render.
"""
import os

bind = "0.0.0.0:{}".format(os.environ.get("PORT", "8080"))
workers = int(os.environ.get("WEB_CONCURRENCY", "2"))
threads = 4
timeout = 120
wsgi_app = "wsgi:app"
accesslog = "-"
loglevel = os.environ.get("LOG_LEVEL", "info").lower()
