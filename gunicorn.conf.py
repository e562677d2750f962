# gunicorn.conf.py
import os

bind = f"0.0.0.0:{os.getenv('PORT','5000')}"
# one process: the in-memory limiter and cache memo are per-process
workers = int(os.getenv("WEB_CONCURRENCY", "1"))
threads = int(os.getenv("GUNICORN_THREADS", "4"))
worker_class = "gthread"
timeout = 300     # compute-day fans out to Horizons
graceful_timeout = 30
keepalive = 2
accesslog = "-"   # stdout
errorlog = "-"    # stderr
loglevel = os.getenv("LOGLEVEL", "info")
wsgi_app = "skyfriction.main:app"

# add request id if present
access_log_format = (
    '%(h)s - "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" '
    'req_id:%({X-Request-ID}i)s rt:%(L)s'
)
