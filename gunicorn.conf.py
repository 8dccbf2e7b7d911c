# gunicorn.conf.py
import multiprocessing, os

wsgi_app = "skycal.main:app"
bind = f"0.0.0.0:{os.getenv('PORT','5000')}"
# refinement runs its own thread pool per request
workers = max(2, multiprocessing.cpu_count() // 2)
threads = int(os.getenv("GUNICORN_THREADS", "2"))
worker_class = "gthread"
timeout = int(os.getenv("GUNICORN_TIMEOUT", "180"))
graceful_timeout = 30
keepalive = 2
accesslog = "-"   # stdout
errorlog = "-"    # stderr
loglevel = os.getenv("LOGLEVEL", "info")

access_log_format = (
    '%(h)s - "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" '
    'req_id:%({X-Request-ID}i)s rt:%(L)s'
)
