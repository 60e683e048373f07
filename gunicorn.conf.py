# =============================================================================
# Boxoffice - Gunicorn Production Configuration
# =============================================================================
import os
import multiprocessing

# Bind
bind = f"0.0.0.0:{os.environ.get('PORT', '8080')}"

# Workers: 2 * CPU + 1 (capped at 4). Issuance is serialized in the
# database, so workers and threads can sell the same event concurrently.
workers = min(multiprocessing.cpu_count() * 2 + 1, 4)
threads = 4

preload_app = True

# Timeouts (refund calls are bounded by REFUND_TIMEOUT_SECONDS * attempts)
timeout = 60
graceful_timeout = 30
keepalive = 5

# Logging
accesslog = "-"
errorlog = "-"
loglevel = os.environ.get("LOG_LEVEL", "info")
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s %(L)s "%({x-request-id}i)s"'

# Worker lifecycle
max_requests = 1000
max_requests_jitter = 50

# Security: limit request sizes
limit_request_line = 8190
limit_request_fields = 100
limit_request_field_size = 8190

worker_class = "gthread"
forwarded_allow_ips = "*"
