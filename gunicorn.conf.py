"""Gunicorn configuration for production deployment.

Run with: gunicorn -c gunicorn.conf.py receptionist.main:app
"""

import multiprocessing
import os

# Server socket
bind = os.getenv("GUNICORN_BIND", "0.0.0.0:8080")
backlog = 2048

# Worker processes
# Every live call holds two websockets for its whole duration, so workers are
# bounded by concurrent calls rather than request throughput
workers = int(os.getenv("GUNICORN_WORKERS", min(multiprocessing.cpu_count() * 2 + 1, 8)))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000

# No max_requests: recycling a worker would drop the calls it is relaying

# Timeout configuration
timeout = 120
# Calls get this long to finish and persist on shutdown
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", "60"))
keepalive = 5

proc_name = "receptionist-relay"

# Logging
accesslog = "-"  # stdout
errorlog = "-"  # stderr
loglevel = os.getenv("GUNICORN_LOG_LEVEL", "info")

daemon = False
pidfile = None
umask = 0

# SSL configuration: set via environment variables GUNICORN_KEYFILE and GUNICORN_CERTFILE
keyfile = os.getenv("GUNICORN_KEYFILE")
certfile = os.getenv("GUNICORN_CERTFILE")


def worker_int(worker):
    """Called when a worker receives SIGINT or SIGQUIT."""
    worker.log.info("worker %s interrupted, live calls will be dropped", worker.pid)
