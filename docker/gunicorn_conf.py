# Gunicorn configuration for vmkeeper
# Only one worker owns the backup scheduler; the others serve the status API

import os
import logging

logger = logging.getLogger('gunicorn.error')

wsgi_app = 'run:create_server()'
bind = os.environ.get('GUNICORN_BIND', '0.0.0.0:5000')
workers = int(os.environ.get('GUNICORN_WORKERS', '2'))

# A backup run can take hours; requests never wait on it
timeout = 120


def post_fork(server, worker):
    """
    Called in the worker right after fork, before the application is loaded.

    The first worker (worker.age == 1 for the first spawn) becomes the
    scheduler owner so a backup run is never started twice. create_app()
    reads SCHEDULER_WORKER when it decides whether to start APScheduler.
    """
    owner = worker.age == 1
    os.environ['SCHEDULER_WORKER'] = 'true' if owner else 'false'

    if owner:
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): scheduler owner")
    else:
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): status API only")
