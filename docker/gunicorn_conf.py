# Gunicorn configuration for the backup service
# Exactly one worker owns the backup scheduler

import os
import logging

logger = logging.getLogger('gunicorn.error')


def pre_fork(server, worker):
    """
    Called in the arbiter before a worker is forked.

    The new worker becomes the scheduler owner if no live worker owns it,
    so ownership moves to a replacement when the owner dies.
    """
    worker.scheduler_owner = not any(
        getattr(live, 'scheduler_owner', False) for live in server.WORKERS.values()
    )


def post_fork(server, worker):
    """
    Called in each worker right after fork, before the app is loaded.

    Only the owner starts the backup scheduler; every other worker serves the
    administrative API, so scheduled backups never fire twice.
    """
    is_owner = getattr(worker, 'scheduler_owner', False)
    os.environ['SCHEDULER_WORKER'] = 'true' if is_owner else 'false'

    role = 'backup scheduler owner' if is_owner else 'API worker (scheduler disabled)'
    logger.info(f"Worker PID {worker.pid} (age={worker.age}): {role}")
