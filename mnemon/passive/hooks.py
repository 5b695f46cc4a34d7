"""Post-run hook that schedules passive memory extraction.

DuckDB lets one process hold the database file, so the host that calls
:func:`on_run_completed` should also run the worker: build it with
``create_worker(config, db)`` on the same :class:`Database`, call
``ensure_start()`` once, and pass it here so new jobs wake it up.
"""

import logging
from typing import Optional

from mnemon.config import MnemonConfig
from mnemon.memory.queue import PassiveMemoryQueue
from mnemon.memory.schema import ActorIdentity, QueueEntry
from mnemon.passive.worker import PassiveMemoryWorker

logger = logging.getLogger(__name__)


async def on_run_completed(
    queue: PassiveMemoryQueue,
    config: MnemonConfig,
    job_id: str,
    agent_id: str,
    work_item_id: Optional[str] = None,
    dispatch_id: Optional[str] = None,
    worker: Optional[PassiveMemoryWorker] = None,
    actor: Optional[ActorIdentity] = None,
) -> Optional[QueueEntry]:
    """Enqueue a finished run for extraction if the agent opted into passive memory.

    Calling this twice for the same job is harmless; the second call returns
    the existing row.

    Args:
        actor: Who the agent talked to, used to name them in extracted memories

    Returns:
        The queue row, or None if the agent is unknown or passive updates are off
    """
    agent = config.get_agent(agent_id)
    if agent is None:
        logger.debug("Not enqueuing job %s: unknown agent %s", job_id, agent_id)
        return None

    settings = agent.memory
    if not settings.enabled or not settings.passive_updates_enabled:
        return None

    entry, created = await queue.enqueue(
        job_id, agent_id, work_item_id=work_item_id, dispatch_id=dispatch_id, actor=actor
    )
    if created and worker is not None:
        worker.notify()
    return entry
