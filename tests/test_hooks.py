"""Tests for the post-run enqueue hook."""

from unittest.mock import MagicMock

import pytest

from conftest import AGENT_ID
from mnemon.config import AgentConfig, MemorySettings
from mnemon.memory.schema import ActorIdentity
from mnemon.passive.hooks import on_run_completed


@pytest.mark.asyncio
async def test_enqueues_for_opted_in_agent(queue, config):
    worker = MagicMock()

    entry = await on_run_completed(queue, config, "job-1", AGENT_ID, work_item_id="wi-1", worker=worker)

    assert entry.status == "pending"
    assert entry.work_item_id == "wi-1"
    worker.notify.assert_called_once_with()


@pytest.mark.asyncio
async def test_repeat_call_returns_existing_row(queue, config):
    worker = MagicMock()
    first = await on_run_completed(queue, config, "job-1", AGENT_ID, worker=worker)
    second = await on_run_completed(queue, config, "job-1", AGENT_ID, worker=worker)

    assert second.id == first.id
    assert worker.notify.call_count == 1
    assert await queue.count_by_status() == {"pending": 1}


@pytest.mark.asyncio
async def test_unknown_agent(queue, config):
    assert await on_run_completed(queue, config, "job-1", "ghost-agent") is None
    assert await queue.get_by_job("job-1") is None


@pytest.mark.asyncio
async def test_passive_updates_off(queue, config):
    config.agents["quiet-agent"] = AgentConfig(memory=MemorySettings())

    assert await on_run_completed(queue, config, "job-1", "quiet-agent") is None
    assert await queue.get_by_job("job-1") is None


@pytest.mark.asyncio
async def test_works_without_worker(queue, config):
    entry = await on_run_completed(queue, config, "job-1", AGENT_ID, dispatch_id="d-1")
    assert entry.dispatch_id == "d-1"


@pytest.mark.asyncio
async def test_actor_is_kept_on_the_row(queue, config):
    actor = ActorIdentity(display_name="Ana", handle="ana_dev")

    await on_run_completed(queue, config, "job-1", AGENT_ID, actor=actor)

    assert (await queue.get_by_job("job-1")).actor == actor
