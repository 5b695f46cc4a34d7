"""Passive memory extraction: queue worker, extraction, reconciliation and apply."""

from mnemon.passive.extraction import Candidate, ParseFailure
from mnemon.passive.hooks import on_run_completed
from mnemon.passive.worker import PassiveMemoryWorker, create_worker, run_worker

__all__ = ["Candidate", "ParseFailure", "PassiveMemoryWorker", "create_worker", "on_run_completed", "run_worker"]
