"""Fan-out of image jobs for one round.

Each prompt becomes one provider job running in its own background task.
Jobs report back through a sink (the game service), which owns the state
writes and broadcasts; the orchestrator itself holds no game state and never
raises.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Protocol

from .client import GenerationClient


log = logging.getLogger(__name__)


class GenerationTimeout(Exception):
    pass


class GenerationFailed(Exception):
    pass


@dataclass
class PromptJob:
    token: str
    name: str
    prompt: str


@dataclass
class GenerationSummary:
    round: int
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    # finished after the round was replaced; result discarded
    stale: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "round": self.round,
            "succeeded": list(self.succeeded),
            "failed": list(self.failed),
            "skipped": list(self.skipped),
            "stale": list(self.stale),
        }


class GenerationSink(Protocol):
    def image_ready(self, round_no: int, token: str, image_url: str) -> bool: ...

    def log(self, message: str, level: str = "info") -> None: ...

    def generation_settled(self, summary: GenerationSummary) -> None: ...


def run_inline(fn, *args):
    fn(*args)


class GenerationOrchestrator:
    def __init__(
        self,
        client: GenerationClient,
        spawn: Callable = run_inline,
        sleep: Callable[[float], None] = time.sleep,
        poll_interval: float = 2.0,
        max_polls: int = 120,
        submit_retries: int = 1,
    ) -> None:
        self.client = client
        self._spawn = spawn
        self._sleep = sleep
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.submit_retries = submit_retries

    def run(self, round_no: int, jobs: list[PromptJob], sink: GenerationSink) -> GenerationSummary:
        summary = GenerationSummary(round=round_no)
        runnable: list[PromptJob] = []
        for job in jobs:
            prompt = (job.prompt or "").strip()
            if prompt:
                runnable.append(PromptJob(job.token, job.name, prompt))
            else:
                summary.skipped.append(job.token)
                sink.log(f"Skipping {job.name} ({job.token}): no prompt", "warning")

        sink.log(
            f"Generation started for round {round_no}: {len(runnable)} job(s), {len(summary.skipped)} skipped",
            "info",
        )
        if not runnable:
            sink.generation_settled(summary)
            return summary

        lock = Lock()
        pending = [len(runnable)]
        buckets = {"succeeded": summary.succeeded, "failed": summary.failed, "stale": summary.stale}

        def settle(job: PromptJob, outcome: str) -> None:
            with lock:
                buckets[outcome].append(job.token)
                pending[0] -= 1
                last = pending[0] == 0
            if last:
                sink.generation_settled(summary)

        for job in runnable:
            self._spawn(self._run_job, round_no, job, sink, settle)
        return summary

    def _run_job(self, round_no: int, job: PromptJob, sink: GenerationSink, settle: Callable) -> None:
        outcome = "failed"
        try:
            image_url = self._generate(job, sink)
            if sink.image_ready(round_no, job.token, image_url):
                sink.log(f"Success for {job.name} ({job.token})", "success")
                outcome = "succeeded"
            else:
                log.info(f"[generation] round {round_no} was replaced, dropped result for {job.token}")
                outcome = "stale"
        except GenerationTimeout as exc:
            sink.log(f"Timeout for {job.name} ({job.token}): {exc}", "error")
        except Exception as exc:
            log.warning(f"[generation] job for {job.token} failed", exc_info=True)
            sink.log(f"Error for {job.name} ({job.token}): {exc}", "error")
        finally:
            settle(job, outcome)

    def _submit(self, job: PromptJob, sink: GenerationSink) -> str:
        attempt = 0
        while True:
            try:
                return self.client.submit(job.prompt)
            except Exception as exc:
                if attempt >= self.submit_retries:
                    raise
                attempt += 1
                sink.log(f"Submit failed for {job.name}, retry {attempt}/{self.submit_retries}: {exc}", "warning")
                self._sleep(self.poll_interval)

    def _generate(self, job: PromptJob, sink: GenerationSink) -> str:
        job_id = self._submit(job, sink)
        sink.log(f"Prediction created for {job.name} ({job.token}): {job_id}", "info")

        polls = 0
        while True:
            if polls >= self.max_polls:
                raise GenerationTimeout(f"no result after {polls} polls")
            self._sleep(self.poll_interval)
            status = self.client.poll(job_id)
            polls += 1
            if status.done:
                break
            log.debug(f"[generation] {job.token} poll {polls}: {status.status}")

        if status.status != "succeeded" or not status.image_url:
            raise GenerationFailed(f"{status.status}: {status.error or 'no output'}")
        return status.image_url
