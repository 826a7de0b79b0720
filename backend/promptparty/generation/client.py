from __future__ import annotations

from dataclasses import dataclass

import replicate


TERMINAL_STATUSES = ("succeeded", "failed", "canceled")


class GenerationConfigError(Exception):
    pass


@dataclass
class JobStatus:
    status: str
    image_url: str | None = None
    error: str | None = None

    @property
    def done(self) -> bool:
        return self.status in TERMINAL_STATUSES


class GenerationClient:
    """Asynchronous image job provider: submit once, then poll until done."""

    def submit(self, prompt: str) -> str:
        raise NotImplementedError

    def poll(self, job_id: str) -> JobStatus:
        raise NotImplementedError


def _first_output(output) -> str | None:
    if output is None:
        return None
    if isinstance(output, (list, tuple)):
        return str(output[0]) if output else None
    return str(output)


class ReplicateGenerationClient(GenerationClient):
    def __init__(self, api_token: str, model: str, aspect_ratio: str = "16:9") -> None:
        self.model = model
        self.aspect_ratio = aspect_ratio
        self._client = replicate.Client(api_token=api_token) if api_token else None

    def _require_client(self) -> replicate.Client:
        if self._client is None:
            raise GenerationConfigError("REPLICATE_API_TOKEN is not configured")
        return self._client

    def submit(self, prompt: str) -> str:
        prediction = self._require_client().predictions.create(
            model=self.model,
            input={
                "prompt": prompt,
                "aspect_ratio": self.aspect_ratio,
                "output_format": "webp",
            },
        )
        return prediction.id

    def poll(self, job_id: str) -> JobStatus:
        prediction = self._require_client().predictions.get(job_id)
        error = prediction.error
        return JobStatus(
            status=prediction.status,
            image_url=_first_output(prediction.output) if prediction.status == "succeeded" else None,
            error=str(error) if error else None,
        )


def make_generation_client(config) -> GenerationClient:
    return ReplicateGenerationClient(
        api_token=config.get("REPLICATE_API_TOKEN", ""),
        model=config.get("REPLICATE_MODEL", "google/nano-banana-pro"),
        aspect_ratio=config.get("GENERATION_ASPECT_RATIO", "16:9"),
    )
