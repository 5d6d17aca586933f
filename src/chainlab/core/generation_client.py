"""Client for the remote image-generation service.

This module builds generation request payloads, posts them to the service,
and unpacks the single image contained in the zip archive it returns.

Failure Model
-------------
Every failure leaving this module is a :class:`GenerationFailure` carrying a
:class:`FailureKind`.  The kind is derived from the error text by
:func:`classify_failure`, not from exception types: the service reports rate
limiting as HTTP 429 or with messages mentioning concurrent generation or a
locked account, and those failures are expected and retryable.

``NovelAIClient.generate`` returns either a :class:`GeneratedImage` or a
:class:`GenerationFailure`; it does not raise for transport, HTTP or archive
errors.

Request Shape
-------------
See :func:`build_generation_payload`.  ``seed`` is omitted when the
parameters carry no seed, which makes the service pick one.
"""

from __future__ import annotations

import base64
import io
import logging
import zipfile
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, Union

import httpx
from PIL import Image

from chainlab.core.config import ChainlabConfig
from chainlab.core.models import GenerationParameters

logger = logging.getLogger(__name__)

RATE_LIMIT_MARKERS = ("429", "concurrent", "locked")


class FailureKind(str, Enum):
    """Classification of a failed generation task."""

    RATE_LIMITED = "rate_limited"
    LOOKUP = "lookup"
    REMOTE = "remote"
    PERSISTENCE = "persistence"


def classify_failure(message: str) -> FailureKind:
    """Classify an error message.

    Returns:
        ``RATE_LIMITED`` if the text mentions any rate-limit marker
        (case-insensitive), otherwise ``REMOTE``.
    """
    lowered = message.lower()
    if any(marker in lowered for marker in RATE_LIMIT_MARKERS):
        return FailureKind.RATE_LIMITED
    return FailureKind.REMOTE


class GenerationFailure(Exception):
    """A classified generation failure.

    Attributes:
        message: Human-readable error text.
        kind: Failure classification.
    """

    def __init__(self, message: str, kind: FailureKind | None = None):
        super().__init__(message)
        self.message = message
        self.kind = kind or classify_failure(message)

    @classmethod
    def from_exception(cls, exc: BaseException) -> GenerationFailure:
        if isinstance(exc, GenerationFailure):
            return exc
        return cls(str(exc) or type(exc).__name__)

    @property
    def is_rate_limited(self) -> bool:
        return self.kind is FailureKind.RATE_LIMITED

    def __repr__(self) -> str:
        return f"GenerationFailure(kind={self.kind.value!r}, message={self.message!r})"


@dataclass(frozen=True)
class GeneratedImage:
    """Image bytes returned by the service."""

    data: bytes
    filename: str = "image.png"
    mime_type: str = "image/png"

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"

    def to_pil(self) -> Image.Image:
        return Image.open(io.BytesIO(self.data))


GenerationResult = Union[GeneratedImage, GenerationFailure]


class GenerationClient(Protocol):
    """Anything that can turn a compiled prompt into an image."""

    async def generate(
        self,
        api_key: str,
        prompt: str,
        negative_prompt: str,
        params: GenerationParameters,
    ) -> GenerationResult: ...


def build_generation_payload(
    prompt: str,
    negative_prompt: str,
    params: GenerationParameters,
    model: str,
) -> dict:
    """Build the JSON body of a generation request.

    Args:
        prompt: Compiled prompt.
        negative_prompt: Negative prompt.
        params: Generation parameters.
        model: Model identifier.

    Returns:
        Request body dictionary.  ``parameters.seed`` is present only when
        ``params.seed`` is set.
    """
    parameters = {
        "params_version": 3,
        "width": params.width,
        "height": params.height,
        "scale": params.scale,
        "sampler": params.sampler,
        "steps": params.steps,
        "n_samples": 1,
        "ucPreset": params.uc_preset,
        "qualityToggle": params.quality_toggle,
        "cfg_rescale": params.cfg_rescale,
        "variety_boost": params.variety_boost,
        "sm": False,
        "sm_dyn": False,
        "dynamic_thresholding": False,
        "controlnet_strength": 1,
        "legacy": False,
        "add_original_image": True,
        "uncond_scale": 1,
        "noise_schedule": "karras",
        "negative_prompt": negative_prompt,
        "v4_prompt": {
            "caption": {"base_caption": prompt, "char_captions": []},
            "use_coords": False,
            "use_order": True,
        },
        "v4_negative_prompt": {
            "caption": {"base_caption": negative_prompt, "char_captions": []},
            "legacy_uc": False,
        },
    }
    if params.seed is not None:
        parameters["seed"] = params.seed

    return {
        "input": prompt,
        "model": model,
        "action": "generate",
        "parameters": parameters,
    }


def extract_single_file(archive: bytes) -> tuple[str, bytes]:
    """Return ``(filename, data)`` of the first file in a zip archive.

    Raises:
        GenerationFailure: If the archive is unreadable or empty.
    """
    try:
        with zipfile.ZipFile(io.BytesIO(archive)) as zf:
            names = [info.filename for info in zf.infolist() if not info.is_dir()]
            if not names:
                raise GenerationFailure("No image found in response", FailureKind.REMOTE)
            return names[0], zf.read(names[0])
    except zipfile.BadZipFile as e:
        raise GenerationFailure(f"Invalid archive in response: {e}", FailureKind.REMOTE) from e


class NovelAIClient:
    """Async HTTP client for the generation endpoint.

    Attributes:
        endpoint: URL receiving generation requests.
        model: Model identifier sent in every payload.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        endpoint: str,
        model: str,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.model = model
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_config(cls, cfg: ChainlabConfig, **kwargs) -> NovelAIClient:
        return cls(cfg.generation_url, cfg.model_id, cfg.request_timeout, **kwargs)

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def generate(
        self,
        api_key: str,
        prompt: str,
        negative_prompt: str,
        params: GenerationParameters,
    ) -> GenerationResult:
        """Request one image.

        Args:
            api_key: Bearer token.
            prompt: Compiled prompt.
            negative_prompt: Negative prompt.
            params: Generation parameters.

        Returns:
            The generated image, or a classified failure.
        """
        payload = build_generation_payload(prompt, negative_prompt, params, self.model)
        headers = {"Authorization": f"Bearer {api_key}"}

        logger.info(f"Requesting generation ({params.width}x{params.height}, {params.steps} steps)")
        try:
            response = await self._http().post(self.endpoint, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Generation request failed: {e}")
            return GenerationFailure(f"Request failed: {e}")

        if response.status_code >= 400:
            failure = GenerationFailure(f"{response.status_code}: {response.text}")
            logger.warning(f"Generation rejected ({failure.kind.value}): {failure.message}")
            return failure

        try:
            filename, data = extract_single_file(response.content)
        except GenerationFailure as failure:
            logger.error(failure.message)
            return failure

        return GeneratedImage(data=data, filename=filename)
