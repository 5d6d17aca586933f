"""Shared data models for prompt chains, benchmarks and generation tasks.

All models are Pydantic models so that the same objects validate API payloads,
serialise to the remote store and flow through the compiler and queue.  Field
names are snake_case in Python; ``by_alias=True`` dumps produce the camelCase
wire format the store and frontend use (``basePrompt``, ``isActive``,
``imageUrl`` ...).  Either spelling is accepted on input.

Seed Convention
---------------
A seed of ``None`` always means "random".  Legacy payloads that use ``-1``
(or any negative number) for random are normalised to ``None`` during
validation; ``0`` is a valid, fixed seed.
"""

from __future__ import annotations

import uuid
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

MIN_WEIGHT = -3
MAX_WEIGHT = 3
MAX_STEPS = 28
MIN_DIMENSION = 64
MAX_DIMENSION = 4096

DEFAULT_SAMPLER = "k_euler_ancestral"

SAMPLERS = (
    "k_euler_ancestral",
    "k_euler",
    "k_dpmpp_2s_ancestral",
    "k_dpmpp_2m_sde",
    "k_dpmpp_2m",
    "k_dpmpp_sde",
)

# Index → label of the negative-prompt bundles offered by the service.
UC_PRESETS = {
    0: "Heavy",
    1: "Light",
    2: "Furry Focus",
    3: "Human Focus",
    4: "None",
}

RESOLUTIONS = {
    "Portrait": (832, 1216),
    "Landscape": (1216, 832),
    "Square": (1024, 1024),
}


def resolution_mode(width: int, height: int) -> str:
    """Return the preset name for a size, or ``"Custom"``."""
    for name, size in RESOLUTIONS.items():
        if size == (width, height):
            return name
    return "Custom"


def _new_id() -> str:
    return str(uuid.uuid4())


def _normalise_seed(value):
    if value is None or value == "":
        return None
    seed = int(value)
    return None if seed < 0 else seed


class WireModel(BaseModel):
    """Base model accepting and emitting the camelCase wire format."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Tag(BaseModel):
    """A prompt tag with an emphasis weight in [-3, 3].

    Out-of-range weights are clamped rather than rejected.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    weight: int = 0

    @field_validator("weight", mode="before")
    @classmethod
    def _clamp(cls, value):
        return max(MIN_WEIGHT, min(MAX_WEIGHT, int(value)))


class PromptModule(WireModel):
    """A named, togglable prompt fragment owned by one chain."""

    id: str = Field(default_factory=_new_id)
    name: str = ""
    content: str = ""
    is_active: bool = True
    position: Literal["pre", "post"] | None = "post"


class GenerationParameters(WireModel):
    """Parameters sent with a generation request."""

    width: int = Field(default=832, ge=MIN_DIMENSION, le=MAX_DIMENSION)
    height: int = Field(default=1216, ge=MIN_DIMENSION, le=MAX_DIMENSION)
    steps: int = Field(default=28, ge=1, le=MAX_STEPS)
    scale: float = Field(default=5.0, ge=0)
    sampler: str = DEFAULT_SAMPLER
    seed: int | None = None
    quality_toggle: bool = True
    uc_preset: int = Field(default=0, ge=0, le=4)
    cfg_rescale: float = Field(default=0.0, ge=0, le=1)
    variety_boost: bool = False

    @field_validator("seed", mode="before")
    @classmethod
    def _random_seed_sentinel(cls, value):
        return _normalise_seed(value)


class PromptChain(WireModel):
    """A named prompt definition that compiles to one generation request.

    The module list order is significant: it is the emission order within the
    "pre" and "post" groups.
    """

    id: str = Field(default_factory=_new_id)
    name: str = ""
    description: str = ""
    tags: list[str] = Field(default_factory=list)
    base_prompt: str = ""
    negative_prompt: str = ""
    modules: list[PromptModule] = Field(default_factory=list)
    params: GenerationParameters = Field(default_factory=GenerationParameters)
    variable_values: dict[str, str] = Field(default_factory=dict)
    subject: str = ""
    preview_image: str | None = None
    created_at: int | None = None
    updated_at: int | None = None


class GenTask(WireModel):
    """One (entity, slot) unit of queued work.  Immutable."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(default_factory=_new_id)
    entity_id: str
    slot: int = Field(ge=0)


class Slot(WireModel):
    """A labelled benchmark scenario."""

    label: str
    prompt: str = ""


class BenchmarkConfig(WireModel):
    """Slots plus the shared parameters used for every benchmark request.

    Slot position is the join key between a task and an entity's result
    array, so removing a slot shifts every later slot's results.
    """

    slots: list[Slot] = Field(default_factory=list)
    negative: str = ""
    seed: int | None = None
    steps: int = Field(default=28, ge=1, le=MAX_STEPS)
    scale: float = Field(default=5.0, ge=0)
    interval: float | None = Field(default=None, ge=0)

    @field_validator("seed", mode="before")
    @classmethod
    def _random_seed_sentinel(cls, value):
        return _normalise_seed(value)

    def add_slot(self, label: str | None = None, prompt: str = "") -> BenchmarkConfig:
        label = label or f"Slot {len(self.slots) + 1}"
        return self.model_copy(update={"slots": [*self.slots, Slot(label=label, prompt=prompt)]})

    def remove_slot(self, index: int) -> BenchmarkConfig:
        """Return a copy without the slot at ``index``.

        Raises:
            IndexError: If ``index`` is out of range.
        """
        if index < 0 or index >= len(self.slots):
            raise IndexError(f"Slot index out of range: {index}")
        slots = [slot for i, slot in enumerate(self.slots) if i != index]
        return self.model_copy(update={"slots": slots})


class Artist(WireModel):
    """A benchmarked entity with its sparse per-slot result images.

    ``benchmarks[i]`` holds the image for slot ``i``; an empty string means
    the slot has not been generated yet.
    """

    id: str = Field(default_factory=_new_id)
    name: str
    image_url: str = ""
    preview_url: str | None = None
    benchmarks: list[str] = Field(default_factory=list)

    def with_benchmark(self, slot: int, image_ref: str) -> Artist:
        """Return a copy with ``image_ref`` written at ``slot``.

        The result array is padded with empty placeholders up to ``slot``;
        other positions are never moved.
        """
        benchmarks = list(self.benchmarks)
        if len(benchmarks) <= slot:
            benchmarks.extend([""] * (slot + 1 - len(benchmarks)))
        benchmarks[slot] = image_ref
        return self.model_copy(update={"benchmarks": benchmarks})
