"""Pydantic request and response models for the Chainlab API.

These models define the JSON schema for the API endpoints that are not
plain core models.  FastAPI uses them for request validation, serialisation
and OpenAPI documentation.

Models
------
CompileRequest
    Payload for ``POST /api/prompt/compile``.
FormatTagsRequest / ParseTagsRequest
    Payloads for the tag clipboard/import helpers.
EnqueueRequest
    Payload for ``POST /api/queue/tasks``.
GenerateRequest
    Payload for ``POST /api/generate`` (single chain-editor generation).
CreateArtistRequest
    Payload for ``POST /api/artists``.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from chainlab.core.metadata import GenerationRecord
from chainlab.core.models import PromptChain, Tag


class CompileRequest(BaseModel):
    """Request body for ``POST /api/prompt/compile``.

    Attributes:
        chain: Chain to compile.
        subject: Subject segment.  ``None`` uses ``chain.subject``.
        variables: Placeholder values.  ``None`` uses the chain's saved values.
        active_overrides: Session toggles keyed by module id.
    """

    chain: PromptChain
    subject: str | None = None
    variables: dict[str, str] | None = None
    active_overrides: dict[str, bool] = Field(default_factory=dict)


class CompileResponse(BaseModel):
    compiled_prompt: str
    variables: list[str]


class FormatTagsRequest(BaseModel):
    tags: list[Tag]
    use_prefix: bool = Field(default=True, description="Prefix each tag with 'artist:'.")


class ParseTagsRequest(BaseModel):
    text: str
    known_only: bool = Field(
        default=False,
        description="Keep only tags matching an artist in the catalog.",
    )


class MetadataResponse(BaseModel):
    """Result of ``POST /api/metadata/extract``.

    ``format`` is ``"json"``, ``"text"`` or ``"unrecognized"``.
    """

    format: str
    raw: str | None
    record: GenerationRecord


class EnqueueRequest(BaseModel):
    """Request body for ``POST /api/queue/tasks``.

    Attributes:
        entity_ids: Artists to benchmark.
        slots: Slot indices; all configured slots when omitted.
        api_key: Bearer token; falls back to the server configuration.
    """

    entity_ids: list[str] = Field(..., min_length=1)
    slots: list[int] | None = None
    api_key: str | None = None


class GenerateRequest(BaseModel):
    """Request body for ``POST /api/generate``."""

    chain: PromptChain
    subject: str | None = None
    variables: dict[str, str] | None = None
    active_overrides: dict[str, bool] = Field(default_factory=dict)
    api_key: str | None = None


class CreateArtistRequest(BaseModel):
    name: str = Field(..., min_length=1)
    image_url: str = ""
