"""Core functionality for prompt-chain generation.

This package holds everything that turns structured prompt data into
generation requests and back:

- **weights**: Weighted tag formatting/parsing (``{{artist:name}}``)
- **prompt_compiler**: Chain compilation (base, pre modules, subject, post modules)
- **metadata**: Generation-parameter recovery from PNG ``tEXt`` chunks
- **generation_client**: Request payloads, HTTP client and failure classification
- **queue**: Rate-limited, single-worker benchmark generation queue
- **store**: Remote/JSON-file persistence and the in-memory artist catalog
- **history**: SQLite log of ad-hoc generations
- **config**: Settings loaded from ``CHAINLAB_*`` environment variables

Architecture Overview
---------------------
Data flows in one direction during generation::

    PromptChain ──compile_prompt──▶ prompt ──GenerationClient──▶ image
        ──GenerationQueue──▶ Artist.benchmarks ──RemoteStore──▶ backend

and in the other direction on import::

    PNG bytes ──read_generation_metadata──▶ GenerationRecord ──▶ chain params

Usage Example
-------------
::

    from chainlab.core import compile_prompt, PromptChain, PromptModule

    chain = PromptChain(
        base_prompt="masterpiece",
        modules=[PromptModule(content="cinematic lighting")],
    )
    compile_prompt(chain, "1girl")  # 'masterpiece, 1girl, cinematic lighting'
"""

from chainlab.core.config import ChainlabConfig
from chainlab.core.generation_client import (
    FailureKind,
    GeneratedImage,
    GenerationFailure,
    NovelAIClient,
    build_generation_payload,
    classify_failure,
)
from chainlab.core.metadata import (
    GenerationRecord,
    extract_metadata,
    parse_generation_metadata,
    read_generation_metadata,
)
from chainlab.core.models import (
    Artist,
    BenchmarkConfig,
    GenerationParameters,
    GenTask,
    PromptChain,
    PromptModule,
    Slot,
    Tag,
)
from chainlab.core.prompt_compiler import compile_prompt, extract_variables
from chainlab.core.queue import GenerationQueue, QueueContext
from chainlab.core.weights import clamp_weight, format_tag, parse_tag

__all__ = [
    "Artist",
    "BenchmarkConfig",
    "ChainlabConfig",
    "FailureKind",
    "GenTask",
    "GeneratedImage",
    "GenerationFailure",
    "GenerationParameters",
    "GenerationQueue",
    "GenerationRecord",
    "NovelAIClient",
    "PromptChain",
    "PromptModule",
    "QueueContext",
    "Slot",
    "Tag",
    "build_generation_payload",
    "clamp_weight",
    "classify_failure",
    "compile_prompt",
    "extract_metadata",
    "extract_variables",
    "format_tag",
    "parse_generation_metadata",
    "parse_tag",
    "read_generation_metadata",
]
