"""Chainlab - prompt-chain compilation and benchmark generation for NovelAI."""

__version__ = "0.3.0"

from chainlab.core.config import ChainlabConfig
from chainlab.core.prompt_compiler import compile_prompt
from chainlab.core.queue import GenerationQueue

__all__ = [
    "ChainlabConfig",
    "GenerationQueue",
    "compile_prompt",
]
