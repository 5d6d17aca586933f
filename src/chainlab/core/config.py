"""Configuration management for Chainlab.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the CHAINLAB_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (CHAINLAB_* prefix)
2. .env file in the project root
3. Default values defined in ChainlabConfig

Example .env file:
    CHAINLAB_NAI_API_KEY=pst-xxxxxxxx
    CHAINLAB_QUEUE_DELAY_SECONDS=3
    CHAINLAB_STORE_URL=https://chains.example.org
    CHAINLAB_DATA_DIR=data

Global Configuration Instance
------------------------------
A global `config` instance is created at import time, but only the server
entry point (``chainlab.api.main``) reads it.  The compiler, queue, client and
store all receive their settings explicitly, so they can be constructed with a
custom ``ChainlabConfig`` (or plain arguments) in tests and scripts.

Usage Example
-------------
    from chainlab.core.config import ChainlabConfig

    cfg = ChainlabConfig(queue_delay_seconds=0.5, data_dir="/tmp/chainlab")
    print(cfg.generation_url)

Rate Limit Settings
-------------------
The remote generation service rejects concurrent requests from the same
account.  ``queue_delay_seconds`` is the pause the queue takes before every
task; a benchmark configuration may override it with its own ``interval``.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ChainlabConfig(BaseSettings):
    """Main configuration for Chainlab.

    Values are loaded from environment variables with the CHAINLAB_ prefix,
    with fallback to defaults defined here.

    Attributes
    ----------
    Generation Service:
        nai_api_key : str | None
            Bearer token for the generation service.  Requests may also carry
            their own key.
        generation_url : str
            Endpoint receiving generation requests.
        model_id : str
            Model identifier placed in every request payload.
        request_timeout : float
            Timeout in seconds for one generation request.

    Queue:
        queue_delay_seconds : float
            Delay before each queued request.
        queue_log_size : int
            Number of outcome entries the queue keeps in memory.
        benchmark_fallback_seed : int
            Seed used for benchmark runs when the benchmark seed is random.
        tag_prefix : str
            Prefix placed before the entity name in benchmark prompts.

    Storage:
        store_url : str | None
            Base URL of the REST backend.  When unset, a JSON file store in
            ``data_dir`` is used.
        data_dir : Path
            Directory for the file store and the local history database.

    Server:
        server_host : str
            Bind address for uvicorn.
        server_port : int
            Port for uvicorn (1024-65535).
        log_level : Literal["DEBUG", "INFO", "WARNING", "ERROR"]
            Root log level installed by the server entry point.

    Examples
    --------
        >>> cfg = ChainlabConfig(queue_delay_seconds=1.0)
        >>> cfg.model_id
        'nai-diffusion-4-5-full'
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CHAINLAB_",
        case_sensitive=False,
    )

    # Generation service
    nai_api_key: str | None = Field(
        default=None,
        description="Bearer token for the generation service",
    )
    generation_url: str = Field(
        default="https://image.novelai.net/ai/generate-image",
        description="Endpoint receiving generation requests",
    )
    model_id: str = Field(
        default="nai-diffusion-4-5-full",
        description="Model identifier sent with every request",
    )
    request_timeout: float = Field(default=120.0, gt=0)

    # Queue
    queue_delay_seconds: float = Field(
        default=2.0,
        description="Delay before each queued generation request",
        ge=0,
    )
    queue_log_size: int = Field(default=100, ge=1)
    benchmark_fallback_seed: int = Field(
        default=42,
        description="Seed used by benchmark runs when no seed is configured",
        ge=0,
    )
    tag_prefix: str = Field(default="artist")

    # Storage
    store_url: str | None = Field(
        default=None,
        description="REST backend base URL (JSON file store when unset)",
    )
    data_dir: Path = Field(
        default=Path("data"),
        description="Directory for file store and local history",
    )

    # Server
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=7860, ge=1024, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    def __init__(self, **kwargs):
        """Initialize configuration and create the data directory.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)
        self.data_dir.mkdir(parents=True, exist_ok=True)


# Server-level configuration instance, read by chainlab.api.main only.
config = ChainlabConfig()
