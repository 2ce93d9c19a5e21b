"""Configuration management for the StoryFlow workflow engine.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the STORYFLOW_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (STORYFLOW_* prefix)
2. .env file in the project root
3. Default values defined in StoryflowConfig

Example .env file:
    STORYFLOW_PROVIDER_HOST=192.168.1.20
    STORYFLOW_PROVIDER_PORT=7860
    STORYFLOW_WORKING_DIR=~/Pictures/storyflow
    STORYFLOW_REQUEST_LOG_ENABLED=true

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
It is the default used by the API layer and by :class:`WorkflowEngine` when no
explicit configuration is passed.

Usage Example
-------------
    from storyflow.core.config import config

    print(config.provider_base_url)
    print(config.working_dir)

Directory Management
--------------------
The configuration creates required directories on initialization:
- working_dir: root for canvasLoad/canvasSave/loopLoad/loopSave paths
- request_log_path parent: only when request logging is enabled

Generation Defaults
-------------------
The ``default_*`` fields seed every run's generation configuration.  ``config``
instructions inside a workflow override them field by field.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StoryflowConfig(BaseSettings):
    """Main configuration for the StoryFlow engine.

    Values are loaded from environment variables with the STORYFLOW_ prefix,
    with fallback to the defaults defined here.

    Attributes
    ----------
    Provider Settings:
        provider_transport : Literal["http"]
            Transport used to reach the generation backend
        provider_host : str
            Host name or IP of the generation backend
        provider_port : int
            Port of the generation backend (7860 for the HTTP API)
        shared_secret : str
            Optional Bearer token sent with every request
        request_timeout : float
            Timeout in seconds for a single generation request
        connection_timeout : float
            Timeout in seconds for the liveness check

    Execution Settings:
        working_dir : Path
            Root directory for relative filenames in file instructions
        check_connection_before_run : bool
            Check the provider connection before the first instruction runs

    Generation Defaults:
        default_width, default_height, default_steps, default_guidance_scale,
        default_sampler, default_shift, default_seed, default_seed_mode

    Logging:
        log_level : str
            Root log level used by the server entry point
        request_log_enabled : bool
            Append outgoing provider requests to ``request_log_path``
        request_log_path : Path
            Request log file location

    API Settings:
        server_host : str
            Bind address for the API server
        server_port : int
            Port for the API server
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="STORYFLOW_",
        case_sensitive=False,
    )

    # Provider settings
    provider_transport: Literal["http"] = Field(
        default="http",
        description="Transport used to reach the generation backend",
    )
    provider_host: str = Field(
        default="127.0.0.1",
        description="Host of the generation backend",
    )
    provider_port: int = Field(
        default=7860,
        description="Port of the generation backend",
        ge=1,
        le=65535,
    )
    shared_secret: str = Field(
        default="",
        description="Bearer token for the generation backend (empty = no auth)",
    )
    request_timeout: float = Field(
        default=300.0,
        description="Timeout in seconds for a generation request",
        gt=0,
    )
    connection_timeout: float = Field(
        default=5.0,
        description="Timeout in seconds for the connection check",
        gt=0,
    )

    # Execution settings
    working_dir: Path = Field(
        default=Path("workflow_output"),
        description="Root directory for workflow file operations",
    )
    check_connection_before_run: bool = Field(
        default=True,
        description="Check the provider connection before running a workflow",
    )

    # Generation defaults
    default_width: int = Field(default=1024, ge=64, le=4096)
    default_height: int = Field(default=1024, ge=64, le=4096)
    default_steps: int = Field(default=8, ge=1, le=150)
    default_guidance_scale: float = Field(default=1.0, ge=0.0)
    default_sampler: str = Field(default="UniPC Trailing")
    default_shift: float = Field(default=3.0)
    default_seed: int = Field(
        default=-1,
        description="Seed used when a workflow sets none (-1 = random)",
    )
    default_seed_mode: str = Field(default="Scale Alike")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Log level for the server entry point",
    )
    request_log_enabled: bool = Field(
        default=False,
        description="Append outgoing provider requests to a log file",
    )
    request_log_path: Path = Field(
        default=Path("logs/request_log.txt"),
        description="Location of the request log file",
    )

    # API settings
    server_host: str = Field(
        default="0.0.0.0",
        description="Server bind address",
    )
    server_port: int = Field(
        default=8000,
        description="Server port",
        ge=1024,
        le=65535,
    )

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        self.working_dir = self.working_dir.expanduser()
        self.working_dir.mkdir(parents=True, exist_ok=True)
        if self.request_log_enabled:
            self.request_log_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def provider_base_url(self) -> str:
        """Base URL of the generation backend."""
        return f"http://{self.provider_host}:{self.provider_port}"


# Global configuration instance
config = StoryflowConfig()
