"""
Centralized configuration using Pydantic Settings.

All configuration is loaded from environment variables (or a local .env file).
MODEL_PATH is the only required value; everything else has a default matching
the Ultra-Light RFB-640 face detector's training recipe.

Use get_settings() to access the singleton settings instance.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_threads() -> int:
    return os.cpu_count() or 1


class Settings(BaseSettings):
    """
    Application settings with environment variable support.

    Example: MODEL_PATH=models/version-RFB-640.onnx INFERENCE_THREADS=4 facebox

    The defaults decode raw logits and anchor-relative deltas. The published
    version-RFB-640.onnx decodes in-graph and needs
    BOX_ENCODING=corners SCORE_ACTIVATION=none; startup logs a warning when
    the model outputs disagree with these settings.
    """

    # ==========================================================================
    # Model / Inference Engine
    # ==========================================================================
    model_path: Path = Field(..., description='Path to the serialized ONNX face detector')

    inference_threads: int = Field(
        default_factory=_default_threads,
        gt=0,
        description='intra-op threads used by the inference session',
    )

    warmup_runs: int = Field(
        default=1, ge=0, description='Dummy inferences executed at startup'
    )

    # ==========================================================================
    # Detection thresholds
    # ==========================================================================
    confidence_threshold: float = Field(
        default=0.7, gt=0.0, lt=1.0, description='Minimum face probability kept'
    )

    iou_threshold: float = Field(
        default=0.5, gt=0.0, le=1.0, description='NMS overlap threshold'
    )

    top_k: int | None = Field(
        default=None, ge=1, description='Maximum detections returned per image'
    )

    # ==========================================================================
    # Model input contract
    # ==========================================================================
    input_width: int = Field(default=640, gt=0, description='Model input width (W)')
    input_height: int = Field(default=480, gt=0, description='Model input height (H)')

    resize_mode: Literal['stretch', 'fill'] = Field(
        default='stretch',
        description='stretch: resize whole image; fill: center-crop to model aspect first',
    )

    input_mean: list[float] = Field(
        default=[0.485, 0.456, 0.406], description='Per-channel mean on [0,1] RGB pixels'
    )
    input_std: list[float] = Field(
        default=[0.229, 0.224, 0.225], description='Per-channel std on [0,1] RGB pixels'
    )

    # ==========================================================================
    # Anchors / box decoding
    # ==========================================================================
    anchor_min_sizes: list[list[float]] = Field(
        default=[[10.0, 16.0, 24.0], [32.0, 48.0], [64.0, 96.0], [128.0, 192.0, 256.0]],
        description='Anchor sizes in input pixels, one list per feature map',
    )
    anchor_strides: list[int] = Field(
        default=[8, 16, 32, 64], description='Feature map strides in input pixels'
    )
    center_variance: float = Field(default=0.1, gt=0.0)
    size_variance: float = Field(default=0.2, gt=0.0)

    box_encoding: Literal['deltas', 'corners'] = Field(
        default='deltas',
        description='deltas: anchor-relative regression; corners: decoded in-graph',
    )
    score_activation: Literal['softmax', 'none'] = Field(
        default='softmax',
        description='softmax: raw logits; none: model already emits probabilities',
    )

    # ==========================================================================
    # Serving / backpressure
    # ==========================================================================
    host: str = Field(default='127.0.0.1', description='Bind address')
    port: int = Field(default=8082, gt=0, lt=65536, description='Bind port')

    worker_threads: int = Field(
        default=4, gt=0, description='Pipelines executed concurrently'
    )
    max_request_queue_depth: int = Field(
        default=64, gt=0, description='Admitted requests (running + waiting) before 503'
    )
    request_timeout_ms: int = Field(
        default=5000, gt=0, description='Per-request pipeline deadline'
    )

    max_file_size_mb: int = Field(default=20, gt=0, description='Maximum upload size in MB')
    max_image_pixels: int = Field(
        default=40_000_000, gt=0, description='Maximum decoded width * height'
    )

    slow_request_threshold_ms: int = Field(
        default=500, description='Log requests slower than this threshold'
    )

    # ==========================================================================
    # Async job queue
    # ==========================================================================
    results_dir: Path = Field(default=Path('results'), description='Job result JSON files')
    job_queue_size: int = Field(default=10000, gt=0, description='Maximum queued jobs')
    job_workers: int = Field(default=1, gt=0, description='Background job consumers')

    # ==========================================================================
    # Logging
    # ==========================================================================
    log_level: str = Field(default='INFO', description='Root log level')
    json_logs: bool = Field(default=False, description='Render logs as JSON')

    model_config = SettingsConfigDict(
        env_prefix='',
        env_file='.env',
        case_sensitive=False,
        extra='ignore',
        protected_namespaces=(),
    )

    # ==========================================================================
    # Validation
    # ==========================================================================
    @field_validator('input_mean', 'input_std')
    @classmethod
    def _three_channels(cls, value: list[float]) -> list[float]:
        if len(value) != 3:
            raise ValueError('expected one value per RGB channel')
        return value

    @field_validator('input_std')
    @classmethod
    def _positive_std(cls, value: list[float]) -> list[float]:
        if any(v <= 0 for v in value):
            raise ValueError('std values must be positive')
        return value

    @field_validator('log_level')
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}:
            raise ValueError(f'unknown log level {value!r}')
        return level

    @model_validator(mode='after')
    def _anchor_levels_match(self) -> 'Settings':
        if len(self.anchor_min_sizes) != len(self.anchor_strides):
            raise ValueError('anchor_min_sizes and anchor_strides must have equal length')
        return self

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @property
    def max_file_size_bytes(self) -> int:
        """Maximum upload size in bytes."""
        return self.max_file_size_mb * 1024 * 1024

    @property
    def request_timeout_s(self) -> float:
        """Per-request deadline in seconds."""
        return self.request_timeout_ms / 1000.0

    @property
    def input_shape(self) -> tuple[int, int, int, int]:
        """Model input tensor shape (N, C, H, W)."""
        return (1, 3, self.input_height, self.input_width)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance (singleton pattern).

    Returns:
        Settings: Application settings

    Raises:
        pydantic.ValidationError: If MODEL_PATH is missing or a value is invalid
    """
    return Settings()
