"""Public package entrypoint for the engine variant build and image pipeline."""

from .config import PipelineConfig, default_config, load_config
from .errors import (
    BuildError,
    ConfigurationError,
    EngineBakeError,
    ErrorCode,
    FixupError,
    LayeringError,
)
from .models import (
    Artifact,
    BaseSpec,
    BuildContext,
    BuildTarget,
    ImageDescriptor,
    ImageSpec,
    Layer,
    LayeringMode,
    SourceWhitelist,
    VariantOverride,
    VariantSpec,
)
from .pipeline import Pipeline, PipelineReport

__all__ = [
    "Artifact",
    "BaseSpec",
    "BuildContext",
    "BuildError",
    "BuildTarget",
    "ConfigurationError",
    "EngineBakeError",
    "ErrorCode",
    "FixupError",
    "ImageDescriptor",
    "ImageSpec",
    "Layer",
    "LayeringError",
    "LayeringMode",
    "Pipeline",
    "PipelineConfig",
    "PipelineReport",
    "SourceWhitelist",
    "VariantOverride",
    "VariantSpec",
    "default_config",
    "load_config",
]
