"""Patch engine and generation pipeline for Valve KeyValues item sets."""

from .errors import CancellationError, SetforgeError
from .keyvalues import Block, find_block, prettify, replace_block
from .patching import MergeMap, PatchReport, apply_merged, patch_file, validate_replacement
from .pipeline import GenerationPipeline, JobResult, PipelineJob, SetSelection

__version__ = "1.0.0"

__all__ = [
    "Block",
    "CancellationError",
    "GenerationPipeline",
    "JobResult",
    "MergeMap",
    "PatchReport",
    "PipelineJob",
    "SetSelection",
    "SetforgeError",
    "apply_merged",
    "find_block",
    "patch_file",
    "prettify",
    "replace_block",
    "validate_replacement",
]
