"""lanekit — pure building blocks of the LaneForge build pipeline.

Public API
----------
Lanes:
    Lane, LaneProfile, LANE_PROFILES, get_profile, parse_lane

Contracts:
    FileMap, CodeBlock, ValidationError, ValidationWarning, ValidationReport,
    split_file_prefix, detect_language

Errors:
    LaneKitError, SandboxViolation, ParseError, UnknownLane,
    NoCodeBlocks, MissingPrimaryFile

Response parsing:
    extract_code_blocks, assemble_file_map

Analysis and repair:
    Validator, validate, validate_report, AutoRepairer

Secret scanning:
    find_secrets, redact

Nothing in this package performs network or database I/O or reads
application settings; the ``app`` package wires it together.
"""

from lanekit.contracts import (
    CodeBlock,
    FileMap,
    ValidationError,
    ValidationReport,
    ValidationWarning,
    detect_language,
    split_file_prefix,
)
from lanekit.errors import (
    LaneKitError,
    MissingPrimaryFile,
    NoCodeBlocks,
    ParseError,
    SandboxViolation,
    UnknownLane,
)
from lanekit.lanes import LANE_PROFILES, Lane, LaneProfile, get_profile, parse_lane
from lanekit.redactor import find_secrets, redact
from lanekit.repair import AutoRepairer
from lanekit.response_parser import assemble_file_map, extract_code_blocks
from lanekit.validator import Validator, validate, validate_report

__all__ = [
    "AutoRepairer",
    "CodeBlock",
    "FileMap",
    "LANE_PROFILES",
    "Lane",
    "LaneKitError",
    "LaneProfile",
    "MissingPrimaryFile",
    "NoCodeBlocks",
    "ParseError",
    "SandboxViolation",
    "UnknownLane",
    "ValidationError",
    "ValidationReport",
    "ValidationWarning",
    "Validator",
    "assemble_file_map",
    "detect_language",
    "extract_code_blocks",
    "find_secrets",
    "get_profile",
    "parse_lane",
    "redact",
    "split_file_prefix",
    "validate",
    "validate_report",
]
