"""Source anchor extraction for reasoning locations and change detection."""

from __future__ import annotations

from .extractor import (
    AnchorInfo,
    AnchorType,
    compute_code_hash,
    describe_anchor,
    estimate_line_number,
    extract_anchors,
    find_anchor_at_line,
)

__all__ = [
    "AnchorInfo",
    "AnchorType",
    "compute_code_hash",
    "describe_anchor",
    "estimate_line_number",
    "extract_anchors",
    "find_anchor_at_line",
]
