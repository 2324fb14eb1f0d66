"""
Outbound message delivery.

Rate-limited send pipeline and recipient normalization.
"""

from __future__ import annotations

from chatgate.delivery.pipeline import (
    FailureClass,
    OutboundMessage,
    PipelineConfig,
    SendPipeline,
    SendReceipt,
    classify_failure,
)
from chatgate.delivery.recipient import normalize_recipient

__all__ = [
    "FailureClass",
    "OutboundMessage",
    "PipelineConfig",
    "SendPipeline",
    "SendReceipt",
    "classify_failure",
    "normalize_recipient",
]
