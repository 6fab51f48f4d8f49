"""Status flags and their rendering to persisted state labels."""

from cluster_registrar.status.classifier import (
    FAILED_STATE,
    PROCESSING_STATE,
    READY_STATE,
    StatusFlag,
    from_record_status,
    parse,
    render,
    to_record_status,
)

__all__ = [
    "FAILED_STATE",
    "PROCESSING_STATE",
    "READY_STATE",
    "StatusFlag",
    "from_record_status",
    "parse",
    "render",
    "to_record_status",
]
