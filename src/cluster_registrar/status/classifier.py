"""State classifier for registration records.

Progress is tracked as a set of ``StatusFlag`` values and persisted as
two booleans plus a text label.  ``render`` maps flags to the label with
a fixed precedence::

    FAILED      -> "Failed"
    PROCESSING  -> "Processing"
    REGISTERED and CONFIGURED -> "Ready"
    anything else -> "Failed"

``parse`` restores flags from the persisted form.  Only the REGISTERED
and CONFIGURED flags survive a render/parse round trip exactly.
"""

from __future__ import annotations

import enum

from cluster_registrar.models import RecordStatus

READY_STATE = "Ready"
PROCESSING_STATE = "Processing"
FAILED_STATE = "Failed"


class StatusFlag(enum.Flag):
    NONE = 0
    REGISTERED = enum.auto()
    CONFIGURED = enum.auto()
    PROCESSING = enum.auto()
    FAILED = enum.auto()


def render(flags: StatusFlag) -> str:
    """Return the state label for a set of flags."""
    if StatusFlag.FAILED in flags:
        return FAILED_STATE
    if StatusFlag.PROCESSING in flags:
        return PROCESSING_STATE
    if StatusFlag.REGISTERED in flags and StatusFlag.CONFIGURED in flags:
        return READY_STATE
    return FAILED_STATE


def parse(state: str, registered: bool, configured: bool) -> StatusFlag:
    """Rebuild flags from a persisted state label and booleans."""
    flags = StatusFlag.NONE
    if state == PROCESSING_STATE:
        flags |= StatusFlag.PROCESSING
    elif state == FAILED_STATE:
        flags |= StatusFlag.FAILED
    if registered:
        flags |= StatusFlag.REGISTERED
    if configured:
        flags |= StatusFlag.CONFIGURED
    return flags


def to_record_status(flags: StatusFlag) -> RecordStatus:
    return RecordStatus(
        registered=StatusFlag.REGISTERED in flags,
        configured=StatusFlag.CONFIGURED in flags,
        state=render(flags),
    )


def from_record_status(status: RecordStatus) -> StatusFlag:
    return parse(status.state, status.registered, status.configured)
