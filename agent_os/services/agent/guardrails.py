"""Outbound guardrails: anti-loop decisions over recent OutboundMessageLog rows."""

from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from agent_os.models import OutboundMessageLog

BLOCK_OPT_OUT = "OPT_OUT"
BLOCK_WINDOW_VIOLATION = "WINDOW_VIOLATION"
BLOCK_DUPLICATE_INTENT = "DUPLICATE_INTENT"
BLOCK_REPEATED_CONTENT = "REPEATED_CONTENT"
BLOCK_SAFE_OUTBOUND = "SAFE_OUTBOUND_BLOCKED"
BLOCK_MISSING_DESTINATION = "MISSING_DESTINATION"

GUARD_LOOKBACK_SECONDS = 120
GUARD_MAX_ROWS = 50


def compute_outbound_block_reason(
    recent_logs: Iterable,
    dedupe_key: str,
    text_hash: str,
) -> Optional[str]:
    """Return a block reason for the proposed send, or None when it is allowed.

    Rows that were themselves blocked are ignored so an earlier refusal never
    blocks a later attempt.
    """
    considered = [log for log in recent_logs if not log.blocked_reason]
    if any(log.dedupe_key == dedupe_key for log in considered):
        return BLOCK_DUPLICATE_INTENT
    if any(log.text_hash == text_hash for log in considered):
        return BLOCK_REPEATED_CONTENT
    return None


def get_recent_outbound_logs(
    db: Session,
    conversation_id: str,
    now: Optional[datetime] = None,
    lookback_seconds: int = GUARD_LOOKBACK_SECONDS,
) -> list[OutboundMessageLog]:
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(seconds=lookback_seconds)
    return (
        db.query(OutboundMessageLog)
        .filter(
            OutboundMessageLog.conversation_id == conversation_id,
            OutboundMessageLog.created_at >= since,
        )
        .order_by(OutboundMessageLog.created_at.desc())
        .limit(GUARD_MAX_ROWS)
        .all()
    )


def should_block_outbound(
    db: Session,
    conversation_id: str,
    dedupe_key: str,
    text_hash: str,
    now: Optional[datetime] = None,
) -> Optional[str]:
    recent = get_recent_outbound_logs(db, conversation_id, now=now)
    return compute_outbound_block_reason(recent, dedupe_key, text_hash)
