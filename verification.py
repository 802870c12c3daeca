"""
Student Verification Dashboard: Verification Requests
Status derivation, moderation actions (approve / reject + audit entry),
and the reads behind the Students, Logs and Config screens.

Records are plain dicts keyed by the storage column names:

  verification_requests  discord_id, email, student_number, verified (None/True/False),
                         submitted_at, verified_at, verified_by, notes
  audit_log              id, action, student_id, student_number, performed_by, performed_at
  bot_config             guild_id, verify_channel_id, verifier_role_id, student_role_id, updated_at
"""

import os, logging, datetime
from enum import Enum
from typing import Dict, List, Optional

from db import DataAccessFailure

logger = logging.getLogger(__name__)

REQUESTS = "verification_requests"
AUDIT_LOG = "audit_log"
BOT_CONFIG = "bot_config"

REJECTED_MARKER = "Rejected"
APPROVED_NOTE = "Approved via dashboard"
REJECTED_NOTE = "Rejected via dashboard"
AUDIT_LOG_LIMIT = 100


class RequestNotFound(LookupError):
    """No verification request has the given discord_id."""


class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


def default_actor() -> str:
    return os.getenv("DEFAULT_ACTOR", "admin")


def config_guild_id() -> str:
    return os.getenv("GUILD_ID", "default")


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


# ── Status derivation ──────────────────────────────
def derive_status(request: Dict) -> VerificationStatus:
    """Classify a request as pending / verified / rejected.

    ``verified`` is True -> verified, whatever the notes say.
    ``verified`` is False and the notes mention "Rejected" (any case) -> rejected.
    Everything else, including False without the marker, is still pending.
    """
    verified = request.get("verified")
    if verified is True:
        return VerificationStatus.VERIFIED
    notes = request.get("notes") or ""
    if verified is False and REJECTED_MARKER.lower() in notes.lower():
        return VerificationStatus.REJECTED
    return VerificationStatus.PENDING


def can_approve(request: Dict) -> bool:
    return request.get("verified") is not True


def action_kind(action: str) -> str:
    """Badge bucket for an audit entry's free-text action."""
    if action == "Approved":
        return "approved"
    if action == "Rejected":
        return "rejected"
    a = (action or "").lower()
    hits = [(a.find(word), kind) for word, kind in (("approve", "approved"), ("reject", "rejected"))
            if word in a]
    # the keyword that appears first names the action
    return min(hits)[1] if hits else "other"


# ── Reads ──────────────────────────────────────────
async def list_requests(store) -> List[Dict]:
    rows = await store.select(REQUESTS, order_by="submitted_at", descending=True)
    for r in rows:
        r["status"] = derive_status(r).value
    return rows


async def get_request(store, discord_id: str) -> Optional[Dict]:
    rows = await store.select(REQUESTS, filters={"discord_id": discord_id}, limit=1)
    return rows[0] if rows else None


async def get_audit_log(store, limit: int = AUDIT_LOG_LIMIT) -> List[Dict]:
    rows = await store.select(AUDIT_LOG, order_by="performed_at", descending=True, limit=limit)
    for r in rows:
        r["kind"] = action_kind(r.get("action"))
    return rows


# ── Moderation ─────────────────────────────────────
async def moderate(store, discord_id: str, approve: bool, student_number: Optional[str] = None,
                   actor: Optional[str] = None, now: Optional[datetime.datetime] = None) -> Dict:
    """Approve or reject one verification request and append an audit entry.

    The request update is authoritative: a DataAccessFailure there aborts the
    action and propagates. The audit entry is best-effort; a failure writing it
    is logged and swallowed. The two writes are not transactional, so two
    moderators acting on the same request concurrently leave both audit entries
    behind while only the later update survives.

    Raises RequestNotFound, without writing an audit entry, when no request
    has that id.
    Does not check whether the request is already verified; callers do.
    Returns the patch applied to the request.
    """
    actor = actor or default_actor()
    now = now or _now()
    patch = {
        "verified": bool(approve),
        "verified_at": now,
        "verified_by": actor,
        "notes": APPROVED_NOTE if approve else REJECTED_NOTE,
    }
    updated = await store.update(REQUESTS, {"discord_id": discord_id}, patch)
    if not updated:
        logger.warning(f"[MODERATION] No verification request matched {discord_id}")
        raise RequestNotFound(discord_id)
    action = "Approved" if approve else "Rejected"
    logger.info(f"[MODERATION] {actor} {action.lower()} {discord_id} ({student_number or '-'})")
    try:
        await store.insert(AUDIT_LOG, {
            "action": action,
            "student_id": discord_id,
            "student_number": student_number,
            "performed_by": actor,
            "performed_at": now,
        })
    except DataAccessFailure:
        logger.exception(f"[AUDIT] Could not record {action} for {discord_id}")
    return patch


# ── Bot config ─────────────────────────────────────
def empty_config(guild_id: Optional[str] = None) -> Dict:
    return {"guild_id": guild_id or config_guild_id(), "verify_channel_id": None,
            "verifier_role_id": None, "student_role_id": None, "updated_at": None}


async def load_config(store, guild_id: Optional[str] = None) -> Dict:
    guild_id = guild_id or config_guild_id()
    rows = await store.select(BOT_CONFIG, filters={"guild_id": guild_id}, limit=1)
    if not rows:
        return empty_config(guild_id)
    return {**empty_config(guild_id), **rows[0]}


async def save_config(store, verify_channel_id: Optional[str], verifier_role_id: Optional[str],
                      student_role_id: Optional[str], guild_id: Optional[str] = None,
                      now: Optional[datetime.datetime] = None) -> Dict:
    """Insert the singleton config row, or overwrite it if it already exists."""
    record = {
        "guild_id": guild_id or config_guild_id(),
        "verify_channel_id": verify_channel_id or None,
        "verifier_role_id": verifier_role_id or None,
        "student_role_id": student_role_id or None,
        "updated_at": now or _now(),
    }
    saved = await store.upsert(BOT_CONFIG, record)
    logger.info(f"[CONFIG] Saved bot config for guild {record['guild_id']}")
    return saved or record
