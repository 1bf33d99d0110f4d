# models/audit_store.py
import os
import json
import hmac
import hashlib
import threading
from typing import Any, Optional
from datetime import datetime, timezone

from flask import request, has_request_context
from flask_login import current_user
from sqlalchemy import asc, select

from models.base import session_scope
from models.schema import AuditLog

APP_SECRET = (os.getenv("AUDIT_HMAC_SECRET") or "secret-key").encode("utf-8")
ANONYMIZE_IP = os.getenv("AUDIT_ANONYMIZE_IP", "1") == "1"
SIGNING_KEY_ID = os.getenv("AUDIT_HMAC_KEY_ID", "k1")

# serializes read-latest-hash + append within this process
_CHAIN_LOCK = threading.Lock()

_ALLOWED_EXTRA_KEYS = {
    "reason", "note", "count", "created", "existing", "failed",
    "service_id", "date_from", "date_to", "kind", "attached", "horizon",
}


def _load_keyring() -> dict[str, bytes]:
    ring: dict[str, bytes] = {}
    # Optional ring for rotated keys
    cfg = os.getenv("AUDIT_HMAC_KEYRING", "")
    if cfg:
        for part in cfg.split(","):
            part = part.strip()
            if not part or "=" not in part:
                continue
            kid, sec = part.split("=", 1)
            ring[kid.strip()] = sec.strip().encode("utf-8")
    # Always include current key
    ring[SIGNING_KEY_ID] = APP_SECRET
    return ring


def _ts_to_payload_str(ts_val: datetime) -> str:
    """Recreate the exact 'ts' string format used when hashing."""
    if ts_val.tzinfo is None:
        # SQLite hands back naive values; they were written as UTC
        ts_val = ts_val.replace(tzinfo=timezone.utc)
    return ts_val.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def _payload(*, ts: datetime, actor, actor_role, ip, method, path, action,
             target_type, target_id, outcome, status, extra, key_id) -> dict:
    return {
        "ts": _ts_to_payload_str(ts),
        "actor": actor,
        "actor_role": actor_role,
        "ip": ip,
        "method": method,
        "path": path,
        "action": action,
        "target_type": target_type,
        "target_id": target_id,
        "outcome": outcome,
        "status": status,
        "extra": extra or {},
        "key_id": key_id,
    }


def _rebuild_payload_from_row(r: AuditLog) -> dict:
    return _payload(
        ts=r.ts, actor=r.actor, actor_role=r.actor_role, ip=r.ip,
        method=r.method, path=r.path, action=r.action,
        target_type=r.target_type, target_id=r.target_id,
        outcome=r.outcome, status=r.status, extra=r.extra, key_id=r.key_id,
    )


def _compute_hash(prev_hash: str, payload: dict) -> str:
    s = prev_hash + json.dumps(payload, separators=(",", ":"),
                               sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _sign(h: str) -> str:
    return hmac.new(APP_SECRET, h.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_chain(limit: Optional[int] = None) -> dict:
    """
    Return:
      {
        "ok": bool,
        "checked": int,
        "last_ok_id": int | None,
        "first_bad_id": int | None,
        "reason": str | None
      }
    """
    ring = _load_keyring()
    prev = ""
    checked = 0
    last_ok = None

    def _bad(row_id, reason):
        return {"ok": False, "checked": checked, "last_ok_id": last_ok,
                "first_bad_id": row_id, "reason": reason}

    with session_scope() as s:
        stmt = select(AuditLog).order_by(asc(AuditLog.id))
        if limit:
            stmt = stmt.limit(int(limit))
        rows = s.execute(stmt).scalars().all()

        for r in rows:
            exp_hash = _compute_hash(prev, _rebuild_payload_from_row(r))
            if (r.prev_hash or "") != prev:
                return _bad(r.id, "prev_hash_mismatch")
            if r.hash != exp_hash:
                return _bad(r.id, "hash_mismatch")

            kid = r.key_id or SIGNING_KEY_ID
            key = ring.get(kid)
            if not key:
                return _bad(r.id, f"missing_key:{kid}")
            exp_sig = hmac.new(key, exp_hash.encode(
                "utf-8"), hashlib.sha256).hexdigest()
            if r.signature != exp_sig:
                return _bad(r.id, "signature_mismatch")

            # advance
            checked += 1
            last_ok = r.id
            prev = r.hash or ""

    return {"ok": True, "checked": checked, "last_ok_id": last_ok,
            "first_bad_id": None, "reason": None}


def _latest_hash(s) -> str:
    row = s.execute(select(AuditLog).order_by(
        AuditLog.id.desc()).limit(1)).scalars().first()
    return (row.hash or "") if row else ""


def _anon_ip(ip: str | None) -> str | None:
    if not ip:
        return None
    if not ANONYMIZE_IP:
        return ip
    # Simple IPv4 /24 or IPv6 /48 truncation
    if ":" in ip:
        parts = ip.split(":")
        return ":".join(parts[:3]) + "::"
    quads = ip.split(".")
    return ".".join(quads[:3]) + ".0"


def _clean_extra(extra: Optional[dict[str, Any]]) -> dict:
    if not extra:
        return {}
    out = {}
    for k, v in extra.items():
        if k not in _ALLOWED_EXTRA_KEYS:
            continue
        if isinstance(v, str) and len(v) > 512:
            v = v[:512] + "…"
        out[k] = v
    return out


def _current_actor() -> tuple[str, str | None]:
    if not has_request_context():
        return "system", None
    if getattr(current_user, "is_authenticated", False):
        return current_user.username, getattr(current_user, "role", None)
    return "anonymous", None


def audit(
    action: str,
    *,
    target_type: str | None = None,
    target_id: str | None = None,
    outcome: str | None = None,            # 'success'|'failure'|'blocked'|...
    status: int | None = None,
    extra: Optional[dict[str, Any]] = None,
    actor: Optional[str] = None
) -> None:
    ts = datetime.now(timezone.utc).replace(microsecond=0)

    ip = method = path = None
    if has_request_context():
        fwd = request.headers.get("X-Forwarded-For", "")
        ip = _anon_ip(fwd.split(",")[0].strip() or request.remote_addr)
        method = request.method
        path = request.path

    if actor is None:
        actor, actor_role = _current_actor()
    else:
        actor_role = None

    target_id = None if target_id is None else str(target_id)
    extra = _clean_extra(extra)
    payload = _payload(
        ts=ts, actor=actor, actor_role=actor_role, ip=ip, method=method,
        path=path, action=action, target_type=target_type, target_id=target_id,
        outcome=outcome, status=status, extra=extra, key_id=SIGNING_KEY_ID,
    )

    with _CHAIN_LOCK, session_scope() as s:
        prev = _latest_hash(s)
        h = _compute_hash(prev, payload)
        sig = _sign(h)
        s.add(AuditLog(
            ts=ts,
            actor=actor, actor_role=actor_role,
            ip=ip, method=method, path=path,
            action=action, target_type=target_type, target_id=target_id,
            outcome=outcome, status=status,
            extra=extra,
            prev_hash=prev, hash=h, signature=sig,
            key_id=SIGNING_KEY_ID
        ))


def list_audit(limit: int = 500, action: str | None = None) -> list[dict]:
    stmt = select(AuditLog)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    stmt = stmt.order_by(AuditLog.id.desc()).limit(limit)
    with session_scope() as s:
        rows = s.execute(stmt).scalars().all()
        return [
            {
                "id": r.id,
                "ts": _ts_to_payload_str(r.ts),
                "actor": r.actor,
                "actor_role": r.actor_role,
                "ip": r.ip,
                "method": r.method,
                "path": r.path,
                "action": r.action,
                "target": (
                    f"{r.target_type}:{r.target_id}"
                    if (r.target_type or r.target_id) else None
                ),
                "status": r.status,
                "outcome": r.outcome,
                "extra": r.extra or {},
            }
            for r in rows
        ]
