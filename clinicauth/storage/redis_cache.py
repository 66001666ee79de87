from __future__ import annotations

import json
import uuid
from typing import List, Optional

import redis.asyncio as aioredis
from redis import Redis

from clinicauth.logging import get_logger
from clinicauth.storage.models import (
    OtpPurpose,
    OtpRecord,
    RefreshTokenEntry,
    RotationOutcome,
    SessionRecord,
)

logger = get_logger(__name__)


def session_key(user_id: str, session_id: Optional[str] = None) -> str:
    """Cache key for a live session record.

    Single-session policy keys by user only; multi-session adds the session id.
    """
    if session_id:
        return f"user:session:{user_id}:{session_id}"
    return f"user:session:{user_id}"


def session_index_key(user_id: str) -> str:
    return f"user:sessions:{user_id}"


def blacklist_key(session_id: str) -> str:
    return f"blacklist:session:{session_id}"


def refresh_key(jti: str) -> str:
    return f"refresh_token:{jti}"


def otp_key(purpose: OtpPurpose | str, identifier: str) -> str:
    purpose_value = purpose.value if isinstance(purpose, OtpPurpose) else purpose
    return f"otp:{purpose_value}:{identifier}"


def lock_key(name: str) -> str:
    return f"lock:{name}"


def _decode_session(raw: Optional[str], key: str) -> Optional[SessionRecord]:
    if not raw:
        return None
    try:
        return SessionRecord.from_dict(json.loads(raw))
    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
        logger.warning("session_record_corrupted", key=key)
        return None


def _decode_refresh(raw: Optional[str], key: str) -> Optional[RefreshTokenEntry]:
    if not raw:
        return None
    try:
        return RefreshTokenEntry.from_dict(json.loads(raw))
    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
        logger.warning("refresh_entry_corrupted", key=key)
        return None


def _decode_otp(raw: Optional[str], key: str) -> Optional[OtpRecord]:
    if not raw:
        return None
    try:
        return OtpRecord.from_dict(json.loads(raw))
    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
        logger.warning("otp_record_corrupted", key=key)
        return None


class RedisCache:
    """Redis-backed session cache, revocation blacklist, refresh-token chain and OTP store.

    Every multi-step state change that must be atomic (refresh rotation,
    conditional session replacement/deletion, OTP consumption, lock release)
    runs as a server-side Lua script so concurrent API instances never observe
    a half-applied update.
    """

    # Atomic check-revoke-insert for refresh token rotation
    _ROTATE_REFRESH_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 'not_found'
end
local entry = cjson.decode(raw)
if entry['isRevoked'] then
  return 'revoked'
end
if tonumber(entry['expiresAt']) <= tonumber(ARGV[3]) then
  return 'expired'
end
if entry['userId'] ~= ARGV[1] or entry['sessionId'] ~= ARGV[2] then
  return 'mismatch'
end
entry['isRevoked'] = true
redis.call('SET', KEYS[1], cjson.encode(entry), 'KEEPTTL')
redis.call('SET', KEYS[2], ARGV[4], 'EX', tonumber(ARGV[5]))
return 'rotated'
"""

    _REVOKE_REFRESH_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local entry = cjson.decode(raw)
if entry['isRevoked'] then
  return 0
end
entry['isRevoked'] = true
redis.call('SET', KEYS[1], cjson.encode(entry), 'KEEPTTL')
return 1
"""

    # Replace a session record only while it still belongs to the expected session
    _REPLACE_SESSION_IF_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local current = cjson.decode(raw)
if current['sessionId'] ~= ARGV[1] then
  return 0
end
redis.call('SET', KEYS[1], ARGV[2], 'EX', tonumber(ARGV[3]))
return 1
"""

    _DELETE_SESSION_IF_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return false
end
if ARGV[1] ~= '' then
  local current = cjson.decode(raw)
  if current['sessionId'] ~= ARGV[1] then
    return false
  end
end
redis.call('DEL', KEYS[1])
if KEYS[2] then
  redis.call('SREM', KEYS[2], ARGV[2])
end
return raw
"""

    _DELETE_OTP_IF_CODE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local record = cjson.decode(raw)
if tostring(record['code']) ~= ARGV[1] then
  return 0
end
redis.call('DEL', KEYS[1])
return 1
"""

    _RELEASE_LOCK_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._rotate_refresh = self.client.register_script(self._ROTATE_REFRESH_SCRIPT)
        self._revoke_refresh = self.client.register_script(self._REVOKE_REFRESH_SCRIPT)
        self._replace_session_if = self.client.register_script(
            self._REPLACE_SESSION_IF_SCRIPT
        )
        self._delete_session_if = self.client.register_script(self._DELETE_SESSION_IF_SCRIPT)
        self._delete_otp_if_code = self.client.register_script(
            self._DELETE_OTP_IF_CODE_SCRIPT
        )
        self._release_lock = self.client.register_script(self._RELEASE_LOCK_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()

    # ------------------------------------------------------------------
    # Session records
    # ------------------------------------------------------------------

    async def swap_session(
        self, user_id: str, record: SessionRecord, ttl_seconds: int
    ) -> Optional[SessionRecord]:
        """Atomically write the single-session record and return the one it replaced."""
        key = session_key(user_id)
        previous = await self.client.set(
            key, json.dumps(record.to_dict()), ex=max(1, ttl_seconds), get=True
        )
        return _decode_session(previous, key)

    async def set_session(
        self, user_id: str, record: SessionRecord, ttl_seconds: int, *, session_id: str
    ) -> None:
        ttl = max(1, ttl_seconds)
        pipe = self.client.pipeline()
        pipe.set(session_key(user_id, session_id), json.dumps(record.to_dict()), ex=ttl)
        # Index per-session keys for bulk invalidation
        pipe.sadd(session_index_key(user_id), session_id)
        pipe.expire(session_index_key(user_id), ttl)
        await pipe.execute()

    async def get_session(
        self, user_id: str, session_id: Optional[str] = None
    ) -> Optional[SessionRecord]:
        key = session_key(user_id, session_id)
        return _decode_session(await self.client.get(key), key)

    async def replace_session_if(
        self,
        user_id: str,
        expected_session_id: str,
        record: SessionRecord,
        ttl_seconds: int,
    ) -> bool:
        replaced = await self._replace_session_if(
            keys=[session_key(user_id)],
            args=[expected_session_id, json.dumps(record.to_dict()), max(1, ttl_seconds)],
        )
        return bool(int(replaced or 0))

    async def replace_session_if_present(
        self, user_id: str, session_id: str, record: SessionRecord, ttl_seconds: int
    ) -> bool:
        """Overwrite a per-session record only while it still exists (``SET XX``)."""
        ttl = max(1, ttl_seconds)
        written = await self.client.set(
            session_key(user_id, session_id), json.dumps(record.to_dict()), ex=ttl, xx=True
        )
        if not written:
            return False
        await self.client.expire(session_index_key(user_id), ttl)
        return True

    async def delete_session(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        *,
        expected_session_id: Optional[str] = None,
    ) -> Optional[SessionRecord]:
        """Delete a session record, optionally only if it holds ``expected_session_id``.

        Returns the removed record, or None when nothing was deleted.
        """
        key = session_key(user_id, session_id)
        keys = [key]
        if session_id:
            keys.append(session_index_key(user_id))
        raw = await self._delete_session_if(
            keys=keys, args=[expected_session_id or "", session_id or ""]
        )
        return _decode_session(raw, key)

    async def pop_user_sessions(self, user_id: str) -> List[SessionRecord]:
        """Remove every cached session record of a user (both key layouts)."""
        index_key = session_index_key(user_id)
        session_ids = await self.client.smembers(index_key)
        keys = [session_key(user_id)] + [session_key(user_id, sid) for sid in session_ids]
        pipe = self.client.pipeline()
        for key in keys:
            pipe.getdel(key)
        pipe.delete(index_key)
        results = await pipe.execute()
        removed: List[SessionRecord] = []
        for key, raw in zip(keys, results[: len(keys)]):
            record = _decode_session(raw, key)
            if record:
                removed.append(record)
        return removed

    # ------------------------------------------------------------------
    # Revocation blacklist
    # ------------------------------------------------------------------

    async def blacklist_session(self, session_id: str, ttl_seconds: int) -> None:
        await self.client.set(blacklist_key(session_id), "1", ex=max(1, ttl_seconds))

    async def is_session_blacklisted(self, session_id: str) -> bool:
        return bool(await self.client.exists(blacklist_key(session_id)))

    # ------------------------------------------------------------------
    # Refresh token chain
    # ------------------------------------------------------------------

    async def store_refresh_token(self, entry: RefreshTokenEntry, ttl_seconds: int) -> None:
        await self.client.set(
            refresh_key(entry.jti), json.dumps(entry.to_dict()), ex=max(1, ttl_seconds)
        )

    async def get_refresh_token(self, jti: str) -> Optional[RefreshTokenEntry]:
        key = refresh_key(jti)
        return _decode_refresh(await self.client.get(key), key)

    async def revoke_refresh_token(self, jti: str) -> bool:
        revoked = await self._revoke_refresh(keys=[refresh_key(jti)], args=[])
        return bool(int(revoked or 0))

    async def rotate_refresh_token(
        self,
        old_jti: str,
        *,
        user_id: str,
        session_id: str,
        new_entry: RefreshTokenEntry,
        ttl_seconds: int,
        now_ts: int,
    ) -> RotationOutcome:
        outcome = await self._rotate_refresh(
            keys=[refresh_key(old_jti), refresh_key(new_entry.jti)],
            args=[
                user_id,
                session_id,
                now_ts,
                json.dumps(new_entry.to_dict()),
                max(1, ttl_seconds),
            ],
        )
        return RotationOutcome(outcome)

    # ------------------------------------------------------------------
    # OTP records
    # ------------------------------------------------------------------

    async def store_otp(self, record: OtpRecord, ttl_seconds: int) -> None:
        await self.client.set(
            otp_key(record.purpose, record.identifier),
            json.dumps(record.to_dict()),
            ex=max(1, ttl_seconds),
        )

    async def get_otp(self, purpose: OtpPurpose, identifier: str) -> Optional[OtpRecord]:
        key = otp_key(purpose, identifier)
        return _decode_otp(await self.client.get(key), key)

    async def delete_otp_if_code(
        self, purpose: OtpPurpose, identifier: str, code: str
    ) -> bool:
        deleted = await self._delete_otp_if_code(
            keys=[otp_key(purpose, identifier)], args=[code]
        )
        return bool(int(deleted or 0))

    async def delete_otp(self, purpose: OtpPurpose, identifier: str) -> None:
        await self.client.delete(otp_key(purpose, identifier))

    # ------------------------------------------------------------------
    # Short-lived locks
    # ------------------------------------------------------------------

    async def acquire_lock(self, name: str, ttl_seconds: int) -> Optional[str]:
        token = uuid.uuid4().hex
        acquired = await self.client.set(lock_key(name), token, nx=True, ex=max(1, ttl_seconds))
        return token if acquired else None

    async def release_lock(self, name: str, token: str) -> bool:
        released = await self._release_lock(keys=[lock_key(name)], args=[token])
        return bool(int(released or 0))
