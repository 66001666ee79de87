from __future__ import annotations

import json
import threading
import time
import uuid
from typing import Callable, Dict, List, Optional, Set, Tuple

from clinicauth.storage.models import (
    OtpPurpose,
    OtpRecord,
    RefreshTokenEntry,
    RotationOutcome,
    SessionRecord,
)
from clinicauth.storage.redis_cache import (
    _decode_otp,
    _decode_refresh,
    _decode_session,
    blacklist_key,
    lock_key,
    otp_key,
    refresh_key,
    session_index_key,
    session_key,
)


class MemoryCache:
    """In-process stand-in for :class:`RedisCache` used by tests and single-node dev.

    Values are stored as JSON strings with an absolute expiry, so the same
    corruption and TTL semantics apply as with Redis. A single lock makes each
    method atomic, matching the guarantees of the Lua scripts.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._sets: Dict[str, Tuple[Set[str], Optional[float]]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._sets.clear()

    # internal helpers, caller holds the lock
    def _get(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._values[key]
            return None
        return value

    def _set(self, key: str, value: str, ttl_seconds: Optional[int]) -> None:
        expires_at = self._clock() + max(1, ttl_seconds) if ttl_seconds is not None else None
        self._values[key] = (value, expires_at)

    def _keep_ttl_set(self, key: str, value: str) -> None:
        _, expires_at = self._values[key]
        self._values[key] = (value, expires_at)

    def _members(self, key: str) -> Set[str]:
        entry = self._sets.get(key)
        if entry is None:
            return set()
        members, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._sets[key]
            return set()
        return members

    # sessions
    async def swap_session(
        self, user_id: str, record: SessionRecord, ttl_seconds: int
    ) -> Optional[SessionRecord]:
        key = session_key(user_id)
        with self._lock:
            previous = self._get(key)
            self._set(key, json.dumps(record.to_dict()), ttl_seconds)
        return _decode_session(previous, key)

    async def set_session(
        self, user_id: str, record: SessionRecord, ttl_seconds: int, *, session_id: str
    ) -> None:
        index = session_index_key(user_id)
        with self._lock:
            self._set(session_key(user_id, session_id), json.dumps(record.to_dict()), ttl_seconds)
            members = set(self._members(index))
            members.add(session_id)
            self._sets[index] = (members, self._clock() + max(1, ttl_seconds))

    async def get_session(
        self, user_id: str, session_id: Optional[str] = None
    ) -> Optional[SessionRecord]:
        key = session_key(user_id, session_id)
        with self._lock:
            raw = self._get(key)
        return _decode_session(raw, key)

    async def replace_session_if(
        self,
        user_id: str,
        expected_session_id: str,
        record: SessionRecord,
        ttl_seconds: int,
    ) -> bool:
        key = session_key(user_id)
        with self._lock:
            current = _decode_session(self._get(key), key)
            if current is None or current.session_id != expected_session_id:
                return False
            self._set(key, json.dumps(record.to_dict()), ttl_seconds)
            return True

    async def replace_session_if_present(
        self, user_id: str, session_id: str, record: SessionRecord, ttl_seconds: int
    ) -> bool:
        key = session_key(user_id, session_id)
        index = session_index_key(user_id)
        with self._lock:
            if self._get(key) is None:
                return False
            self._set(key, json.dumps(record.to_dict()), ttl_seconds)
            members = self._members(index)
            if members:
                self._sets[index] = (set(members), self._clock() + max(1, ttl_seconds))
            return True

    async def delete_session(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        *,
        expected_session_id: Optional[str] = None,
    ) -> Optional[SessionRecord]:
        key = session_key(user_id, session_id)
        with self._lock:
            raw = self._get(key)
            current = _decode_session(raw, key)
            if raw is None:
                return None
            if expected_session_id and (
                current is None or current.session_id != expected_session_id
            ):
                return None
            del self._values[key]
            if session_id:
                self._members(session_index_key(user_id)).discard(session_id)
        return current

    async def pop_user_sessions(self, user_id: str) -> List[SessionRecord]:
        index = session_index_key(user_id)
        removed: List[SessionRecord] = []
        with self._lock:
            keys = [session_key(user_id)] + [
                session_key(user_id, sid) for sid in self._members(index)
            ]
            for key in keys:
                raw = self._get(key)
                self._values.pop(key, None)
                record = _decode_session(raw, key)
                if record:
                    removed.append(record)
            self._sets.pop(index, None)
        return removed

    # revocation blacklist
    async def blacklist_session(self, session_id: str, ttl_seconds: int) -> None:
        with self._lock:
            self._set(blacklist_key(session_id), "1", ttl_seconds)

    async def is_session_blacklisted(self, session_id: str) -> bool:
        with self._lock:
            return self._get(blacklist_key(session_id)) is not None

    # refresh token chain
    async def store_refresh_token(self, entry: RefreshTokenEntry, ttl_seconds: int) -> None:
        with self._lock:
            self._set(refresh_key(entry.jti), json.dumps(entry.to_dict()), ttl_seconds)

    async def get_refresh_token(self, jti: str) -> Optional[RefreshTokenEntry]:
        key = refresh_key(jti)
        with self._lock:
            raw = self._get(key)
        return _decode_refresh(raw, key)

    async def revoke_refresh_token(self, jti: str) -> bool:
        key = refresh_key(jti)
        with self._lock:
            entry = _decode_refresh(self._get(key), key)
            if entry is None or entry.revoked:
                return False
            entry.revoked = True
            self._keep_ttl_set(key, json.dumps(entry.to_dict()))
            return True

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
        key = refresh_key(old_jti)
        with self._lock:
            entry = _decode_refresh(self._get(key), key)
            if entry is None:
                return RotationOutcome.NOT_FOUND
            if entry.revoked:
                return RotationOutcome.REVOKED
            if entry.expires_at <= now_ts:
                return RotationOutcome.EXPIRED
            if entry.user_id != user_id or entry.session_id != session_id:
                return RotationOutcome.MISMATCH
            entry.revoked = True
            self._keep_ttl_set(key, json.dumps(entry.to_dict()))
            self._set(refresh_key(new_entry.jti), json.dumps(new_entry.to_dict()), ttl_seconds)
            return RotationOutcome.ROTATED

    # otp records
    async def store_otp(self, record: OtpRecord, ttl_seconds: int) -> None:
        with self._lock:
            self._set(
                otp_key(record.purpose, record.identifier),
                json.dumps(record.to_dict()),
                ttl_seconds,
            )

    async def get_otp(self, purpose: OtpPurpose, identifier: str) -> Optional[OtpRecord]:
        key = otp_key(purpose, identifier)
        with self._lock:
            raw = self._get(key)
        return _decode_otp(raw, key)

    async def delete_otp_if_code(
        self, purpose: OtpPurpose, identifier: str, code: str
    ) -> bool:
        key = otp_key(purpose, identifier)
        with self._lock:
            record = _decode_otp(self._get(key), key)
            if record is None or record.code != code:
                return False
            del self._values[key]
            return True

    async def delete_otp(self, purpose: OtpPurpose, identifier: str) -> None:
        with self._lock:
            self._values.pop(otp_key(purpose, identifier), None)

    # locks
    async def acquire_lock(self, name: str, ttl_seconds: int) -> Optional[str]:
        key = lock_key(name)
        with self._lock:
            if self._get(key) is not None:
                return None
            token = uuid.uuid4().hex
            self._set(key, token, ttl_seconds)
            return token

    async def release_lock(self, name: str, token: str) -> bool:
        key = lock_key(name)
        with self._lock:
            if self._get(key) != token:
                return False
            del self._values[key]
            return True
