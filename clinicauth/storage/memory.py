from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from clinicauth.logging import get_logger
from clinicauth.storage.errors import ConstraintViolation
from clinicauth.storage.models import (
    Clinic,
    CredentialIdentity,
    Membership,
    MobileAppInstance,
    RoleRef,
    Tenant,
    UserSessionRecord,
    utcnow,
)

_MOBILE_UPDATABLE_FIELDS = frozenset(
    {"app_name", "platform", "fcm_id", "version", "device_info", "meta_data"}
)


class MemoryStore:
    """In-memory credential store used for tests and local development.

    Mirrors the repository interface a relational store exposes to the auth
    core: identity lookup, password/lock writes, supplementary claim sources,
    mobile app instances and the session audit trail.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, CredentialIdentity] = {}
        self.tenants: Dict[str, Tenant] = {}
        self.clinics: Dict[str, Clinic] = {}
        self.memberships: Dict[str, List[Membership]] = {}
        self.mobile_instances: Dict[str, MobileAppInstance] = {}
        self.user_sessions: Dict[str, UserSessionRecord] = {}
        self.root_organization_id: Optional[str] = None
        # RLock so helpers can be called while the lock is held
        self._data_lock = threading.RLock()

    # identities
    def create_user(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        mobile_number: Optional[str] = None,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        roles: Optional[Iterable[RoleRef]] = None,
        tenant_id: str = "public",
        clinic_ids: Optional[List[str]] = None,
        person_id: Optional[str] = None,
        user_name: Optional[str] = None,
        avatar: Optional[str] = None,
        authority: Optional[str] = None,
        locked: bool = False,
        locked_until: Optional[datetime] = None,
    ) -> CredentialIdentity:
        with self._data_lock:
            for candidate in (user_id, email, mobile_number):
                if candidate and self._find_locked(candidate):
                    raise ConstraintViolation(
                        "identifier already exists", {"identifier": candidate}
                    )
            identity = CredentialIdentity(
                id=str(uuid.uuid4()),
                user_id=user_id,
                email=email.lower() if email else None,
                mobile_number=mobile_number,
                password_hash=password_hash,
                password_algo=password_algo,
                locked=locked,
                locked_until=locked_until,
                roles=list(roles or []),
                tenant_id=tenant_id,
                clinic_ids=list(clinic_ids or []),
                person_id=person_id,
                user_name=user_name,
                avatar=avatar,
                authority=authority,
            )
            self.users[identity.id] = identity
            return identity

    def _find_locked(self, identifier: str) -> Optional[CredentialIdentity]:
        lowered = identifier.strip().lower()
        for identity in self.users.values():
            if identity.user_id.lower() == lowered:
                return identity
            if identity.email and identity.email == lowered:
                return identity
            if identity.mobile_number and identity.mobile_number == identifier.strip():
                return identity
        return None

    def find_by_identifier(self, identifier: str) -> Optional[CredentialIdentity]:
        if not identifier:
            return None
        with self._data_lock:
            identity = self._find_locked(identifier)
            return replace(identity) if identity else None

    def get_user(self, user_id: str) -> Optional[CredentialIdentity]:
        with self._data_lock:
            identity = self.users.get(user_id)
            return replace(identity) if identity else None

    def update_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            identity = self.users.get(user_id)
            if not identity:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            identity.password_hash = password_hash
            identity.password_algo = password_algo

    def set_locked(
        self, user_id: str, locked: bool, locked_until: Optional[datetime] = None
    ) -> None:
        with self._data_lock:
            identity = self.users.get(user_id)
            if not identity:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            identity.locked = locked
            identity.locked_until = locked_until if locked else None

    # supplementary claim sources
    def add_tenant(self, tenant: Tenant) -> None:
        with self._data_lock:
            self.tenants[tenant.id] = tenant

    def add_clinic(self, clinic: Clinic) -> None:
        with self._data_lock:
            self.clinics[clinic.id] = clinic

    def add_membership(self, person_id: str, membership: Membership) -> None:
        with self._data_lock:
            self.memberships.setdefault(person_id, []).append(membership)

    def set_root_organization(self, organization_id: Optional[str]) -> None:
        with self._data_lock:
            self.root_organization_id = organization_id

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    def list_clinics(self, clinic_ids: Iterable[str]) -> List[Clinic]:
        with self._data_lock:
            return [self.clinics[cid] for cid in clinic_ids if cid in self.clinics]

    def find_root_organization_id(self) -> Optional[str]:
        with self._data_lock:
            return self.root_organization_id

    def list_memberships(self, person_id: Optional[str]) -> List[Membership]:
        if not person_id:
            return []
        with self._data_lock:
            return [m for m in self.memberships.get(person_id, []) if m.is_active]

    # mobile app instances
    def block_mobile_instances(
        self, user_id: str, *, updated_by: str, except_instance_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            now = utcnow()
            blocked = 0
            for instance in self.mobile_instances.values():
                if instance.user_id != user_id or instance.is_blocked:
                    continue
                if except_instance_id and instance.app_instance_id == except_instance_id:
                    continue
                instance.is_blocked = True
                instance.updated_by = updated_by
                instance.updated_at = now
                blocked += 1
            return blocked

    def create_mobile_instance(self, instance: MobileAppInstance) -> MobileAppInstance:
        with self._data_lock:
            if instance.app_instance_id in self.mobile_instances:
                raise ConstraintViolation(
                    "app instance already exists",
                    {"app_instance_id": instance.app_instance_id},
                )
            if instance.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": instance.user_id})
            self.mobile_instances[instance.app_instance_id] = instance
            return replace(instance)

    def get_mobile_instance(self, app_instance_id: str) -> Optional[MobileAppInstance]:
        with self._data_lock:
            instance = self.mobile_instances.get(app_instance_id)
            return replace(instance) if instance else None

    def list_mobile_instances(self, user_id: str) -> List[MobileAppInstance]:
        with self._data_lock:
            # Newest first; insertion order breaks created_at ties
            results = [
                (i.created_at, position, replace(i))
                for position, i in enumerate(self.mobile_instances.values())
                if i.user_id == user_id
            ]
            results.sort(key=lambda item: (item[0], item[1]), reverse=True)
            return [instance for _, _, instance in results]

    def update_mobile_instance(
        self, app_instance_id: str, updates: Dict[str, Any], *, updated_by: str
    ) -> Optional[MobileAppInstance]:
        with self._data_lock:
            instance = self.mobile_instances.get(app_instance_id)
            if not instance:
                return None
            for key, value in updates.items():
                if key in _MOBILE_UPDATABLE_FIELDS or key == "is_blocked":
                    setattr(instance, key, value)
            instance.updated_by = updated_by
            instance.updated_at = utcnow()
            return replace(instance)

    # session audit trail
    def create_user_session(
        self,
        session_id: str,
        user_id: str,
        *,
        login_time: Optional[datetime] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> UserSessionRecord:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            record = UserSessionRecord(
                id=session_id,
                user_id=user_id,
                login_time=login_time or utcnow(),
                ip_addr=ip_addr,
                user_agent=user_agent,
                device_info=device_info,
            )
            self.user_sessions[session_id] = record
            return replace(record)

    def get_user_session(self, session_id: str) -> Optional[UserSessionRecord]:
        with self._data_lock:
            record = self.user_sessions.get(session_id)
            return replace(record) if record else None

    def record_session_end(
        self, session_id: str, logout_time: Optional[datetime] = None
    ) -> Optional[UserSessionRecord]:
        with self._data_lock:
            record = self.user_sessions.get(session_id)
            if not record or not record.is_open:
                return None
            record.close(logout_time or utcnow())
            return replace(record)

    def close_open_user_sessions(
        self, user_id: str, logout_time: Optional[datetime] = None
    ) -> List[UserSessionRecord]:
        with self._data_lock:
            closed_at = logout_time or utcnow()
            closed: List[UserSessionRecord] = []
            for record in self.user_sessions.values():
                if record.user_id == user_id and record.is_open:
                    record.close(closed_at)
                    closed.append(replace(record))
            return closed
