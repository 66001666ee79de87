from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from clinicauth.config import Settings
from clinicauth.logging import get_logger
from clinicauth.service.errors import ConflictError
from clinicauth.storage.models import MobileAppInstance, Platform

logger = get_logger(__name__)

_LOCK_RETRY_INTERVAL = 0.05


class MobileStore(Protocol):
    def block_mobile_instances(
        self, user_id: str, *, updated_by: str, except_instance_id: Optional[str] = None
    ) -> int: ...

    def create_mobile_instance(self, instance: MobileAppInstance) -> MobileAppInstance: ...

    def get_mobile_instance(self, app_instance_id: str) -> Optional[MobileAppInstance]: ...

    def list_mobile_instances(self, user_id: str) -> List[MobileAppInstance]: ...

    def update_mobile_instance(
        self, app_instance_id: str, updates: Dict[str, Any], *, updated_by: str
    ) -> Optional[MobileAppInstance]: ...


class LockCache(Protocol):
    async def acquire_lock(self, name: str, ttl_seconds: int) -> Optional[str]: ...

    async def release_lock(self, name: str, token: str) -> bool: ...


@dataclass
class MobileAppSettings:
    app_name: str
    platform: Platform
    fcm_id: str
    version: str
    device_info: Optional[Dict[str, Any]] = None
    meta_data: Optional[Dict[str, Any]] = None


class MobileInstanceRegistrar:
    """Keeps at most one non-blocked mobile app instance per user.

    Writes for one user are serialized through a short-lived cache lock, so
    two devices registering at once still end with a single active instance.
    """

    def __init__(self, store: MobileStore, cache: LockCache, settings: Settings) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings

    async def _acquire(self, user_id: str) -> str:
        name = f"mobile:{user_id}"
        ttl = self.settings.mobile_lock_ttl_seconds
        deadline = asyncio.get_running_loop().time() + ttl
        while True:
            token = await self.cache.acquire_lock(name, max(1, ttl))
            if token:
                return token
            if asyncio.get_running_loop().time() >= deadline:
                logger.warning("mobile_lock_timeout", user_id=user_id)
                raise ConflictError(
                    "mobile registration already in progress", detail={"user_id": user_id}
                )
            await asyncio.sleep(_LOCK_RETRY_INTERVAL)

    async def upsert(self, user_id: str, settings: MobileAppSettings) -> MobileAppInstance:
        token = await self._acquire(user_id)
        try:
            blocked = self.store.block_mobile_instances(user_id, updated_by=user_id)
            instance = self.store.create_mobile_instance(
                MobileAppInstance.new(
                    user_id,
                    app_name=settings.app_name,
                    platform=settings.platform,
                    fcm_id=settings.fcm_id,
                    version=settings.version,
                    device_info=settings.device_info,
                    meta_data=settings.meta_data,
                )
            )
        finally:
            await self.cache.release_lock(f"mobile:{user_id}", token)
        logger.info(
            "mobile_instance_registered",
            user_id=user_id,
            app_instance_id=instance.app_instance_id,
            blocked_previous=blocked,
        )
        return instance

    def get_instance(self, app_instance_id: str) -> Optional[MobileAppInstance]:
        return self.store.get_mobile_instance(app_instance_id)

    def list_instances(self, user_id: str) -> List[MobileAppInstance]:
        return self.store.list_mobile_instances(user_id)

    def latest_instance(self, user_id: str) -> Optional[MobileAppInstance]:
        instances = self.store.list_mobile_instances(user_id)
        return instances[0] if instances else None

    def update_instance(
        self, app_instance_id: str, updates: Dict[str, Any], updated_by: str
    ) -> Optional[MobileAppInstance]:
        # is_update_mandatory and is_blocked are not client-editable
        allowed = {
            key: value
            for key, value in updates.items()
            if key not in {"is_update_mandatory", "is_blocked"} and value is not None
        }
        if "platform" in allowed:
            allowed["platform"] = Platform(allowed["platform"])
        return self.store.update_mobile_instance(
            app_instance_id, allowed, updated_by=updated_by
        )

    async def set_blocked(
        self, app_instance_id: str, blocked: bool, updated_by: str
    ) -> Optional[MobileAppInstance]:
        instance = self.store.get_mobile_instance(app_instance_id)
        if not instance:
            return None
        if blocked:
            updated = self.store.update_mobile_instance(
                app_instance_id, {"is_blocked": True}, updated_by=updated_by
            )
            logger.info("mobile_instance_blocked", app_instance_id=app_instance_id)
            return updated
        token = await self._acquire(instance.user_id)
        try:
            self.store.block_mobile_instances(
                instance.user_id, updated_by=updated_by, except_instance_id=app_instance_id
            )
            updated = self.store.update_mobile_instance(
                app_instance_id, {"is_blocked": False}, updated_by=updated_by
            )
        finally:
            await self.cache.release_lock(f"mobile:{instance.user_id}", token)
        logger.info("mobile_instance_unblocked", app_instance_id=app_instance_id)
        return updated
