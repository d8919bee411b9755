"""
Personal plant collection ("garden").

Saving is a pro feature. Each saved plant is one row: the full PlantRecord
as camelCase JSON in ``plant_data`` plus the image shown with it. Inline
(data URI) images over ~1 MB are dropped rather than stored; URLs are kept
as they are.
"""

import uuid
from datetime import UTC, datetime
from typing import Protocol

import structlog

from botanicmd.exceptions import AccessDeniedError
from botanicmd.models.auth import AuthUser
from botanicmd.models.billing import AccessDecision, AccessReason, PlanTier
from botanicmd.models.plant import PlantRecord, SavedPlant, SupportedLanguage
from botanicmd.services.entitlements import EntitlementCache

logger = structlog.get_logger(__name__)

MAX_INLINE_IMAGE_CHARS = 1_000_000


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _is_inline_image(image: str) -> bool:
    return bool(image) and not image.startswith(("http://", "https://", "/"))


class CollectionRepository(Protocol):
    """Storage contract for saved plants."""

    async def list_plants(self, user_id: str) -> list[SavedPlant]:
        """All plants of a user, most recently saved first."""

    async def upsert_plant(self, user_id: str, plant: SavedPlant) -> None:
        """Insert or replace by ``plant.data.id``."""

    async def delete_plant(self, user_id: str, plant_id: str) -> bool:
        """Delete one plant; False when it did not exist."""


class InMemoryCollectionRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self) -> None:
        self.plants: dict[str, list[SavedPlant]] = {}

    async def list_plants(self, user_id: str) -> list[SavedPlant]:
        return [p.model_copy(deep=True) for p in self.plants.get(user_id, [])]

    async def upsert_plant(self, user_id: str, plant: SavedPlant) -> None:
        current = [p for p in self.plants.get(user_id, []) if p.data.id != plant.data.id]
        self.plants[user_id] = [plant.model_copy(deep=True), *current]

    async def delete_plant(self, user_id: str, plant_id: str) -> bool:
        current = self.plants.get(user_id, [])
        remaining = [p for p in current if p.data.id != plant_id]
        self.plants[user_id] = remaining
        return len(remaining) != len(current)


class SupabaseCollectionRepository:
    """Supabase-backed repository (``plants`` table)."""

    def __init__(self, client, table: str = "plants") -> None:
        self.client = client
        self.table = table

    async def list_plants(self, user_id: str) -> list[SavedPlant]:
        response = (
            await self.client.table(self.table)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .execute()
        )
        plants: list[SavedPlant] = []
        for row in response.data or []:
            try:
                data = PlantRecord.model_validate(row["plant_data"])
            except (KeyError, ValueError) as e:
                logger.warning("garden_row_invalid", plant_id=row.get("id"), error=str(e))
                continue
            plants.append(SavedPlant(data=data, image=row.get("image_url") or ""))
        return plants

    async def upsert_plant(self, user_id: str, plant: SavedPlant) -> None:
        payload = {
            "id": plant.data.id,
            "user_id": user_id,
            "common_name": plant.data.common_name,
            "plant_data": plant.data.model_dump(mode="json", by_alias=True),
            "image_url": plant.image,
        }
        await self.client.table(self.table).upsert(payload).execute()

    async def delete_plant(self, user_id: str, plant_id: str) -> bool:
        response = (
            await self.client.table(self.table)
            .delete()
            .eq("id", plant_id)
            .eq("user_id", user_id)
            .execute()
        )
        return bool(response.data)


class GardenService:
    def __init__(
        self,
        repository: CollectionRepository,
        cache: EntitlementCache,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.cache = cache
        self.now_provider = now_provider

    async def _require_pro(self, user: AuthUser) -> None:
        entitlement = await self.cache.entitlement_for(user)
        if entitlement.plan_tier != PlanTier.PRO:
            raise AccessDeniedError(
                AccessDecision(
                    allowed=False, reason=AccessReason.PRO_REQUIRED, entitlement=entitlement
                )
            )

    async def save(
        self,
        user: AuthUser,
        record: PlantRecord,
        image: str = "",
        language: SupportedLanguage | None = None,
    ) -> list[SavedPlant]:
        """Save ``record`` to the user's garden and return the refreshed list."""
        await self._require_pro(user)

        if _is_inline_image(image) and len(image) >= MAX_INLINE_IMAGE_CHARS:
            logger.warning("garden_image_dropped", user_id=user.id, size=len(image))
            image = ""

        data = record.model_copy(
            update={
                "id": record.id or str(uuid.uuid4()),
                "saved_at": self.now_provider(),
                "language": record.language or language,
            }
        )
        await self.repository.upsert_plant(user.id, SavedPlant(data=data, image=image))
        logger.info("garden_plant_saved", user_id=user.id, plant_id=data.id)
        return await self.list_plants(user)

    async def list_plants(self, user: AuthUser) -> list[SavedPlant]:
        return await self.repository.list_plants(user.id)

    async def delete(self, user: AuthUser, plant_id: str) -> list[SavedPlant]:
        deleted = await self.repository.delete_plant(user.id, plant_id)
        logger.info("garden_plant_deleted", user_id=user.id, plant_id=plant_id, deleted=deleted)
        return await self.list_plants(user)
