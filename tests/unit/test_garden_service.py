"""Tests for the personal plant collection."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from botanicmd.exceptions import AccessDeniedError
from botanicmd.models.auth import AuthUser
from botanicmd.models.billing import AccessReason, PlanTier, UserAccount
from botanicmd.models.plant import SavedPlant, SupportedLanguage
from botanicmd.services.entitlements import EntitlementCache, InMemoryAccountRepository
from botanicmd.services.garden_service import (
    MAX_INLINE_IMAGE_CHARS,
    GardenService,
    InMemoryCollectionRepository,
    SupabaseCollectionRepository,
)

SAVED_AT = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def make_garden(
    user: AuthUser, plan: PlanTier = PlanTier.PRO, repository=None
) -> tuple[GardenService, InMemoryCollectionRepository]:
    accounts = InMemoryAccountRepository()
    accounts.accounts[user.id] = UserAccount(user_id=user.id, plan=plan)
    repository = repository or InMemoryCollectionRepository()
    return GardenService(repository, EntitlementCache(accounts), now_provider=lambda: SAVED_AT), repository


class TestGardenService:
    async def test_save_and_reload_preserves_identification(self, user: AuthUser, plant_record):
        garden, _ = make_garden(user)

        plants = await garden.save(
            user, plant_record, image="https://img.test/monstera.jpg", language=SupportedLanguage.PT
        )

        assert len(plants) == 1
        saved = plants[0]
        assert saved.data.identification_fields() == plant_record.identification_fields()
        assert saved.data.id
        assert saved.data.saved_at == SAVED_AT
        assert saved.data.language == SupportedLanguage.PT
        assert saved.image == "https://img.test/monstera.jpg"

    async def test_newest_first(self, user: AuthUser, make_plant_record):
        garden, _ = make_garden(user)
        await garden.save(user, make_plant_record("Monstera", "Monstera deliciosa"))

        plants = await garden.save(user, make_plant_record("Pothos", "Epipremnum aureum"))

        assert [p.data.common_name for p in plants] == ["Pothos", "Monstera"]

    async def test_resave_replaces_by_id(self, user: AuthUser, plant_record):
        garden, _ = make_garden(user)
        first = (await garden.save(user, plant_record))[0]

        plants = await garden.save(user, first.data.model_copy(update={"toxicity": "Mildly toxic."}))

        assert len(plants) == 1
        assert plants[0].data.id == first.data.id
        assert plants[0].data.toxicity == "Mildly toxic."

    async def test_free_user_cannot_save(self, user: AuthUser, plant_record):
        garden, repository = make_garden(user, plan=PlanTier.FREE)

        with pytest.raises(AccessDeniedError) as exc_info:
            await garden.save(user, plant_record)

        assert exc_info.value.decision.reason == AccessReason.PRO_REQUIRED
        assert repository.plants == {}

    async def test_oversized_inline_image_is_dropped(self, user: AuthUser, plant_record):
        garden, _ = make_garden(user)
        data_uri = "data:image/jpeg;base64," + "A" * MAX_INLINE_IMAGE_CHARS

        plants = await garden.save(user, plant_record, image=data_uri)

        assert plants[0].image == ""
        assert plants[0].data.common_name == "Monstera"

    async def test_small_inline_image_is_kept(self, user: AuthUser, plant_record):
        garden, _ = make_garden(user)
        data_uri = "data:image/jpeg;base64,/9j/4AAQSkZJRg=="

        plants = await garden.save(user, plant_record, image=data_uri)

        assert plants[0].image == data_uri

    async def test_long_url_is_never_dropped(self, user: AuthUser, plant_record):
        garden, _ = make_garden(user)
        url = "https://img.test/" + "a" * MAX_INLINE_IMAGE_CHARS

        plants = await garden.save(user, plant_record, image=url)

        assert plants[0].image == url

    async def test_delete(self, user: AuthUser, plant_record):
        garden, _ = make_garden(user)
        saved = (await garden.save(user, plant_record))[0]

        assert await garden.delete(user, saved.data.id) == []

    async def test_collections_are_per_user(self, user: AuthUser, plant_record):
        garden, _ = make_garden(user)
        await garden.save(user, plant_record)

        assert await garden.list_plants(AuthUser(id="user-2")) == []


class TestSupabaseCollectionRepository:
    def _client(self, rows: list[dict]) -> MagicMock:
        query = MagicMock()
        for method in ("select", "eq", "order", "upsert", "delete"):
            getattr(query, method).return_value = query
        query.execute = AsyncMock(return_value=MagicMock(data=rows))
        client = MagicMock()
        client.table.return_value = query
        return client

    async def test_round_trip_through_plant_data(self, plant_record):
        client = self._client([])
        repository = SupabaseCollectionRepository(client)
        data = plant_record.model_copy(update={"id": "p-1", "saved_at": SAVED_AT})

        await repository.upsert_plant("user-1", SavedPlant(data=data, image="https://img.test/m.jpg"))

        payload = client.table.return_value.upsert.call_args.args[0]
        assert payload["id"] == "p-1"
        assert payload["user_id"] == "user-1"
        assert payload["plant_data"]["commonName"] == "Monstera"
        assert payload["plant_data"]["wateringFrequencyDays"] == 7

        client.table.return_value.execute.return_value = MagicMock(
            data=[{"id": "p-1", "plant_data": payload["plant_data"], "image_url": payload["image_url"]}]
        )
        plants = await repository.list_plants("user-1")

        assert plants[0].data.identification_fields() == plant_record.identification_fields()
        assert plants[0].data.saved_at == SAVED_AT
        assert plants[0].image == "https://img.test/m.jpg"
        client.table.return_value.order.assert_called_with("created_at", desc=True)

    async def test_invalid_rows_are_skipped(self, plant_payload: dict):
        client = self._client(
            [
                {"id": "bad", "plant_data": {"commonName": "Broken"}},
                {"id": "good", "plant_data": plant_payload, "image_url": None},
            ]
        )

        plants = await SupabaseCollectionRepository(client).list_plants("user-1")

        assert len(plants) == 1
        assert plants[0].image == ""

    async def test_delete_scopes_to_user(self):
        client = self._client([{"id": "p-1"}])

        deleted = await SupabaseCollectionRepository(client).delete_plant("user-1", "p-1")

        assert deleted is True
        client.table.return_value.eq.assert_any_call("id", "p-1")
        client.table.return_value.eq.assert_any_call("user_id", "user-1")
