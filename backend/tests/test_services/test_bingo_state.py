"""Tests for bingo state reads, toggles, resets, and metadata."""
import asyncio

import pytest
from citybingo.models import City, UserCompletion
from citybingo.services.asset_cache import AssetCache, StorageRoot
from citybingo.services.batch_scheduler import ClientBatchScheduler, FixedBatchPolicy
from citybingo.services.bingo_state import BingoStateService
from citybingo.services.errors import ReferenceNotFound


@pytest.fixture
def service(db_session, seeded_city, tmp_path):
    root = StorageRoot(tmp_path / "images")
    root.path.mkdir(parents=True)
    return BingoStateService(db_session, assets=AssetCache(root))


class TestGetState:
    def test_no_client_returns_empty_state(self, service):
        assert service.get_state(None) == {"currentCity": "", "cities": {}}

    def test_new_client_registered_with_default_city(self, service):
        state = service.get_state("client-abc")
        assert state["currentCity"] == "nyc"
        city = state["cities"]["nyc"]
        assert city["title"] == "New York"
        assert len(city["items"]) == 5
        assert all(item["completed"] is False for item in city["items"])

    def test_expiring_images_rewritten_for_display(self, service):
        items = {i["id"]: i for i in service.get_state("client-abc")["cities"]["nyc"]["items"]}
        assert items["nyc-3"]["image"].startswith("/api/v1/image-proxy?url=")
        assert items["nyc-2"]["image"] == "/images/nyc-nyc-2-abc.png"

    def test_center_space_pinned_to_middle(self, service):
        items = {i["id"]: i for i in service.get_state("client-abc")["cities"]["nyc"]["items"]}
        assert (items["nyc-free"]["gridRow"], items["nyc-free"]["gridCol"]) == (2, 2)


class TestToggle:
    def test_toggle_flips_state(self, service):
        assert service.toggle_item("nyc-1", "nyc", "client-abc")["completed"] is True
        assert service.toggle_item("nyc-1", "nyc", "client-abc")["completed"] is False

    def test_forced_state_is_idempotent(self, service):
        service.toggle_item("nyc-1", "nyc", "client-abc", forced_state=True)
        result = service.toggle_item("nyc-1", "nyc", "client-abc", forced_state=True)
        assert result == {"completed": True, "applied": True}

    def test_completions_are_per_client(self, service):
        service.toggle_item("nyc-1", "nyc", "client-a", forced_state=True)
        items = {i["id"]: i for i in service.get_state("client-b")["cities"]["nyc"]["items"]}
        assert items["nyc-1"]["completed"] is False

    def test_out_of_order_toggle_ignored(self, service):
        service.toggle_item("nyc-1", "nyc", "client-abc", forced_state=True, client_timestamp=2_000_000)
        result = service.toggle_item("nyc-1", "nyc", "client-abc", forced_state=False, client_timestamp=1_000_000)
        assert result == {"completed": True, "applied": False}

    def test_toggle_does_not_touch_image(self, service):
        service.toggle_item("nyc-2", "nyc", "client-abc")
        assert service.get_item("nyc-2").image == "/images/nyc-nyc-2-abc.png"

    def test_unknown_item(self, service):
        with pytest.raises(ReferenceNotFound):
            service.toggle_item("nyc-99", "nyc", "client-abc")

    def test_item_from_other_city(self, service):
        with pytest.raises(ReferenceNotFound):
            service.toggle_item("nyc-1", "paris", "client-abc")


class TestResetCity:
    def test_reset_clears_only_this_client(self, service, db_session):
        service.toggle_item("nyc-1", "nyc", "client-a", forced_state=True)
        service.toggle_item("nyc-2", "nyc", "client-a", forced_state=True)
        service.toggle_item("nyc-1", "nyc", "client-b", forced_state=True)
        assert service.reset_city("nyc", "client-a") == 2
        assert db_session.query(UserCompletion).count() == 1

    def test_reset_unknown_city(self, service):
        with pytest.raises(ReferenceNotFound):
            service.reset_city("atlantis", "client-a")


class TestMetadata:
    def test_counts_check_local_files(self, service, tmp_path):
        (tmp_path / "images" / "nyc-nyc-2-abc.png").write_bytes(b"png")
        meta = service.update_city_metadata("nyc")
        assert meta["itemCount"] == 5
        assert meta["itemsWithDescriptions"] == 1
        assert meta["itemsWithImages"] == 3
        # local file present + remote URL; placeholder excluded
        assert meta["itemsWithValidImageFiles"] == 2

    def test_missing_local_file_not_valid(self, service):
        assert service.update_city_metadata("nyc")["itemsWithValidImageFiles"] == 1


class TestDescriptions:
    def test_descriptions_generated_for_regular_items(self, service, db_session, fake_sleep):
        class Generator:
            async def generate_description(self, text, city_name):
                return f"{text} in {city_name}"

        scheduler = ClientBatchScheduler(sleep=fake_sleep)
        result = asyncio.run(service.generate_descriptions("nyc", Generator(), FixedBatchPolicy(5, 1.0), scheduler))
        assert len(result) == 4
        assert "nyc-free" not in result
        assert db_session.get(City, "nyc") is not None
        assert service.get_item("nyc-1").description == "Eat a bagel in New York"
