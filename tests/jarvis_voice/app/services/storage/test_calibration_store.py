import json

import pytest
import pytest_asyncio

from jarvis_voice.app.services.audio.calibrator import CalibrationProfile
from jarvis_voice.app.services.storage.storage_models import CalibrationData
from jarvis_voice.app.services.storage.storage_service import CalibrationStore


@pytest_asyncio.fixture
async def store(app_config):
    calibration_store = CalibrationStore(app_config)
    yield calibration_store
    await calibration_store.shutdown()


class TestCalibrationStore:
    def test_path_under_user_data_root(self, store, tmp_path):
        assert store.path == tmp_path / "calibration.json"

    @pytest.mark.asyncio
    async def test_missing_file_loads_invalid(self, store):
        profile = await store.load()

        assert profile == CalibrationProfile.invalid()

    @pytest.mark.asyncio
    async def test_save_then_load(self, store, app_config):
        assert await store.save(CalibrationProfile(rms=42.5, valid=True)) is True

        fresh = CalibrationStore(app_config)
        try:
            profile = await fresh.load()
        finally:
            await fresh.shutdown()

        assert profile == CalibrationProfile(rms=42.5, valid=True)

    @pytest.mark.asyncio
    async def test_invalid_profile_persisted_as_sentinel(self, store):
        await store.save(CalibrationProfile.invalid())

        with open(store.path, "r", encoding="utf-8") as f:
            data = json.load(f)

        assert data["rms"] == -1.0
        store.clear_cache()
        assert (await store.load()).valid is False

    @pytest.mark.asyncio
    async def test_corrupt_file_loads_invalid(self, store):
        store.path.write_text("{not json", encoding="utf-8")

        assert await store.load() == CalibrationProfile.invalid()

    @pytest.mark.asyncio
    async def test_wrong_type_loads_invalid(self, store):
        store.path.write_text(json.dumps({"rms": "loud"}), encoding="utf-8")

        assert await store.load() == CalibrationProfile.invalid()

    @pytest.mark.asyncio
    async def test_save_leaves_no_temp_files(self, store, tmp_path):
        await store.save(CalibrationProfile(rms=12.0, valid=True))

        assert [p.name for p in tmp_path.iterdir()] == ["calibration.json"]

    @pytest.mark.asyncio
    async def test_save_failure_returns_false(self, app_config, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("", encoding="utf-8")
        store = CalibrationStore(app_config, path=str(blocker / "calibration.json"))
        try:
            assert await store.save(CalibrationProfile(rms=12.0, valid=True)) is False
        finally:
            await store.shutdown()

    @pytest.mark.asyncio
    async def test_load_uses_cache_after_save(self, store):
        await store.save(CalibrationProfile(rms=30.0, valid=True))
        store.path.unlink()

        assert (await store.load()).rms == 30.0


class TestCalibrationData:
    def test_negative_rms_is_invalid(self):
        assert CalibrationData(rms=-1.0).to_profile().valid is False

    def test_from_valid_profile(self):
        assert CalibrationData.from_profile(CalibrationProfile(rms=7.5, valid=True)).rms == 7.5
