"""Tests for payload and settings validation."""

from __future__ import annotations

import pytest

from waterline.core.storage.models import NegativePayload, PositivePayload, UserSettings


class TestPayloadValidation:
    @pytest.mark.parametrize("weight", [-1.0, float("nan"), float("inf")])
    def test_bad_weight_rejected(self, weight):
        with pytest.raises(ValueError, match="weight"):
            PositivePayload(weight=weight)

    @pytest.mark.parametrize(
        "kwargs, field",
        [
            ({"size_oz": float("nan")}, "size_oz"),
            ({"size_oz": -4.0}, "size_oz"),
            ({"abv": float("inf")}, "abv"),
        ],
    )
    def test_bad_drink_details_rejected(self, kwargs, field):
        with pytest.raises(ValueError, match=field):
            PositivePayload(**kwargs)

    def test_unknown_drink_type(self):
        with pytest.raises(ValueError, match="drink type"):
            PositivePayload(drink_type="mead")

    @pytest.mark.parametrize("volume", [-8.0, float("nan"), float("-inf")])
    def test_bad_volume_rejected(self, volume):
        with pytest.raises(ValueError, match="volume_oz"):
            NegativePayload(volume_oz=volume)

    def test_zero_is_allowed(self):
        assert PositivePayload(weight=0.0, size_oz=0.0, abv=0.0).weight == 0.0
        assert NegativePayload(volume_oz=0.0).volume_oz == 0.0

    def test_to_dict_drops_kind(self):
        assert "kind" not in PositivePayload().to_dict()
        assert NegativePayload(volume_oz=12.0).to_dict() == {"volume_oz": 12.0}


class TestUserSettings:
    def test_due_count_must_be_positive(self):
        with pytest.raises(ValueError, match="due_every_n"):
            UserSettings(due_every_n=0)

    def test_from_dict_ignores_unknown_keys(self):
        settings = UserSettings.from_dict({"due_every_n": 3, "legacy_flag": True})
        assert settings.due_every_n == 3
