import pytest
from pydantic import ValidationError

from bizrank.pipeline.weights import ConfidenceWeights, MatchingConfig, RankingConfig


def test_confidence_weights_must_sum_to_one() -> None:
    with pytest.raises(ValidationError):
        ConfidenceWeights(review_count=0.5)

    weights = ConfidenceWeights(review_count=0.25, recency=0.15)
    assert weights.as_dict()["recency"] == 0.15


def test_matching_config_rejects_inverted_thresholds() -> None:
    with pytest.raises(ValidationError):
        MatchingConfig(auto_verify_threshold=50, manual_review_threshold=70)


def test_ranking_config_caps_tier_bonus() -> None:
    with pytest.raises(ValidationError):
        RankingConfig(tier_bonuses={"free": 0.0, "power": 0.2})


def test_weights_for_is_case_insensitive_with_equal_fallback() -> None:
    config = RankingConfig()

    assert config.weights_for("Plumbing")["speed"] == 0.5
    assert config.weights_for("unknown") == {"speed": 0.25, "value": 0.25, "quality": 0.25, "reliability": 0.25}
    assert config.weights_for(None)["quality"] == 0.25


def test_tier_bonus_defaults_to_zero() -> None:
    config = RankingConfig()

    assert config.tier_bonus("power") == 0.05
    assert config.tier_bonus(None) == 0.0


def test_configs_are_frozen() -> None:
    config = MatchingConfig()

    with pytest.raises(ValidationError):
        config.auto_verify_threshold = 10
