"""Tests for hyperparameter recommendation and estimates."""

import pytest

from bhasha.curation.recommender import (
    HyperparameterRecommender,
    Hyperparameters,
    estimate_cost,
    estimate_time_minutes,
)
from bhasha.curation.stats import TokenDistribution


@pytest.fixture
def recommender():
    return HyperparameterRecommender()


def _distribution(avg, std_dev, max_tokens):
    return TokenDistribution(avg=avg, median=avg, min=1, max=max_tokens, std_dev=std_dev)


class TestEstimates:
    """Tests for cost and time estimates."""

    def test_cost_scenario(self):
        # 1000 samples x 100 tokens x 4 epochs = 400k tokens at $0.008/1k
        assert estimate_cost(1000, 100, 4) == 3.20

    def test_cost_rounds_to_cents(self):
        assert estimate_cost(333, 77, 3) == round(333 * 77 * 3 / 1000 * 0.008, 2)

    @pytest.mark.parametrize(
        "avg,minutes",
        [(100, 240), (101, 288), (200, 288), (201, 360)],
    )
    def test_time_multiplier(self, avg, minutes):
        assert estimate_time_minutes(1000, avg, 4) == minutes

    def test_time_rounds_up(self):
        assert estimate_time_minutes(10, 50, 1) == 1


class TestRecommend:
    """Tests for the recommendation rules."""

    def test_variable_corpus_scenario(self, recommender):
        result = recommender.recommend(1500, _distribution(avg=80, std_dev=60, max_tokens=300))
        params = result.parameters

        assert params.learning_rate == 3e-5
        assert params.batch_size == 8
        assert params.epochs == 4
        assert params.lora_rank == 16
        assert params.lora_alpha == 32
        assert result.confidence == 0.90
        assert "halved to 8" in result.reasoning["batch_size"]
        assert "exceeds half the average (40)" in result.reasoning["batch_size"]

    def test_small_variable_corpus(self, recommender):
        result = recommender.recommend(200, _distribution(avg=80, std_dev=60, max_tokens=300))
        params = result.parameters

        assert params.learning_rate == 5e-5
        assert params.batch_size == 4
        assert params.lora_rank == 8
        assert params.lora_alpha == 32

    @pytest.mark.parametrize(
        "size,rate,batch,rank",
        [
            (100, 5e-5, 8, 4),
            (999, 5e-5, 8, 8),
            (1000, 3e-5, 16, 8),
            (2000, 3e-5, 16, 16),
            (5000, 2e-5, 32, 32),
            (10000, 1e-5, 64, 64),
        ],
    )
    def test_size_bands(self, recommender, size, rate, batch, rank):
        params = recommender.recommend(size, _distribution(avg=100, std_dev=10, max_tokens=150)).parameters

        assert params.learning_rate == rate
        assert params.batch_size == batch
        assert params.lora_rank == rank

    @pytest.mark.parametrize("avg,epochs", [(49, 5), (50, 4), (99, 4), (100, 3), (199, 3), (200, 2)])
    def test_epoch_bands(self, recommender, avg, epochs):
        result = recommender.recommend(1000, _distribution(avg=avg, std_dev=0, max_tokens=avg))

        assert result.parameters.epochs == epochs

    @pytest.mark.parametrize("size", [10, 250, 499, 500, 1000, 7000])
    def test_alpha_factor(self, recommender, size):
        params = recommender.recommend(size, _distribution(avg=90, std_dev=80, max_tokens=400)).parameters

        factor = 4 if size < 500 else 2
        assert params.lora_alpha == params.lora_rank * factor

    def test_long_sequences(self, recommender):
        result = recommender.recommend(3000, _distribution(avg=300, std_dev=50, max_tokens=900))
        params = result.parameters

        assert params.batch_size == 8
        assert params.lora_rank == 24
        assert "900 tokens" in result.reasoning["batch_size"]

    def test_rank_capped(self, recommender):
        params = recommender.recommend(7000, _distribution(avg=100, std_dev=90, max_tokens=900)).parameters

        assert params.lora_rank == 32
        assert params.lora_alpha == 64

    def test_batch_floor(self, recommender):
        params = recommender.recommend(50, _distribution(avg=20, std_dev=30, max_tokens=100)).parameters

        assert params.batch_size == 4

    def test_without_distribution(self, recommender):
        result = recommender.recommend(800)

        assert result.confidence == 0.85
        assert result.dataset_analysis["avg_tokens"] == 100
        assert result.parameters.batch_size == 8
        assert result.parameters.epochs == 3

    def test_legacy_average(self, recommender):
        result = recommender.recommend(800, avg_tokens=40)

        assert result.parameters.epochs == 5
        assert "distribution" not in result.dataset_analysis

    def test_estimates_follow_parameters(self, recommender):
        result = recommender.recommend(1000, _distribution(avg=100, std_dev=10, max_tokens=150))

        assert result.estimated_cost == estimate_cost(1000, 100, result.parameters.epochs)
        assert result.estimated_time_minutes == estimate_time_minutes(1000, 100, result.parameters.epochs)

    def test_pure(self, recommender):
        dist = _distribution(avg=120, std_dev=70, max_tokens=640)

        first = recommender.recommend(2500, dist).to_dict()
        second = HyperparameterRecommender().recommend(2500, dist).to_dict()

        assert first == second


def test_hyperparameters_round_trip():
    params = Hyperparameters(learning_rate=2e-5, batch_size=16, epochs=3, lora_rank=8, lora_alpha=16)

    assert Hyperparameters.from_dict(params.to_dict()) == params
