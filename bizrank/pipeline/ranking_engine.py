from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from bizrank.models.business import Business
from bizrank.models.ranking import (
    AspectRankingRun,
    AspectScore,
    BusinessScore,
    OutlierAdjustment,
    RankingError,
    RankingRun,
    SkippedBusiness,
)
from bizrank.models.review import Review
from bizrank.pipeline.clock import as_utc
from bizrank.pipeline.similarity import round_half_up
from bizrank.pipeline.weights import RankingConfig

LOGGER = logging.getLogger("ranking_engine")

# float slack for the inclusive tie window
_TIE_EPSILON = 1e-9


class RankingEngine:
    def __init__(self, config: RankingConfig | None = None) -> None:
        self.config = config or RankingConfig()

    def skip_reason(self, business: Business, reviews: list[Review]) -> str | None:
        if not any(business.performance_scores().values()):
            return "Performance scores not calculated"
        if not any(review.analyzed for review in reviews):
            return "No analyzed reviews available"
        return None

    def recency_multiplier(self, reviews: list[Review], now: datetime) -> float:
        if not reviews:
            return 1.0

        weights: list[float] = []
        for review in reviews:
            age_days = (now - as_utc(review.created_at)).total_seconds() / 86400
            weight = self.config.recency_floor
            for max_days, multiplier in self.config.recency_buckets:
                if age_days <= max_days:
                    weight = multiplier
                    break
            weights.append(weight)
        return sum(weights) / len(weights)

    def score_business(self, business: Business, reviews: list[Review], now: datetime) -> BusinessScore:
        reason = self.skip_reason(business, reviews)
        if reason is not None:
            raise ValueError(f"Business '{business.id}' cannot be ranked: {reason}.")

        analyzed = [review for review in reviews if review.analyzed]
        component_scores = business.performance_scores()
        weights = self.config.weights_for(business.category_id)
        performance_score = sum(component_scores[aspect] * weights.get(aspect, 0.0) for aspect in component_scores)

        recency = self.recency_multiplier(analyzed, now)
        tier_bonus = self.config.tier_bonus(business.plan_tier)
        final_score = performance_score * recency * (1 + tier_bonus)

        total = len(analyzed)
        mention_reviews = sum(1 for review in analyzed if review.has_performance_mention)
        verified_reviews = sum(1 for review in analyzed if review.verified)
        ranking_confidence = min(
            total / 15 * 40 + verified_reviews / total * 30 + mention_reviews / total * 30,
            100,
        )

        return BusinessScore(
            business_id=str(business.id),
            name=business.name,
            plan_tier=business.plan_tier,
            verified=business.verified,
            performance_score=round(performance_score, 2),
            recency_multiplier=round(recency, 2),
            tier_bonus=tier_bonus,
            final_score=round(final_score, 2),
            confidence=round_half_up(ranking_confidence),
            component_scores=component_scores,
            weights=weights,
            review_count=total,
            performance_mention_rate=mention_reviews / total,
        )

    def detect_outliers(self, scores: list[BusinessScore]) -> tuple[list[OutlierAdjustment], list[str]]:
        if len(scores) < self.config.outlier_min_cohort:
            return [], []

        ordered = sorted(item.final_score for item in scores)
        count = len(ordered)
        q1 = ordered[int(count * 0.25)]
        q3 = ordered[int(count * 0.75)]
        iqr = q3 - q1
        lower = q1 - self.config.outlier_iqr_factor * iqr
        upper = q3 + self.config.outlier_iqr_factor * iqr

        adjustments: list[OutlierAdjustment] = []
        flags: list[str] = []
        for item in scores:
            original = item.final_score
            if original > upper:
                bound, reason, label = upper, "unusually_high", "high"
            elif original < lower:
                bound, reason, label = lower, "unusually_low", "low"
            else:
                continue

            item.final_score = bound + self.config.outlier_pull_back * (original - bound)
            item.is_outlier = True
            adjustments.append(
                OutlierAdjustment(
                    business_id=item.business_id,
                    name=item.name,
                    original_score=original,
                    adjusted_score=item.final_score,
                    reason=reason,
                )
            )
            flags.append(f"Adjusted {item.name} from unusually {label} score")
        return adjustments, flags

    def apply_tie_breaking(self, scores: list[BusinessScore], now: datetime) -> None:
        snapshot = [item.final_score for item in scores]
        window = self.config.tie_window + _TIE_EPSILON

        for index, item in enumerate(scores):
            has_neighbour = any(
                other_index != index and abs(snapshot[index] - other_score) <= window
                for other_index, other_score in enumerate(snapshot)
            )
            if not has_neighbour:
                continue

            bonus = self.tie_breaking_bonus(item, now)
            item.tie_breaking_bonus = bonus
            item.final_score += bonus

    def tie_breaking_bonus(self, item: BusinessScore, now: datetime) -> float:
        bonus = 0.0
        if item.review_count > 20:
            bonus += self.config.tie_bonus_reviews_20
        if item.review_count > 50:
            bonus += self.config.tie_bonus_reviews_50
        if item.verified:
            bonus += self.config.tie_bonus_verified
        if item.last_ranking_update is not None:
            age = now - as_utc(item.last_ranking_update)
            if age < timedelta(days=self.config.recent_update_days):
                bonus += self.config.tie_bonus_recent_update
        if item.performance_mention_rate > 0.5:
            bonus += self.config.tie_bonus_mention_rate
        return round(bonus, 4)

    def rank_cohort(
        self,
        *,
        city: str,
        category_id: str,
        cohort: list[tuple[Business, list[Review]]],
        now: datetime | None = None,
        cohort_updated_at: datetime | None = None,
    ) -> RankingRun:
        reference = now or datetime.now(timezone.utc)
        run = RankingRun(city=city, category_id=category_id, ranking_type="overall", computed_at=reference)
        run.statistics.total_businesses = len(cohort)

        if not cohort:
            run.message = "No businesses found"
            return run

        scores: list[BusinessScore] = []
        for business, reviews in cohort:
            business_id = str(business.id)
            try:
                reason = self.skip_reason(business, reviews)
                if reason is not None:
                    run.skipped.append(SkippedBusiness(business_id=business_id, name=business.name, reason=reason))
                    continue
                score = self.score_business(business, reviews, reference)
                # the refresh bonus keys off the previous cohort run, shared by every member
                score.last_ranking_update = cohort_updated_at
                scores.append(score)
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("Ranking failed business=%s name=%r", business_id, business.name)
                run.errors.append(RankingError(business_id=business_id, name=business.name, error=str(exc)))

        run.statistics.calculated = len(scores)
        run.statistics.skipped = len(run.skipped)
        run.statistics.failed = len(run.errors)

        if not scores:
            run.message = "No businesses had sufficient data for ranking"
            return run

        scores.sort(key=lambda item: (-item.final_score, item.business_id))
        run.outliers, run.flags = self.detect_outliers(scores)
        self.apply_tie_breaking(scores, reference)
        scores.sort(key=lambda item: (-item.final_score, item.business_id))

        for position, item in enumerate(scores, start=1):
            item.rank = position

        run.rankings = scores
        run.statistics.outliers = len(run.outliers)
        run.statistics.average_score = round(sum(item.final_score for item in scores) / len(scores), 2)
        run.statistics.average_confidence = round_half_up(sum(item.confidence for item in scores) / len(scores))
        return run

    def rank_aspect(
        self,
        *,
        city: str,
        category_id: str,
        aspect: str,
        businesses: list[Business],
        now: datetime | None = None,
    ) -> AspectRankingRun:
        reference = now or datetime.now(timezone.utc)
        run = AspectRankingRun(city=city, category_id=category_id, aspect=aspect, computed_at=reference)

        scored: list[AspectScore] = []
        for business in businesses:
            business_id = str(business.id)
            try:
                original = business.performance_scores()[aspect]
                if original <= 0:
                    continue
                tier_bonus = self.config.tier_bonus(business.plan_tier)
                scored.append(
                    AspectScore(
                        business_id=business_id,
                        name=business.name,
                        plan_tier=business.plan_tier,
                        original_score=original,
                        score=round(original * (1 + tier_bonus), 2),
                    )
                )
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("Aspect ranking failed business=%s aspect=%s", business_id, aspect)
                run.errors.append(RankingError(business_id=business_id, name=business.name, error=str(exc)))

        if not scored:
            run.message = f"No businesses found with {aspect} scores"
            return run

        scored.sort(key=lambda item: (-item.score, item.business_id))
        for position, item in enumerate(scored, start=1):
            item.rank = position

        run.rankings = scored
        run.average_score = round(sum(item.score for item in scored) / len(scored), 2)
        run.highest_score = scored[0].score
        run.lowest_score = scored[-1].score
        return run

