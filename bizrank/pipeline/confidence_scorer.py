import math
from datetime import datetime, timedelta, timezone

from bizrank.models.confidence import ConfidenceBreakdown, ConfidenceFactors, ConfidenceReport
from bizrank.models.review import Review
from bizrank.pipeline.clock import as_utc
from bizrank.pipeline.similarity import round_half_up
from bizrank.pipeline.weights import ConfidenceWeights


class ConfidenceScorer:
    def __init__(self, weights: ConfidenceWeights | None = None) -> None:
        self.weights = weights or ConfidenceWeights()

    def score(
        self,
        reviews: list[Review],
        *,
        business_id: str | None = None,
        now: datetime | None = None,
    ) -> ConfidenceReport:
        reference = now or datetime.now(timezone.utc)
        analyzed = [review for review in reviews if review.analyzed]

        if not analyzed:
            return ConfidenceReport(
                business_id=business_id,
                overall_confidence=0,
                factors=ConfidenceFactors(total_reviews=len(reviews)),
                weights=self.weights.as_dict(),
                computed_at=reference,
            )

        raw = {
            "review_count": self._review_count_score(len(analyzed)),
            "verification": self._verification_score(analyzed),
            "performance_mentions": self._performance_mentions_score(analyzed),
            "sentiment_consistency": self._sentiment_consistency_score(analyzed),
            "recency": self._recency_score(analyzed, reference),
        }
        weights = self.weights.as_dict()
        overall = round_half_up(sum(raw[key] * weights[key] for key in raw))

        recent_cutoff = reference - timedelta(days=self.weights.recent_days)
        factors = ConfidenceFactors(
            total_reviews=len(reviews),
            analyzed_reviews=len(analyzed),
            verified_reviews=sum(1 for review in analyzed if review.verified),
            performance_mention_reviews=sum(1 for review in analyzed if review.has_performance_mention),
            gmb_reviews=sum(1 for review in analyzed if review.source == "gmb_api"),
            recent_reviews=sum(1 for review in analyzed if as_utc(review.created_at) >= recent_cutoff),
        )

        return ConfidenceReport(
            business_id=business_id,
            overall_confidence=min(max(overall, 0), 100),
            breakdown=ConfidenceBreakdown(**{key: round_half_up(value) for key, value in raw.items()}),
            factors=factors,
            weights=weights,
            computed_at=reference,
        )

    def _review_count_score(self, count: int) -> float:
        if count <= 0:
            return 0.0
        full = self.weights.full_volume_reviews
        if count >= full:
            return 100.0
        return min(100.0, math.log(count + 1) / math.log(full + 1) * 100)

    def _verification_score(self, reviews: list[Review]) -> float:
        total = len(reviews)
        verified_rate = sum(1 for review in reviews if review.verified) / total
        gmb_rate = sum(1 for review in reviews if review.source == "gmb_api") / total
        return min(100.0, verified_rate * 100 + gmb_rate * 20)

    def _performance_mentions_score(self, reviews: list[Review]) -> float:
        total = len(reviews)
        mention_counts = [review.mentions.count() for review in reviews]
        mention_rate = sum(1 for count in mention_counts if count > 0) / total
        avg_mentions = sum(mention_counts) / total
        return min(100.0, mention_rate * 70 + min(avg_mentions * 15, 30))

    def _sentiment_consistency_score(self, reviews: list[Review]) -> float:
        total = len(reviews)
        counts = {"positive": 0, "neutral": 0, "negative": 0}
        for review in reviews:
            counts[review.sentiment.classification] += 1

        dominant = max(counts.values())
        score = dominant / total * 70
        if counts["positive"] == dominant and counts["positive"] / total > 0.7:
            score += 20

        variety = sum(1 for count in counts.values() if count > 0)
        if 2 <= variety <= 3:
            score += 10
        return min(100.0, score)

    def _recency_score(self, reviews: list[Review], now: datetime) -> float:
        recent_cutoff = now - timedelta(days=self.weights.recent_days)
        moderate_cutoff = now - timedelta(days=self.weights.moderate_days)
        recent = 0
        moderate = 0
        for review in reviews:
            created_at = as_utc(review.created_at)
            if created_at >= recent_cutoff:
                recent += 1
            elif created_at >= moderate_cutoff:
                moderate += 1
        total = len(reviews)
        return min(100.0, recent / total * 100 + moderate / total * 50)


def confidence_recommendations(
    reviews: list[Review],
    confidence_score: int,
    *,
    now: datetime | None = None,
) -> list[str]:
    reference = now or datetime.now(timezone.utc)
    analyzed = [review for review in reviews if review.analyzed]
    recommendations: list[str] = []

    if len(reviews) < 10:
        recommendations.append("Encourage more customer reviews to increase confidence. Aim for at least 10 reviews.")

    if reviews:
        if len(analyzed) < len(reviews) * 0.8:
            recommendations.append("Run sentiment analysis on remaining reviews to improve scoring accuracy.")

        verified_rate = sum(1 for review in reviews if review.verified) / len(reviews)
        if verified_rate < 0.5:
            recommendations.append("Connect a verified review source to increase the verified review percentage.")

        mention_rate = sum(1 for review in analyzed if review.has_performance_mention) / max(len(analyzed), 1)
        if mention_rate < 0.3:
            recommendations.append(
                "Encourage customers to mention specific aspects like speed, quality, or value in their reviews."
            )

        cutoff = reference - timedelta(days=90)
        recent = sum(1 for review in reviews if as_utc(review.created_at) >= cutoff)
        if recent < len(reviews) * 0.3:
            recommendations.append("Focus on getting more recent reviews to improve recency confidence.")

    if confidence_score >= 80:
        recommendations.append("Excellent confidence score! Continue maintaining high service quality.")
    elif confidence_score >= 60:
        recommendations.append("Good confidence score. Focus on areas with lower scores to improve further.")
    else:
        recommendations.append("Low confidence score indicates need for more review data and engagement.")

    return recommendations

