import re
from datetime import datetime
from statistics import mean

from bizrank.models.review import Review, ReviewImportItem
from bizrank.pipeline.clock import utc_now


class ReviewPreprocessor:
    _CONTROL_CHARS_REGEX = re.compile(r"[\x00-\x08\x0B-\x1F\x7F]")
    _NUMBER_REGEX = re.compile(r"(\d+(?:\.\d+)?)")

    def build_review(
        self,
        item: ReviewImportItem,
        *,
        business_id: str,
        source: str,
        import_batch_id: str | None = None,
        now: datetime | None = None,
    ) -> Review:
        imported_at = now or utc_now()
        return Review(
            business_id=business_id,
            review_id=self._clean_text(item.review_id),
            rating=self._coerce_rating(item.rating),
            comment=self._clean_text(item.comment),
            user_name=self._clean_text(item.user_name),
            source=source,
            verified=bool(item.verified),
            created_at=item.original_create_time or imported_at,
            imported_at=imported_at,
            import_batch_id=import_batch_id,
        )

    def compute_stats(self, reviews: list[Review]) -> dict:
        if not reviews:
            return {
                "review_count": 0,
                "avg_rating": 0.0,
                "rating_distribution": {str(i): 0 for i in range(1, 6)},
                "total_with_text": 0,
                "analyzed_count": 0,
            }

        rating_distribution = {str(i): 0 for i in range(1, 6)}
        for review in reviews:
            rating_distribution[str(review.rating)] += 1

        return {
            "review_count": len(reviews),
            "avg_rating": round(mean(review.rating for review in reviews), 1),
            "rating_distribution": rating_distribution,
            "total_with_text": sum(1 for review in reviews if review.comment),
            "analyzed_count": sum(1 for review in reviews if review.analyzed),
        }

    def _clean_text(self, text: object) -> str:
        value = str(text or "")
        value = self._CONTROL_CHARS_REGEX.sub(" ", value)
        value = re.sub(r"[ \t]+", " ", value)
        return value.strip()

    def _coerce_rating(self, rating: object) -> int:
        if isinstance(rating, (int, float)):
            value = float(rating)
        else:
            rating_str = self._clean_text(rating).replace(",", ".")
            match = self._NUMBER_REGEX.search(rating_str)
            value = float(match.group(1)) if match else 1.0

        return min(max(int(value + 0.5), 1), 5)
