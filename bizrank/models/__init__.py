from bizrank.models.business import Business
from bizrank.models.claim import Claim, ExternalLocation, GmbVerification, LocationAddress, VerificationDetails
from bizrank.models.confidence import ConfidenceReport
from bizrank.models.matching import BusinessMatch, LocationMatchResult
from bizrank.models.ranking import AspectRankingRun, BusinessScore, RankingCacheEntry, RankingRun
from bizrank.models.review import MentionFlags, Review, ReviewImportItem, ReviewSentiment

__all__ = [
    "Business",
    "Review",
    "ReviewSentiment",
    "MentionFlags",
    "ReviewImportItem",
    "Claim",
    "ExternalLocation",
    "LocationAddress",
    "GmbVerification",
    "VerificationDetails",
    "LocationMatchResult",
    "BusinessMatch",
    "ConfidenceReport",
    "BusinessScore",
    "RankingRun",
    "AspectRankingRun",
    "RankingCacheEntry",
]
