"""Lead value and location suitability scoring."""

import re
from typing import Optional


class SuitabilityScorer:
    """
    Linear, explainable location suitability heuristic.

    score = 100 - 2 * distance_miles - 30 * utilization_rate
            + 20 premium bonus (lead_score >= 80 and utilization < 0.6)
            + 10 facebook bonus (source == facebook and facebook score > 0.8)
    floored at 0.
    """

    BASE_SCORE = 100.0
    DISTANCE_PENALTY_PER_MILE = 2.0
    UTILIZATION_PENALTY = 30.0

    PREMIUM_LEAD_SCORE = 80
    PREMIUM_MAX_UTILIZATION = 0.6
    PREMIUM_BONUS = 20.0

    FACEBOOK_MIN_PERFORMANCE = 0.8
    FACEBOOK_BONUS = 10.0

    @classmethod
    def score(
        cls,
        distance_miles: float,
        utilization_rate: float,
        lead_score: int,
        source: Optional[str],
        facebook_performance_score: float = 0.0,
    ) -> float:
        utilization_rate = utilization_rate or 0.0

        score = cls.BASE_SCORE
        score -= distance_miles * cls.DISTANCE_PENALTY_PER_MILE
        score -= utilization_rate * cls.UTILIZATION_PENALTY

        if lead_score >= cls.PREMIUM_LEAD_SCORE and utilization_rate < cls.PREMIUM_MAX_UTILIZATION:
            score += cls.PREMIUM_BONUS

        if source == "facebook" and (facebook_performance_score or 0.0) > cls.FACEBOOK_MIN_PERFORMANCE:
            score += cls.FACEBOOK_BONUS

        return max(0.0, score)


class LeadScoringService:
    """Estimate a lead value score (1-100) when the caller does not supply one."""

    # Base score by acquisition channel
    SOURCE_SCORES = {
        'facebook': 70,
        'google': 80,
        'website': 75,
        'referral': 90,
        'walk_in': 85,
        'unknown': 40,
    }
    DEFAULT_SOURCE_SCORE = 40

    EMAIL_BONUS = 10
    PHONE_BONUS = 10
    CAMPAIGN_BONUS = 5

    EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
    PHONE_PATTERN = re.compile(r'^[\+]?[1-9]?[\d\s\-\(\)]{10,}$')

    @staticmethod
    def is_valid_email(email: Optional[str]) -> bool:
        return bool(email) and LeadScoringService.EMAIL_PATTERN.match(email) is not None

    @staticmethod
    def is_valid_phone(phone: Optional[str]) -> bool:
        return bool(phone) and LeadScoringService.PHONE_PATTERN.match(phone) is not None

    @staticmethod
    def estimate_lead_score(
        source: Optional[str],
        email: Optional[str] = None,
        phone: Optional[str] = None,
        utm_campaign: Optional[str] = None,
    ) -> int:
        score = LeadScoringService.SOURCE_SCORES.get(
            (source or '').lower(),
            LeadScoringService.DEFAULT_SOURCE_SCORE
        )

        if LeadScoringService.is_valid_email(email):
            score += LeadScoringService.EMAIL_BONUS
        if LeadScoringService.is_valid_phone(phone):
            score += LeadScoringService.PHONE_BONUS
        if utm_campaign:
            score += LeadScoringService.CAMPAIGN_BONUS

        return min(100, max(1, round(score)))
