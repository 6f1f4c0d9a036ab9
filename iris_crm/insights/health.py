"""Keyword heuristic for scoring relationship health from communication history."""

from __future__ import annotations

from dataclasses import dataclass, field

BASE_SCORE = 0.5
TERM_WEIGHT = 0.05
DETAIL_BONUS = 0.1
DETAIL_WORD_THRESHOLD = 200
STRONG_SIGNAL_THRESHOLD = 2

POSITIVE_TERMS = ("success", "great", "excellent", "thank", "appreciate", "progress", "agree", "excited", "happy", "pleased")
ENGAGEMENT_TERMS = ("meeting", "call", "discuss", "follow up", "schedule", "plan", "sync", "review")
CONCERN_TERMS = ("issue", "problem", "delay", "concern", "worried", "missed", "late", "escalate", "urgent")
COLLABORATION_TERMS = ("team", "together", "collaborate", "partnership", "solution", "align", "joint", "shared")
DECISION_TERMS = ("agree", "decision", "approve", "move forward", "next steps", "timeline")


@dataclass
class RelationshipHealth:
    health_score: float
    summary: str
    trends: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    risk_indicators: list[str] = field(default_factory=list)
    strength_areas: list[str] = field(default_factory=list)


def _count_terms(text: str, terms: tuple[str, ...]) -> int:
    return sum(1 for term in terms if term in text)


def _summarize(score: float, factors: list[str]) -> str:
    joined = ", ".join(factors)
    if score >= 0.8:
        return (
            f"The relationship is very strong. {joined} indicate excellent engagement and positive momentum. "
            "Continue building on current success while monitoring for any emerging needs."
        )
    if score >= 0.6:
        return (
            f"The relationship is healthy. {joined} show good progress, with opportunities for deeper engagement. "
            "Focus on strengthening specific areas while maintaining current positive trends."
        )
    if score >= 0.4:
        return (
            f"The relationship is stable. {joined} suggest moderate engagement, with clear opportunities for "
            "strengthening the partnership. Consider implementing recommended actions to improve engagement."
        )
    if score >= 0.2:
        return (
            f"The relationship needs attention. {joined} indicate challenges that should be addressed proactively. "
            "Focus on addressing risk factors while building on existing strengths."
        )
    return (
        "The relationship requires immediate attention. Limited positive indicators found in recent communications. "
        "Implement recommended actions promptly to improve relationship health."
    )


def score_relationship_health(history: str) -> RelationshipHealth:
    text = history.lower()
    score = BASE_SCORE
    factors: list[str] = []
    trends: list[str] = []
    recommendations: list[str] = []
    risks: list[str] = []
    strengths: list[str] = []

    if len(history.split(" ")) > DETAIL_WORD_THRESHOLD:
        score += DETAIL_BONUS
        factors.append("detailed communication")
        strengths.append("Maintains detailed and thorough communication")
    else:
        recommendations.append("Increase communication detail and frequency")

    positive = _count_terms(text, POSITIVE_TERMS)
    score += positive * TERM_WEIGHT
    if positive > STRONG_SIGNAL_THRESHOLD:
        factors.append("strong positive sentiment")
        strengths.append("Consistently positive interactions")
        trends.append("Maintaining positive engagement")
    elif positive > 0:
        factors.append("positive sentiment")
    else:
        recommendations.append("Work on building more positive interactions")
        risks.append("Limited positive sentiment in communications")

    engagement = _count_terms(text, ENGAGEMENT_TERMS)
    score += engagement * TERM_WEIGHT
    if engagement > STRONG_SIGNAL_THRESHOLD:
        factors.append("high engagement")
        strengths.append("Regular and proactive engagement")
        trends.append("Maintaining consistent communication cadence")
    elif engagement > 0:
        factors.append("moderate engagement")
        recommendations.append("Increase frequency of check-ins and meetings")
    else:
        risks.append("Low engagement level")
        recommendations.append("Schedule regular check-ins to maintain engagement")

    concerns = _count_terms(text, CONCERN_TERMS)
    score -= concerns * TERM_WEIGHT
    if concerns > STRONG_SIGNAL_THRESHOLD:
        factors.append("multiple concerns noted")
        risks.append("Multiple issues or concerns raised")
        recommendations.append("Address outstanding concerns promptly")
        trends.append("Increasing number of concerns")
    elif concerns > 0:
        factors.append("some concerns noted")
        recommendations.append("Proactively follow up on noted concerns")

    collaboration = _count_terms(text, COLLABORATION_TERMS)
    score += collaboration * TERM_WEIGHT
    if collaboration > STRONG_SIGNAL_THRESHOLD:
        factors.append("strong collaboration")
        strengths.append("Strong collaborative partnership")
        trends.append("Growing partnership strength")
    elif collaboration > 0:
        factors.append("good collaboration")
        recommendations.append("Look for more opportunities to collaborate")
    else:
        recommendations.append("Foster more collaborative interactions")

    # decision terms shape the narrative only, never the score
    if _count_terms(text, DECISION_TERMS) > STRONG_SIGNAL_THRESHOLD:
        strengths.append("Clear decision-making process")
        trends.append("Efficient decision-making")
    else:
        recommendations.append("Work on clarifying decision-making processes")

    # the band follows the unrounded score; only the reported value is rounded
    score = max(0.0, min(1.0, score))
    if not recommendations:
        recommendations = ["Maintain current engagement levels", "Look for opportunities to deepen the partnership"]

    return RelationshipHealth(
        health_score=round(score, 2),
        summary=_summarize(score, factors),
        trends=trends or ["Insufficient history to determine trends"],
        recommendations=recommendations,
        risk_indicators=risks or ["No significant risks identified"],
        strength_areas=strengths or ["Building initial relationship foundation"],
    )
