"""
Explanation Generator

Turns a MatchingScore into one sentence for the end user. Pure function:
the same score and address always give the same text.
"""

from parcel_locator.core.types import MatchingScore

STRONG_POOL_THRESHOLD = 80
STRONG_VEGETATION_THRESHOLD = 70
STRONG_SURFACE_THRESHOLD = 80
STRONG_ORIENTATION_THRESHOLD = 80
STRONG_CONTEXT_THRESHOLD = 70

POOL_MATCH_REASON = "une piscine est présente et correspond à celle de la photo"
POOL_MISSING_REASON = "aucune piscine n'est visible alors que la photo en montre une"
VEGETATION_REASON = "la végétation environnante correspond"
SURFACE_REASON = "la surface correspond aux informations de l'annonce"
ORIENTATION_REASON = "l'orientation du bâtiment correspond"
CONTEXT_REASON = "le prix et les caractéristiques sont cohérents avec les ventes de référence"

NOT_CONCLUSIVE = (
    "Cette adresse présente certaines similarités avec la photo, "
    "mais la correspondance n'est pas évidente."
)


def generate_explanation(score: MatchingScore, address: str) -> str:
    details = score.details
    reasons = []

    if details.pool_similarity > STRONG_POOL_THRESHOLD:
        reasons.append(POOL_MATCH_REASON)
    elif details.pool_similarity == 0:
        reasons.append(POOL_MISSING_REASON)
    if details.vegetation_match > STRONG_VEGETATION_THRESHOLD:
        reasons.append(VEGETATION_REASON)
    if details.surface_match > STRONG_SURFACE_THRESHOLD:
        reasons.append(SURFACE_REASON)
    if details.orientation_match > STRONG_ORIENTATION_THRESHOLD:
        reasons.append(ORIENTATION_REASON)
    if details.context_match > STRONG_CONTEXT_THRESHOLD:
        reasons.append(CONTEXT_REASON)

    if not reasons:
        return NOT_CONCLUSIVE
    return (
        f"Cette adresse ({address}) est proposée car {', '.join(reasons)}. "
        f"Score de confiance : {score.global_score}%."
    )
