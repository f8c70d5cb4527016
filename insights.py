"""
Brand insights: a single in-memory pass over a brand's products and the
reviews written for them.
"""

from collections import Counter
from typing import Any, Dict, List, Optional

from catalog import round_rating

AGE_BUCKETS = [(18, "Under 18"), (25, "18-24"), (35, "25-34"), (45, "35-44"), (55, "45-54")]
GENDERS = ["Male", "Female", "Other", "Not Specified"]


def age_range(age: int) -> str:
    for limit, label in AGE_BUCKETS:
        if age < limit:
            return label
    return "55+"


def for_chart(counts: Dict[str, int], limit: Optional[int] = None) -> List[Dict[str, Any]]:
    # sorted() is stable, so ties keep first-seen order
    entries = sorted(counts.items(), key=lambda kv: kv[1], reverse=True)
    if limit:
        entries = entries[:limit]
    return [{"label": label, "value": value} for label, value in entries]


def build_insights(products: List[Dict], reviews: List[Dict], testers: Dict[str, Dict]) -> Dict[str, Any]:
    """Summarise reviews of ``products``.

    ``reviews`` hold product/tester ids as strings; ``testers`` maps a
    tester id to its user document (age, gender, interests).
    """
    if not products:
        return {
            "review_count": 0,
            "average_rating": 0,
            "age_distribution": [],
            "gender_distribution": [],
            "product_performance": [],
            "user_interests": [],
        }

    ages: Counter = Counter()
    interests: Counter = Counter()
    genders: Counter = Counter({g: 0 for g in GENDERS})
    per_product: Dict[str, List[int]] = {str(p["_id"]): [] for p in products}

    for r in reviews:
        if r["product"] in per_product:
            per_product[r["product"]].append(r["rating"])
        user = testers.get(r["tester"]) or {}
        if user.get("age"):
            ages[age_range(user["age"])] += 1
        for interest in user.get("interests") or []:
            interests[interest] += 1
        genders[user.get("gender") or "Not Specified"] += 1

    performance = []
    for p in products:
        ratings = per_product[str(p["_id"])]
        performance.append({
            "id": str(p["_id"]),
            "title": p.get("title"),
            "category": p.get("category"),
            "review_count": len(ratings),
            "average_rating": round_rating(sum(ratings), len(ratings)),
        })

    return {
        "review_count": len(reviews),
        "average_rating": round_rating(sum(r["rating"] for r in reviews), len(reviews)),
        "age_distribution": for_chart(ages),
        "gender_distribution": for_chart(genders),
        "product_performance": performance,
        "user_interests": for_chart(interests, 5),
    }
