"""
Read-time ranking of accepted deals.

rank_deals() collapses the same offer listed by several dispensaries into
one representative, nearest first. Price scoring and display order are
computed afterwards so presentation never influences which copy survives.
"""

import math
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from ..archivist.models import AcceptedDeal
from ..common.geocoding import haversine_miles
from .quality import normalize_text

Coordinates = Tuple[float, float]

PERCENT_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*%")
NUMBER_PATTERN = re.compile(r"(\d+(?:\.\d+)?)")


@dataclass
class ScoredDeal:
    deal: AcceptedDeal
    score: float
    distance_miles: Optional[float] = None


def duplicate_group_key(deal: AcceptedDeal) -> Tuple[str, str]:
    return normalize_text(deal.title), normalize_text(deal.price_text)


def source_distance(
    deal: AcceptedDeal,
    origin: Optional[Coordinates],
    source_coordinates: Dict[str, Coordinates],
) -> Optional[float]:
    if origin is None:
        return None
    coords = source_coordinates.get(deal.dispensary_name)
    if coords is None:
        return None
    return haversine_miles(origin[0], origin[1], coords[0], coords[1])


def rank_deals(
    deals: Sequence[AcceptedDeal],
    origin: Optional[Coordinates] = None,
    source_coordinates: Optional[Dict[str, Coordinates]] = None,
) -> List[AcceptedDeal]:
    """Keep one deal per (normalized title, normalized price) group.

    With an origin the nearest dispensary wins and dispensaries without
    known coordinates lose to any that have them. Without an origin the
    first deal in input order wins. Groups come out in order of first
    appearance. Does not touch its inputs.
    """
    source_coordinates = source_coordinates or {}
    groups: Dict[Tuple[str, str], List[Tuple[int, AcceptedDeal]]] = {}
    for index, deal in enumerate(deals):
        groups.setdefault(duplicate_group_key(deal), []).append((index, deal))

    ranked: List[AcceptedDeal] = []
    for members in groups.values():
        if len(members) == 1 or origin is None:
            ranked.append(members[0][1])
            continue

        def nearest_first(member: Tuple[int, AcceptedDeal]):
            index, deal = member
            distance = source_distance(deal, origin, source_coordinates)
            return (distance is None, distance if distance is not None else 0.0, index)

        ranked.append(min(members, key=nearest_first)[1])
    return ranked


def parse_price_score(price_text: Optional[str]) -> float:
    """Lower is better.

    "30% off" -> 70, "2/$35" -> 17.5 per unit, "$25 each" -> 25 (first
    number), nothing numeric -> inf.
    """
    if not price_text:
        return math.inf
    percent = PERCENT_PATTERN.search(price_text.lower())
    if percent:
        return 100 - float(percent.group(1))

    numbers = [float(n) for n in NUMBER_PATTERN.findall(price_text)]
    if not numbers:
        return math.inf
    if "/$" in price_text and len(numbers) >= 2 and numbers[0] > 0:
        return numbers[1] / numbers[0]
    return numbers[0]


def score_deals(
    deals: Sequence[AcceptedDeal],
    origin: Optional[Coordinates] = None,
    source_coordinates: Optional[Dict[str, Coordinates]] = None,
) -> List[ScoredDeal]:
    """Attach price score and distance, then sort for display.

    Order: price score ascending, then distance when both sides have one,
    then newest first.
    """
    source_coordinates = source_coordinates or {}
    scored = [
        ScoredDeal(
            deal=deal,
            score=parse_price_score(deal.price_text),
            distance_miles=source_distance(deal, origin, source_coordinates),
        )
        for deal in deals
    ]

    def display_key(item: ScoredDeal):
        created = item.deal.created_at or datetime.min
        return (
            item.score,
            item.distance_miles if item.distance_miles is not None else math.inf,
            -created.timestamp() if created != datetime.min else math.inf,
        )

    return sorted(scored, key=display_key)
