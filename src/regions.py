"""
Regional clusters and the platform codes routed through each of them.

A region owns one crawl scheduler and one rate-limit scope.
"""

from enum import Enum
from typing import Dict, List, Optional


class Region(Enum):
    """Riot match-v5 routing clusters."""
    AMERICAS = "americas"
    EUROPE = "europe"
    ASIA = "asia"
    SEA = "sea"

    @property
    def label(self) -> str:
        return self.value

    @property
    def base_url(self) -> str:
        return f"https://{self.value}.api.riotgames.com"

    @property
    def account_base_url(self) -> str:
        """account-v1 is not served from the sea cluster."""
        host = ACCOUNT_ROUTING.get(self, self.value)
        return f"https://{host}.api.riotgames.com"

    @property
    def match_prefixes(self) -> List[str]:
        """Match ID prefixes (platform IDs) stored under this cluster."""
        return list(REGION_TO_PREFIXES[self])


ACCOUNT_ROUTING: Dict[Region, str] = {
    Region.SEA: "europe",
}

REGION_TO_PREFIXES: Dict[Region, List[str]] = {
    Region.AMERICAS: ["NA1", "BR1", "LA1", "LA2"],
    Region.EUROPE: ["EUW1", "EUN1", "TR1", "RU"],
    Region.ASIA: ["KR", "JP1"],
    Region.SEA: ["OC1", "SG2", "TW2", "VN2", "PH2", "TH2"],
}

PLATFORM_TO_REGION: Dict[str, Region] = {
    "na1": Region.AMERICAS,
    "br1": Region.AMERICAS,
    "la1": Region.AMERICAS,
    "la2": Region.AMERICAS,
    "oc1": Region.SEA,
    "euw1": Region.EUROPE,
    "eun1": Region.EUROPE,
    "tr1": Region.EUROPE,
    "ru": Region.EUROPE,
    "kr": Region.ASIA,
    "jp1": Region.ASIA,
    "sg2": Region.SEA,
    "tw2": Region.SEA,
    "vn2": Region.SEA,
    "ph2": Region.SEA,
    "th2": Region.SEA,
}


def parse_region(value: str) -> Optional[Region]:
    """Accept a cluster name ('europe') or a platform code ('euw1')."""
    normalized = value.strip().lower()
    for region in Region:
        if region.value == normalized:
            return region
    return PLATFORM_TO_REGION.get(normalized)
