import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))


class FakeClock:
    """Monotonic clock whose sleep advances time instead of waiting."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += max(0.0, seconds)
        await asyncio.sleep(0)


def make_match(match_id: str, puuids: List[str], version: str = "15.3.652.1234",
               creation: int = 0, champion: Optional[str] = None) -> dict:
    return {
        "metadata": {"matchId": match_id, "participants": list(puuids)},
        "info": {
            "gameCreation": creation,
            "gameDuration": 1200,
            "gameVersion": version,
            "queueId": 450,
            "participants": [
                {
                    "puuid": puuid,
                    "championName": champion or f"Champ{i}",
                    "win": i % 2 == 0,
                    "kills": 5,
                    "deaths": 3,
                    "assists": 10,
                    "totalDamageDealtToChampions": 20000,
                    "totalHealsOnTeammates": 100,
                    "teamId": 100 if i < 5 else 200,
                }
                for i, puuid in enumerate(puuids)
            ],
        },
    }


@pytest.fixture
def clock():
    return FakeClock()
