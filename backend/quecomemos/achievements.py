"""Achievement notifications.

Badge bookkeeping lives outside this service. The managers only report what
happened through an :class:`AchievementNotifier` and surface whatever badges
it hands back.
"""
from dataclasses import dataclass, asdict
from enum import Enum
from typing import List

from flask import current_app


class AchievementEvent(str, Enum):
    GROUP_CREATED = 'group_created'
    MEAL_CREATED = 'meal_created'
    VOTING_PARTICIPATED = 'voting_participated'
    VOTING_WON = 'voting_won'
    GAME_CLICKER_WON = 'game_clicker_won'
    GAME_ROULETTE_WON = 'game_roulette_won'


@dataclass(frozen=True)
class BadgeEarned:
    code: str
    name: str
    level: int = 1

    def to_dict(self):
        return asdict(self)


class AchievementNotifier:
    def notify(self, profile_id: int, event: AchievementEvent) -> List[BadgeEarned]:
        raise NotImplementedError


class NullAchievementNotifier(AchievementNotifier):
    def notify(self, profile_id, event):
        return []


class LoggingAchievementNotifier(AchievementNotifier):
    def notify(self, profile_id, event):
        current_app.logger.info(f"[achievement] profile={profile_id} event={event.value}")
        return []


def notify_safely(notifier: AchievementNotifier, profile_id: int, event: AchievementEvent) -> List[BadgeEarned]:
    """Call the notifier; a failure is logged and yields no badges."""
    try:
        return list(notifier.notify(profile_id, event) or [])
    except Exception:
        current_app.logger.exception(f"[achievement-failed] profile={profile_id} event={event.value}")
        return []
