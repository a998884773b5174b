import random
from datetime import datetime
from typing import List, Optional

from quecomemos.errors import PhaseError, ValidationError
from quecomemos.models import GameParticipant


def pick_click_winner(participants: List[GameParticipant]) -> GameParticipant:
    """Highest click count wins.

    Ties go to the earliest submission, then to the participant who joined
    first (lowest id).
    """
    if not participants:
        raise PhaseError('No submitted participants to pick a winner from')

    def rank(p):
        submitted = p.submitted_at or datetime.max
        return (-int(p.click_count or 0), submitted, p.id)

    return min(participants, key=rank)


def roulette_eligible(participants: List[GameParticipant]) -> List[GameParticipant]:
    return sorted((p for p in participants if p.meal_id is not None), key=lambda p: p.id)


def pick_roulette_winner(eligible: List[GameParticipant], rng: random.Random,
                         winner_profile_id: Optional[int] = None) -> GameParticipant:
    if not eligible:
        raise PhaseError('No meal proposals to select from')
    if winner_profile_id is not None:
        for p in eligible:
            if p.profile_id == winner_profile_id:
                return p
        raise ValidationError(f"Profile {winner_profile_id} has no meal in this roulette")
    return eligible[rng.randrange(len(eligible))]
