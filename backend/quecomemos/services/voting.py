"""Group meal votes: proposal_phase -> voting_phase -> completed.

Sessions that run out their clock without any activity are deleted instead
of advanced.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional

from flask import current_app
from sqlalchemy import delete, distinct, exists, func, update
from sqlalchemy.exc import IntegrityError

from quecomemos import db
from quecomemos.achievements import AchievementEvent, NullAchievementNotifier, notify_safely
from quecomemos.errors import (
    ConflictError,
    DeadlineError,
    NotFoundError,
    PhaseError,
    SessionError,
    ValidationError,
)
from quecomemos.events import NullEventSink, group_room, voting_room
from quecomemos.models import (
    VOTE_TYPES,
    VOTING_ACTIVE_STATUSES,
    Group,
    Meal,
    MealConsumption,
    MealProposal,
    Profile,
    UserProposalConfirmation,
    UserVoteConfirmation,
    Vote,
    VotingSession,
    VotingSessionParticipant,
    utcnow,
)
from quecomemos.services.common import (
    active_member_ids,
    config_seconds,
    emit_safely,
    get_or_raise,
    lock_phase,
    require_member,
    transition,
)


@dataclass
class VoteResult:
    vote: Vote
    created: bool
    vote_count: int
    badges: list


@dataclass
class ConfirmationResult:
    confirmation: object
    created: bool
    advanced: bool
    confirmed: int
    required: int


def pick_winning_proposal(proposals: List[MealProposal], counts: Dict[int, int]) -> Optional[MealProposal]:
    """Most up-votes wins; ties go to the earliest proposal (lowest id)."""
    best = None
    for proposal in sorted(proposals, key=lambda p: p.id):
        if best is None or counts.get(proposal.id, 0) > counts.get(best.id, 0):
            best = proposal
    return best


def _up_vote_count(proposal_id):
    return (
        db.session.query(func.count(distinct(Vote.voter_id)))
        .filter(Vote.meal_proposal_id == proposal_id, Vote.is_active.is_(True), Vote.vote_type == 'up')
        .scalar_subquery()
    )


class VotingSessionManager:
    def __init__(self, linker, events=None, achievements=None, clock=utcnow):
        self.linker = linker
        self.events = events or NullEventSink()
        self.achievements = achievements or NullAchievementNotifier()
        self.clock = clock

    def _rooms(self, session):
        return [group_room(session.group_id), voting_room(session.id)]

    # ---- lifecycle ----

    def start_voting_session(self, initiator_id: int, group_id: int, title: str = None, description: str = None) -> VotingSession:
        get_or_raise(Group, group_id, 'Group')
        require_member(group_id, initiator_id, 'start a voting session')
        self.reclaim_stale_sessions(group_id)

        active = VotingSession.query.filter_by(active_group_id=group_id).first()
        if active is not None:
            raise ConflictError(f"Group {group_id} already has an active voting session ({active.id})")

        now = self.clock()
        session = VotingSession(
            group_id=group_id,
            active_group_id=group_id,
            initiator_id=initiator_id,
            title=title or f"Meal Vote - {now.strftime('%Y-%m-%d')}",
            description=description,
            status='proposal_phase',
            created_at=now,
            proposal_ends_at=now + timedelta(seconds=config_seconds('PROPOSAL_PHASE_DURATION_SEC', 300)),
        )
        db.session.add(session)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise ConflictError(f"Group {group_id} already has an active voting session")

        current_app.logger.info(
            f"[voting-start] session={session.id} group={group_id} initiator={initiator_id} ends={session.proposal_ends_at.isoformat()}"
        )
        emit_safely(self.events, 'voting:session:created', {'session': session.to_dict()}, self._rooms(session))
        return session

    def propose_meal(self, session_id: int, meal_id: int, proposed_by_id: int) -> MealProposal:
        session = get_or_raise(VotingSession, session_id, 'Voting session')
        if session.status != 'proposal_phase':
            raise PhaseError(f"Voting session {session_id} is {session.status}; proposals are closed")
        if self.clock() >= session.proposal_ends_at:
            raise DeadlineError(f"Proposal phase of voting session {session_id} has ended")
        require_member(session.group_id, proposed_by_id, 'propose meals')
        get_or_raise(Meal, meal_id, 'Meal')

        duplicate = MealProposal.query.filter_by(voting_session_id=session_id, meal_id=meal_id).first()
        if duplicate is not None:
            raise ConflictError(f"Meal {meal_id} was already proposed in voting session {session_id}")

        lock_phase(VotingSession, session_id, ('proposal_phase',))
        proposal = MealProposal(
            voting_session_id=session_id,
            meal_id=meal_id,
            proposed_by_id=proposed_by_id,
            proposed_at=self.clock(),
        )
        db.session.add(proposal)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise ConflictError(f"Meal {meal_id} was already proposed in voting session {session_id}")

        current_app.logger.info(f"[voting-propose] session={session_id} meal={meal_id} by={proposed_by_id}")
        emit_safely(
            self.events, 'voting:meal:proposed',
            {'session_id': session_id, 'proposal': proposal.to_dict()},
            self._rooms(session),
        )
        return proposal

    def start_voting_phase(self, session_id: int) -> VotingSession:
        session = get_or_raise(VotingSession, session_id, 'Voting session')
        if session.status != 'proposal_phase':
            raise PhaseError(f"Voting session {session_id} is {session.status}, expected proposal_phase")
        has_proposals = exists().where(
            MealProposal.voting_session_id == session_id, MealProposal.is_active.is_(True)
        )
        if not db.session.query(has_proposals).scalar():
            raise PhaseError(f"Voting session {session_id} has no proposals")

        ends_at = self.clock() + timedelta(seconds=config_seconds('VOTING_PHASE_DURATION_SEC', 600))
        transition(
            VotingSession, session_id, ('proposal_phase',),
            {'status': 'voting_phase', 'voting_ends_at': ends_at},
            has_proposals,
        )
        db.session.commit()

        session = db.session.get(VotingSession, session_id)
        current_app.logger.info(f"[voting-phase] session={session_id} group={session.group_id} ends={ends_at.isoformat()}")
        data = session.to_dict()
        emit_safely(
            self.events, 'voting:phase:started',
            {'session_id': session_id, 'voting_ends_at': data['voting_ends_at'], 'session': data},
            self._rooms(session),
        )
        return session

    def cast_vote(self, session_id: int, proposal_id: int, voter_id: int, vote_type: str = 'up') -> VoteResult:
        if vote_type not in VOTE_TYPES:
            raise ValidationError(f"vote_type must be one of {', '.join(VOTE_TYPES)}")
        session = get_or_raise(VotingSession, session_id, 'Voting session')
        if session.status != 'voting_phase':
            raise PhaseError(f"Voting session {session_id} is {session.status}; voting is not open")
        if session.voting_ends_at is not None and self.clock() >= session.voting_ends_at:
            raise DeadlineError(f"Voting phase of voting session {session_id} has ended")
        require_member(session.group_id, voter_id, 'vote')
        proposal = MealProposal.query.filter_by(id=proposal_id, voting_session_id=session_id, is_active=True).first()
        if proposal is None:
            raise NotFoundError(f"Proposal {proposal_id} not found in voting session {session_id}")

        vote, created = None, False
        for attempt in range(2):
            lock_phase(VotingSession, session_id, ('voting_phase',))
            vote = Vote.query.filter_by(meal_proposal_id=proposal_id, voter_id=voter_id).first()
            created = vote is None
            if created:
                vote = Vote(voting_session_id=session_id, meal_proposal_id=proposal_id, voter_id=voter_id)
                db.session.add(vote)
            vote.vote_type = vote_type
            vote.is_active = True
            vote.voted_at = self.clock()
            try:
                db.session.flush()
                break
            except IntegrityError:
                # A concurrent insert won; update that row instead
                db.session.rollback()
                if attempt:
                    raise ConflictError(f"Could not record vote on proposal {proposal_id}")

        db.session.execute(
            update(MealProposal)
            .where(MealProposal.id == proposal_id)
            .values(vote_count=_up_vote_count(proposal_id))
            .execution_options(synchronize_session=False)
        )
        db.session.commit()

        vote_count = db.session.get(MealProposal, proposal_id).vote_count
        self.linker.track_participant(session, voter_id)
        badges = notify_safely(self.achievements, voter_id, AchievementEvent.VOTING_PARTICIPATED)
        current_app.logger.info(
            f"[voting-vote] session={session_id} proposal={proposal_id} voter={voter_id} type={vote_type} count={vote_count}"
        )
        emit_safely(
            self.events, 'voting:vote:cast',
            {'session_id': session_id, 'proposal_id': proposal_id, 'voter_id': voter_id,
             'vote_type': vote_type, 'vote_count': vote_count},
            self._rooms(session),
        )
        return VoteResult(vote=vote, created=created, vote_count=vote_count, badges=badges)

    def confirm_ready_for_voting(self, session_id: int, user_id: int) -> ConfirmationResult:
        return self._confirm(
            session_id, user_id, UserProposalConfirmation, 'proposal_phase',
            'voting:user:confirmed-ready', self.start_voting_phase,
        )

    def confirm_votes(self, session_id: int, user_id: int) -> ConfirmationResult:
        return self._confirm(
            session_id, user_id, UserVoteConfirmation, 'voting_phase',
            'voting:user:confirmed-votes', self.complete_voting_session,
        )

    def _confirm(self, session_id, user_id, model, phase, event, advance) -> ConfirmationResult:
        session = get_or_raise(VotingSession, session_id, 'Voting session')
        if session.status != phase:
            raise PhaseError(f"Voting session {session_id} is {session.status}, expected {phase}")
        require_member(session.group_id, user_id, 'confirm')

        members = set(active_member_ids(session.group_id))
        existing = model.query.filter_by(voting_session_id=session_id, user_id=user_id).first()
        if existing is not None:
            return ConfirmationResult(existing, False, False, self._confirmed_count(model, session_id, members), len(members))

        lock_phase(VotingSession, session_id, (phase,))
        confirmation = model(voting_session_id=session_id, user_id=user_id, confirmed_at=self.clock())
        db.session.add(confirmation)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            existing = model.query.filter_by(voting_session_id=session_id, user_id=user_id).first()
            return ConfirmationResult(existing, False, False, self._confirmed_count(model, session_id, members), len(members))

        self.linker.track_participant(session, user_id)
        confirmed = self._confirmed_count(model, session_id, members)
        current_app.logger.info(
            f"[voting-confirm] session={session_id} phase={phase} user={user_id} confirmed={confirmed}/{len(members)}"
        )
        emit_safely(
            self.events, event,
            {'session_id': session_id, 'user_id': user_id, 'confirmed': confirmed, 'required': len(members)},
            self._rooms(session),
        )

        advanced = False
        if members and confirmed >= len(members):
            try:
                advance(session_id)
                advanced = True
            except PhaseError as exc:
                current_app.logger.info(f"[voting-confirm] session={session_id} quorum reached but not advanced: {exc.message}")
        return ConfirmationResult(confirmation, True, advanced, confirmed, len(members))

    @staticmethod
    def _confirmed_count(model, session_id, members) -> int:
        rows = model.query.filter_by(voting_session_id=session_id, is_active=True).all()
        return len({r.user_id for r in rows} & members)

    def complete_voting_session(self, session_id: int) -> VotingSession:
        session = get_or_raise(VotingSession, session_id, 'Voting session')
        if session.status != 'voting_phase':
            raise PhaseError(f"Voting session {session_id} is {session.status}, expected voting_phase")

        now = self.clock()
        # Closes voting first; votes committed after this point fail their phase lock
        transition(
            VotingSession, session_id, ('voting_phase',),
            {'status': 'completed', 'completed_at': now, 'active_group_id': None},
        )

        proposals = (
            MealProposal.query.filter_by(voting_session_id=session_id, is_active=True)
            .order_by(MealProposal.id).all()
        )
        counts = dict(
            db.session.query(Vote.meal_proposal_id, func.count(distinct(Vote.voter_id)))
            .filter(Vote.voting_session_id == session_id, Vote.is_active.is_(True), Vote.vote_type == 'up')
            .group_by(Vote.meal_proposal_id)
            .all()
        )
        active_ids = {p.id for p in proposals}
        total_votes = sum(c for pid, c in counts.items() if pid in active_ids)
        winner = pick_winning_proposal(proposals, counts)
        winner_id = winner.id if winner else None
        winner_meal_id = winner.meal_id if winner else None
        winner_proposer_id = winner.proposed_by_id if winner else None

        db.session.execute(
            update(VotingSession)
            .where(VotingSession.id == session_id)
            .values(winner_meal_id=winner_meal_id, total_votes=total_votes)
            .execution_options(synchronize_session=False)
        )
        for pid in active_ids:
            db.session.execute(
                update(MealProposal)
                .where(MealProposal.id == pid)
                .values(vote_count=counts.get(pid, 0))
                .execution_options(synchronize_session=False)
            )
        db.session.commit()

        current_app.logger.info(
            f"[voting-complete] session={session_id} winner_proposal={winner_id} meal={winner_meal_id} total_votes={total_votes}"
        )
        return self._after_completion(session_id, winner_proposer_id)

    def _after_completion(self, session_id, winner_proposer_id) -> VotingSession:
        """Side effects for the caller that won the completion update."""
        session = db.session.get(VotingSession, session_id)
        try:
            self.linker.update_participant_deadlines(session)
        except Exception:
            db.session.rollback()
            current_app.logger.exception(f"[voting-complete] session={session_id} deadline update failed")

        badges = []
        if winner_proposer_id is not None:
            badges = notify_safely(self.achievements, winner_proposer_id, AchievementEvent.VOTING_WON)

        try:
            self.linker.record_group_consumption(session)
        except Exception:
            db.session.rollback()
            current_app.logger.exception(f"[voting-complete] session={session_id} group consumption failed")

        session = db.session.get(VotingSession, session_id)
        emit_safely(
            self.events, 'voting:completed',
            {
                'session': session.to_dict(),
                'winner_meal_id': session.winner_meal_id,
                'total_votes': session.total_votes,
                'winner_proposer_id': winner_proposer_id,
                'badges': [b.to_dict() for b in badges],
            },
            self._rooms(session),
        )
        return session

    # ---- sweeping ----

    def reclaim_stale_sessions(self, group_id: int = None) -> List[int]:
        """Delete expired sessions that never saw a proposal (or, once voting, a vote)."""
        now = self.clock()
        query = VotingSession.query.filter(VotingSession.status.in_(VOTING_ACTIVE_STATUSES))
        if group_id is not None:
            query = query.filter(VotingSession.group_id == group_id)

        reclaimed = []
        for session in query.order_by(VotingSession.id).all():
            if session.status == 'proposal_phase':
                expired = now >= session.proposal_ends_at
                activity = exists().where(
                    MealProposal.voting_session_id == session.id, MealProposal.is_active.is_(True)
                )
            else:
                expired = session.voting_ends_at is not None and now >= session.voting_ends_at
                activity = exists().where(Vote.voting_session_id == session.id, Vote.is_active.is_(True))
            if not expired or db.session.query(activity).scalar():
                continue
            sid, gid, status = session.id, session.group_id, session.status
            if self._delete_session(sid, status, activity):
                reclaimed.append(sid)
                current_app.logger.info(f"[voting-reclaim] session={sid} group={gid} status={status}")
                emit_safely(
                    self.events, 'voting:session:deleted',
                    {'session_id': sid, 'group_id': gid, 'reason': 'expired_without_activity'},
                    [group_room(gid), voting_room(sid)],
                )
        return reclaimed

    def _delete_session(self, session_id, status, activity) -> bool:
        try:
            # Still in the same phase and still idle, checked under the row lock
            transition(VotingSession, session_id, (status,), {'status': VotingSession.status}, ~activity)
        except PhaseError:
            return False
        for model in (UserProposalConfirmation, UserVoteConfirmation, VotingSessionParticipant, Vote, MealProposal):
            db.session.execute(delete(model).where(model.voting_session_id == session_id))
        db.session.execute(delete(VotingSession).where(VotingSession.id == session_id))
        db.session.commit()
        return True

    def check_and_transition_voting_sessions(self) -> List[dict]:
        results = []
        try:
            for sid in self.reclaim_stale_sessions():
                results.append({'action': 'deleted', 'session_id': sid})
        except Exception:
            db.session.rollback()
            current_app.logger.exception('[voting-sweep] reclaim failed')

        now = self.clock()
        to_vote = [
            s.id for s in VotingSession.query
            .filter(VotingSession.status == 'proposal_phase', VotingSession.proposal_ends_at <= now)
            .order_by(VotingSession.id).all()
        ]
        to_complete = [
            s.id for s in VotingSession.query
            .filter(VotingSession.status == 'voting_phase', VotingSession.voting_ends_at <= now)
            .order_by(VotingSession.id).all()
        ]
        for ids, step, action in (
            (to_vote, self.start_voting_phase, 'voting_started'),
            (to_complete, self.complete_voting_session, 'completed'),
        ):
            for sid in ids:
                try:
                    step(sid)
                    results.append({'action': action, 'session_id': sid})
                except SessionError as exc:
                    db.session.rollback()
                    current_app.logger.info(f"[voting-sweep] session={sid} skipped: {exc.message}")
                    results.append({'action': 'skipped', 'session_id': sid, 'error': exc.kind})
                except Exception:
                    db.session.rollback()
                    current_app.logger.exception(f"[voting-sweep] session={sid} failed")
                    results.append({'action': 'failed', 'session_id': sid})
        return results

    def cleanup_voting_session(self, session_id: int) -> Dict[str, int]:
        session = get_or_raise(VotingSession, session_id, 'Voting session')
        if session.status != 'completed':
            raise PhaseError(f"Voting session {session_id} is {session.status}; only completed sessions are cleaned up")
        counts = {}
        for key, model in (
            ('proposal_confirmations', UserProposalConfirmation),
            ('vote_confirmations', UserVoteConfirmation),
            ('votes', Vote),
            ('proposals', MealProposal),
        ):
            result = db.session.execute(
                update(model)
                .where(model.voting_session_id == session_id, model.is_active.is_(True))
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            counts[key] = result.rowcount
        db.session.commit()
        current_app.logger.info(f"[voting-cleanup] session={session_id} {counts}")
        return counts

    # ---- queries ----

    def get_session(self, session_id: int) -> VotingSession:
        return get_or_raise(VotingSession, session_id, 'Voting session')

    def get_session_details(self, session_id: int) -> dict:
        """Winner, tallies and each participant's portion.

        Participants whose portion window has closed are defaulted to the
        whole meal before the view is built.
        """
        get_or_raise(VotingSession, session_id, 'Voting session')
        self.linker.default_expired_participants(session_id)
        session = get_or_raise(VotingSession, session_id, 'Voting session')

        now = self.clock()
        proposals = (
            MealProposal.query.filter_by(voting_session_id=session_id, is_active=True)
            .order_by(MealProposal.vote_count.desc(), MealProposal.id).all()
        )
        records = {
            r.profile_id: r for r in
            MealConsumption.query.filter_by(voting_session_id=session_id, type='individual').all()
        }
        participants = []
        for p in VotingSessionParticipant.query.filter_by(voting_session_id=session_id).order_by(VotingSessionParticipant.id):
            profile = db.session.get(Profile, p.user_id)
            record = records.get(p.user_id)
            data = p.to_dict()
            data['username'] = profile.username if profile else None
            data['deadline_passed'] = p.portion_deadline is not None and now >= p.portion_deadline
            data['consumption'] = record.to_dict() if record else None
            participants.append(data)
        return {
            'session': session.to_dict(include_proposals=False),
            'winner_meal': session.winner_meal.to_dict(include_foods=True) if session.winner_meal else None,
            'proposals': [p.to_dict() for p in proposals],
            'participants': participants,
        }

    def get_active_sessions(self, group_id: int) -> List[VotingSession]:
        self.reclaim_stale_sessions(group_id)
        return (
            VotingSession.query
            .filter(VotingSession.group_id == group_id, VotingSession.status.in_(VOTING_ACTIVE_STATUSES))
            .order_by(VotingSession.created_at.desc())
            .all()
        )

    def get_confirmation_status(self, session_id: int) -> dict:
        session = get_or_raise(VotingSession, session_id, 'Voting session')
        members = active_member_ids(session.group_id)
        status = {'session_id': session_id, 'status': session.status, 'members': members}
        for key, model in (('proposal', UserProposalConfirmation), ('voting', UserVoteConfirmation)):
            confirmed = {
                r.user_id for r in model.query.filter_by(voting_session_id=session_id, is_active=True).all()
            }
            status[key] = {
                'confirmed': [m for m in members if m in confirmed],
                'pending': [m for m in members if m not in confirmed],
            }
        return status

    def get_group_history(self, group_id: int, limit: int = 20, offset: int = 0) -> List[dict]:
        sessions = (
            VotingSession.query
            .filter_by(group_id=group_id, status='completed')
            .order_by(VotingSession.completed_at.desc(), VotingSession.id.desc())
            .offset(offset).limit(limit).all()
        )
        history = []
        for s in sessions:
            winner = None
            if s.winner_meal_id is not None:
                winner = MealProposal.query.filter_by(voting_session_id=s.id, meal_id=s.winner_meal_id).first()
            initiator = db.session.get(Profile, s.initiator_id)
            history.append({
                'session': s.to_dict(include_proposals=False),
                'initiator': initiator.to_dict() if initiator else None,
                'winner_meal': s.winner_meal.to_dict() if s.winner_meal else None,
                'winner_vote_count': winner.vote_count if winner else 0,
                'total_votes': s.total_votes,
                'participant_count': VotingSessionParticipant.query.filter_by(voting_session_id=s.id).count(),
            })
        return history
