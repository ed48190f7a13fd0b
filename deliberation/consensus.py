"""Consensus aggregation over statement feedback

Pure functions, no IO. Computes:
- Per-statement vote breakdowns for raw responses
- Per-statement vote breakdowns for consolidated buckets (votes recorded
  against a bucket's representative response resolve to the bucket)
- Participation / coverage metrics for the consensus matrix
- "Most agreed" and "most divisive" summaries
"""

import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from config import get_logger
from database.models import (
    FEEDBACK_VALUES,
    AgreementSummary,
    ConsensusItem,
    ConsensusMetrics,
    ConsolidationResult,
    FeedbackVote,
    Response,
    SemanticBucket,
)

logger = get_logger(__name__).bind(component="consensus")


@dataclass(frozen=True)
class AgreementOptions:
    """Thresholds for agreement/divisive summaries (percentages are 0-100)"""

    min_votes: int = 5
    max_per_type: int = 5
    agreement_agree_percent_min: int = 70
    divisive_agree_percent_min: int = 40
    divisive_agree_percent_max: int = 60
    divisive_disagree_percent_min: int = 35


def round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative values (no banker's rounding)"""
    return int(math.floor(value + 0.5))


def clamp_percent(value: float) -> int:
    if not math.isfinite(value):
        return 0
    return int(max(0, min(100, value)))


def latest_votes(feedback_rows: Iterable[FeedbackVote]) -> List[FeedbackVote]:
    """One vote per (statement, voter); later rows overwrite earlier ones"""
    live: Dict[Tuple[str, str], FeedbackVote] = {}
    for vote in feedback_rows:
        key = (vote.statement_id, vote.voter_id)
        live.pop(key, None)
        live[key] = vote
    return list(live.values())


def tally_votes(votes: Iterable[FeedbackVote]) -> Dict[str, Dict[str, int]]:
    """statement_id -> {agree, pass, disagree} counts"""
    counts: Dict[str, Dict[str, int]] = {}
    for vote in votes:
        if vote.value not in FEEDBACK_VALUES:
            continue
        bucket = counts.setdefault(vote.statement_id, {v: 0 for v in FEEDBACK_VALUES})
        bucket[vote.value] += 1
    return counts


def build_consensus_item(statement_id: str, text: str, counts: Optional[Mapping[str, int]]) -> ConsensusItem:
    """Vote counts and percentages for one statement

    pass_percent absorbs rounding so the three percentages sum to 100.
    """
    agree = counts["agree"] if counts else 0
    passed = counts["pass"] if counts else 0
    disagree = counts["disagree"] if counts else 0
    total = agree + passed + disagree

    if total == 0:
        return ConsensusItem(id=statement_id, text=text)

    agree_percent = clamp_percent(round_half_up(agree / total * 100))
    disagree_percent = clamp_percent(round_half_up(disagree / total * 100))
    pass_percent = clamp_percent(100 - agree_percent - disagree_percent)

    return ConsensusItem(
        id=statement_id,
        text=text,
        agree_votes=agree,
        pass_votes=passed,
        disagree_votes=disagree,
        total_votes=total,
        agree_percent=agree_percent,
        pass_percent=pass_percent,
        disagree_percent=disagree_percent,
    )


def compute_response_consensus_items(
    responses: Sequence[Response], feedback_rows: Iterable[FeedbackVote]
) -> List[ConsensusItem]:
    """Consensus items for raw responses

    Responses nobody voted on are omitted.
    """
    counts = tally_votes(latest_votes(feedback_rows))
    items = []
    for response in responses:
        item = build_consensus_item(response.id, response.text, counts.get(response.id))
        if item.total_votes > 0:
            items.append(item)
    return items


def compute_consolidated_consensus_items(
    buckets: Mapping[str, SemanticBucket],
    unconsolidated: Sequence[Response],
    feedback_rows: Iterable[FeedbackVote],
) -> List[ConsensusItem]:
    """Consensus items for consolidated statements plus leftover responses

    Votes on a bucket are the votes cast on its representative response (the
    first response id); they are not summed across members. Voted items come
    first, then unvoted items, each group in input order.

    Args:
        buckets: bucket_id -> bucket, in display order
        unconsolidated: Responses that are their own statement
        feedback_rows: Raw feedback for the conversation
    """
    counts = tally_votes(latest_votes(feedback_rows))
    voted: List[ConsensusItem] = []
    unvoted: List[ConsensusItem] = []

    for bucket_id, bucket in buckets.items():
        rep = bucket.representative_id
        item = build_consensus_item(
            bucket_id, bucket.consolidated_statement, counts.get(rep) if rep else None
        )
        (voted if item.total_votes > 0 else unvoted).append(item)

    for response in unconsolidated:
        item = build_consensus_item(response.id, response.text, counts.get(response.id))
        (voted if item.total_votes > 0 else unvoted).append(item)

    return voted + unvoted


def compute_consensus_metrics(
    statements: Sequence[ConsensusItem],
    feedback_rows: Iterable[FeedbackVote],
    author_ids: Iterable[Optional[str]] = (),
) -> ConsensusMetrics:
    """Participation and coverage for the consensus matrix

    participants = response authors | voters
    participant_voting_percent = voters / participants
    vote_coverage_percent = votes / (voters * statements)
    """
    votes = latest_votes(feedback_rows)
    voter_ids = {vote.voter_id for vote in votes}
    participant_ids = {a for a in author_ids if a} | voter_ids

    total_votes = len(votes)
    unique_voters = len(voter_ids)
    total_participants = len(participant_ids)
    total_statements = len(statements)

    participant_voting_percent = (
        round_half_up(unique_voters / total_participants * 100) if total_participants > 0 else 0
    )

    # Voters (not participants): people can vote without having responded
    max_possible_votes = unique_voters * total_statements
    vote_coverage_percent = (
        round_half_up(total_votes / max_possible_votes * 100) if max_possible_votes > 0 else 0
    )

    return ConsensusMetrics(
        total_votes=total_votes,
        total_participants=total_participants,
        unique_voters=unique_voters,
        total_statements=total_statements,
        participant_voting_percent=participant_voting_percent,
        vote_coverage_percent=vote_coverage_percent,
    )


def bucket_statement_id(cluster_index: int, position: int) -> str:
    """Stable id for a consolidated statement before it has a database row"""
    return f"cluster-{cluster_index}-bucket-{position}"


def compute_conversation_consensus(
    responses: Sequence[Response],
    consolidations: Sequence[ConsolidationResult],
    feedback_rows: Sequence[FeedbackVote],
) -> Tuple[List[ConsensusItem], ConsensusMetrics]:
    """Consensus items and metrics for a whole conversation

    Uses consolidated statements when any bucket exists, otherwise raw responses.
    """
    by_id = {r.id: r for r in responses}
    has_buckets = any(result.buckets for result in consolidations)

    if has_buckets:
        buckets: Dict[str, SemanticBucket] = {}
        leftovers: List[Response] = []
        for result in consolidations:
            for position, bucket in enumerate(result.buckets):
                buckets[bucket_statement_id(result.cluster_index, position)] = bucket
            leftovers.extend(by_id[rid] for rid in result.unconsolidated_ids if rid in by_id)
        items = compute_consolidated_consensus_items(buckets, leftovers, feedback_rows)
    else:
        items = compute_response_consensus_items(responses, feedback_rows)

    metrics = compute_consensus_metrics(items, feedback_rows, (r.author_id for r in responses))

    logger.debug(
        "computed consensus",
        consolidated=has_buckets,
        statements=metrics.total_statements,
        votes=metrics.total_votes,
        voters=metrics.unique_voters,
    )
    return items, metrics


def compute_agreement_summaries(
    responses: Sequence[Response],
    feedback_rows: Iterable[FeedbackVote],
    options: Optional[AgreementOptions] = None,
) -> List[AgreementSummary]:
    """Most-agreed and most-divisive raw responses"""
    counts = tally_votes(latest_votes(feedback_rows))
    items = [build_consensus_item(r.id, r.text, counts.get(r.id)) for r in responses]
    return summarize_agreement(items, options)


def summarize_agreement(
    items: Sequence[ConsensusItem],
    options: Optional[AgreementOptions] = None,
) -> List[AgreementSummary]:
    """Most-agreed and most-divisive statements among computed consensus items

    Agreement: agree% >= 70, sorted by agree% then vote count.
    Divisive: agree% within [40, 60] and disagree% >= 35, sorted by closeness
    to a 50/50 split, then by the size of the smaller side.
    Statements with fewer than min_votes are ignored.
    """
    options = options or AgreementOptions()
    rows = [item for item in items if item.total_votes >= options.min_votes and item.total_votes > 0]

    agreement = sorted(
        (r for r in rows if r.agree_percent >= options.agreement_agree_percent_min),
        key=lambda r: (-r.agree_percent, -r.total_votes, r.id),
    )[: options.max_per_type]

    divisive = sorted(
        (
            r
            for r in rows
            if options.divisive_agree_percent_min <= r.agree_percent <= options.divisive_agree_percent_max
            and r.disagree_percent >= options.divisive_disagree_percent_min
        ),
        key=lambda r: (
            abs(r.agree_percent - 50),
            -min(r.agree_votes, r.disagree_votes),
            -r.total_votes,
            r.id,
        ),
    )[: options.max_per_type]

    def _summary(item: ConsensusItem, kind: str) -> AgreementSummary:
        return AgreementSummary(
            id=item.id,
            text=item.text,
            type=kind,
            agree_percent=item.agree_percent,
            pass_percent=item.pass_percent,
            disagree_percent=item.disagree_percent,
            total_votes=item.total_votes,
        )

    return [_summary(r, "agreement") for r in agreement] + [_summary(r, "divisive") for r in divisive]
