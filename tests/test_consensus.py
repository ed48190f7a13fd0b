"""
Tests for consensus aggregation

Latest-vote semantics, percentage rounding, bucket representative
resolution, participation metrics and agreement/divisive summaries.
"""

from database.models import ConsolidationResult, FeedbackVote, Response, SemanticBucket
from deliberation.consensus import (
    AgreementOptions,
    bucket_statement_id,
    build_consensus_item,
    compute_agreement_summaries,
    compute_consensus_metrics,
    compute_consolidated_consensus_items,
    compute_conversation_consensus,
    compute_response_consensus_items,
    latest_votes,
    round_half_up,
    summarize_agreement,
    tally_votes,
)


def vote(statement_id, voter_id, value):
    return FeedbackVote(statement_id=statement_id, voter_id=voter_id, value=value)


def votes_for(statement_id, agree=0, passed=0, disagree=0, prefix="v"):
    rows = []
    n = 0
    for value, count in (("agree", agree), ("pass", passed), ("disagree", disagree)):
        for _ in range(count):
            rows.append(vote(statement_id, f"{prefix}{statement_id}-{n}", value))
            n += 1
    return rows


class TestLatestVotes:
    def test_latest_vote_wins(self):
        rows = [vote("r1", "u1", "agree"), vote("r1", "u1", "disagree")]
        live = latest_votes(rows)
        assert len(live) == 1
        assert live[0].value == "disagree"

    def test_votes_on_different_statements_are_independent(self):
        rows = [vote("r1", "u1", "agree"), vote("r2", "u1", "pass")]
        assert len(latest_votes(rows)) == 2

    def test_tally_counts_each_value(self):
        counts = tally_votes(votes_for("r1", agree=2, passed=1, disagree=3))
        assert counts["r1"] == {"agree": 2, "pass": 1, "disagree": 3}


class TestPercentages:
    def test_round_half_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(0.5) == 1
        assert round_half_up(2.4999) == 2

    def test_pass_percent_absorbs_rounding(self):
        """1/1/1 votes: 33 + 33 with pass taking the remainder"""
        item = build_consensus_item("r1", "text", {"agree": 1, "pass": 1, "disagree": 1})
        assert item.agree_percent == 33
        assert item.disagree_percent == 33
        assert item.pass_percent == 34
        assert item.agree_percent + item.pass_percent + item.disagree_percent == 100

    def test_half_percent_rounds_up(self):
        """1 of 8 agree is 12.5%"""
        item = build_consensus_item("r1", "text", {"agree": 1, "pass": 7, "disagree": 0})
        assert item.agree_percent == 13
        assert item.pass_percent == 87

    def test_no_votes_is_all_zero(self):
        item = build_consensus_item("r1", "text", None)
        assert item.total_votes == 0
        assert (item.agree_percent, item.pass_percent, item.disagree_percent) == (0, 0, 0)


class TestResponseConsensus:
    def test_unvoted_responses_are_omitted(self):
        responses = [Response(id="r1", text="one"), Response(id="r2", text="two")]
        items = compute_response_consensus_items(responses, [vote("r1", "u1", "agree")])
        assert [i.id for i in items] == ["r1"]
        assert items[0].agree_percent == 100

    def test_changed_vote_counts_once(self):
        responses = [Response(id="r1", text="one")]
        rows = [vote("r1", "u1", "agree"), vote("r1", "u2", "agree"), vote("r1", "u1", "disagree")]
        item = compute_response_consensus_items(responses, rows)[0]
        assert item.total_votes == 2
        assert item.agree_votes == 1
        assert item.disagree_votes == 1


class TestConsolidatedConsensus:
    def test_bucket_votes_come_from_representative_only(self):
        buckets = {
            "b1": SemanticBucket(
                bucket_name="Parking",
                consolidated_statement="More parking downtown.",
                response_ids=["r1", "r2"],
            )
        }
        rows = [vote("r1", "u1", "agree"), vote("r2", "u2", "disagree")]
        items = compute_consolidated_consensus_items(buckets, [], rows)
        assert len(items) == 1
        assert items[0].id == "b1"
        assert items[0].text == "More parking downtown."
        assert items[0].total_votes == 1
        assert items[0].agree_votes == 1

    def test_voted_items_come_first(self):
        buckets = {
            "b1": SemanticBucket(bucket_name="A", consolidated_statement="A", response_ids=["r1"]),
            "b2": SemanticBucket(bucket_name="B", consolidated_statement="B", response_ids=["r2"]),
        }
        leftovers = [Response(id="r3", text="three")]
        rows = [vote("r3", "u1", "pass"), vote("r2", "u1", "agree")]
        items = compute_consolidated_consensus_items(buckets, leftovers, rows)
        assert [i.id for i in items] == ["b2", "r3", "b1"]

    def test_conversation_uses_buckets_when_present(self):
        responses = [Response(id=f"r{i}", text=f"text {i}", author_id=f"a{i}") for i in range(3)]
        consolidations = [
            ConsolidationResult(
                cluster_index=0,
                buckets=[
                    SemanticBucket(
                        bucket_name="Group",
                        consolidated_statement="Merged",
                        response_ids=["r0", "r1"],
                    )
                ],
                unconsolidated_ids=["r2"],
            )
        ]
        items, metrics = compute_conversation_consensus(responses, consolidations, [vote("r0", "u9", "agree")])
        assert [i.id for i in items] == [bucket_statement_id(0, 0), "r2"]
        assert metrics.total_statements == 2
        assert metrics.total_participants == 4

    def test_conversation_falls_back_to_raw_responses(self):
        responses = [Response(id="r1", text="one"), Response(id="r2", text="two")]
        consolidations = [ConsolidationResult(cluster_index=0, unconsolidated_ids=["r1", "r2"])]
        items, _ = compute_conversation_consensus(responses, consolidations, [vote("r2", "u1", "agree")])
        assert [i.id for i in items] == ["r2"]


class TestConsensusMetrics:
    def test_participants_are_authors_and_voters(self):
        items = [build_consensus_item("r1", "t", {"agree": 1, "pass": 0, "disagree": 0})]
        rows = [vote("r1", "u1", "agree"), vote("r1", "author-1", "agree")]
        metrics = compute_consensus_metrics(items, rows, ["author-1", "author-2", None])
        assert metrics.total_participants == 3
        assert metrics.unique_voters == 2
        assert metrics.participant_voting_percent == 67

    def test_vote_coverage(self):
        items = [
            build_consensus_item("r1", "t", None),
            build_consensus_item("r2", "t", None),
        ]
        rows = [vote("r1", "u1", "agree"), vote("r2", "u1", "agree"), vote("r1", "u2", "pass")]
        metrics = compute_consensus_metrics(items, rows)
        assert metrics.total_votes == 3
        assert metrics.vote_coverage_percent == 75

    def test_total_votes_counts_latest_only(self):
        rows = [vote("r1", "u1", "agree"), vote("r1", "u1", "pass")]
        metrics = compute_consensus_metrics([build_consensus_item("r1", "t", None)], rows)
        assert metrics.total_votes == 1

    def test_empty_conversation(self):
        metrics = compute_consensus_metrics([], [])
        assert metrics.total_participants == 0
        assert metrics.participant_voting_percent == 0
        assert metrics.vote_coverage_percent == 0


class TestAgreementSummaries:
    def test_agreement_and_divisive(self):
        responses = [
            Response(id="agreed", text="Everyone likes this"),
            Response(id="split", text="People are split"),
            Response(id="few", text="Too few votes"),
        ]
        rows = (
            votes_for("agreed", agree=8, disagree=2)
            + votes_for("split", agree=5, disagree=5)
            + votes_for("few", agree=3)
        )
        summaries = compute_agreement_summaries(responses, rows)
        assert [(s.id, s.type) for s in summaries] == [("agreed", "agreement"), ("split", "divisive")]

    def test_agreement_sorted_by_percent_then_votes(self):
        responses = [Response(id=f"r{i}", text="t") for i in range(3)]
        rows = (
            votes_for("r0", agree=7, disagree=3)
            + votes_for("r1", agree=9, disagree=1)
            + votes_for("r2", agree=18, disagree=2)
        )
        summaries = compute_agreement_summaries(responses, rows)
        assert [s.id for s in summaries] == ["r2", "r1", "r0"]

    def test_divisive_requires_disagreement(self):
        """50% agree with the rest passing is not divisive"""
        responses = [Response(id="r1", text="t")]
        rows = votes_for("r1", agree=5, passed=5)
        assert compute_agreement_summaries(responses, rows) == []

    def test_max_per_type(self):
        responses = [Response(id=f"r{i}", text="t") for i in range(4)]
        rows = []
        for i in range(4):
            rows += votes_for(f"r{i}", agree=6)
        options = AgreementOptions(max_per_type=2)
        summaries = compute_agreement_summaries(responses, rows, options)
        assert len(summaries) == 2

    def test_summaries_over_consolidated_statements(self):
        """Bucket statements are summarized by their bucket id"""
        responses = [Response(id=f"r{i}", text=f"text {i}") for i in range(3)]
        consolidations = [
            ConsolidationResult(
                cluster_index=0,
                buckets=[SemanticBucket(bucket_name="B", consolidated_statement="Merged", response_ids=["r0", "r1"])],
                unconsolidated_ids=["r2"],
            )
        ]
        rows = votes_for("r0", agree=9, disagree=1) + votes_for("r2", agree=3, disagree=3)
        items, _ = compute_conversation_consensus(responses, consolidations, rows)

        summaries = summarize_agreement(items)

        assert [(s.id, s.type, s.text) for s in summaries] == [
            (bucket_statement_id(0, 0), "agreement", "Merged"),
            ("r2", "divisive", "text 2"),
        ]
