"""
Tests for the asyncpg repositories

Checks the SQL contract (conditional updates, row-count parsing, one
transaction per result write) against a recording connection double.
"""

from datetime import datetime, timezone

import pytest

from database.models import (
    MISC_CLUSTER_INDEX,
    AgreementSummary,
    AnalysisResult,
    ClusterTheme,
    ConsensusItem,
    ConsensusMetrics,
    ConsolidationResult,
    SemanticBucket,
)
from database.repositories_async import ConversationRepository, JobRepository
from exceptions import ValidationError
from fakes import FakeConnection, FakePool

LOCKED_AT = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def job_row(**fields):
    row = {
        "id": "job-1",
        "conversation_id": "conv-1",
        "status": "queued",
        "strategy": "full",
        "locked_at": None,
        "attempts": 0,
        "last_error": None,
        "created_at": LOCKED_AT,
        "updated_at": LOCKED_AT,
    }
    row.update(fields)
    return row


class TestJobRepository:
    async def test_claim_returns_lock_timestamp(self):
        conn = FakeConnection(fetchrow_results=[{"locked_at": LOCKED_AT}])
        repo = JobRepository(FakePool(conn))

        claim = await repo.claim_job("job-1", 900000)

        assert claim.claimed
        assert claim.locked_at == LOCKED_AT
        query, args = conn.queries[0]
        assert "RETURNING locked_at" in query
        assert "INTERVAL '1 millisecond'" in query
        assert args == ("job-1", 900000)

    async def test_claim_rejected_when_no_row_updated(self):
        repo = JobRepository(FakePool(FakeConnection()))
        claim = await repo.claim_job("job-1", 900000)
        assert not claim.claimed
        assert claim.locked_at is None

    async def test_fetch_next_job_skips_excluded_ids(self):
        conn = FakeConnection(fetchrow_results=[job_row(id="job-2")])
        repo = JobRepository(FakePool(conn))

        job = await repo.fetch_next_job(900000, exclude_ids=("job-1",))

        assert job.id == "job-2"
        query, args = conn.queries[0]
        assert "ANY($2::text[])" in query
        assert args == (900000, ["job-1"])

    async def test_fetch_next_job_without_exclusions(self):
        conn = FakeConnection()
        repo = JobRepository(FakePool(conn))

        assert await repo.fetch_next_job(900000) is None
        assert conn.queries[0][1] == (900000, [])

    async def test_mark_failed_is_conditional(self):
        conn = FakeConnection(execute_result="UPDATE 0")
        repo = JobRepository(FakePool(conn))

        assert not await repo.mark_job_failed("job-1", LOCKED_AT, "boom")
        query, args = conn.queries[0]
        assert "status = 'running'" in query
        assert args == ("job-1", LOCKED_AT, "boom")

    async def test_get_job(self):
        conn = FakeConnection(fetchrow_results=[job_row(status="running", locked_at=LOCKED_AT, attempts=1)])
        job = await JobRepository(FakePool(conn)).get_job("job-1")

        assert job.status == "running"
        assert job.locked_at == LOCKED_AT
        assert job.attempts == 1

    async def test_get_missing_job(self):
        assert await JobRepository(FakePool(FakeConnection())).get_job("nope") is None

    async def test_enqueue_returns_existing_active_job(self):
        existing = job_row(id="job-7", status="running", locked_at=LOCKED_AT)
        conn = FakeConnection(fetchrow_results=[None, existing])
        repo = JobRepository(FakePool(conn))

        job = await repo.enqueue_job("conv-1", "full")

        assert job.id == "job-7"
        assert conn.transactions == 1
        assert "ON CONFLICT" in conn.queries[0][0]

    async def test_enqueue_rejects_unknown_strategy(self):
        with pytest.raises(ValidationError):
            await JobRepository(FakePool(FakeConnection())).enqueue_job("conv-1", "partial")


class TestConversationRepository:
    async def test_feedback_skips_unknown_values(self):
        conn = FakeConnection(
            fetch_results=[
                {"statement_id": "r1", "user_id": "u1", "feedback": "agree"},
                {"statement_id": "r1", "user_id": "u2", "feedback": "maybe"},
                {"statement_id": "r2", "user_id": "u1", "feedback": "disagree"},
            ]
        )
        votes = await ConversationRepository(FakePool(conn)).get_feedback("conv-1")

        assert [(v.statement_id, v.voter_id, v.value) for v in votes] == [
            ("r1", "u1", "agree"),
            ("r2", "u1", "disagree"),
        ]

    async def test_responses_keep_stored_embeddings(self):
        conn = FakeConnection(
            fetch_results=[
                {"id": "r1", "text": "one", "author_id": "a1", "embedding": [0.1, 0.2]},
                {"id": "r2", "text": "two", "author_id": None, "embedding": None},
            ]
        )
        responses = await ConversationRepository(FakePool(conn)).get_responses("conv-1")

        assert responses[0].embedding == [0.1, 0.2]
        assert responses[1].embedding is None
        assert responses[1].author_id is None

    async def test_save_result_replaces_rows_in_one_transaction(self):
        """Job success, analysis rows and consensus land in one transaction"""
        conn = FakeConnection(fetchrow_results=[{"id": "job-1"}])
        repo = ConversationRepository(FakePool(conn))
        result = AnalysisResult(
            conversation_id="conv-1",
            response_count=4,
            cluster_assignments={"r1": 0, "r2": 0, "r3": 0, "r4": MISC_CLUSTER_INDEX},
            consolidations=[
                ConsolidationResult(cluster_index=MISC_CLUSTER_INDEX, unconsolidated_ids=["r4"]),
                ConsolidationResult(
                    cluster_index=0,
                    buckets=[
                        SemanticBucket(
                            bucket_name="Parks",
                            consolidated_statement="More parks.",
                            response_ids=["r1", "r2"],
                        )
                    ],
                    unconsolidated_ids=["r3"],
                ),
            ],
            themes=[
                ClusterTheme(cluster_index=0, name="Parks", description="Green space", size=3),
                ClusterTheme(cluster_index=MISC_CLUSTER_INDEX, name="Misc", description="Other", size=1),
            ],
            consensus_items=[ConsensusItem(id="r3", text="Trees", agree_votes=2, total_votes=2, agree_percent=100)],
            agreement_summaries=[
                AgreementSummary(
                    id="r3",
                    text="Trees",
                    type="agreement",
                    agree_percent=100,
                    pass_percent=0,
                    disagree_percent=0,
                    total_votes=2,
                )
            ],
            metrics=ConsensusMetrics(total_statements=2),
        )

        assert await repo.save_analysis_result(result, "job-1", LOCKED_AT) is True

        assert conn.transactions == 1
        owned_query, owned_args = conn.queries[0]
        assert "UPDATE analysis_jobs" in owned_query
        assert "locked_at = $2" in owned_query
        assert owned_args == ("job-1", LOCKED_AT)
        queries = [q for q, _ in conn.queries]
        assert sum(1 for q in queries if q.startswith("DELETE")) == 4
        bucket_insert = next(args for q, args in conn.queries if "conversation_cluster_buckets (" in q)
        assert bucket_insert == [("conv-1", 0, 0, "Parks", "More parks.", ["r1", "r2"])]
        theme_insert = next(args for q, args in conn.queries if "conversation_cluster_themes (" in q)
        assert theme_insert == [
            ("conv-1", 0, "Parks", "Green space", 3),
            ("conv-1", MISC_CLUSTER_INDEX, "Misc", "Other", 1),
        ]
        final_query, final_args = conn.queries[-1]
        assert "analysis_status = 'ready'" in final_query
        assert final_args[1] == 4
        assert final_args[3] == result.consensus_to_dict()
        assert final_args[3]["items"][0]["agree_votes"] == 2
        assert final_args[3]["agreement_summaries"][0]["type"] == "agreement"

    async def test_save_result_writes_nothing_when_job_taken_over(self):
        conn = FakeConnection()
        repo = ConversationRepository(FakePool(conn))
        result = AnalysisResult(conversation_id="conv-1", response_count=1, cluster_assignments={"r1": 0})

        assert await repo.save_analysis_result(result, "job-1", LOCKED_AT) is False

        assert len(conn.queries) == 1
        assert "UPDATE analysis_jobs" in conn.queries[0][0]

    async def test_save_embeddings_skips_empty(self):
        conn = FakeConnection()
        await ConversationRepository(FakePool(conn)).save_embeddings({})
        assert conn.queries == []
