"""
Tests for cluster consolidation

The model is treated as an untrusted source: fabricated, duplicated and
omitted ids must never break the partition of a cluster's input ids.
"""

import json

import pytest

from analysis.llm.consolidator import (
    FALLBACK_BUCKET,
    SINGLE_RESPONSE_BUCKET,
    ClusterConsolidator,
    chunk_responses,
    fallback_result,
    format_responses,
    group_by_cluster,
    validate_consolidation,
)
from config import AnalysisSettings
from database.models import MISC_CLUSTER_INDEX, ConsolidationResult, Response
from exceptions import LLMError
from fakes import FakeGenAIClient, ids_in_prompt, single_bucket_payload


def make_responses(n, prefix="r"):
    return [Response(id=f"{prefix}{i}", text=f"response text {i}") for i in range(n)]


def assert_partition(result: ConsolidationResult, responses):
    """Every input id appears exactly once across buckets and leftovers"""
    accounted = result.accounted_ids()
    assert sorted(accounted) == sorted(r.id for r in responses)
    assert len(accounted) == len(set(accounted))


class TestValidateConsolidation:
    """Adversarial payloads"""

    def test_fabricated_id_is_dropped(self):
        responses = make_responses(2)
        payload = {
            "buckets": [
                {
                    "bucket_name": "Transit",
                    "consolidated_statement": "Better buses.",
                    "response_ids": ["r0", "r999"],
                }
            ],
            "unconsolidated_ids": ["r1"],
        }
        result = validate_consolidation(0, payload, responses)
        assert result.buckets[0].response_ids == ["r0"]
        assert result.unconsolidated_ids == ["r1"]
        assert_partition(result, responses)

    def test_omitted_ids_become_unconsolidated(self):
        responses = make_responses(4)
        payload = {
            "buckets": [
                {"bucket_name": "A", "consolidated_statement": "A", "response_ids": ["r0", "r1"]}
            ],
            "unconsolidated_ids": [],
        }
        result = validate_consolidation(0, payload, responses)
        assert result.unconsolidated_ids == ["r2", "r3"]
        assert_partition(result, responses)

    def test_duplicate_across_buckets_keeps_first(self):
        responses = make_responses(3)
        payload = {
            "buckets": [
                {"bucket_name": "A", "consolidated_statement": "A", "response_ids": ["r0", "r1"]},
                {"bucket_name": "B", "consolidated_statement": "B", "response_ids": ["r1", "r2"]},
            ],
            "unconsolidated_ids": [],
        }
        result = validate_consolidation(0, payload, responses)
        assert result.buckets[0].response_ids == ["r0", "r1"]
        assert result.buckets[1].response_ids == ["r2"]
        assert_partition(result, responses)

    def test_bucketed_id_listed_as_unconsolidated_stays_in_bucket(self):
        responses = make_responses(2)
        payload = {
            "buckets": [
                {"bucket_name": "A", "consolidated_statement": "A", "response_ids": ["r0", "r1"]}
            ],
            "unconsolidated_ids": ["r1", "r1"],
        }
        result = validate_consolidation(0, payload, responses)
        assert result.unconsolidated_ids == []
        assert_partition(result, responses)

    def test_bucket_with_only_fabricated_ids_is_discarded(self):
        responses = make_responses(2)
        payload = {
            "buckets": [
                {"bucket_name": "Ghost", "consolidated_statement": "G", "response_ids": ["x1", "x2"]},
                {"bucket_name": "Real", "consolidated_statement": "R", "response_ids": ["r0", "r1"]},
            ],
            "unconsolidated_ids": [],
        }
        result = validate_consolidation(0, payload, responses)
        assert [b.bucket_name for b in result.buckets] == ["Real"]
        assert_partition(result, responses)

    def test_malformed_buckets_are_skipped(self):
        responses = make_responses(2)
        payload = {
            "buckets": [
                "not a bucket",
                {"bucket_name": "No ids", "consolidated_statement": "x"},
                {"bucket_name": "A", "consolidated_statement": "A", "response_ids": ["r0"]},
            ],
        }
        result = validate_consolidation(0, payload, responses)
        assert len(result.buckets) == 1
        assert result.unconsolidated_ids == ["r1"]

    def test_non_object_payload_raises(self):
        with pytest.raises(LLMError):
            validate_consolidation(0, ["r0"], make_responses(2))

    def test_numeric_ids_are_compared_as_strings(self):
        responses = [Response(id="17", text="a"), Response(id="18", text="b")]
        payload = {
            "buckets": [{"bucket_name": "A", "consolidated_statement": "A", "response_ids": [17, 18]}],
            "unconsolidated_ids": [],
        }
        result = validate_consolidation(0, payload, responses)
        assert result.buckets[0].response_ids == ["17", "18"]


class TestChunking:
    def test_under_cap_is_one_chunk(self):
        assert [len(c) for c in chunk_responses(make_responses(50), 50)] == [50]

    def test_balanced_chunks(self):
        assert [len(c) for c in chunk_responses(make_responses(51), 50)] == [26, 25]
        assert [len(c) for c in chunk_responses(make_responses(120), 50)] == [40, 40, 40]

    def test_chunks_keep_order(self):
        responses = make_responses(7)
        chunks = chunk_responses(responses, 3)
        assert [r.id for chunk in chunks for r in chunk] == [r.id for r in responses]


class TestHelpers:
    def test_format_responses_pairs_ids_with_text(self):
        text = format_responses([Response(id="a", text="hello"), Response(id="b", text="bye")])
        assert text == '[ID: a] "hello"\n[ID: b] "bye"'
        assert ids_in_prompt(text) == ["a", "b"]

    def test_fallback_is_one_bucket_per_response(self):
        responses = make_responses(3)
        result = fallback_result(4, responses)
        assert result.cluster_index == 4
        assert [b.response_ids for b in result.buckets] == [["r0"], ["r1"], ["r2"]]
        assert all(b.bucket_name == FALLBACK_BUCKET for b in result.buckets)
        assert result.buckets[1].consolidated_statement == "response text 1"

    def test_group_by_cluster(self):
        responses = make_responses(4)
        groups = group_by_cluster(responses, [1, 0, 1, 0])
        assert [r.id for r in groups[0]] == ["r1", "r3"]
        assert [r.id for r in groups[1]] == ["r0", "r2"]


class TestClusterConsolidator:
    """End-to-end consolidation against a scripted model"""

    async def test_small_clusters_skip_the_model(self):
        client = FakeGenAIClient(generate=single_bucket_payload)
        consolidator = ClusterConsolidator(client=client)

        empty = await consolidator.consolidate(0, [])
        single = await consolidator.consolidate(1, make_responses(1))

        assert empty.buckets == [] and empty.unconsolidated_ids == []
        assert single.buckets[0].bucket_name == SINGLE_RESPONSE_BUCKET
        assert single.buckets[0].response_ids == ["r0"]
        assert client.models.generate_calls == []

    async def test_valid_payload(self):
        client = FakeGenAIClient(generate=single_bucket_payload)
        consolidator = ClusterConsolidator(client=client)
        responses = make_responses(5)

        result = await consolidator.consolidate(0, responses)

        assert len(result.buckets) == 1
        assert result.buckets[0].response_ids == [r.id for r in responses]
        assert len(client.models.generate_calls) == 1
        assert "[ID: r4]" in client.models.generate_calls[0]

    async def test_malformed_json_falls_back(self):
        client = FakeGenAIClient(generate=lambda prompt: "{not json")
        consolidator = ClusterConsolidator(client=client)
        responses = make_responses(3)

        result = await consolidator.consolidate(2, responses)

        assert result.cluster_index == 2
        assert [b.response_ids for b in result.buckets] == [["r0"], ["r1"], ["r2"]]
        assert result.unconsolidated_ids == []

    async def test_call_exception_falls_back(self):
        def explode(prompt):
            raise RuntimeError("upstream 500")

        consolidator = ClusterConsolidator(client=FakeGenAIClient(generate=explode))
        responses = make_responses(3)

        result = await consolidator.consolidate(0, responses)

        assert all(b.bucket_name == FALLBACK_BUCKET for b in result.buckets)
        assert_partition(result, responses)

    async def test_large_cluster_is_split_across_calls(self):
        client = FakeGenAIClient(generate=single_bucket_payload)
        consolidator = ClusterConsolidator(client=client, settings=AnalysisSettings(max_responses_per_call=50))
        responses = make_responses(120)

        result = await consolidator.consolidate(0, responses)

        calls = client.models.generate_calls
        assert len(calls) == 3
        assert all(len(ids_in_prompt(prompt)) <= 50 for prompt in calls)
        assert len(result.buckets) == 3
        assert_partition(result, responses)

    async def test_trailing_single_response_chunk_skips_model(self):
        client = FakeGenAIClient(generate=single_bucket_payload)
        consolidator = ClusterConsolidator(client=client, settings=AnalysisSettings(max_responses_per_call=2))
        responses = make_responses(3)

        result = await consolidator.consolidate(0, responses)

        # 3 with cap 2 -> chunks of [2, 1]
        assert len(client.models.generate_calls) == 1
        assert result.unconsolidated_ids == ["r2"]
        assert_partition(result, responses)

    async def test_sibling_clusters_are_isolated(self):
        def generate(prompt):
            if "[ID: bad0]" in prompt:
                raise RuntimeError("model crashed on this cluster")
            return single_bucket_payload(prompt)

        consolidator = ClusterConsolidator(client=FakeGenAIClient(generate=generate))
        clusters = {
            1: make_responses(3, prefix="bad"),
            0: make_responses(4, prefix="good"),
        }

        results = await consolidator.consolidate_clusters(clusters)

        assert [r.cluster_index for r in results] == [0, 1]
        assert len(results[0].buckets) == 1
        assert results[0].buckets[0].bucket_name == "Everything"
        assert all(b.bucket_name == FALLBACK_BUCKET for b in results[1].buckets)
        assert_partition(results[0], clusters[0])
        assert_partition(results[1], clusters[1])

    async def test_task_error_uses_fallback(self, monkeypatch):
        consolidator = ClusterConsolidator(client=FakeGenAIClient(generate=single_bucket_payload))

        async def broken(cluster_index, responses):
            raise ValueError("unexpected")

        monkeypatch.setattr(consolidator, "consolidate", broken)
        responses = make_responses(2)

        results = await consolidator.consolidate_clusters({0: responses})

        assert [b.response_ids for b in results[0].buckets] == [["r0"], ["r1"]]

    async def test_misc_group_is_never_sent_to_the_model(self):
        """Outliers stay individual statements"""
        client = FakeGenAIClient(generate=single_bucket_payload)
        consolidator = ClusterConsolidator(client=client)
        misc = make_responses(3, prefix="odd")
        clusters = {MISC_CLUSTER_INDEX: misc, 0: make_responses(4)}

        results = await consolidator.consolidate_clusters(clusters)

        assert [r.cluster_index for r in results] == [MISC_CLUSTER_INDEX, 0]
        assert results[0].buckets == []
        assert results[0].unconsolidated_ids == ["odd0", "odd1", "odd2"]
        assert len(client.models.generate_calls) == 1
        assert "[ID: odd0]" not in client.models.generate_calls[0]

    async def test_no_clusters(self):
        consolidator = ClusterConsolidator(client=FakeGenAIClient(generate=single_bucket_payload))
        assert await consolidator.consolidate_clusters({}) == []

    async def test_custom_prompts_path(self, tmp_path):
        prompts = {
            "consolidation": {
                "cluster": {
                    "system": "Group these.",
                    "template": "COUNT={count}\n{responses}",
                }
            }
        }
        path = tmp_path / "prompts.json"
        path.write_text(json.dumps(prompts))
        client = FakeGenAIClient(generate=single_bucket_payload)
        consolidator = ClusterConsolidator(client=client, prompts_path=str(path))

        await consolidator.consolidate(0, make_responses(2))

        assert client.models.generate_calls[0].startswith("COUNT=2\n")
