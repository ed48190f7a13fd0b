"""
Database Models for the analysis worker

Pydantic dataclasses with runtime validation for core entities.
"""

from dataclasses import asdict, field
from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic.dataclasses import dataclass

from exceptions import ValidationError

# Job lifecycle
JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_SUCCEEDED = "succeeded"
JOB_FAILED = "failed"
JOB_STATUSES = {JOB_QUEUED, JOB_RUNNING, JOB_SUCCEEDED, JOB_FAILED}

JOB_STRATEGIES = {"incremental", "full"}

# Conversation analysis status
ANALYSIS_STATUS_EMBEDDING = "embedding"
ANALYSIS_STATUS_ANALYZING = "analyzing"
ANALYSIS_STATUS_READY = "ready"
ANALYSIS_STATUS_ERROR = "error"

FeedbackValue = Literal["agree", "pass", "disagree"]
FEEDBACK_VALUES = ("agree", "pass", "disagree")

# Cluster index for responses pulled out of their cluster as outliers
MISC_CLUSTER_INDEX = -1


# --- Inputs ---


@dataclass
class Response:
    """A free-text contribution to a conversation

    The embedding is attached once the vector service has run and is not
    modified afterwards.
    """

    id: str
    text: str
    author_id: Optional[str] = None
    embedding: Optional[List[float]] = None


@dataclass
class FeedbackVote:
    """A single vote on a statement; latest vote per (statement, voter) wins"""

    statement_id: str
    voter_id: str
    value: FeedbackValue


# --- Consolidation ---


@dataclass
class SemanticBucket:
    """Responses merged into one consolidated statement

    response_ids is ordered; the first id is the bucket's representative
    (feedback on the consolidated statement is recorded against it).
    """

    bucket_name: str
    consolidated_statement: str
    response_ids: List[str] = field(default_factory=list)

    @property
    def representative_id(self) -> Optional[str]:
        return self.response_ids[0] if self.response_ids else None


@dataclass
class ConsolidationResult:
    """Buckets and leftovers for one cluster

    Invariant: unconsolidated_ids and the bucket response_ids partition the
    cluster's input ids.
    """

    cluster_index: int
    buckets: List[SemanticBucket] = field(default_factory=list)
    unconsolidated_ids: List[str] = field(default_factory=list)

    def consolidated_ids(self) -> List[str]:
        return [rid for bucket in self.buckets for rid in bucket.response_ids]

    def accounted_ids(self) -> List[str]:
        """Every id in the result, buckets first"""
        return self.consolidated_ids() + list(self.unconsolidated_ids)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ClusterTheme:
    """Short name and description for one cluster"""

    cluster_index: int
    name: str
    description: str
    size: int = 0


# --- Consensus ---


@dataclass
class ConsensusItem:
    """Vote breakdown for one statement (raw response or consolidated bucket)"""

    id: str
    text: str
    agree_votes: int = 0
    pass_votes: int = 0
    disagree_votes: int = 0
    total_votes: int = 0
    agree_percent: int = 0
    pass_percent: int = 0
    disagree_percent: int = 0


@dataclass
class AgreementSummary:
    """A statement flagged as broadly agreed or divisive"""

    id: str
    text: str
    type: Literal["agreement", "divisive"]
    agree_percent: int
    pass_percent: int
    disagree_percent: int
    total_votes: int


@dataclass
class ConsensusMetrics:
    """Participation/coverage header for the consensus matrix"""

    total_votes: int = 0
    total_participants: int = 0
    unique_voters: int = 0
    total_statements: int = 0
    participant_voting_percent: int = 0
    vote_coverage_percent: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


# --- Jobs ---


@dataclass
class AnalysisJob:
    """A unit of analysis work for one conversation

    Lifecycle: queued -> running -> succeeded | failed. A running job whose
    lock is older than the TTL may be claimed again.
    """

    id: str
    conversation_id: str
    status: str = JOB_QUEUED
    strategy: str = "full"
    locked_at: Optional[datetime] = None
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        """Validate job status and strategy"""
        if self.status not in JOB_STATUSES:
            raise ValidationError(
                f"Invalid job status: {self.status}. Must be one of: {sorted(JOB_STATUSES)}",
                field="status",
                value=self.status
            )
        if self.strategy not in JOB_STRATEGIES:
            raise ValidationError(
                f"Invalid job strategy: {self.strategy}. Must be one of: {sorted(JOB_STRATEGIES)}",
                field="strategy",
                value=self.strategy
            )

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ("locked_at", "created_at", "updated_at"):
            if data[key]:
                data[key] = data[key].isoformat()
        return data


@dataclass
class ClaimResult:
    """Outcome of an atomic job claim"""

    claimed: bool
    locked_at: Optional[datetime] = None


@dataclass
class AnalysisResult:
    """Everything one analysis run produces, handed to the store as a unit"""

    conversation_id: str
    response_count: int = 0
    cluster_assignments: Dict[str, int] = field(default_factory=dict)
    consolidations: List[ConsolidationResult] = field(default_factory=list)
    themes: List[ClusterTheme] = field(default_factory=list)
    consensus_items: List[ConsensusItem] = field(default_factory=list)
    agreement_summaries: List[AgreementSummary] = field(default_factory=list)
    metrics: ConsensusMetrics = field(default_factory=ConsensusMetrics)

    @property
    def cluster_count(self) -> int:
        """Regular clusters; the misc group is not counted"""
        return len(set(self.cluster_assignments.values()) - {MISC_CLUSTER_INDEX})

    @property
    def misc_count(self) -> int:
        return sum(1 for idx in self.cluster_assignments.values() if idx == MISC_CLUSTER_INDEX)

    def consensus_to_dict(self) -> dict:
        """Per-statement breakdowns and summaries, as stored with the conversation"""
        return {
            "items": [asdict(item) for item in self.consensus_items],
            "agreement_summaries": [asdict(summary) for summary in self.agreement_summaries],
        }
