"""Validated upstream record schemas.

Rows arrive as loosely typed dicts (SQL rows, GraphQL nodes).  Each emitter
validates them into one of these models first; a row that fails validation
is skipped by the emitter, never half-emitted.  Unknown fields are kept
(``extra="allow"``) and travel to the graph only inside the raw payload.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class UpstreamRecord(BaseModel):
    """Base for upstream rows: camelCase aliases, stripped strings, extras kept."""

    model_config = ConfigDict(
        extra="allow",
        populate_by_name=True,
        str_strip_whitespace=True,
        coerce_numbers_to_str=True,
    )


class AgentRecord(UpstreamRecord):
    """One registry-published agent row from the query API."""

    agent_id: str = Field(..., alias="agentId", min_length=1)
    agent_address: str = Field(..., alias="agentAddress", min_length=1, description="UAID string")
    agent_name: str | None = Field(default=None, alias="agentName")
    agent_owner: str | None = Field(default=None, alias="agentOwner", description="Registry label")
    description: str | None = None
    image: str | None = None
    token_uri: str | None = Field(default=None, alias="tokenUri")
    created_at_block: int | None = Field(default=None, alias="createdAtBlock")
    created_at_time: int | None = Field(default=None, alias="createdAtTime")
    updated_at_time: int | None = Field(default=None, alias="updatedAtTime")
    raw_json: str | None = Field(default=None, alias="rawJson")

    @property
    def position(self) -> int:
        """Cursor key: last update time, falling back to creation time."""
        if self.updated_at_time is not None:
            return self.updated_at_time
        return self.created_at_time if self.created_at_time is not None else 0


class EventAgent(UpstreamRecord):
    """The ``agent { id agentWallet }`` reference carried by registry events."""

    id: str = Field(..., min_length=1)
    agent_wallet: str | None = Field(default=None, alias="agentWallet")


class AccountRef(UpstreamRecord):
    id: str = Field(..., min_length=1)


class ChainEvent(UpstreamRecord):
    """An event from the index, ordered by block number then id."""

    id: str = Field(..., min_length=1)
    block_number: int = Field(default=0, alias="blockNumber", ge=0)
    tx_hash: str | None = Field(default=None, alias="txHash")
    timestamp: int | None = None

    @property
    def position(self) -> int:
        return self.block_number


class FeedbackRecord(ChainEvent):
    """One reputation feedback event from the event index."""

    agent: EventAgent
    client_address: str = Field(..., alias="clientAddress", min_length=1)
    feedback_index: int = Field(..., alias="feedbackIndex")
    score: int | None = None
    feedback_json: str | None = Field(default=None, alias="feedbackJson")


class FeedbackRevocationRecord(ChainEvent):
    agent: EventAgent
    client_address: str = Field(..., alias="clientAddress", min_length=1)
    feedback_index: int = Field(..., alias="feedbackIndex")


class FeedbackResponseRecord(ChainEvent):
    """A response appended to a feedback by its agent or a third party."""

    agent: EventAgent
    client_address: str = Field(..., alias="clientAddress", min_length=1)
    feedback_index: int = Field(..., alias="feedbackIndex")
    responder: str | None = None
    response_uri: str | None = Field(default=None, alias="responseUri")
    response_json: str | None = Field(default=None, alias="responseJson")
    response_hash: str | None = Field(default=None, alias="responseHash")


class ValidationRequestRecord(ChainEvent):
    agent: EventAgent
    request_uri: str | None = Field(default=None, alias="requestUri")
    request_json: str | None = Field(default=None, alias="requestJson")


class ValidationResponseRecord(ChainEvent):
    agent: EventAgent
    response_json: str | None = Field(default=None, alias="responseJson")


class AssociationRecord(UpstreamRecord):
    """An account association, re-emitted whenever it is updated."""

    id: str = Field(..., min_length=1)
    initiator_account: AccountRef = Field(..., alias="initiatorAccount")
    approver_account: AccountRef = Field(..., alias="approverAccount")
    interface_id: str | None = Field(default=None, alias="interfaceId")
    created_tx_hash: str | None = Field(default=None, alias="createdTxHash")
    created_block_number: int | None = Field(default=None, alias="createdBlockNumber", ge=0)
    created_timestamp: int | None = Field(default=None, alias="createdTimestamp")
    last_updated_tx_hash: str | None = Field(default=None, alias="lastUpdatedTxHash")
    last_updated_block_number: int | None = Field(default=None, alias="lastUpdatedBlockNumber", ge=0)
    last_updated_timestamp: int | None = Field(default=None, alias="lastUpdatedTimestamp")

    @property
    def position(self) -> int:
        """Cursor key: last update block, falling back to the creation block."""
        if self.last_updated_block_number is not None:
            return self.last_updated_block_number
        return self.created_block_number or 0


class AssociationRevocationRecord(ChainEvent):
    association_id: str = Field(..., alias="associationId", min_length=1)
    revoked_at: int | None = Field(default=None, alias="revokedAt")


__all__ = [
    "UpstreamRecord",
    "AgentRecord",
    "AccountRef",
    "AssociationRecord",
    "AssociationRevocationRecord",
    "ChainEvent",
    "EventAgent",
    "FeedbackRecord",
    "FeedbackResponseRecord",
    "FeedbackRevocationRecord",
    "ValidationRequestRecord",
    "ValidationResponseRecord",
]
