"""Emitters for the registry and association events beyond feedback.

Each event becomes one node under ``{base}/{path}/{chain}/{event id}``
plus the edges that tie it to the accounts it concerns.  Revocations and
responses point back at the feedback or association they act on; they
never rewrite it.
"""

from __future__ import annotations

from typing import Any

from kgsync.core.identifiers import chain_event_iri, feedback_iri, normalize_address
from kgsync.graph.emitters import ChainEventEmitter
from kgsync.graph.records import (
    AssociationRecord,
    AssociationRevocationRecord,
    FeedbackResponseRecord,
    FeedbackRevocationRecord,
    ValidationRequestRecord,
    ValidationResponseRecord,
)
from kgsync.graph.turtle import Iri, RawLiteral, Stanza, StanzaBuilder, turtle_iri_or_literal


def _json(value: str | None) -> RawLiteral | None:
    return RawLiteral(value) if value else None


# =============================================================================
# FEEDBACK REVOCATIONS / RESPONSES
# =============================================================================


class FeedbackRevocationEmitter(ChainEventEmitter[FeedbackRevocationRecord]):
    record_model = FeedbackRevocationRecord
    kind = "feedback-revocations"

    def node_iri(self, record: FeedbackRevocationRecord) -> str:
        return chain_event_iri("feedback-revocation", int(self.chain_id), record.id, base=self.id_base)

    def entity_stanzas(self, record: FeedbackRevocationRecord, node: Iri) -> list[Stanza]:
        feedback = feedback_iri(
            int(self.chain_id),
            record.agent.id,
            record.client_address,
            record.feedback_index,
            base=self.id_base,
        )
        return [
            StanzaBuilder(node, "erc8004:FeedbackRevocation", "prov:Entity")
            .add("core:agentId", record.agent.id)
            .add("erc8004:clientAddress", record.client_address.lower())
            .add("erc8004:feedbackIndex", record.feedback_index)
            .add("erc8004:revocationOf", Iri(feedback))
            .build()
        ]


class FeedbackResponseEmitter(ChainEventEmitter[FeedbackResponseRecord]):
    """Responses appended to a feedback, linked by ``erc8004:responseOf``."""

    record_model = FeedbackResponseRecord
    kind = "feedback-responses"

    def node_iri(self, record: FeedbackResponseRecord) -> str:
        return chain_event_iri("feedback-response", int(self.chain_id), record.id, base=self.id_base)

    def entity_stanzas(self, record: FeedbackResponseRecord, node: Iri) -> list[Stanza]:
        feedback = feedback_iri(
            int(self.chain_id),
            record.agent.id,
            record.client_address,
            record.feedback_index,
            base=self.id_base,
        )
        responder = normalize_address(record.responder)
        return [
            StanzaBuilder(node, "erc8004:FeedbackResponse", "prov:Entity")
            .add("core:agentId", record.agent.id)
            .add("erc8004:responseOf", Iri(feedback))
            .add("erc8004:responder", responder or record.responder)
            .add("erc8004:responseUri", turtle_iri_or_literal(record.response_uri))
            .add("erc8004:responseHash", record.response_hash)
            .add("core:json", _json(record.response_json))
            .build()
        ]


# =============================================================================
# VALIDATIONS
# =============================================================================


class ValidationRequestEmitter(ChainEventEmitter[ValidationRequestRecord]):
    record_model = ValidationRequestRecord
    kind = "validation-requests"

    def node_iri(self, record: ValidationRequestRecord) -> str:
        return chain_event_iri("validation-request", int(self.chain_id), record.id, base=self.id_base)

    def entity_stanzas(self, record: ValidationRequestRecord, node: Iri) -> list[Stanza]:
        return [
            StanzaBuilder(node, "erc8004:ValidationRequestSituation", "prov:Entity")
            .add("core:agentId", record.agent.id)
            .add("erc8004:requestUri", turtle_iri_or_literal(record.request_uri))
            .add("core:json", _json(record.request_json))
            .build()
        ]


class ValidationResponseEmitter(ChainEventEmitter[ValidationResponseRecord]):
    """Validation responses, asserted on the agent's wallet account.

    Without a valid wallet address the response node is still minted but
    no ``core:hasVerificationAssertion`` edge is written.
    """

    record_model = ValidationResponseRecord
    kind = "validation-responses"
    section_edges = ("core:hasVerificationAssertion",)

    def node_iri(self, record: ValidationResponseRecord) -> str:
        return chain_event_iri("validation-response", int(self.chain_id), record.id, base=self.id_base)

    def accounts(self, record: ValidationResponseRecord) -> list[str]:
        wallet = normalize_address(record.agent.agent_wallet)
        return [wallet] if wallet else []

    def entity_stanzas(self, record: ValidationResponseRecord, node: Iri) -> list[Stanza]:
        stanzas = [
            StanzaBuilder(node, "erc8004:ValidationResponse", "prov:Entity")
            .add("core:agentId", record.agent.id)
            .add("core:json", _json(record.response_json))
            .build()
        ]
        for wallet in self.accounts(record):
            stanzas.append(
                Stanza(self.account_node(wallet), properties=(("core:hasVerificationAssertion", node),))
            )
        return stanzas


# =============================================================================
# ASSOCIATIONS
# =============================================================================


class AssociationEmitter(ChainEventEmitter[AssociationRecord]):
    """Account associations, ordered by their last update block."""

    record_model = AssociationRecord
    kind = "associations"
    section_edges = ("erc8092:hasAssociatedAccounts",)

    def node_iri(self, record: AssociationRecord) -> str:
        return chain_event_iri("association", int(self.chain_id), record.id, base=self.id_base)

    def accounts(self, record: AssociationRecord) -> list[str]:
        found = (
            normalize_address(record.initiator_account.id),
            normalize_address(record.approver_account.id),
        )
        return [a for a in found if a is not None]

    def ingest_fields(self, record: AssociationRecord) -> dict[str, Any]:
        return {
            "tx_hash": record.last_updated_tx_hash or record.created_tx_hash,
            "block_number": record.position,
            "timestamp": record.last_updated_timestamp or record.created_timestamp,
        }

    def entity_stanzas(self, record: AssociationRecord, node: Iri) -> list[Stanza]:
        stanzas = [
            StanzaBuilder(node, "erc8092:AssociatedAccounts8092", "prov:Entity")
            .add("erc8092:interfaceId", record.interface_id)
            .add("erc8092:initiatorAccountId", record.initiator_account.id)
            .add("erc8092:approverAccountId", record.approver_account.id)
            .build()
        ]
        for address in dict.fromkeys(self.accounts(record)):
            stanzas.append(
                Stanza(self.account_node(address), properties=(("erc8092:hasAssociatedAccounts", node),))
            )
        return stanzas


class AssociationRevocationEmitter(ChainEventEmitter[AssociationRevocationRecord]):
    record_model = AssociationRevocationRecord
    kind = "association-revocations"

    def node_iri(self, record: AssociationRevocationRecord) -> str:
        return chain_event_iri("association-revocation", int(self.chain_id), record.id, base=self.id_base)

    def entity_stanzas(self, record: AssociationRevocationRecord, node: Iri) -> list[Stanza]:
        association = chain_event_iri(
            "association", int(self.chain_id), record.association_id, base=self.id_base
        )
        return [
            StanzaBuilder(node, "erc8092:AssociatedAccountsRevocation8092", "prov:Entity")
            .add("erc8092:revocationOfAssociatedAccounts", Iri(association))
            .add("erc8092:revokedAt", record.revoked_at)
            .build()
        ]


__all__ = [
    "AssociationEmitter",
    "AssociationRevocationEmitter",
    "FeedbackResponseEmitter",
    "FeedbackRevocationEmitter",
    "ValidationRequestEmitter",
    "ValidationResponseEmitter",
]
