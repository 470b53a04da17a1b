"""
Tests for the chain event emitters and account typing.

Tests cover:
- Node names and edges of every event kind
- Ingest fields of associations (last update, falling back to creation)
- Owner-driven account stanzas, emitted once per batch
"""

from __future__ import annotations

import pytest

from kgsync.core.identifiers import DEFAULT_ID_BASE
from kgsync.graph.emitters import FeedbackEmitter
from kgsync.graph.events import (
    AssociationEmitter,
    AssociationRevocationEmitter,
    FeedbackResponseEmitter,
    FeedbackRevocationEmitter,
    ValidationRequestEmitter,
    ValidationResponseEmitter,
)

CHAIN = 11155111
CLIENT = "0xc1c1c1c1c1c1c1c1c1c1c1c1c1c1c1c1c1c1c1c1"
WALLET = "0x" + "aa" * 20
OWNER = "0x" + "bb" * 20
OTHER = "0x" + "cc" * 20
ID = DEFAULT_ID_BASE


# ── Helpers ──────────────────────────────────────────────────────────────


def event_row(event_id="0xtx7-1", block=7, wallet=None, **fields):
    row = {
        "id": event_id,
        "agent": {"id": "42", "agentWallet": wallet},
        "txHash": "0xtx7",
        "blockNumber": block,
        "timestamp": 1_700_000_000,
    }
    row.update(fields)
    return row


def association_row(**overrides):
    row = {
        "id": "0xassoc1",
        "initiatorAccount": {"id": f"eip155:{CHAIN}:{WALLET.upper().replace('0X', '0x')}"},
        "approverAccount": {"id": OTHER},
        "interfaceId": "0x01020304",
        "createdTxHash": "0xcreated",
        "createdBlockNumber": 10,
        "createdTimestamp": 1_000,
        "lastUpdatedTxHash": "0xupdated",
        "lastUpdatedBlockNumber": 20,
        "lastUpdatedTimestamp": 2_000,
    }
    row.update(overrides)
    return row


def subjects(result) -> list[str]:
    return [s.subject.value for s in result.document.stanzas]


def account(address: str) -> str:
    return f"{ID}/account/{CHAIN}/{address}"


class StaticOwners:
    def __init__(self, owners: dict[str, str | None]) -> None:
        self.owners = owners
        self.asked: list[list[str]] = []

    async def owners_of(self, addresses):
        addresses = list(addresses)
        self.asked.append(addresses)
        return {a: self.owners.get(a) for a in addresses}


# =============================================================================
# Feedback revocations / responses
# =============================================================================


class TestFeedbackRevocationEmitter:
    def test_points_at_revoked_feedback(self, resolver):
        emitter = FeedbackRevocationEmitter(resolver, chain_id=CHAIN)
        client = CLIENT.upper().replace("0X", "0x")
        result = emitter.emit([event_row(clientAddress=client, feedbackIndex="3")])

        node = f"{ID}/feedback-revocation/{CHAIN}/0xtx7-1"
        assert subjects(result) == [node, f"{ID}/ingest-record/{CHAIN}/feedback-revocations/0xtx7-1"]
        text = result.document.render()
        assert f"<{node}> a erc8004:FeedbackRevocation, prov:Entity" in text
        assert f"erc8004:revocationOf <{ID}/feedback/{CHAIN}/42/{CLIENT}/3>" in text

    def test_missing_feedback_index_is_invalid(self, resolver):
        emitter = FeedbackRevocationEmitter(resolver, chain_id=CHAIN)
        result = emitter.emit([event_row(clientAddress=CLIENT)])
        assert result.skip_reasons == {"invalid_record": 1}


class TestFeedbackResponseEmitter:
    def test_response_facts(self, resolver):
        emitter = FeedbackResponseEmitter(resolver, chain_id=CHAIN)
        row = event_row(
            clientAddress=CLIENT,
            feedbackIndex=1,
            responder=OTHER.upper().replace("0X", "0x"),
            responseUri="ipfs://QmResponse",
            responseHash="0xhash",
            responseJson='{"ok": true}',
        )
        text = emitter.emit([row]).document.render()

        assert f"<{ID}/feedback-response/{CHAIN}/0xtx7-1> a erc8004:FeedbackResponse" in text
        assert f"erc8004:responseOf <{ID}/feedback/{CHAIN}/42/{CLIENT}/1>" in text
        assert f'erc8004:responder "{OTHER}"' in text
        assert "erc8004:responseUri <ipfs://QmResponse>" in text
        assert 'erc8004:responseHash "0xhash"' in text


# =============================================================================
# Validations
# =============================================================================


class TestValidationEmitters:
    def test_request(self, resolver):
        emitter = ValidationRequestEmitter(resolver, chain_id=CHAIN)
        result = emitter.emit([event_row(requestJson='{"task": 1}', wallet=WALLET)])

        node = f"{ID}/validation-request/{CHAIN}/0xtx7-1"
        assert subjects(result) == [node, f"{ID}/ingest-record/{CHAIN}/validation-requests/0xtx7-1"]
        assert "erc8004:ValidationRequestSituation" in result.document.render()

    def test_response_asserted_on_wallet(self, resolver):
        emitter = ValidationResponseEmitter(resolver, chain_id=CHAIN)
        result = emitter.emit([event_row(wallet=WALLET, responseJson='{"score": 1}')])

        node = f"{ID}/validation-response/{CHAIN}/0xtx7-1"
        assert subjects(result)[:2] == [node, account(WALLET)]
        assert f"<{account(WALLET)}> core:hasVerificationAssertion <{node}> ." in (
            result.document.render()
        )

    def test_response_without_wallet_has_no_edge(self, resolver):
        emitter = ValidationResponseEmitter(resolver, chain_id=CHAIN)
        result = emitter.emit([event_row(wallet="not-a-wallet")])

        assert result.included == 1
        assert "core:hasVerificationAssertion" not in result.document.render()

    def test_section_edges(self):
        assert ValidationResponseEmitter.section_edges == ("core:hasVerificationAssertion",)
        assert ValidationRequestEmitter.section_edges == ()
        assert ValidationRequestEmitter.section_reset is True


# =============================================================================
# Associations
# =============================================================================


class TestAssociationEmitter:
    def test_association_and_account_edges(self, resolver):
        emitter = AssociationEmitter(resolver, chain_id=CHAIN)
        result = emitter.emit([association_row()])

        node = f"{ID}/association/{CHAIN}/0xassoc1"
        assert subjects(result) == [
            node,
            account(WALLET),
            account(OTHER),
            f"{ID}/ingest-record/{CHAIN}/associations/0xassoc1",
        ]
        text = result.document.render()
        assert f"<{account(OTHER)}> erc8092:hasAssociatedAccounts <{node}> ." in text
        assert 'erc8092:interfaceId "0x01020304"' in text
        assert 'core:txHash "0xupdated"' in text
        assert "core:blockNumber 20" in text
        assert result.max_position == 20

    def test_never_updated_falls_back_to_creation(self, resolver):
        emitter = AssociationEmitter(resolver, chain_id=CHAIN)
        row = association_row(
            lastUpdatedTxHash=None, lastUpdatedBlockNumber=None, lastUpdatedTimestamp=None
        )
        result = emitter.emit([row])

        text = result.document.render()
        assert result.max_position == 10
        assert 'core:txHash "0xcreated"' in text
        assert "core:timestamp 1000" in text

    def test_unparseable_account_gets_no_edge(self, resolver):
        emitter = AssociationEmitter(resolver, chain_id=CHAIN)
        result = emitter.emit([association_row(approverAccount={"id": "eip155:1:nope"})])
        assert account(OTHER) not in subjects(result)
        assert 'erc8092:approverAccountId "eip155:1:nope"' in result.document.render()

    def test_revocation_points_at_association(self, resolver):
        emitter = AssociationRevocationEmitter(resolver, chain_id=CHAIN)
        row = {"id": "0xrev1", "associationId": "0xassoc1", "revokedAt": 5, "blockNumber": 30}
        text = emitter.emit([row]).document.render()
        assert (
            f"erc8092:revocationOfAssociatedAccounts <{ID}/association/{CHAIN}/0xassoc1>" in text
        )
        assert "erc8092:AssociatedAccountsRevocation8092" in text


# =============================================================================
# Account owners
# =============================================================================


class TestAccountOwners:
    @pytest.mark.asyncio
    async def test_smart_account_gets_owner_edge(self, resolver):
        owners = StaticOwners({WALLET: OWNER})
        emitter = FeedbackEmitter(resolver, chain_id=CHAIN, owners=owners)
        rows = [event_row(wallet=WALLET, clientAddress=CLIENT, feedbackIndex=1)]

        await emitter.prepare(rows)
        result = emitter.emit(rows)

        text = result.document.render()
        assert owners.asked == [[WALLET]]
        assert f"<{account(WALLET)}> a eth:Account, eth:SmartAccount" in text
        assert f"eth:hasEOAOwner <{account(OWNER)}>" in text
        assert f"<{account(OWNER)}> a eth:Account, eth:EOAAccount" in text

    @pytest.mark.asyncio
    async def test_self_owned_account_is_eoa(self, resolver):
        emitter = AssociationEmitter(resolver, chain_id=CHAIN, owners=StaticOwners({WALLET: WALLET}))
        rows = [association_row()]

        await emitter.prepare(rows)
        text = emitter.emit(rows).document.render()

        assert f"<{account(WALLET)}> a eth:Account, eth:EOAAccount" in text
        assert f"<{account(OTHER)}> a eth:Account" not in text

    @pytest.mark.asyncio
    async def test_account_typed_once_per_batch(self, resolver):
        emitter = FeedbackEmitter(resolver, chain_id=CHAIN, owners=StaticOwners({WALLET: OWNER}))
        rows = [
            event_row("0xtx7-1", wallet=WALLET, clientAddress=CLIENT, feedbackIndex=1),
            event_row("0xtx7-2", wallet=WALLET, clientAddress=CLIENT, feedbackIndex=2),
        ]

        await emitter.prepare(rows)
        text = emitter.emit(rows).document.render()

        assert text.count("eth:SmartAccount") == 1

    def test_no_lookup_no_account_stanzas(self, resolver):
        emitter = FeedbackEmitter(resolver, chain_id=CHAIN)
        rows = [event_row(wallet=WALLET, clientAddress=CLIENT, feedbackIndex=1)]
        text = emitter.emit(rows).document.render()
        assert "eth:Account" not in text
