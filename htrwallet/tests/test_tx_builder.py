"""
Tests for transfer drafts, signing and broadcast.
"""

from __future__ import annotations

import pytest
from coincurve import PublicKey

from htrwallet.backends.base import BroadcastResult
from htrwallet.errors import (
    CredentialMismatch,
    InsufficientFunds,
    InvalidAddress,
    LockedOutput,
    NetworkError,
    OutputLookupError,
    ValidationError,
    ZeroAmount,
)
from htrwallet.wallet.models import NATIVE_TOKEN, InputRef, OutputDraft, TokenConfig, TokenTransfer
from htrwallet.wallet.signing import sighash
from htrwallet.wallet.state import LAST_GENERATED_INDEX_KEY, LAST_SHARED_INDEX_KEY

TOKEN_A = TokenConfig(uid="aa" * 32, name="Token A", symbol="TKA")
TOKEN_B = TokenConfig(uid="bb" * 32, name="Token B", symbol="TKB")


async def fund(service, make_tx, wallet_address, n: int, value: int, index: int = 0, **kwargs):
    """Record a payment of value to the wallet address at index."""
    token = kwargs.pop("token", NATIVE_TOKEN.uid)
    token_data = 0 if token == NATIVE_TOKEN.uid else 1
    tx = make_tx(n, outputs=[(wallet_address(index), value, token, token_data, kwargs.get("timelock"))])
    await service.reconciler.process_history([tx])
    return tx


def outputs_of(outputs) -> list[tuple[int, int]]:
    return [(output.token_data, output.value) for output in outputs]


def split_input_data(data: bytes) -> tuple[bytes, bytes]:
    sig_len = data[0]
    signature = data[1 : 1 + sig_len]
    pubkey = data[2 + sig_len :]
    assert data[1 + sig_len] == len(pubkey)
    return signature, pubkey


class TestPrepareSend:
    @pytest.mark.asyncio
    async def test_single_input_with_change(
        self, service, make_tx, wallet_address, external_address
    ) -> None:
        funding = await fund(service, make_tx, wallet_address, 1, 150)

        draft = service.prepare_send([OutputDraft(external_address, 100)])

        assert [(txin.tx_id, txin.index) for txin in draft.inputs] == [(funding.tx_id, 0)]
        assert len(draft.outputs) == 2
        values = {output.address: output.value for output in draft.outputs}
        assert values.pop(external_address) == 100
        [(change_address, change_value)] = values.items()
        assert change_value == 50
        assert service.state.index_of(change_address) is not None
        assert draft.tokens == []

    @pytest.mark.asyncio
    async def test_builder_change_moves_shared_address(
        self, service, make_tx, wallet_address, external_address
    ) -> None:
        await fund(service, make_tx, wallet_address, 1, 150)
        shared = service.current_address()

        draft = service.builder.prepare_send([OutputDraft(external_address, 100)], NATIVE_TOKEN)

        assert shared in {output.address for output in draft.outputs}
        assert service.current_address() != shared

    @pytest.mark.asyncio
    async def test_preview_keeps_shared_address(
        self, service, store, make_tx, wallet_address, external_address
    ) -> None:
        await fund(service, make_tx, wallet_address, 1, 150)
        shared = service.current_address()
        stored_index = store.get(LAST_SHARED_INDEX_KEY)

        draft = service.prepare_send([OutputDraft(external_address, 100)])

        assert shared in {output.address for output in draft.outputs}
        assert service.current_address() == shared
        assert store.get(LAST_SHARED_INDEX_KEY) == stored_index

    @pytest.mark.asyncio
    async def test_plain_send_lists_no_tokens(
        self, service, make_tx, wallet_address, external_address
    ) -> None:
        service.registry.add_token(TOKEN_A.uid, TOKEN_A.name, TOKEN_A.symbol)
        await fund(service, make_tx, wallet_address, 1, 150)

        draft = service.prepare_send([OutputDraft(external_address, 100)])

        assert draft.tokens == []
        assert {output.token_data for output in draft.outputs} == {0}

    @pytest.mark.asyncio
    async def test_exact_amount_has_no_change(
        self, service, make_tx, wallet_address, external_address
    ) -> None:
        await fund(service, make_tx, wallet_address, 1, 100)
        draft = service.prepare_send([OutputDraft(external_address, 100)])
        assert [output.value for output in draft.outputs] == [100]

    @pytest.mark.asyncio
    async def test_zero_amount(self, service, external_address) -> None:
        with pytest.raises(ZeroAmount):
            service.prepare_send([OutputDraft(external_address, 0)])

    @pytest.mark.asyncio
    async def test_negative_value(self, service, external_address) -> None:
        with pytest.raises(ValidationError, match="negative"):
            service.prepare_send([OutputDraft(external_address, -5), OutputDraft(external_address, 10)])

    @pytest.mark.asyncio
    async def test_invalid_destination(self, service) -> None:
        with pytest.raises(InvalidAddress):
            service.prepare_send([OutputDraft("HnotAnAddress", 10)])

    @pytest.mark.asyncio
    async def test_insufficient_funds(
        self, service, make_tx, wallet_address, external_address
    ) -> None:
        await fund(service, make_tx, wallet_address, 1, 30)
        await fund(service, make_tx, wallet_address, 2, 40, index=1)

        with pytest.raises(InsufficientFunds) as exc_info:
            service.prepare_send([OutputDraft(external_address, 100)])

        assert exc_info.value.requested == 100
        assert exc_info.value.available == 70
        assert exc_info.value.deficit == 30

    @pytest.mark.asyncio
    async def test_locked_funds_not_selected(
        self, service, make_tx, wallet_address, external_address, now
    ) -> None:
        await fund(service, make_tx, wallet_address, 1, 500, timelock=now + 3600)
        with pytest.raises(InsufficientFunds):
            service.prepare_send([OutputDraft(external_address, 100)])

    @pytest.mark.asyncio
    async def test_outputs_are_shuffled(
        self, service, make_tx, wallet_address, external_address
    ) -> None:
        await fund(service, make_tx, wallet_address, 1, 10_000)

        positions = set()
        for _ in range(20):
            draft = service.prepare_send([OutputDraft(external_address, 1)])
            positions.add([output.address for output in draft.outputs].index(external_address))
        assert positions == {0, 1}


class TestExplicitInputs:
    @pytest.mark.asyncio
    async def test_change_appended_last(
        self, service, make_tx, wallet_address, external_address
    ) -> None:
        first = await fund(service, make_tx, wallet_address, 1, 60)
        second = await fund(service, make_tx, wallet_address, 2, 60, index=1)

        draft = service.prepare_send(
            [OutputDraft(external_address, 100)],
            inputs=[InputRef(second.tx_id, 0, "00", ""), InputRef(first.tx_id, 0, "00", "")],
        )

        assert [txin.tx_id for txin in draft.inputs] == [second.tx_id, first.tx_id]
        assert draft.inputs[0].address == wallet_address(1)
        assert draft.outputs[0].address == external_address
        assert draft.outputs[1].value == 20

    @pytest.mark.asyncio
    async def test_locked_input(
        self, service, make_tx, wallet_address, external_address, now
    ) -> None:
        locked = await fund(service, make_tx, wallet_address, 1, 500, timelock=now + 3600)

        with pytest.raises(LockedOutput) as exc_info:
            service.prepare_send(
                [OutputDraft(external_address, 100)], inputs=[InputRef(locked.tx_id, 0, "00", "")]
            )
        assert exc_info.value.unlock_time == now + 3600
        assert "is locked until" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_not_enough(self, service, make_tx, wallet_address, external_address) -> None:
        funding = await fund(service, make_tx, wallet_address, 1, 50)
        with pytest.raises(InsufficientFunds):
            service.prepare_send(
                [OutputDraft(external_address, 100)], inputs=[InputRef(funding.tx_id, 0, "00", "")]
            )

    @pytest.mark.asyncio
    async def test_repeated_input(
        self, service, make_tx, wallet_address, external_address
    ) -> None:
        funding = await fund(service, make_tx, wallet_address, 1, 100)
        same = InputRef(funding.tx_id, 0, "00", "")

        with pytest.raises(ValidationError, match="used more than once"):
            service.prepare_send([OutputDraft(external_address, 150)], inputs=[same, same])

    @pytest.mark.asyncio
    async def test_unknown_input(self, service, external_address) -> None:
        with pytest.raises(OutputLookupError, match="does not exist"):
            service.prepare_send(
                [OutputDraft(external_address, 1)], inputs=[InputRef("ee" * 32, 0, "00", "")]
            )


class TestTokenIndex:
    @pytest.mark.asyncio
    async def test_custom_token_index(
        self, service, make_tx, wallet_address, external_address
    ) -> None:
        service.registry.add_token(TOKEN_A.uid, TOKEN_A.name, TOKEN_A.symbol)
        service.registry.add_token(TOKEN_B.uid, TOKEN_B.name, TOKEN_B.symbol)
        await fund(service, make_tx, wallet_address, 1, 80, token=TOKEN_B.uid)

        draft = service.prepare_send([OutputDraft(external_address, 50)], token=TOKEN_B)

        assert {output.token_data for output in draft.outputs} == {1}
        assert draft.tokens == [TOKEN_B.uid]

    @pytest.mark.asyncio
    async def test_unregistered_token(self, service, external_address) -> None:
        with pytest.raises(ValidationError, match="Unknown token"):
            service.prepare_send([OutputDraft(external_address, 50)], token=TOKEN_A)


class TestMultiToken:
    @pytest.mark.asyncio
    async def test_native_and_custom(
        self, service, make_tx, wallet_address, external_address
    ) -> None:
        service.registry.add_token(TOKEN_A.uid, TOKEN_A.name, TOKEN_A.symbol)
        service.registry.add_token(TOKEN_B.uid, TOKEN_B.name, TOKEN_B.symbol)
        native = await fund(service, make_tx, wallet_address, 1, 150)
        custom = await fund(service, make_tx, wallet_address, 2, 80, index=1, token=TOKEN_B.uid)

        draft = service.builder.prepare_send_multi(
            [
                TokenTransfer(NATIVE_TOKEN, [OutputDraft(external_address, 100)]),
                TokenTransfer(TOKEN_B, [OutputDraft(external_address, 50)]),
            ]
        )

        assert draft.tokens == [TOKEN_B.uid]
        assert [txin.tx_id for txin in draft.inputs] == [native.tx_id, custom.tx_id]
        assert [txin.token for txin in draft.inputs] == [NATIVE_TOKEN.uid, TOKEN_B.uid]
        assert sorted(outputs_of(draft.outputs[:2])) == [(0, 50), (0, 100)]
        assert sorted(outputs_of(draft.outputs[2:])) == [(1, 30), (1, 50)]

    @pytest.mark.asyncio
    async def test_token_indexes_follow_transfers(
        self, service, make_tx, wallet_address, external_address
    ) -> None:
        service.registry.add_token(TOKEN_A.uid, TOKEN_A.name, TOKEN_A.symbol)
        service.registry.add_token(TOKEN_B.uid, TOKEN_B.name, TOKEN_B.symbol)
        await fund(service, make_tx, wallet_address, 1, 40, token=TOKEN_A.uid)
        await fund(service, make_tx, wallet_address, 2, 60, index=1, token=TOKEN_B.uid)

        draft = service.builder.prepare_send_multi(
            [
                TokenTransfer(TOKEN_B, [OutputDraft(external_address, 60)]),
                TokenTransfer(TOKEN_A, [OutputDraft(external_address, 40)]),
            ]
        )

        assert draft.tokens == [TOKEN_B.uid, TOKEN_A.uid]
        assert outputs_of(draft.outputs) == [(1, 60), (2, 40)]

    @pytest.mark.asyncio
    async def test_repeated_token(self, service, external_address) -> None:
        transfer = TokenTransfer(NATIVE_TOKEN, [OutputDraft(external_address, 10)])
        with pytest.raises(ValidationError, match="more than once"):
            service.builder.prepare_send_multi([transfer, transfer])

    @pytest.mark.asyncio
    async def test_nothing_to_send(self, service) -> None:
        with pytest.raises(ValidationError, match="Nothing to send"):
            service.builder.prepare_send_multi([])

    @pytest.mark.asyncio
    async def test_send(
        self, service, backend, codec, make_tx, wallet_address, external_address, pin
    ) -> None:
        service.registry.add_token(TOKEN_A.uid, TOKEN_A.name, TOKEN_A.symbol)
        await fund(service, make_tx, wallet_address, 1, 100)
        await fund(service, make_tx, wallet_address, 2, 40, index=1, token=TOKEN_A.uid)

        result = await service.send_multi_tokens(
            [
                TokenTransfer(NATIVE_TOKEN, [OutputDraft(external_address, 100)]),
                TokenTransfer(TOKEN_A, [OutputDraft(external_address, 40)]),
            ],
            pin,
        )

        assert result.success
        assert len(backend.broadcasts) == 1
        assert codec.last.tokens == [TOKEN_A.uid]
        assert all(txin.data for txin in codec.last.inputs)


class TestSend:
    @pytest.mark.asyncio
    async def test_signed_and_broadcast(
        self, service, backend, codec, make_tx, wallet_address, external_address, pin
    ) -> None:
        await fund(service, make_tx, wallet_address, 1, 150, index=3)

        result = await service.send_tokens([OutputDraft(external_address, 100)], pin)

        assert result.success
        assert len(backend.broadcasts) == 1
        draft = codec.last
        signature, pubkey = split_input_data(draft.inputs[0].data)
        digest = sighash(codec.data_to_sign(draft))
        assert PublicKey(pubkey).verify(signature, digest, hasher=None)
        assert pubkey == service.vault.unlock_private_key(pin).derive_child(3).get_public_key_bytes()
        assert service.current_address() == wallet_address(5)

    @pytest.mark.asyncio
    async def test_wrong_pin(
        self, service, backend, make_tx, wallet_address, external_address
    ) -> None:
        await fund(service, make_tx, wallet_address, 1, 150)
        shared = service.current_address()

        with pytest.raises(CredentialMismatch):
            await service.send_tokens([OutputDraft(external_address, 100)], "000000")

        assert backend.broadcasts == []
        assert service.current_address() == shared

    @pytest.mark.asyncio
    async def test_rejected_by_network(
        self, service, backend, make_tx, wallet_address, external_address, pin
    ) -> None:
        await fund(service, make_tx, wallet_address, 1, 150)
        backend.broadcast_result = BroadcastResult(success=False, message="Invalid transaction")

        with pytest.raises(NetworkError, match="Invalid transaction"):
            await service.send_tokens([OutputDraft(external_address, 100)], pin)
        assert len(backend.broadcasts) == 1
        assert service.current_address() == wallet_address(1)

    @pytest.mark.asyncio
    async def test_rejected_keeps_stored_pointers(
        self, service, backend, store, make_tx, wallet_address, external_address, pin
    ) -> None:
        await fund(service, make_tx, wallet_address, 1, 150)
        stored = (store.get(LAST_SHARED_INDEX_KEY), store.get(LAST_GENERATED_INDEX_KEY))
        backend.broadcast_result = BroadcastResult(success=False, message="Invalid transaction")

        with pytest.raises(NetworkError):
            await service.send_tokens([OutputDraft(external_address, 100)], pin)

        assert (store.get(LAST_SHARED_INDEX_KEY), store.get(LAST_GENERATED_INDEX_KEY)) == stored
        assert service.state.last_shared_index == 1

    @pytest.mark.asyncio
    async def test_rejected_drops_generated_address(
        self, service, backend, store, make_tx, wallet_address, external_address, pin
    ) -> None:
        await fund(service, make_tx, wallet_address, 1, 150)
        for _ in range(19):
            service.new_address()
        assert service.state.last_shared_index == service.state.last_generated_index == 20
        backend.broadcast_result = BroadcastResult(success=False, message="Invalid transaction")

        with pytest.raises(NetworkError):
            await service.send_tokens([OutputDraft(external_address, 100)], pin)

        assert service.current_address() == wallet_address(20)
        assert service.state.last_generated_index == 20
        assert store.get(LAST_GENERATED_INDEX_KEY) == "20"
        assert service.state.index_of(wallet_address(21)) is None
        assert wallet_address(21) not in backend.subscribed
