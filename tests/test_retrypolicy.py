from unittest.mock import AsyncMock, patch

import pytest

from espressoreader.models import ClaimAcceptance, FilterOpts, Header, InputAdded, OutputExecuted
from espressoreader.retrypolicy import (
    ApplicationWithRetryPolicy,
    ConsensusWithRetryPolicy,
    EthClientWithRetryPolicy,
    EthWsClientWithRetryPolicy,
    InputSourceWithRetryPolicy,
)


class Flaky:
    """Fails a given number of times, then returns the given result."""

    def __init__(self, failures, result):
        self.failures = failures
        self.result = result
        self.calls = []

    async def __call__(self, *args):
        self.calls.append(args)
        if len(self.calls) <= self.failures:
            raise RuntimeError(f"failure {len(self.calls)}")
        return self.result


class FakeDelegate:
    def __init__(self, flaky):
        self.flaky = flaky

    async def get_consensus(self):
        return await self.flaky()

    async def retrieve_output_execution_events(self, opts):
        return await self.flaky(opts)

    async def get_epoch_length(self):
        return await self.flaky()

    async def retrieve_claim_acceptance_events(self, opts, app_addresses):
        return await self.flaky(opts, app_addresses)

    async def header_by_number(self, number):
        return await self.flaky(number)

    async def subscribe_new_head(self):
        return await self.flaky()

    async def retrieve_inputs(self, opts, app_addresses, index):
        return await self.flaky(opts, app_addresses, index)


@pytest.mark.asyncio
async def test_get_consensus_succeeds_after_failures():
    flaky = Flaky(2, "0xdeadbeef")
    policy = ApplicationWithRetryPolicy(FakeDelegate(flaky), 2, 0)
    assert await policy.get_consensus() == "0xdeadbeef"
    assert len(flaky.calls) == policy.max_retries + 1


@pytest.mark.asyncio
async def test_gives_up_and_raises_last_error():
    flaky = Flaky(100, 0)
    policy = ConsensusWithRetryPolicy(FakeDelegate(flaky), 3, 0)
    with pytest.raises(RuntimeError, match=f"failure {policy.max_retries + 1}"):
        await policy.get_epoch_length()
    assert len(flaky.calls) == policy.max_retries + 1


@pytest.mark.asyncio
async def test_zero_retries_calls_once():
    flaky = Flaky(1, 10)
    policy = ConsensusWithRetryPolicy(FakeDelegate(flaky), 0, 0)
    with pytest.raises(RuntimeError):
        await policy.get_epoch_length()
    assert len(flaky.calls) == 1


@pytest.mark.asyncio
async def test_no_retry_on_success():
    flaky = Flaky(0, 10)
    policy = ConsensusWithRetryPolicy(FakeDelegate(flaky), 5, 0)
    assert await policy.get_epoch_length() == 10
    assert len(flaky.calls) == 1


@pytest.mark.asyncio
async def test_sleeps_delay_between_calls():
    flaky = Flaky(2, "0xdeadbeef")
    policy = ApplicationWithRetryPolicy(FakeDelegate(flaky), 4, 0.5)
    sleep = AsyncMock()
    with patch("asyncio.sleep", sleep):
        await policy.get_consensus()
    assert sleep.await_count == flaky.failures
    assert all(call.args == (0.5,) for call in sleep.await_args_list)


@pytest.mark.asyncio
async def test_output_events_pass_options_through():
    events = [OutputExecuted(output_index=1, output=b"\xaa", tx_hash="0xdeadbeef")]
    flaky = Flaky(1, events)
    policy = ApplicationWithRetryPolicy(FakeDelegate(flaky), 1, 0)
    opts = FilterOpts(start=0x11, end=0x12)
    assert await policy.retrieve_output_execution_events(opts) == events
    assert flaky.calls == [(opts,), (opts,)]


@pytest.mark.asyncio
async def test_claim_acceptance_events_pass_arguments_through():
    events = [ClaimAcceptance(app_contract="0x01", last_processed_block_number=3, claim="0x02")]
    flaky = Flaky(0, events)
    policy = ConsensusWithRetryPolicy(FakeDelegate(flaky), 1, 0)
    opts = FilterOpts(start=1, end=2)
    assert await policy.retrieve_claim_acceptance_events(opts, ["0x01"]) == events
    assert flaky.calls == [(opts, ["0x01"])]


@pytest.mark.asyncio
async def test_header_by_number():
    header = Header(number=0x11)
    flaky = Flaky(1, header)
    policy = EthClientWithRetryPolicy(FakeDelegate(flaky), 2, 0)
    assert await policy.header_by_number(0x11) is header
    assert flaky.calls == [(0x11,), (0x11,)]


@pytest.mark.asyncio
async def test_subscribe_new_head():
    subscription = object()
    flaky = Flaky(1, subscription)
    policy = EthWsClientWithRetryPolicy(FakeDelegate(flaky), 1, 0)
    assert await policy.subscribe_new_head() is subscription


@pytest.mark.asyncio
async def test_retrieve_inputs():
    events = [InputAdded(app_contract="0x01", index=0, input=b"", block_number=0x11)]
    flaky = Flaky(2, events)
    policy = InputSourceWithRetryPolicy(FakeDelegate(flaky), 2, 0)
    opts = FilterOpts(start=0x10, end=0x11)
    assert await policy.retrieve_inputs(opts, ["0x01"], None) == events
    assert flaky.calls[-1] == (opts, ["0x01"], None)


def test_negative_retries_rejected():
    with pytest.raises(ValueError):
        InputSourceWithRetryPolicy(FakeDelegate(Flaky(0, None)), -1, 0)


def test_negative_delay_rejected():
    with pytest.raises(ValueError):
        EthClientWithRetryPolicy(FakeDelegate(Flaky(0, None)), 1, -1)