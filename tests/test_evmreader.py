import asyncio
import contextlib
from collections import defaultdict

import pytest

from espressoreader.evmreader import EvmReader
from espressoreader.models import (
    Application,
    ClaimAcceptance,
    DefaultBlock,
    Epoch,
    EpochStatus,
    FilterOpts,
    Header,
    InputAdded,
    Output,
    OutputExecuted,
    hex_to_address,
    hex_to_hash,
)

APP = hex_to_address("0x2E663fe9aE92275242406A185AA4fC8174339D3E")
CONSENSUS = hex_to_address("0xdeadbeef")
HEADER0 = Header(number=0x11)
HEADER1 = Header(number=0x12)
HEADER2 = Header(number=0x13)


class FakeSubscription:
    def __init__(self):
        self.queue = asyncio.Queue()
        self.unsubscribed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.queue.get()
        if isinstance(item, BaseException):
            raise item
        return item

    def unsubscribe(self):
        self.unsubscribed = True


class FakeWsClient:
    def __init__(self, error=None):
        self.error = error
        self.calls = 0
        self.subscriptions = []

    async def subscribe_new_head(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        sub = FakeSubscription()
        self.subscriptions.append(sub)
        return sub

    def fire(self, *items):
        for item in items:
            self.subscriptions[-1].queue.put_nowait(item)


class FakeEthClient:
    def __init__(self, header=HEADER0):
        self.header = header
        self.numbers = []

    async def header_by_number(self, number):
        self.numbers.append(number)
        return self.header


class FakeInputSource:
    def __init__(self, responses=None):
        self.responses = responses or {}
        self.calls = []

    async def retrieve_inputs(self, opts, app_addresses, index):
        self.calls.append(opts)
        return list(self.responses.get((opts.start, opts.end), []))


class FakeRepository:
    def __init__(self, apps_sequence):
        self.apps_sequence = list(apps_sequence)
        self.epochs = {}
        self.default_epoch = None
        self.previous_epochs = []
        self.outputs = {}
        self.failures = {}
        self.calls = defaultdict(list)

    def _record(self, name, *args):
        self.calls[name].append(args)
        if name in self.failures:
            raise self.failures[name]

    async def get_all_running_applications(self):
        self._record("get_all_running_applications")
        if len(self.apps_sequence) > 1:
            return self.apps_sequence.pop(0)
        return self.apps_sequence[0] if self.apps_sequence else []

    async def store_epoch_and_inputs_transaction(self, epoch_input_map, block_number, app_address):
        self._record(
            "store",
            {epoch: list(items) for epoch, items in epoch_input_map.items()},
            block_number,
            app_address,
        )
        return {}, {}

    async def get_epoch(self, index, app_address):
        self._record("get_epoch", index, app_address)
        return self.epochs.get(index, self.default_epoch)

    async def get_previous_epochs_with_open_claims(self, app, last_block):
        self._record("get_previous_epochs_with_open_claims", app, last_block)
        return list(self.previous_epochs)

    async def update_epochs(self, app, epochs, most_recent_block_number):
        self._record("update_epochs", app, list(epochs), most_recent_block_number)

    async def get_output(self, app_address, index):
        self._record("get_output", app_address, index)
        return self.outputs.get(index)

    async def update_output_execution_transaction(self, app, executed_outputs, block_number):
        self._record("update_outputs", app, list(executed_outputs), block_number)

    async def get_input_index(self, app_address):
        return 0

    async def update_input_index(self, app_address):
        return None


class FakeApplication:
    def __init__(self, consensus=CONSENSUS, output_events=None, output_error=None):
        self.consensus = consensus
        self.output_events = list(output_events or [])
        self.output_error = output_error
        self.output_calls = []

    async def get_consensus(self):
        return self.consensus

    async def retrieve_output_execution_events(self, opts):
        self.output_calls.append(opts)
        if self.output_error is not None:
            raise self.output_error
        return self.output_events.pop(0) if self.output_events else []


class FakeConsensus:
    def __init__(self, epoch_length=10, claim_events=None):
        self.epoch_length = epoch_length
        self.claim_events = list(claim_events or [])
        self.claim_calls = []

    async def get_epoch_length(self):
        return self.epoch_length

    async def retrieve_claim_acceptance_events(self, opts, app_addresses):
        self.claim_calls.append((opts, list(app_addresses)))
        return self.claim_events.pop(0) if self.claim_events else []


class FakeFactory:
    def __init__(self, application=None, consensus=None, error=None):
        self.application = application or FakeApplication()
        self.consensus = consensus or FakeConsensus()
        self.error = error
        self.application_calls = []

    def new_application(self, address):
        self.application_calls.append(address)
        if self.error is not None:
            raise self.error
        return self.application

    def new_iconsensus(self, address):
        return self.consensus


def app(**kwargs):
    return Application(contract_address=APP, iconsensus_address=CONSENSUS, **kwargs)


def make_reader(repository, *, ws=None, client=None, input_source=None, factory=None,
                deployment=0x10, default_block=DefaultBlock.LATEST):
    return EvmReader(
        client or FakeEthClient(),
        ws or FakeWsClient(),
        input_source or FakeInputSource(),
        repository,
        deployment,
        default_block,
        factory or FakeFactory(),
        False,
    )


@contextlib.asynccontextmanager
async def running(reader):
    ready = asyncio.Event()
    task = asyncio.create_task(reader.run(ready))
    await asyncio.wait_for(ready.wait(), 1)
    try:
        yield task
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


async def settle():
    await asyncio.sleep(0.05)


@pytest.mark.asyncio
async def test_it_stops_when_cancelled():
    ws = FakeWsClient()
    reader = make_reader(FakeRepository([[app()]]), ws=ws)
    task = asyncio.create_task(reader.run(asyncio.Event()))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert ws.subscriptions[0].unsubscribed is True


@pytest.mark.asyncio
async def test_it_eventually_becomes_ready():
    ready = asyncio.Event()
    reader = make_reader(FakeRepository([[app()]]))
    task = asyncio.create_task(reader.run(ready))
    await asyncio.wait_for(ready.wait(), 1)
    assert ready.is_set()
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_it_fails_to_subscribe_on_start():
    ws = FakeWsClient(error=RuntimeError("expected failure"))
    reader = make_reader(FakeRepository([[app()]]), ws=ws)
    with pytest.raises(RuntimeError, match="expected failure"):
        await reader.run(asyncio.Event())
    assert ws.calls == 1


@pytest.mark.asyncio
async def test_subscription_error_restarts_subscription():
    ws = FakeWsClient()
    reader = make_reader(FakeRepository([[app()]]), ws=ws)
    async with running(reader):
        first = ws.subscriptions[0]
        ws.fire(ConnectionError("dropped"))
        await settle()
        assert ws.calls == 2
        assert first.unsubscribed is True


@pytest.mark.asyncio
async def test_wrong_iconsensus_stops_processing():
    consensus = FakeConsensus(claim_events=[[ClaimAcceptance(APP, 3, hex_to_hash("0xdeadbeef"))]])
    factory = FakeFactory(consensus=consensus)
    repository = FakeRepository([
        [Application(contract_address=APP, iconsensus_address=hex_to_address("0xFFFFFFFF"))]
    ])
    ws = FakeWsClient()
    source = FakeInputSource()
    reader = make_reader(repository, ws=ws, factory=factory, input_source=source)
    async with running(reader):
        ws.fire(HEADER0)
        await settle()
    assert source.calls == []
    assert repository.calls["store"] == []
    assert consensus.claim_calls == []
    assert repository.calls["update_epochs"] == []


@pytest.mark.asyncio
async def test_get_app_contracts_mismatch_raises():
    reader = make_reader(FakeRepository([]))
    with pytest.raises(ValueError, match="IConsensus addresses do not match"):
        await reader.get_app_contracts(
            Application(contract_address=APP, iconsensus_address=hex_to_address("0xFFFFFFFF"))
        )


@pytest.mark.asyncio
async def test_get_app_contracts_factory_failure():
    reader = make_reader(FakeRepository([]), factory=FakeFactory(error=OSError("boom")))
    with pytest.raises(RuntimeError, match="error building application contract"):
        await reader.get_app_contracts(app())


@pytest.mark.asyncio
async def test_get_app_contracts_binds_contracts():
    factory = FakeFactory()
    reader = make_reader(FakeRepository([]), factory=factory)
    bound = await reader.get_app_contracts(app())
    assert bound.application_contract is factory.application
    assert bound.consensus_contract is factory.consensus
    assert bound.contract_address == APP


@pytest.mark.asyncio
async def test_no_running_applications():
    ws = FakeWsClient()
    factory = FakeFactory()
    source = FakeInputSource()
    reader = make_reader(FakeRepository([[]]), ws=ws, factory=factory, input_source=source)
    async with running(reader):
        ws.fire(HEADER0)
        await settle()
    assert reader.has_enabled_apps is False
    assert factory.application_calls == []
    assert source.calls == []


@pytest.mark.asyncio
async def test_reads_inputs_from_new_blocks():
    event0 = InputAdded(APP, 0, b"", 0x10)
    event1 = InputAdded(APP, 1, b"", 0x12)
    source = FakeInputSource({(0x10, 0x11): [event0], (0x12, 0x12): [event1]})
    repository = FakeRepository([[app(last_processed_block=0x00)], [app(last_processed_block=0x11)]])
    ws = FakeWsClient()
    reader = make_reader(repository, ws=ws, input_source=source)
    async with running(reader):
        ws.fire(HEADER0, HEADER1)
        await settle()
    assert source.calls == [FilterOpts(0x10, 0x11), FilterOpts(0x12, 0x12)]
    assert len(repository.calls["store"]) == 2


@pytest.mark.asyncio
async def test_reads_multiple_inputs_from_single_block():
    events = [InputAdded(APP, 0, b"", 0x13), InputAdded(APP, 1, b"", 0x13)]
    source = FakeInputSource({(0x13, 0x13): events})
    repository = FakeRepository([[app(last_processed_block=0x12)]])
    repository.epochs[1] = Epoch(1, 10, 19, EpochStatus.OPEN, APP)
    ws = FakeWsClient()
    reader = make_reader(repository, ws=ws, input_source=source)
    async with running(reader):
        ws.fire(HEADER2)
        await settle()
    assert len(source.calls) == 1
    assert len(repository.calls["store"]) == 1
    epoch_map = repository.calls["store"][0][0]
    assert len(epoch_map) == 1
    (epoch, inputs), = epoch_map.items()
    assert len(inputs) == 2
    assert epoch.status == EpochStatus.CLOSED


@pytest.mark.asyncio
async def test_starts_when_last_processed_is_most_recent():
    source = FakeInputSource()
    repository = FakeRepository([[app(last_processed_block=0x13)]])
    ws = FakeWsClient()
    reader = make_reader(repository, ws=ws, input_source=source)
    async with running(reader):
        ws.fire(HEADER2)
        await settle()
    assert source.calls == []
    assert repository.calls["store"] == []


@pytest.mark.asyncio
async def test_default_block_finalized_uses_fetched_header():
    client = FakeEthClient(header=Header(number=0x15))
    source = FakeInputSource()
    ws = FakeWsClient()
    reader = make_reader(
        FakeRepository([[app(last_processed_block=0x10)]]),
        ws=ws, client=client, input_source=source, default_block=DefaultBlock.FINALIZED,
    )
    async with running(reader):
        ws.fire(HEADER0)
        await settle()
    assert client.numbers == [-3]
    assert source.calls == [FilterOpts(0x11, 0x15)]


@pytest.mark.asyncio
async def test_missing_most_recent_header_skips_block():
    client = FakeEthClient(header=None)
    source = FakeInputSource()
    ws = FakeWsClient()
    reader = make_reader(
        FakeRepository([[app()]]), ws=ws, client=client, input_source=source,
        default_block=DefaultBlock.SAFE,
    )
    async with running(reader):
        ws.fire(HEADER0)
        await settle()
    assert client.numbers == [-4]
    assert source.calls == []


@pytest.mark.asyncio
async def test_no_claims_acceptance():
    repository = FakeRepository([[app(last_claim_check_block=0x10)], [app(last_claim_check_block=0x11)]])
    ws = FakeWsClient()
    reader = make_reader(repository, ws=ws)
    async with running(reader):
        ws.fire(HEADER0, HEADER1)
        await settle()
    assert repository.calls["update_epochs"] == []


@pytest.mark.asyncio
async def test_read_claim_acceptance():
    claim = hex_to_hash("0xdeadbeef")
    consensus = FakeConsensus(epoch_length=1, claim_events=[[ClaimAcceptance(APP, 3, claim)]])
    repository = FakeRepository([[app(last_claim_check_block=0x10)], [app(last_claim_check_block=0x11)]])
    repository.default_epoch = Epoch(3, 3, 3, EpochStatus.CLAIM_SUBMITTED, APP, claim_hash=claim)
    ws = FakeWsClient()
    reader = make_reader(repository, ws=ws, factory=FakeFactory(consensus=consensus), deployment=0)
    async with running(reader):
        ws.fire(HEADER0)
        await settle()
    assert len(repository.calls["update_epochs"]) == 1
    _, epochs, _ = repository.calls["update_epochs"][0]
    assert len(epochs) == 1
    assert epochs[0].last_block == 3
    assert epochs[0].status == EpochStatus.CLAIM_ACCEPTED


@pytest.mark.asyncio
@pytest.mark.parametrize("case", ["previous_fails", "get_epoch_fails", "previous_open_claims"])
async def test_check_claim_fails(case):
    claim = hex_to_hash("0xdeadbeef")
    consensus = FakeConsensus(epoch_length=1, claim_events=[[ClaimAcceptance(APP, 3, claim)]])
    repository = FakeRepository([[app(last_claim_check_block=0x10)]])
    repository.default_epoch = Epoch(3, 3, 3, EpochStatus.CLAIM_SUBMITTED, APP, claim_hash=claim)
    if case == "previous_fails":
        repository.failures["get_previous_epochs_with_open_claims"] = RuntimeError("No previous epochs for you")
    elif case == "get_epoch_fails":
        repository.failures["get_epoch"] = RuntimeError("No epoch for you")
    else:
        repository.previous_epochs = [
            Epoch(1, 1, 1, EpochStatus.CLAIM_SUBMITTED, APP, claim_hash=claim)
        ]
    ws = FakeWsClient()
    reader = make_reader(repository, ws=ws, factory=FakeFactory(consensus=consensus), deployment=0)
    async with running(reader):
        ws.fire(HEADER0)
        await settle()
    assert repository.calls["update_epochs"] == []


@pytest.mark.asyncio
async def test_output_execution_checked_each_block():
    repository = FakeRepository([
        [app(last_output_check_block=0x10)], [app(last_output_check_block=0x11)]
    ])
    ws = FakeWsClient()
    reader = make_reader(repository, ws=ws)
    async with running(reader):
        ws.fire(HEADER0, HEADER1)
        await settle()
    calls = repository.calls["update_outputs"]
    assert [(outputs, block) for _, outputs, block in calls] == [([], 17), ([], 18)]


@pytest.mark.asyncio
async def test_read_output_execution():
    tx_hash = hex_to_hash("0xdeadbeef")
    event = OutputExecuted(1, bytes.fromhex("AABBCCDDEE"), tx_hash)
    application = FakeApplication(output_events=[[event]])
    repository = FakeRepository([[app(last_output_check_block=0x10)]])
    repository.outputs[1] = Output(index=1, raw_data=bytes.fromhex("AABBCCDDEE"))
    ws = FakeWsClient()
    reader = make_reader(repository, ws=ws, factory=FakeFactory(application=application), deployment=0)
    async with running(reader):
        ws.fire(HEADER0)
        await settle()
    calls = repository.calls["update_outputs"]
    assert len(calls) == 1
    outputs = calls[0][1]
    assert len(outputs) == 1
    assert outputs[0].index == 1
    assert outputs[0].transaction_hash == tx_hash


@pytest.mark.asyncio
@pytest.mark.parametrize("case", ["retrieve_fails", "get_output_fails", "mismatch"])
async def test_check_output_fails(case):
    event = OutputExecuted(1, bytes.fromhex("AABBCCDDEE"), hex_to_hash("0xdeadbeef"))
    application = FakeApplication(output_events=[[event]])
    repository = FakeRepository([[app(last_output_check_block=0x10)]])
    repository.outputs[1] = Output(index=1, raw_data=bytes.fromhex("AABBCCDDEE"))
    if case == "retrieve_fails":
        application.output_error = RuntimeError("No outputs for you")
    elif case == "get_output_fails":
        repository.failures["get_output"] = RuntimeError("no output for you")
    else:
        repository.outputs[1] = Output(index=1, raw_data=bytes.fromhex("FFBBCCDDEE"))
    ws = FakeWsClient()
    reader = make_reader(repository, ws=ws, factory=FakeFactory(application=application), deployment=0)
    async with running(reader):
        ws.fire(HEADER0)
        await settle()
    assert repository.calls["update_outputs"] == []


@pytest.mark.asyncio
async def test_epoch_length_cache_filled_from_consensus():
    factory = FakeFactory(consensus=FakeConsensus(epoch_length=7))
    reader = make_reader(FakeRepository([]), factory=factory)
    assert reader.get_epoch_length_cache(APP) == 0
    bound = await reader.get_app_contracts(app())
    await reader.add_app_epoch_length_into_cache(bound)
    assert reader.get_epoch_length_cache(APP) == 7
    assert str(reader) == "evmreader"