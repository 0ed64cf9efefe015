"""Domain types and the interfaces the readers depend on."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

ZERO_ADDRESS = "0x" + "0" * 40


def _hex_to_fixed(value: str, size: int) -> str:
    text = value[2:] if value[:2] in ("0x", "0X") else value
    if len(text) % 2:
        text = "0" + text
    try:
        raw = bytes.fromhex(text)
    except ValueError as exc:
        raise ValueError(f"invalid hex string: {value!r}") from exc
    raw = raw[-size:].rjust(size, b"\x00")
    return "0x" + raw.hex()


def hex_to_address(value: str) -> str:
    """Normalise a hex string to a lower-case 20-byte address, keeping the low bytes."""
    return _hex_to_fixed(value, 20)


def hex_to_hash(value: str) -> str:
    """Normalise a hex string to a lower-case 32-byte hash, keeping the low bytes."""
    return _hex_to_fixed(value, 32)


class EpochStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    CLAIM_COMPUTED = "CLAIM_COMPUTED"
    CLAIM_SUBMITTED = "CLAIM_SUBMITTED"
    CLAIM_ACCEPTED = "CLAIM_ACCEPTED"
    CLAIM_REJECTED = "CLAIM_REJECTED"


class InputCompletionStatus(str, Enum):
    NONE = "NONE"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXCEPTION = "EXCEPTION"


class DefaultBlock(str, Enum):
    LATEST = "LATEST"
    FINALIZED = "FINALIZED"
    PENDING = "PENDING"
    SAFE = "SAFE"


@dataclass
class Application:
    contract_address: str = ZERO_ADDRESS
    iconsensus_address: str = ZERO_ADDRESS
    last_processed_block: int = 0
    last_claim_check_block: int = 0
    last_output_check_block: int = 0
    id: int = 0


@dataclass(eq=False)
class Epoch:
    """An epoch; instances hash by identity so they can key an epoch-to-inputs map."""

    index: int
    first_block: int
    last_block: int
    status: EpochStatus
    app_address: str
    id: int = 0
    claim_hash: str | None = None
    transaction_hash: str | None = None


@dataclass
class Input:
    index: int
    block_number: int
    app_address: str
    raw_data: bytes = b""
    completion_status: InputCompletionStatus = InputCompletionStatus.NONE
    transaction_id: bytes = b""
    id: int = 0


@dataclass
class Output:
    index: int
    raw_data: bytes
    id: int = 0
    hash: str | None = None
    input_id: int = 0
    output_hashes_siblings: list[str] | None = None
    transaction_hash: str | None = None


@dataclass
class Header:
    number: int
    hash: str = "0x" + "0" * 64
    timestamp: int = 0
    mix_digest: str = "0x" + "0" * 64


@dataclass
class FilterOpts:
    start: int
    end: int | None = None


@dataclass
class InputAdded:
    app_contract: str
    index: int
    input: bytes
    block_number: int


@dataclass
class ClaimAcceptance:
    app_contract: str
    last_processed_block_number: int
    claim: str
    block_number: int = 0


@dataclass
class OutputExecuted:
    output_index: int
    output: bytes
    tx_hash: str


class SubscriptionError(Exception):
    """The new-head subscription failed and may be restarted."""

    def __init__(self, cause: BaseException | str) -> None:
        self.cause = cause
        super().__init__(f"Subscription error : {cause}")


@runtime_checkable
class Subscription(Protocol):
    def __aiter__(self) -> AsyncIterator[Header]: ...

    def unsubscribe(self) -> None: ...


class EthClient(Protocol):
    async def header_by_number(self, number: int | None) -> Header: ...


class EthWsClient(Protocol):
    async def subscribe_new_head(self) -> Subscription: ...


class InputSource(Protocol):
    async def retrieve_inputs(
        self, opts: FilterOpts, app_addresses: list[str], index: list[int] | None
    ) -> list[InputAdded]: ...


class ConsensusContract(Protocol):
    async def get_epoch_length(self) -> int: ...

    async def retrieve_claim_acceptance_events(
        self, opts: FilterOpts, app_addresses: list[str]
    ) -> list[ClaimAcceptance]: ...


class ApplicationContract(Protocol):
    async def get_consensus(self) -> str: ...

    async def retrieve_output_execution_events(
        self, opts: FilterOpts
    ) -> list[OutputExecuted]: ...


class ContractFactory(Protocol):
    def new_application(self, address: str) -> ApplicationContract: ...

    def new_iconsensus(self, address: str) -> ConsensusContract: ...


class EvmReaderRepository(Protocol):
    async def store_epoch_and_inputs_transaction(
        self, epoch_input_map: dict[Epoch, list[Input]], block_number: int, app_address: str
    ) -> Any: ...

    async def get_all_running_applications(self) -> list[Application]: ...

    async def get_epoch(self, index: int, app_address: str) -> Epoch | None: ...

    async def get_previous_epochs_with_open_claims(
        self, app: str, last_block: int
    ) -> list[Epoch]: ...

    async def update_epochs(
        self, app: str, epochs: list[Epoch], most_recent_block_number: int
    ) -> None: ...

    async def get_output(self, app_address: str, index: int) -> Output | None: ...

    async def update_output_execution_transaction(
        self, app: str, executed_outputs: list[Output], block_number: int
    ) -> None: ...

    async def get_input_index(self, app_address: str) -> int: ...

    async def update_input_index(self, app_address: str) -> None: ...


@dataclass
class AppContracts:
    """An application together with its bound contracts."""

    application: Application
    application_contract: Any = None
    consensus_contract: Any = None

    @property
    def contract_address(self) -> str:
        return self.application.contract_address

    extra: dict[str, Any] = field(default_factory=dict)