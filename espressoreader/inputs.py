"""Reading InputAdded events and indexing them into epochs."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from espressoreader.abi import modify_index_in_raw
from espressoreader.models import (
    AppContracts,
    ConsensusContract,
    Epoch,
    EpochStatus,
    EvmReaderRepository,
    FilterOpts,
    Input,
    InputCompletionStatus,
    InputSource,
)
from espressoreader.util import (
    apps_to_addresses,
    by_last_processed_block,
    calculate_epoch_index,
    index_apps,
    insert_sorted,
)

logger = logging.getLogger(__name__)


async def get_epoch_length(consensus: ConsensusContract) -> int:
    """Read the epoch length from an application's consensus contract."""
    try:
        return int(await consensus.get_epoch_length())
    except Exception as exc:
        raise RuntimeError(f"error retrieving application epoch length: {exc}") from exc


def _index_bytes(index: int) -> bytes:
    return index.to_bytes((index.bit_length() + 7) // 8, "big")


class InputReader:
    """Reads inputs from the input source, groups them into epochs and stores them."""

    def __init__(
        self,
        input_source: InputSource,
        repository: EvmReaderRepository,
        input_box_deployment_block: int = 0,
        should_modify_index: bool = False,
        epoch_length_cache: dict[str, int] | None = None,
    ) -> None:
        self.input_source = input_source
        self.repository = repository
        self.input_box_deployment_block = input_box_deployment_block
        self.should_modify_index = should_modify_index
        self.epoch_length_cache: dict[str, int] = (
            epoch_length_cache if epoch_length_cache is not None else {}
        )

    def get_epoch_length_cache(self, address: str) -> int:
        """Cached epoch length of an application, or 0 when unknown."""
        return self.epoch_length_cache.get(address, 0)

    async def add_app_epoch_length_into_cache(self, app: AppContracts) -> None:
        """Read the epoch length from the consensus contract unless it is cached."""
        address = app.contract_address
        if address in self.epoch_length_cache:
            logger.debug(
                "evmreader: Got epoch length from cache app=%s epoch length=%d",
                address,
                self.epoch_length_cache[address],
            )
            return
        try:
            epoch_length = await get_epoch_length(app.consensus_contract)
        except RuntimeError as exc:
            raise RuntimeError(
                f"error retrieving epoch length from contracts for app {address}: {exc}"
            ) from exc
        self.epoch_length_cache[address] = epoch_length
        logger.info(
            "evmreader: Got epoch length from IConsensus app=%s epoch length=%d",
            address,
            epoch_length,
        )

    async def check_for_new_inputs(
        self, apps: Iterable[AppContracts], most_recent_block_number: int
    ) -> None:
        """Read inputs for every application up to the most recent block."""
        logger.debug("evmreader: Checking for new inputs")
        for last_processed_block, group in index_apps(by_last_processed_block, apps).items():
            addresses = apps_to_addresses(group)
            # Inputs can be added in the very block the InputBox was deployed in.
            if last_processed_block < self.input_box_deployment_block:
                last_processed_block = self.input_box_deployment_block - 1

            if most_recent_block_number > last_processed_block:
                logger.debug(
                    "evmreader: Checking inputs for applications apps=%s "
                    "last processed block=%d most recent block=%d",
                    addresses,
                    last_processed_block,
                    most_recent_block_number,
                )
                try:
                    await self.read_and_store_inputs(
                        last_processed_block + 1, most_recent_block_number, group
                    )
                except Exception as exc:
                    logger.error(
                        "Error reading inputs apps=%s last processed block=%d "
                        "most recent block=%d error=%s",
                        addresses,
                        last_processed_block,
                        most_recent_block_number,
                        exc,
                    )
            elif most_recent_block_number < last_processed_block:
                logger.warning(
                    "evmreader: Not reading inputs: most recent block is lower than the "
                    "last processed one apps=%s last processed block=%d most recent block=%d",
                    addresses,
                    last_processed_block,
                    most_recent_block_number,
                )
            else:
                logger.info(
                    "evmreader: Not reading inputs: already checked the most recent blocks "
                    "apps=%s last processed block=%d most recent block=%d",
                    addresses,
                    last_processed_block,
                    most_recent_block_number,
                )

    async def read_and_store_inputs(
        self, start_block: int, end_block: int, apps: Iterable[AppContracts]
    ) -> None:
        """Read inputs in [start_block, end_block], index them into epochs and store them."""
        to_process: list[str] = []
        for app in apps:
            try:
                await self.add_app_epoch_length_into_cache(app)
            except RuntimeError as exc:
                logger.error(
                    "evmreader: Error adding epoch length into cache app=%s error=%s",
                    app.contract_address,
                    exc,
                )
                continue
            to_process.append(app.contract_address)

        if not to_process:
            logger.warning("evmreader: No valid running applications")
            return

        try:
            app_inputs = await self._read_inputs_from_blockchain(to_process, start_block, end_block)
        except Exception as exc:
            raise RuntimeError(
                f"failed to read inputs from block {start_block} to block {end_block}. {exc}"
            ) from exc

        for address, inputs in app_inputs.items():
            await self._index_and_store(address, inputs, start_block, end_block)

    async def _index_and_store(
        self, address: str, inputs: list[Input], start_block: int, end_block: int
    ) -> None:
        epoch_length = self.epoch_length_cache.get(address, 0)
        try:
            current_epoch = await self.repository.get_epoch(
                calculate_epoch_index(epoch_length, start_block), address
            )
        except Exception as exc:
            logger.error(
                "evmreader: Error retrieving existing current epoch app=%s error=%s",
                address,
                exc,
            )
            return

        if current_epoch is not None and current_epoch.status != EpochStatus.OPEN:
            logger.error(
                "evmreader: Current epoch is not open app=%s epoch_index=%d status=%s",
                address,
                current_epoch.index,
                current_epoch.status,
            )
            return

        epoch_inputs: dict[Epoch, list[Input]] = {}
        for item in inputs:
            input_epoch_index = calculate_epoch_index(epoch_length, item.block_number)

            if current_epoch is not None and current_epoch.index != input_epoch_index:
                current_epoch.status = EpochStatus.CLOSED
                logger.info(
                    "evmreader: Closing epoch app=%s epoch_index=%d start=%d end=%d",
                    current_epoch.app_address,
                    current_epoch.index,
                    current_epoch.first_block,
                    current_epoch.last_block,
                )
                current_epoch = None
            if current_epoch is None:
                current_epoch = Epoch(
                    index=input_epoch_index,
                    first_block=input_epoch_index * epoch_length,
                    last_block=input_epoch_index * epoch_length + epoch_length - 1,
                    status=EpochStatus.OPEN,
                    app_address=address,
                )
                epoch_inputs[current_epoch] = []

            logger.info(
                "evmreader: Found new Input app=%s index=%d block=%d epoch_index=%d",
                address,
                item.index,
                item.block_number,
                input_epoch_index,
            )

            await self._override_index(address, item)
            try:
                await self.repository.update_input_index(address)
            except Exception as exc:
                logger.error("evmreader: failed to update index app=%s error=%s", address, exc)
            epoch_inputs.setdefault(current_epoch, []).append(item)

        if current_epoch is not None and end_block >= current_epoch.last_block:
            current_epoch.status = EpochStatus.CLOSED
            logger.info(
                "evmreader: Closing epoch app=%s epoch_index=%d start=%d end=%d",
                current_epoch.app_address,
                current_epoch.index,
                current_epoch.first_block,
                current_epoch.last_block,
            )
            epoch_inputs.setdefault(current_epoch, [])

        try:
            await self.repository.store_epoch_and_inputs_transaction(
                epoch_inputs, end_block, address
            )
        except Exception as exc:
            logger.error(
                "evmreader: Error storing inputs and epochs app=%s error=%s", address, exc
            )
            return

        if epoch_inputs:
            logger.debug(
                "evmreader: Inputs and epochs stored successfully app=%s start-block=%d "
                "end-block=%d total epochs=%d total inputs=%d",
                address,
                start_block,
                end_block,
                len(epoch_inputs),
                len(inputs),
            )
        else:
            logger.debug("evmreader: No inputs or epochs to store")

    async def _override_index(self, address: str, item: Input) -> None:
        try:
            combined_index = await self.repository.get_input_index(address)
        except Exception as exc:
            logger.error("evmreader: failed to read index app=%s error=%s", address, exc)
            combined_index = 0
        if combined_index == item.index or not self.should_modify_index:
            return
        logger.info(
            "evmreader: Overriding input index onchain-index=%d new-index=%d",
            item.index,
            combined_index,
        )
        item.index = combined_index
        try:
            item.raw_data = modify_index_in_raw(item.raw_data, combined_index)
        except ValueError as exc:
            logger.error("Error unpacking abi err=%s", exc)

    async def _read_inputs_from_blockchain(
        self, addresses: list[str], start_block: int, end_block: int
    ) -> dict[str, list[Input]]:
        result: dict[str, list[Input]] = {address: [] for address in addresses}
        events = await self.input_source.retrieve_inputs(
            FilterOpts(start=start_block, end=end_block), addresses, None
        )
        for event in events:
            logger.debug(
                "evmreader: Received input app=%s index=%d block=%d",
                event.app_contract,
                event.index,
                event.block_number,
            )
            item = Input(
                index=event.index,
                block_number=event.block_number,
                app_address=event.app_contract,
                raw_data=event.input,
                completion_status=InputCompletionStatus.NONE,
                transaction_id=_index_bytes(event.index),
            )
            insert_sorted(result.setdefault(event.app_contract, []), item, key=lambda i: i.index)
        return result