"""Reading OutputExecuted events and marking outputs as executed."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from espressoreader.models import AppContracts, EvmReaderRepository, FilterOpts, Output
from espressoreader.util import apps_to_addresses

logger = logging.getLogger(__name__)


class OutputReader:
    """Checks application contracts for executed outputs and records their transactions."""

    def __init__(self, repository: EvmReaderRepository, input_box_deployment_block: int = 0) -> None:
        self.repository = repository
        self.input_box_deployment_block = input_box_deployment_block

    async def check_for_output_execution(
        self, apps: Iterable[AppContracts], most_recent_block_number: int
    ) -> None:
        """Look for OutputExecuted events of every application up to the most recent block."""
        apps = list(apps)
        logger.debug(
            "evmreader: Checking for new Output Executed Events apps=%s", apps_to_addresses(apps)
        )
        for app in apps:
            last_output_check = app.application.last_output_check_block
            # Only look at blocks from the InputBox deployment onwards.
            if last_output_check < self.input_box_deployment_block:
                last_output_check = self.input_box_deployment_block

            if most_recent_block_number > last_output_check:
                logger.debug(
                    "evmreader: Checking output execution for application app=%s "
                    "last output check block=%d most recent block=%d",
                    app.contract_address,
                    last_output_check,
                    most_recent_block_number,
                )
                await self._read_and_update_outputs(
                    app, last_output_check, most_recent_block_number
                )
            elif most_recent_block_number < last_output_check:
                logger.warning(
                    "evmreader: Not reading output execution: most recent block is lower "
                    "than the last processed one app=%s last output check block=%d "
                    "most recent block=%d",
                    app.contract_address,
                    last_output_check,
                    most_recent_block_number,
                )
            else:
                logger.warning(
                    "evmreader: Not reading output execution: already checked the most "
                    "recent blocks app=%s last output check block=%d most recent block=%d",
                    app.contract_address,
                    last_output_check,
                    most_recent_block_number,
                )

    async def _read_and_update_outputs(
        self, app: AppContracts, last_output_check: int, most_recent_block_number: int
    ) -> None:
        address = app.contract_address
        opts = FilterOpts(start=last_output_check + 1, end=most_recent_block_number)
        try:
            events = await app.application_contract.retrieve_output_execution_events(opts)
        except Exception as exc:
            logger.error("evmreader: Error reading output events app=%s error=%s", address, exc)
            return

        executed: list[Output] = []
        for event in events:
            try:
                output = await self.repository.get_output(address, event.output_index)
            except Exception as exc:
                logger.error(
                    "evmreader: Error retrieving output app=%s index=%d error=%s",
                    address,
                    event.output_index,
                    exc,
                )
                return
            if output is None:
                logger.warning(
                    "evmreader: Found OutputExecuted event but output does not exist in the "
                    "database yet app=%s index=%d",
                    address,
                    event.output_index,
                )
                return
            if bytes(output.raw_data) != bytes(event.output):
                logger.debug(
                    "evmreader: Output mismatch app=%s index=%d actual=%s event's=%s",
                    address,
                    event.output_index,
                    bytes(output.raw_data).hex(),
                    bytes(event.output).hex(),
                )
                logger.error(
                    "evmreader: Output mismatch. Application is in an invalid state "
                    "app=%s index=%d",
                    address,
                    event.output_index,
                )
                return

            logger.info("evmreader: Output executed app=%s index=%d", address, event.output_index)
            output.transaction_hash = event.tx_hash
            executed.append(output)

        try:
            await self.repository.update_output_execution_transaction(
                address, executed, most_recent_block_number
            )
        except Exception as exc:
            logger.error(
                "evmreader: Error storing output execution statuses app=%s error=%s", address, exc
            )