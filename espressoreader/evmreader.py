"""Watches new block headers and reads inputs, claim acceptances and output executions."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from espressoreader.claims import ClaimReader
from espressoreader.inputs import InputReader
from espressoreader.models import (
    AppContracts,
    Application,
    ContractFactory,
    DefaultBlock,
    EthClient,
    EthWsClient,
    EvmReaderRepository,
    Header,
    InputSource,
    SubscriptionError,
    hex_to_address,
)
from espressoreader.outputs import OutputReader

logger = logging.getLogger(__name__)

# Block tags as understood by Ethereum JSON-RPC clients.
_DEFAULT_BLOCK_NUMBERS = {
    DefaultBlock.PENDING: -1,
    DefaultBlock.LATEST: -2,
    DefaultBlock.FINALIZED: -3,
    DefaultBlock.SAFE: -4,
}


class EvmReader:
    """Reads InputAdded, ClaimAcceptance and OutputExecuted events from the blockchain."""

    def __init__(
        self,
        client: EthClient,
        ws_client: EthWsClient,
        input_source: InputSource,
        repository: EvmReaderRepository,
        input_box_deployment_block: int,
        default_block: DefaultBlock,
        contract_factory: ContractFactory,
        should_modify_index: bool = False,
    ) -> None:
        self.client = client
        self.ws_client = ws_client
        self.input_source = input_source
        self.repository = repository
        self.input_box_deployment_block = input_box_deployment_block
        self.default_block = default_block
        self.contract_factory = contract_factory
        self.should_modify_index = should_modify_index
        self.has_enabled_apps = True
        self.epoch_length_cache: dict[str, int] = {}
        self._inputs = InputReader(
            input_source,
            repository,
            input_box_deployment_block,
            should_modify_index,
            self.epoch_length_cache,
        )
        self._claims = ClaimReader(repository, input_box_deployment_block, self.epoch_length_cache)
        self._outputs = OutputReader(repository, input_box_deployment_block)

    def __str__(self) -> str:
        return "evmreader"

    async def run(self, ready: asyncio.Event | None = None) -> None:
        """Watch new blocks until cancelled, restarting the subscription when it fails."""
        while True:
            try:
                await self._watch_for_new_blocks(ready)
            except SubscriptionError as exc:
                logger.error("%s", exc)
                logger.info("evmreader: Restarting subscription")

    async def _watch_for_new_blocks(self, ready: asyncio.Event | None) -> None:
        try:
            subscription = await self.ws_client.subscribe_new_head()
        except Exception as exc:
            raise RuntimeError(f"could not start subscription: {exc}") from exc
        logger.info("evmreader: Subscribed to new block events")
        if ready is not None:
            ready.set()
        try:
            headers = aiter(subscription)
            while True:
                try:
                    header = await anext(headers)
                except StopAsyncIteration:
                    raise SubscriptionError("subscription closed") from None
                except Exception as exc:
                    raise SubscriptionError(exc) from exc
                await self._on_new_head(header)
        finally:
            subscription.unsubscribe()

    async def _on_new_head(self, header: Header) -> None:
        logger.debug(
            "evmreader: New block header received blockNumber=%d blockHash=%s",
            header.number,
            header.hash,
        )
        logger.debug("evmreader: Retrieving enabled applications")
        try:
            running = await self.repository.get_all_running_applications()
        except Exception as exc:
            logger.error("evmreader: Error retrieving running applications error=%s", exc)
            return

        if not running:
            if self.has_enabled_apps:
                logger.info("evmreader: No registered applications enabled")
            self.has_enabled_apps = False
            return
        if not self.has_enabled_apps:
            logger.info("evmreader: Found enabled applications")
        self.has_enabled_apps = True

        apps: list[AppContracts] = []
        for app in running:
            try:
                apps.append(await self.get_app_contracts(app))
            except Exception as exc:
                logger.error(
                    "evmreader: Error retrieving application contracts app=%s error=%s",
                    app.contract_address,
                    exc,
                )
        if not apps:
            logger.info("evmreader: No correctly configured applications running")
            return

        block_number = header.number
        if self.default_block != DefaultBlock.LATEST:
            try:
                most_recent = await self._fetch_most_recent_header(self.default_block)
            except Exception as exc:
                logger.error(
                    "evmreader: Error fetching most recent block default block=%s error=%s",
                    self.default_block.value,
                    exc,
                )
                return
            block_number = most_recent.number
            logger.debug(
                "evmreader: Using block %d and not %d because of commitment policy: %s",
                most_recent.number,
                header.number,
                self.default_block.value,
            )

        await self._inputs.check_for_new_inputs(apps, block_number)
        await self.check_for_claim_status(apps, block_number)
        await self.check_for_output_execution(apps, block_number)

    async def _fetch_most_recent_header(self, default_block: DefaultBlock) -> Header:
        try:
            number = _DEFAULT_BLOCK_NUMBERS[default_block]
        except KeyError:
            raise ValueError(f"default block '{default_block}' not supported") from None
        try:
            header = await self.client.header_by_number(number)
        except Exception as exc:
            raise RuntimeError(f"failed to retrieve header. {exc}") from exc
        if header is None:
            raise RuntimeError("returned header is nil")
        return header

    async def get_app_contracts(self, app: Application) -> AppContracts:
        """Bind an application's contracts, checking its consensus against the chain."""
        try:
            application_contract = self.contract_factory.new_application(app.contract_address)
        except Exception as exc:
            raise RuntimeError(f"error building application contract: {exc}") from exc
        try:
            consensus_address = await application_contract.get_consensus()
        except Exception as exc:
            raise RuntimeError(f"error retrieving application consensus: {exc}") from exc

        if hex_to_address(app.iconsensus_address) != hex_to_address(consensus_address):
            raise ValueError(
                f"IConsensus addresses do not match. Deployed: {consensus_address}. "
                f"Configured: {app.iconsensus_address}"
            )

        try:
            consensus = self.contract_factory.new_iconsensus(consensus_address)
        except Exception as exc:
            raise RuntimeError(f"error building consensus contract: {exc}") from exc
        return AppContracts(app, application_contract, consensus)

    def get_epoch_length_cache(self, address: str) -> int:
        return self.epoch_length_cache.get(address, 0)

    async def add_app_epoch_length_into_cache(self, app: AppContracts) -> None:
        await self._inputs.add_app_epoch_length_into_cache(app)

    async def read_and_store_inputs(
        self, start_block: int, end_block: int, apps: Iterable[AppContracts]
    ) -> None:
        await self._inputs.read_and_store_inputs(start_block, end_block, apps)

    async def check_for_claim_status(
        self, apps: Iterable[AppContracts], most_recent_block_number: int
    ) -> None:
        await self._claims.check_for_claim_status(apps, most_recent_block_number)

    async def check_for_output_execution(
        self, apps: Iterable[AppContracts], most_recent_block_number: int
    ) -> None:
        await self._outputs.check_for_output_execution(apps, most_recent_block_number)