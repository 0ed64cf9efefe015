"""Reading ClaimAcceptance events and marking submitted claims as accepted."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from espressoreader.models import (
    AppContracts,
    ClaimAcceptance,
    ConsensusContract,
    EpochStatus,
    EvmReaderRepository,
    FilterOpts,
    hex_to_hash,
)
from espressoreader.util import (
    apps_to_addresses,
    calculate_epoch_index,
    index_apps,
    insert_sorted,
    key_by_iconsensus,
    key_by_last_claim_check,
)

logger = logging.getLogger(__name__)


class ClaimReader:
    """Checks consensus contracts for accepted claims and updates the matching epochs.

    Only the Authority consensus is handled: acceptance events are expected after
    the claim was submitted, and at most one acceptance per block.
    """

    def __init__(
        self,
        repository: EvmReaderRepository,
        input_box_deployment_block: int = 0,
        epoch_length_cache: dict[str, int] | None = None,
    ) -> None:
        self.repository = repository
        self.input_box_deployment_block = input_box_deployment_block
        self.epoch_length_cache: dict[str, int] = (
            epoch_length_cache if epoch_length_cache is not None else {}
        )

    async def check_for_claim_status(
        self, apps: Iterable[AppContracts], most_recent_block_number: int
    ) -> None:
        """Look for claim acceptances of every application up to the most recent block."""
        logger.debug("evmreader: Checking for new Claim Acceptance Events")
        for last_claim_check, group in index_apps(key_by_last_claim_check, apps).items():
            addresses = apps_to_addresses(group)
            # Inputs can be added in the very block the InputBox was deployed in.
            if last_claim_check < self.input_box_deployment_block:
                last_claim_check = self.input_box_deployment_block - 1

            if most_recent_block_number > last_claim_check:
                logger.debug(
                    "evmreader: Checking claim acceptance for applications apps=%s "
                    "last claim check block=%d most recent block=%d",
                    addresses,
                    last_claim_check,
                    most_recent_block_number,
                )
                await self._read_and_update_claims(
                    group, last_claim_check, most_recent_block_number
                )
            elif most_recent_block_number < last_claim_check:
                logger.warning(
                    "evmreader: Not reading claim acceptance: most recent block is lower "
                    "than the last processed one apps=%s last claim check block=%d "
                    "most recent block=%d",
                    addresses,
                    last_claim_check,
                    most_recent_block_number,
                )
            else:
                logger.warning(
                    "evmreader: Not reading claim acceptance: already checked the most "
                    "recent blocks apps=%s last claim check block=%d most recent block=%d",
                    addresses,
                    last_claim_check,
                    most_recent_block_number,
                )

    async def _read_and_update_claims(
        self, apps: list[AppContracts], last_claim_check: int, most_recent_block_number: int
    ) -> None:
        for consensus_address, group in index_apps(key_by_iconsensus, apps).items():
            addresses = apps_to_addresses(group)
            # Every application in the group shares the same consensus contract.
            consensus = group[0].consensus_contract
            try:
                acceptances = await self._read_claims_acceptance(
                    consensus, addresses, last_claim_check + 1, most_recent_block_number
                )
            except Exception as exc:
                logger.error(
                    "evmreader: Error reading claim acceptance status apps=%s IConsensus=%s "
                    "start=%d end=%d error=%s",
                    addresses,
                    consensus_address,
                    last_claim_check,
                    most_recent_block_number,
                    exc,
                )
                continue

            for app, events in acceptances.items():
                await self._process_app_claims(app, events)

    async def _process_app_claims(self, app: str, events: list[ClaimAcceptance]) -> None:
        for event in events:
            last_block = event.last_processed_block_number
            try:
                previous = await self.repository.get_previous_epochs_with_open_claims(
                    app, last_block
                )
            except Exception as exc:
                logger.error(
                    "evmreader: Error retrieving previous submitted claims app=%s block=%d "
                    "error=%s",
                    app,
                    last_block,
                    exc,
                )
                return
            if previous:
                logger.error(
                    "evmreader: Application got 'not accepted' claims. It is in an invalid "
                    "state claim last block=%d app=%s",
                    last_block,
                    app,
                )
                return

            try:
                epoch_index = calculate_epoch_index(self.epoch_length_cache.get(app, 0), last_block)
                epoch = await self.repository.get_epoch(epoch_index, app)
            except Exception as exc:
                logger.error(
                    "evmreader: Error retrieving Epoch app=%s block=%d error=%s",
                    app,
                    last_block,
                    exc,
                )
                return

            if epoch is None:
                logger.error(
                    "evmreader: Found claim acceptance event for an unknown epoch. "
                    "Application is in an invalid state app=%s claim last block=%d hash=%s",
                    app,
                    last_block,
                    event.claim,
                )
                return
            if epoch.claim_hash is None:
                logger.warning(
                    "evmreader: Found claim acceptance event, but claim hasn't been "
                    "calculated yet app=%s lastBlock=%d",
                    app,
                    last_block,
                )
                return
            if (
                hex_to_hash(event.claim) != hex_to_hash(epoch.claim_hash)
                or last_block != epoch.last_block
            ):
                logger.error(
                    "evmreader: Accepted Claim does not match actual Claim. Application is "
                    "in an invalid state app=%s lastBlock=%d hash=%s",
                    app,
                    epoch.last_block,
                    epoch.claim_hash,
                )
                return
            if epoch.status == EpochStatus.CLAIM_ACCEPTED:
                logger.debug(
                    "evmreader: Claim already accepted. Skipping app=%s block=%d "
                    "claimStatus=%s hash=%s",
                    app,
                    last_block,
                    epoch.status,
                    epoch.claim_hash,
                )
                continue
            if epoch.status != EpochStatus.CLAIM_SUBMITTED:
                # The reader may see the event before the claimer marks it submitted.
                logger.debug(
                    "evmreader: Claim status is not submitted. Skipping for now app=%s "
                    "block=%d claimStatus=%s hash=%s",
                    app,
                    last_block,
                    epoch.status,
                    epoch.claim_hash,
                )
                return

            logger.info(
                "evmreader: Claim Accepted app=%s lastBlock=%d hash=%s epoch_id=%d "
                "last_claim_check_block=%d",
                app,
                epoch.last_block,
                epoch.claim_hash,
                epoch.id,
                event.block_number,
            )
            epoch.status = EpochStatus.CLAIM_ACCEPTED
            try:
                await self.repository.update_epochs(app, [epoch], event.block_number)
            except Exception as exc:
                logger.error("evmreader: Error storing claims app=%s error=%s", app, exc)

    @staticmethod
    async def _read_claims_acceptance(
        consensus: ConsensusContract, addresses: list[str], start_block: int, end_block: int
    ) -> dict[str, list[ClaimAcceptance]]:
        result: dict[str, list[ClaimAcceptance]] = {address: [] for address in addresses}
        events = await consensus.retrieve_claim_acceptance_events(
            FilterOpts(start=start_block, end=end_block), addresses
        )
        for event in events:
            insert_sorted(
                result.setdefault(event.app_contract, []),
                event,
                key=lambda e: e.last_processed_block_number,
            )
        return result