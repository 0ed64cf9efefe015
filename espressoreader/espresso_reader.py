"""Reads transactions sequenced on Espresso and stores them as application inputs."""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from collections.abc import Callable
from typing import Any, Protocol

from espressoreader.abi import EvmAdvance, encode_evm_advance
from espressoreader.crypto import ecrecover, keccak256, pubkey_to_address, typed_data_hash
from espressoreader.espresso_client import (
    EspressoClient,
    L1Finalized,
    extract_namespaces,
    ns_tables_from_headers,
    parse_l1_finalized,
)
from espressoreader.espresso_db import (
    Database,
    get_last_processed_espresso_block,
    setup_espresso_db,
    update_last_processed_espresso_block,
)
from espressoreader.models import (
    AppContracts,
    Epoch,
    EpochStatus,
    EvmReaderRepository,
    Input,
    InputCompletionStatus,
    hex_to_address,
)
from espressoreader.util import calculate_epoch_index

logger = logging.getLogger(__name__)

BOOTSTRAP_THRESHOLD = 100
BATCH_LIMIT = 100

Extractor = Callable[[str], tuple[str, dict[str, Any], str]]


class EspressoRepository(EvmReaderRepository, Protocol):
    async def get_espresso_nonce(self, sender_address: str, app_address: str) -> int: ...

    async def update_espresso_nonce(self, sender_address: str, app_address: str) -> None: ...


def _extract_transaction(raw: str) -> tuple[str, dict[str, Any], str]:
    """Recover (sender, typed-data message, signature hash) from a signed Espresso payload."""
    try:
        decoded = base64.b64decode(raw, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"decode base64: {exc}") from exc
    try:
        envelope = json.loads(decoded)
    except ValueError as exc:
        raise ValueError(f"unmarshal sigAndData: {exc}") from exc
    if not isinstance(envelope, dict):
        raise ValueError("unmarshal sigAndData: not an object")
    typed_data = envelope.get("typedData") or {}
    signature_text = envelope.get("signature", "")
    if not isinstance(signature_text, str) or not signature_text.startswith("0x"):
        raise ValueError("decode signature: missing 0x prefix")
    signature = bytearray.fromhex(signature_text[2:])
    sig_hash = "0x" + keccak256(bytes(signature)).hex()
    data_hash = typed_data_hash(typed_data)
    if len(signature) != 65:
        raise ValueError("invalid signature length")
    signature[64] = (signature[64] - 27) % 256
    sender = pubkey_to_address(ecrecover(data_hash, bytes(signature)))
    return sender, dict(typed_data.get("message") or {}), sig_hash


class EspressoReader:
    """Follows Espresso blocks for every running application, reading L1 along the way."""

    def __init__(
        self,
        client: EspressoClient,
        starting_block: int,
        namespace: int,
        database: Database,
        repository: EspressoRepository,
        evm_reader: Any,
        chain_id: int,
        input_box_deployment_block: int,
        *,
        extractor: Extractor | None = None,
        poll_interval: float = 1.0,
        retry_delay: float = 3.0,
    ) -> None:
        self.client = client
        self.starting_block = starting_block
        self.namespace = namespace
        self.database = database
        self.repository = repository
        self.evm_reader = evm_reader
        self.chain_id = chain_id
        self.input_box_deployment_block = input_box_deployment_block
        self.extractor: Extractor = extractor or _extract_transaction
        self.poll_interval = poll_interval
        self.retry_delay = retry_delay

    async def run(self, ready: asyncio.Event | None = None) -> None:
        """Poll Espresso until cancelled."""
        if ready is not None:
            ready.set()
        try:
            setup_espresso_db(self.database)
        except Exception:
            logger.error("failed to setup espresso db")
            raise
        try:
            while True:
                await self._poll()
                await asyncio.sleep(self.poll_interval)
        except asyncio.CancelledError:
            logger.info("exiting espresso reader")
            raise

    async def _poll(self) -> None:
        try:
            latest = await self.client.fetch_latest_block_height()
        except Exception as exc:
            logger.error("failed fetching latest espresso block height error=%s", exc)
            return
        logger.debug("Espresso: latestBlockHeight=%d", latest)
        for app in await self._get_apps():
            await self._process_app(app, latest)

    async def _process_app(self, app: AppContracts, latest: int) -> None:
        address = app.contract_address
        try:
            last_espresso = get_last_processed_espresso_block(self.database, address)
        except Exception as exc:
            logger.error("failed reading lastProcessedEspressoBlock error=%s", exc)
            return
        last_l1 = app.application.last_processed_block
        if last_l1 < self.input_box_deployment_block:
            last_l1 = self.input_box_deployment_block - 1

        if latest - last_espresso > BOOTSTRAP_THRESHOLD:
            if last_espresso == 0:
                last_espresso = self.starting_block - 1 if self.starting_block else latest - 1
            logger.debug(
                "bootstrapping: app=%s from-block=%d to-block=%d",
                address,
                last_espresso + 1,
                latest,
            )
            try:
                await self.bootstrap(app, last_espresso, latest, last_l1)
            except Exception as exc:
                logger.error("failed reading inputs error=%s", exc)
                return
            self._store_progress(address, latest)
        else:
            for height in range(last_espresso + 1, latest + 1):
                logger.debug("Espresso: app=%s currentBlockHeight=%d", address, height)
                last_l1 = await self.process_block(app, height, last_l1)
                self._store_progress(address, latest)

    def _store_progress(self, address: str, height: int) -> None:
        try:
            update_last_processed_espresso_block(self.database, address, height)
        except Exception as exc:
            logger.error("failed updating last processed espresso block error=%s", exc)

    async def process_block(
        self, app: AppContracts, block_height: int, last_processed_l1_block: int
    ) -> int:
        """Catch up on L1 and read one Espresso block; returns the L1 finalized height."""
        finalized = await self._read_l1(app, block_height, last_processed_l1_block)
        await self._read_espresso(app, block_height, finalized)
        return finalized.number

    async def bootstrap(
        self,
        app: AppContracts,
        last_processed_espresso_block: int,
        latest_block_height: int,
        l1_finalized_height: int,
    ) -> None:
        """Scan block headers in batches, reading only blocks that carry our namespace."""
        namespace = self.namespace & 0xFFFFFFFF
        batch_start = last_processed_espresso_block + 1
        while latest_block_height >= batch_start:
            batch_end = min(batch_start + BATCH_LIMIT, latest_block_height + 1)
            tables = await self._get_ns_tables(batch_start, batch_end)
            for offset, table in enumerate(tables):
                try:
                    namespaces = extract_namespaces(table)
                except ValueError as exc:
                    logger.error("failed decoding ns table error=%s", exc)
                    continue
                if namespace in namespaces:
                    block = batch_start + offset
                    logger.debug("found namespace contained in block=%d", block)
                    l1_finalized_height = await self.process_block(app, block, l1_finalized_height)
            batch_start += BATCH_LIMIT

    async def _get_ns_tables(self, start: int, end: int) -> list[bytes]:
        while True:
            try:
                headers = await self.client.fetch_headers_by_range(start, end)
                return ns_tables_from_headers(headers)
            except Exception as exc:
                logger.debug("ns table is empty in current block range. Retry fetching: %s", exc)
                await asyncio.sleep(self.retry_delay)

    async def _read_l1(
        self, app: AppContracts, block_height: int, last_processed_l1_block: int
    ) -> L1Finalized:
        finalized = await self._get_l1_finalized(block_height)
        if finalized.number > last_processed_l1_block:
            logger.debug(
                "L1 finalized app=%s from=%d to=%d",
                app.contract_address,
                last_processed_l1_block,
                finalized.number,
            )
            apps = [app]
            try:
                await self.evm_reader.read_and_store_inputs(
                    last_processed_l1_block + 1, finalized.number, apps
                )
            except Exception as exc:
                logger.error("failed reading L1 inputs error=%s", exc)
            await self.evm_reader.check_for_claim_status(apps, finalized.number)
            await self.evm_reader.check_for_output_execution(apps, finalized.number)
        return finalized

    async def _get_l1_finalized(self, block_height: int) -> L1Finalized:
        while True:
            try:
                header = await self.client.fetch_header(block_height)
            except Exception as exc:
                logger.error(
                    "error fetching espresso header at height=%d error=%s; retrying",
                    block_height,
                    exc,
                )
                await asyncio.sleep(self.retry_delay)
                continue
            try:
                finalized = parse_l1_finalized(header)
            except ValueError as exc:
                logger.error("hex to int conversion failed err=%s; retrying", exc)
                await asyncio.sleep(self.retry_delay)
                continue
            if finalized is None:
                logger.debug("Espresso header not ready. Retry fetching height=%d", block_height)
                await asyncio.sleep(self.retry_delay)
                continue
            return finalized

    async def _read_espresso(
        self, app: AppContracts, block_height: int, finalized: L1Finalized
    ) -> None:
        try:
            transactions = await self.client.fetch_transactions_in_block(
                block_height, self.namespace
            )
        except Exception as exc:
            logger.error("failed fetching espresso tx error=%s", exc)
            return
        for transaction in transactions:
            await self._handle_transaction(app, transaction, finalized)

    async def _handle_transaction(
        self, app_contracts: AppContracts, transaction: bytes, finalized: L1Finalized
    ) -> None:
        app = hex_to_address(app_contracts.contract_address)
        try:
            sender, message, sig_hash = self.extractor(bytes(transaction).decode())
            nonce = int(message["nonce"])
            payload = str(message["data"])
            app_address = hex_to_address(str(message["app"]))
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("failed to extract espresso tx error=%s", exc)
            return
        if app_address != app:
            logger.debug("skipping tx that doesn't belong to app=%s", app)
            return
        logger.info(
            "Espresso input msgSender=%s nonce=%d payload=%s appAddress=%s tx-id=%s",
            sender,
            nonce,
            payload,
            app_address,
            sig_hash,
        )

        try:
            nonce_in_db = await self.repository.get_espresso_nonce(sender, app_address)
        except Exception as exc:
            logger.error("failed to get espresso nonce from db error=%s", exc)
            return
        if nonce != nonce_in_db:
            logger.error(
                "Espresso nonce is incorrect. May be a duplicate tx nonce from espresso=%d "
                "nonce in db=%d",
                nonce,
                nonce_in_db,
            )
            return

        if payload.startswith("0x"):
            try:
                payload_bytes = bytes.fromhex(payload[2:])
            except ValueError as exc:
                logger.error("failed to decode hex string error=%s", exc)
                return
        else:
            payload_bytes = payload.encode()

        prev_randao = await self._read_prev_randao(finalized.number)
        try:
            index = await self.repository.get_input_index(app_address)
        except Exception as exc:
            logger.error("failed to read index app=%s error=%s", app_address, exc)
            index = 0
        try:
            raw_data = encode_evm_advance(
                EvmAdvance(
                    chain_id=self.chain_id,
                    app_contract=app_address,
                    msg_sender=sender,
                    block_number=finalized.number,
                    block_timestamp=finalized.timestamp,
                    prev_randao=prev_randao,
                    index=index,
                    payload=payload_bytes,
                )
            )
        except ValueError as exc:
            logger.error("failed to abi encode error=%s", exc)
            return

        epoch_length = self.evm_reader.get_epoch_length_cache(app_address)
        if epoch_length == 0:
            try:
                await self.evm_reader.add_app_epoch_length_into_cache(app_contracts)
            except Exception as exc:
                logger.error("could not obtain epoch length error=%s", exc)
                return
            epoch_length = self.evm_reader.get_epoch_length_cache(app_address)
            if epoch_length == 0:
                logger.error("could not obtain epoch length")
                return

        epoch_index = calculate_epoch_index(epoch_length, finalized.number)
        try:
            current_epoch = await self.repository.get_epoch(epoch_index, app_address)
        except Exception as exc:
            logger.error("could not obtain current epoch err=%s", exc)
            return
        # An existing epoch is assumed open: Espresso inputs never close epochs.
        if current_epoch is None:
            current_epoch = Epoch(
                index=epoch_index,
                first_block=epoch_index * epoch_length,
                last_block=epoch_index * epoch_length + epoch_length - 1,
                status=EpochStatus.OPEN,
                app_address=app_address,
            )

        try:
            transaction_id = bytes.fromhex(sig_hash[2:])
        except ValueError as exc:
            logger.error("could not obtain bytes for tx-id err=%s", exc)
            return
        item = Input(
            index=index,
            block_number=finalized.number,
            app_address=app_address,
            raw_data=raw_data,
            completion_status=InputCompletionStatus.NONE,
            transaction_id=transaction_id,
        )
        try:
            await self.repository.store_epoch_and_inputs_transaction(
                {current_epoch: [item]}, finalized.number, app_address
            )
        except Exception as exc:
            logger.error("could not store Espresso input err=%s", exc)
            return

        try:
            await self.repository.update_espresso_nonce(sender, app_address)
        except Exception as exc:
            logger.error("could not update Espresso nonce err=%s", exc)
            return
        try:
            await self.repository.update_input_index(app_address)
        except Exception as exc:
            logger.error("failed to update index app=%s error=%s", app_address, exc)

    async def _read_prev_randao(self, block_number: int) -> int:
        try:
            header = await self.evm_reader.client.header_by_number(block_number)
            prev_randao = int(header.mix_digest, 16)
        except Exception as exc:
            logger.error("failed to read prevrandao error=%s", exc)
            return 0
        logger.debug("readPrevRandao prevRandao=%d blockNumber=%d", prev_randao, block_number)
        return prev_randao

    async def _get_apps(self) -> list[AppContracts]:
        try:
            running = await self.repository.get_all_running_applications()
        except Exception as exc:
            logger.error("Error retrieving running applications error=%s", exc)
            running = []
        apps: list[AppContracts] = []
        for app in running:
            try:
                apps.append(await self.evm_reader.get_app_contracts(app))
            except Exception as exc:
                logger.error(
                    "Error retrieving application contracts app=%s error=%s",
                    app.contract_address,
                    exc,
                )
        if not apps:
            logger.info("No correctly configured applications running")
        return apps