"""Delegators that retry failing contract and client calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from espressoreader.models import (
    ApplicationContract,
    ClaimAcceptance,
    ConsensusContract,
    EthClient,
    EthWsClient,
    FilterOpts,
    Header,
    InputAdded,
    InputSource,
    OutputExecuted,
    Subscription,
)

logger = logging.getLogger(__name__)

R = TypeVar("R")


async def _call_with_retry(
    call: Callable[[], Awaitable[R]], max_retries: int, delay: float, label: str
) -> R:
    """Await ``call`` up to ``max_retries + 1`` times, sleeping ``delay`` seconds between tries."""
    last_error: Exception | None = None
    for attempt in range(max_retries + 1):
        if attempt:
            await asyncio.sleep(delay)
        try:
            return await call()
        except Exception as exc:
            logger.warning("%s: call failed attempt=%d error=%s", label, attempt + 1, exc)
            last_error = exc
    logger.error("%s: giving up after %d retries", label, max_retries)
    assert last_error is not None
    raise last_error


class _RetryPolicy:
    def __init__(self, delegate: Any, max_retries: int, delay: float) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")
        if delay < 0:
            raise ValueError("delay must not be negative")
        self.delegate = delegate
        self.max_retries = max_retries
        self.delay = delay

    async def _retry(self, call: Callable[[], Awaitable[R]], label: str) -> R:
        return await _call_with_retry(call, self.max_retries, self.delay, label)


class ApplicationWithRetryPolicy(_RetryPolicy):
    delegate: ApplicationContract

    async def get_consensus(self) -> str:
        return await self._retry(self.delegate.get_consensus, "Application::GetConsensus")

    async def retrieve_output_execution_events(self, opts: FilterOpts) -> list[OutputExecuted]:
        return await self._retry(
            lambda: self.delegate.retrieve_output_execution_events(opts),
            "Application::RetrieveOutputExecutionEvents",
        )


class ConsensusWithRetryPolicy(_RetryPolicy):
    delegate: ConsensusContract

    async def get_epoch_length(self) -> int:
        return await self._retry(self.delegate.get_epoch_length, "Consensus::GetEpochLength")

    async def retrieve_claim_acceptance_events(
        self, opts: FilterOpts, app_addresses: list[str]
    ) -> list[ClaimAcceptance]:
        return await self._retry(
            lambda: self.delegate.retrieve_claim_acceptance_events(opts, app_addresses),
            "Consensus::RetrieveClaimAcceptedEvents",
        )


class EthClientWithRetryPolicy(_RetryPolicy):
    delegate: EthClient

    async def header_by_number(self, number: int | None) -> Header:
        return await self._retry(
            lambda: self.delegate.header_by_number(number), "EthClient::HeaderByNumber"
        )


class EthWsClientWithRetryPolicy(_RetryPolicy):
    delegate: EthWsClient

    async def subscribe_new_head(self) -> Subscription:
        return await self._retry(
            self.delegate.subscribe_new_head, "EthWSClient::SubscribeNewHead"
        )


class InputSourceWithRetryPolicy(_RetryPolicy):
    delegate: InputSource

    async def retrieve_inputs(
        self, opts: FilterOpts, app_addresses: list[str], index: list[int] | None
    ) -> list[InputAdded]:
        return await self._retry(
            lambda: self.delegate.retrieve_inputs(opts, app_addresses, index),
            "InputSource::RetrieveInputs",
        )