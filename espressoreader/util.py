"""Small helpers shared by the readers."""

from __future__ import annotations

import bisect
from collections.abc import Callable, Hashable, Iterable
from typing import TypeVar

from espressoreader.models import AppContracts

T = TypeVar("T")
K = TypeVar("K", bound=Hashable)


def calculate_epoch_index(epoch_length: int, block_number: int) -> int:
    """Index of the epoch a block belongs to."""
    return block_number // epoch_length


def apps_to_addresses(apps: Iterable[AppContracts]) -> list[str]:
    return [app.application.contract_address for app in apps]


def insert_sorted(items: list[T], item: T, key: Callable[[T], object]) -> list[T]:
    """Insert ``item`` before the first element whose key is not smaller; returns ``items``."""
    position = bisect.bisect_left(items, key(item), key=key)
    items.insert(position, item)
    return items


def index_apps(key: Callable[[AppContracts], K], apps: Iterable[AppContracts]) -> dict[K, list[AppContracts]]:
    """Group applications by the value of ``key``, keeping their order."""
    result: dict[K, list[AppContracts]] = {}
    for app in apps:
        result.setdefault(key(app), []).append(app)
    return result


def by_last_processed_block(app: AppContracts) -> int:
    return app.application.last_processed_block


def key_by_last_claim_check(app: AppContracts) -> int:
    return app.application.last_claim_check_block


def key_by_iconsensus(app: AppContracts) -> str:
    return app.application.iconsensus_address