# Copyright 2025 Ralph Lemke
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Contract filter scoping for block payloads.

A contract filter is a comma-separated list of account patterns
(``app.near, *.pool.near``). Receipts and transactions are kept when their
receiver, predecessor or signer matches; state changes when their account
matches. ``*`` or an empty filter keeps everything.
"""

from fnmatch import fnmatchcase
from typing import Any

from .entities import BlockPayload

_RECEIPT_FIELDS = ("receiver_id", "receiverId", "predecessor_id", "predecessorId")
_TRANSACTION_FIELDS = ("signer_id", "signerId", "receiver_id", "receiverId")
_STATE_CHANGE_FIELDS = ("account_id", "accountId")


def parse_filter(contract_filter: str | None) -> list[str] | None:
    """Split a filter into patterns; ``None`` means match everything."""
    if contract_filter is None:
        return None
    patterns = [p.strip().lower() for p in contract_filter.split(",") if p.strip()]
    if not patterns or "*" in patterns:
        return None
    return patterns


def _accounts(item: dict[str, Any], fields: tuple[str, ...]) -> list[str]:
    found = [item.get(f) for f in fields]
    change = item.get("change")
    if isinstance(change, dict):
        found.extend(change.get(f) for f in fields)
    return [str(a).lower() for a in found if a]


def _matches(item: dict[str, Any], fields: tuple[str, ...], patterns: list[str]) -> bool:
    return any(fnmatchcase(account, p) for account in _accounts(item, fields) for p in patterns)


def scope_block(raw: dict[str, Any], contract_filter: str | None, is_historical: bool = False) -> BlockPayload:
    """Build the payload one indexer sees for a fetched block.

    Args:
        raw: Block document as returned by a fetcher
        contract_filter: The indexer's contract filter
        is_historical: Whether the block is replayed rather than live

    Raises:
        KeyError: If the block has no height
    """
    height = raw.get("height", raw.get("block_height"))
    if height is None:
        raise KeyError("block has no height")

    receipts = [dict(r) for r in raw.get("receipts") or []]
    transactions = [dict(t) for t in raw.get("transactions") or []]
    state_changes = [dict(s) for s in raw.get("state_changes", raw.get("stateChanges")) or []]

    patterns = parse_filter(contract_filter)
    if patterns is not None:
        receipts = [r for r in receipts if _matches(r, _RECEIPT_FIELDS, patterns)]
        transactions = [t for t in transactions if _matches(t, _TRANSACTION_FIELDS, patterns)]
        state_changes = [s for s in state_changes if _matches(s, _STATE_CHANGE_FIELDS, patterns)]

    return BlockPayload(
        height=int(height),
        receipts=tuple(receipts),
        transactions=tuple(transactions),
        state_changes=tuple(state_changes),
        is_historical=is_historical,
        hash=raw.get("hash"),
        timestamp=raw.get("timestamp"),
    )
