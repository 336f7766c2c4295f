from __future__ import annotations

import struct
from collections.abc import Iterator
from dataclasses import dataclass

from openbook_cli.core.lots import base_lots_to_ui, price_lots_to_ui
from openbook_cli.core.types import BookNode, BookSideNodes, MarketAccount, Side

INNER_NODE_TAG = 1
LEAF_NODE_TAG = 2

# Offsets are relative to the node payload, i.e. after the one-byte tag.
_INNER_CHILDREN = struct.Struct("<II")
_INNER_CHILDREN_OFFSET = 23
_LEAF_KEY_OFFSET = 7
_LEAF_OWNER_OFFSET = 23
_LEAF_QUANTITY = struct.Struct("<q")
_LEAF_QUANTITY_OFFSET = 55
_LEAF_CLIENT_ID = struct.Struct("<Q")
_LEAF_CLIENT_ID_OFFSET = 79


@dataclass(frozen=True, slots=True)
class BookLeaf:
    key: int
    owner: bytes
    quantity: int
    client_order_id: int

    @property
    def price_lots(self) -> int:
        return self.key >> 64


@dataclass(frozen=True, slots=True)
class L2Level:
    price: float
    size: float
    price_lots: int
    size_lots: int


def _read_u128(data: bytes, offset: int) -> int:
    return int.from_bytes(data[offset : offset + 16], "little")


def _decode_leaf(node: BookNode) -> BookLeaf:
    data = node.data
    (quantity,) = _LEAF_QUANTITY.unpack_from(data, _LEAF_QUANTITY_OFFSET)
    (client_order_id,) = _LEAF_CLIENT_ID.unpack_from(data, _LEAF_CLIENT_ID_OFFSET)
    return BookLeaf(
        key=_read_u128(data, _LEAF_KEY_OFFSET),
        owner=bytes(data[_LEAF_OWNER_OFFSET : _LEAF_OWNER_OFFSET + 32]),
        quantity=quantity,
        client_order_id=client_order_id,
    )


def iter_leaves(book: BookSideNodes) -> Iterator[BookLeaf]:
    """Walk the critbit tree in price priority order.

    Bids come out highest key first, asks lowest key first. Child 0 of an
    inner node always holds the smaller keys.
    """
    if book.root is None or book.leaf_count == 0:
        return
    descending = book.side == Side.BID
    stack = [book.root]
    while stack:
        index = stack.pop()
        if index < 0 or index >= len(book.nodes):
            raise ValueError(f"book_node_out_of_range:{index}")
        node = book.nodes[index]
        if node.tag == INNER_NODE_TAG:
            left, right = _INNER_CHILDREN.unpack_from(node.data, _INNER_CHILDREN_OFFSET)
            # Push the child to visit second first.
            if descending:
                stack.extend((left, right))
            else:
                stack.extend((right, left))
        elif node.tag == LEAF_NODE_TAG:
            yield _decode_leaf(node)
        else:
            raise ValueError(f"unexpected_book_node_tag:{node.tag}")


def best_price_lots(book: BookSideNodes) -> int | None:
    for leaf in iter_leaves(book):
        return leaf.price_lots
    return None


def l2_levels(market: MarketAccount, book: BookSideNodes, *, depth: int) -> list[L2Level]:
    levels: list[L2Level] = []
    current_price: int | None = None
    current_size = 0
    for leaf in iter_leaves(book):
        if leaf.price_lots != current_price:
            if current_price is not None:
                levels.append(_level(market, current_price, current_size))
                if len(levels) >= depth:
                    return levels
            current_price = leaf.price_lots
            current_size = 0
        current_size += leaf.quantity
    if current_price is not None and len(levels) < depth:
        levels.append(_level(market, current_price, current_size))
    return levels


def _level(market: MarketAccount, price_lots: int, size_lots: int) -> L2Level:
    return L2Level(
        price=price_lots_to_ui(market, price_lots),
        size=base_lots_to_ui(market, size_lots),
        price_lots=price_lots,
        size_lots=size_lots,
    )
