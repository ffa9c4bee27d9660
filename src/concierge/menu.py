"""
Menu catalog.

The active catalog is loaded from persistence (`menu_items` where active) and
serves two purposes: the guardrail fragment in the agent prompt, and item
matching when an order has to be reconstructed from the transcript.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple


@dataclass(frozen=True)
class MenuItem:
    id: Optional[str]
    name: str
    price_cents: int

    @property
    def price_text(self) -> str:
        return format_price(self.price_cents)


@dataclass(frozen=True)
class MenuCatalog:
    items: Tuple[MenuItem, ...] = ()

    @classmethod
    def from_rows(cls, rows: Iterable[dict]) -> "MenuCatalog":
        """Build from `menu_items` rows (`id`, `name`, `price_cents`)."""
        items: List[MenuItem] = []
        for row in rows:
            name = str(row.get("name") or "").strip()
            if not name:
                continue
            try:
                price_cents = int(row.get("price_cents") or 0)
            except (TypeError, ValueError):
                price_cents = 0
            item_id = row.get("id")
            items.append(MenuItem(id=str(item_id) if item_id else None, name=name, price_cents=price_cents))
        items.sort(key=lambda item: item.name.casefold())
        return cls(items=tuple(items))

    def __len__(self) -> int:
        return len(self.items)

    def __bool__(self) -> bool:
        return bool(self.items)

    def by_id(self) -> Dict[str, MenuItem]:
        return {item.id: item for item in self.items if item.id}

    def to_prompt_lines(self, *, max_items: Optional[int] = None) -> List[str]:
        """
        Render a compact, deterministic representation for prompting.
        """
        lines: List[str] = []
        for item in self.items:
            lines.append(f"- {item.name} ({item.price_text})")
            if max_items is not None and len(lines) >= max_items:
                break
        return lines

    def find_mentions(self, text: str) -> List[MenuItem]:
        """
        Return catalog items whose full name appears in `text`.

        Longer names are matched first and their span masked, so "Samosa Chana Chat"
        does not also count as "Samosa". Results follow catalog order.
        """
        haystack = _normalize(text)
        if not haystack:
            return []

        found: set[int] = set()
        ordered = sorted(enumerate(self.items), key=lambda pair: len(pair[1].name), reverse=True)
        for index, item in ordered:
            needle = _normalize(item.name)
            if not needle:
                continue
            pattern = re.compile(rf"(?<![a-z0-9]){re.escape(needle)}(?![a-z0-9])")
            if pattern.search(haystack):
                found.add(index)
                haystack = pattern.sub(lambda m: " " * len(m.group(0)), haystack)

        return [self.items[i] for i in sorted(found)]


def format_price(price_cents: int) -> str:
    return f"${price_cents / 100:.2f}"


def _normalize(text: str) -> str:
    """
    Normalize text for matching: casefold + strip accents + collapse whitespace.
    """
    text = unicodedata.normalize("NFKD", text or "")
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = " ".join(text.split())
    return text.casefold()
