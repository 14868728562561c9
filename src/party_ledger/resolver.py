"""Counter-party identity resolution.

Source records point at their counter-party in several shapes: a plain
identifier string, a populated object carrying ``id``/``_id`` and ``name``,
or only a display name. This module is the single place where those shapes
are turned into a canonical :class:`PartyKey`.

Resolution order, first match wins:

1. an explicit transaction-level identifier string;
2. the ``id``/``_id`` of an embedded party object, or the supplier of the
   embedded product (looked up in a :class:`ProductCatalog` when the record
   carries only the product id);
3. a trimmed display name, keyed in the ``name`` namespace;
4. the ``unknown`` sentinel.

Name keys never merge into id keys on their own. A caller that wants
``"Acme Ltd"`` and ``"sup-1"`` treated as the same party supplies a
:class:`PartyDirectory` that maps the name onto the identifier.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from . import log
from .constants import UNKNOWN_PARTY_VALUE, PartyKeyKind


PARTY_ID_FIELDS = ("partyId", "supplierId", "supplier", "customerId", "customer")
PARTY_NAME_FIELDS = ("partyName", "supplierName", "customerName")
EMBEDDED_OBJECT_FIELDS = ("productId", "product")
EMBEDDED_PARTY_FIELDS = ("supplierId", "supplier")


@dataclass(frozen=True)
class PartyId:
    """A bare identifier string found directly on the transaction."""

    value: str


@dataclass(frozen=True)
class InlineParty:
    """A populated object nested inside the transaction or its product."""

    party_id: Optional[str]
    name: Optional[str] = None


@dataclass(frozen=True)
class PartyName:
    """Only a display name is known for the counter-party."""

    name: str


PartyRef = Union[PartyId, InlineParty, PartyName]


@dataclass(frozen=True, order=True)
class PartyKey:
    """Canonical identifier of the bucket a transaction belongs to."""

    kind: PartyKeyKind
    value: str

    @classmethod
    def for_id(cls, value: str) -> "PartyKey":
        return cls(PartyKeyKind.ID, value)

    @classmethod
    def for_name(cls, value: str) -> "PartyKey":
        return cls(PartyKeyKind.NAME, value)

    @property
    def is_unknown(self) -> bool:
        return self.kind is PartyKeyKind.UNKNOWN

    def __str__(self) -> str:
        if self.is_unknown:
            return UNKNOWN_PARTY_VALUE
        return f"{self.kind.value}:{self.value}"


UNKNOWN_PARTY = PartyKey(PartyKeyKind.UNKNOWN, UNKNOWN_PARTY_VALUE)


@dataclass(frozen=True)
class PartyEntry:
    """A known counter-party as listed by the party directory."""

    party_id: str
    display_name: str
    opening_balance: Decimal = Decimal("0")


class PartyDirectory:
    """Known parties, used to fold name-only references into id buckets.

    Names shared by more than one party are dropped from the name index so a
    collision can never merge unrelated parties.
    """

    def __init__(self, entries: Iterable[PartyEntry]) -> None:
        self._by_id: Dict[str, PartyEntry] = {}
        self._by_name: Dict[str, str] = {}
        ambiguous: set[str] = set()
        for entry in entries:
            self._by_id[entry.party_id] = entry
            name = normalize_name(entry.display_name)
            if not name or name in ambiguous:
                continue
            if name in self._by_name and self._by_name[name] != entry.party_id:
                log.warning("Party name '%s' is shared by several ids; not indexing it", name)
                del self._by_name[name]
                ambiguous.add(name)
                continue
            self._by_name[name] = entry.party_id

    def __len__(self) -> int:
        return len(self._by_id)

    def __iter__(self):
        return iter(self._by_id.values())

    def __contains__(self, party_id: object) -> bool:
        return party_id in self._by_id

    def get(self, party_id: str) -> Optional[PartyEntry]:
        return self._by_id.get(party_id)

    def lookup_name(self, name: str) -> Optional[str]:
        """Return the party id registered under ``name``, if unambiguous."""

        return self._by_name.get(normalize_name(name) or "")

    def entry_for(self, key: PartyKey) -> Optional[PartyEntry]:
        if key.kind is not PartyKeyKind.ID:
            return None
        return self._by_id.get(key.value)


class ProductCatalog:
    """Raw product records keyed by id.

    Movements often reference their product by a bare id. The catalog turns
    that id back into the product record so the product's supplier, price
    and name can be read as if the movement had embedded it.
    """

    def __init__(self, products: Iterable[Mapping[str, Any]]) -> None:
        self._by_id: Dict[str, Mapping[str, Any]] = {}
        for product in products:
            product_id = _text(product.get("_id")) or _text(product.get("id"))
            if product_id is not None:
                self._by_id[product_id] = product

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, product_id: object) -> bool:
        return product_id in self._by_id

    def get(self, product_id: str) -> Optional[Mapping[str, Any]]:
        return self._by_id.get(product_id)

    def expand(self, reference: Any) -> Any:
        """Return the catalog record for a product id or populated object.

        The catalog record wins over a populated object with the same id.
        References the catalog does not know are returned unchanged.
        """

        if isinstance(reference, Mapping):
            product_id = _text(reference.get("_id")) or _text(reference.get("id"))
        else:
            product_id = _text(reference)
        if product_id is None:
            return reference
        return self._by_id.get(product_id, reference)


def normalize_name(raw: Any) -> Optional[str]:
    """Trim a display name, preserving case. Blank names become ``None``."""

    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


def _text(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (str, int)):
        text = str(value).strip()
        return text or None
    return None


def _inline_from_mapping(value: Mapping[str, Any]) -> Optional[InlineParty]:
    party_id = _text(value.get("id")) or _text(value.get("_id"))
    name = normalize_name(value.get("name"))
    if party_id is None and name is None:
        return None
    return InlineParty(party_id=party_id, name=name)


def extract_party_refs(
    payload: Mapping[str, Any],
    catalog: Optional[ProductCatalog] = None,
) -> tuple[PartyRef, ...]:
    """Collect every party reference a raw record carries, in field order.

    Transaction-level strings become :class:`PartyId`; populated objects,
    and any identifier found on the embedded product, become
    :class:`InlineParty`; bare display names become :class:`PartyName`.

    Args:
        payload (Mapping[str, Any]): Raw movement or payment record.
        catalog (ProductCatalog | None): Optional product catalog. When given,
            a product referenced by id is looked up and read as if the record
            had embedded it.

    Returns:
        tuple[PartyRef, ...]: References in the order the fields are read.
    """

    refs: List[PartyRef] = []

    for field in PARTY_ID_FIELDS:
        value = payload.get(field)
        if isinstance(value, Mapping):
            inline = _inline_from_mapping(value)
            if inline is not None:
                refs.append(inline)
        elif _text(value) is not None:
            refs.append(PartyId(_text(value)))

    for field in EMBEDDED_OBJECT_FIELDS:
        embedded = payload.get(field)
        if catalog is not None:
            embedded = catalog.expand(embedded)
        if not isinstance(embedded, Mapping):
            continue
        embedded_name = normalize_name(embedded.get("supplierName"))
        for party_field in EMBEDDED_PARTY_FIELDS:
            value = embedded.get(party_field)
            if isinstance(value, Mapping):
                inline = _inline_from_mapping(value)
                if inline is not None:
                    refs.append(inline)
            elif _text(value) is not None:
                refs.append(InlineParty(party_id=_text(value), name=embedded_name))
        if embedded_name is not None:
            refs.append(PartyName(embedded_name))

    for field in PARTY_NAME_FIELDS:
        name = normalize_name(payload.get(field))
        if name is not None:
            refs.append(PartyName(name))

    return tuple(refs)


def resolve_refs(refs: Sequence[PartyRef], directory: Optional[PartyDirectory] = None) -> PartyKey:
    """Apply the resolution priority to an ordered list of references."""

    for ref in refs:
        if isinstance(ref, PartyId) and ref.value.strip():
            return PartyKey.for_id(ref.value.strip())

    for ref in refs:
        if isinstance(ref, InlineParty) and ref.party_id:
            return PartyKey.for_id(ref.party_id)

    for ref in refs:
        if isinstance(ref, (InlineParty, PartyName)):
            name = normalize_name(ref.name)
            if name is None:
                continue
            if directory is not None:
                party_id = directory.lookup_name(name)
                if party_id is not None:
                    return PartyKey.for_id(party_id)
            return PartyKey.for_name(name)

    return UNKNOWN_PARTY


def resolve(transaction: Any, directory: Optional[PartyDirectory] = None) -> PartyKey:
    """Return the party bucket ``transaction`` belongs to.

    ``transaction`` is any object exposing ``party_refs`` (movements and
    payments alike). Resolution is total: records without a usable reference
    land in :data:`UNKNOWN_PARTY`.
    """

    return resolve_refs(getattr(transaction, "party_refs", ()), directory)


def display_name_for(refs: Sequence[PartyRef]) -> Optional[str]:
    """Pick the first display name carried by the references, if any."""

    for ref in refs:
        if isinstance(ref, (InlineParty, PartyName)):
            name = normalize_name(ref.name)
            if name is not None:
                return name
    return None


__all__ = [
    "PartyId",
    "InlineParty",
    "PartyName",
    "PartyRef",
    "PartyKey",
    "UNKNOWN_PARTY",
    "PartyEntry",
    "PartyDirectory",
    "ProductCatalog",
    "normalize_name",
    "extract_party_refs",
    "resolve_refs",
    "resolve",
    "display_name_for",
]
