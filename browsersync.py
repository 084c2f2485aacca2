#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
browsersync: Update Reconciliation Core for Browser Data Synchronization
========================================================================

The client-side engine that keeps browser data (bookmarks, history, passwords,
cookies, preferences) in step across machines through a central server. This
module holds the parts that carry real logic: the pending-change queue, the
conflict fingerprint index, the per-value field cipher and the protocol4 wire
format. Host data stores, UI and HTTP transport are external collaborators.

Quick Start:
-----------
    >>> from browsersync import SyncItem, SyncCoordinator, FieldCipher
    >>>
    >>> coordinator = SyncCoordinator(cipher=FieldCipher(key_bytes),
    ...                               encrypted_components=["passwords"])
    >>> coordinator.queue_change(SyncItem("bookmarks", "42", properties={"url": "http://x"}))
    >>> coordinator.queue_change(SyncItem("bookmarks", "42", properties={"title": "X"}))
    >>>
    >>> batch = coordinator.begin_flush()     # one net change for bookmark 42
    >>> transport.send(batch.body())
    >>> coordinator.complete_flush()          # or abort_flush() on failure

Key Features:
------------
    ✓ UpdateQueue collapses repeated edits of one item into a single net diff
    ✓ ConflictRule fingerprint index with first-writer-wins ownership
    ✓ FieldCipher: deterministic AES-256-CBC with an HMAC-derived, verified IV
    ✓ protocol4 line format (name:length:value) with forgiving parsing
    ✓ Crash-safe flush cycle: aborted batches are merged back, never lost
    ✓ Optional zlib/lz4/zstd compression of batch bodies

Data Flow:
---------
    outbound: local change -> SyncItem -> UpdateQueue.add_item (collapse)
              -> FieldCipher.encrypt -> WireCodec.serialize -> transport
    inbound:  transport -> WireCodec.parse -> FieldCipher.decrypt
              -> ConflictResolver (fingerprint matching) -> component
"""

from __future__ import annotations

__version__ = "0.4.0"
__author__ = "browsersync contributors"
__license__ = "Apache-2.0"

# Public API exports
__all__ = [
    # Identity and items
    'ItemKey',
    'SyncItem',
    'REMOVE_ALL_ITEM_ID',

    # Pending-change queue
    'UpdateQueue',
    'smoosh_items',

    # Conflict detection
    'ConflictRule',
    'AnomalyKind',
    'IndexAnomaly',
    'ConflictResolver',
    'SyncComponent',

    # Field encryption
    'FieldCipher',
    'KeyedHasher',
    'CBCMode',

    # Wire format
    'WireCodec',
    'CompressionType',
    'CompressionRegistry',

    # Coordination
    'SyncCoordinator',
    'OutboundBatch',
    'encode_batch',
    'decode_batch',

    # Exceptions
    'SyncError',
    'ValidationError',
    'ProtocolError',
    'CipherError',
    'UploadTooLargeError',

    # Configuration and helpers
    'Config',
    'redact',

    # Constants
    'CIPHER_FORMAT_VERSION',
    'CIPHER_DELIMITER',
    'CIPHER_VERSION_DELIMITER',
    'BLOCK_SIZE',
    'LEGACY_KEY_LENGTH',
    'KEY_LENGTH',
]

import re
import zlib
import base64
import hashlib
import hmac
import logging
from urllib.parse import quote, unquote
from typing import (
    Optional, Tuple, List, Dict, Set, Union, Any, Callable, Protocol,
    cast, Iterable, Mapping, Sequence, ClassVar
)
from enum import Enum
from dataclasses import dataclass, field
import functools

import xxhash
import lz4.frame  # type: ignore[import]
import zstandard  # type: ignore[import]
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

# Normalize untyped third-party imports to `Any` so strict type-checkers
# don't treat member access as Unknown.
_lz4_frame: Any = cast(Any, lz4.frame)
_zstandard: Any = cast(Any, zstandard)

# ============================================================================
# CONSTANTS
# ============================================================================

# Encrypted value layout: base64(ciphertext) "|" base64(iv) "*" version
CIPHER_FORMAT_VERSION = "3"
CIPHER_DELIMITER = "|"
CIPHER_VERSION_DELIMITER = "*"

BLOCK_SIZE = 16          # AES block, also the truncated IV length
LEGACY_KEY_LENGTH = 20   # old accounts; zero-padded up to KEY_LENGTH
KEY_LENGTH = 32          # AES-256

# Item id carried by "clear the whole component" markers
REMOVE_ALL_ITEM_ID = "*"

_HMAC_BLOCK_SIZE = 16
_HMAC_IPAD = 0x36
_HMAC_OPAD = 0x5c


class CompressionType(Enum):
    """
    Compression applied to a serialized batch body before it is handed to
    the transport. Both ends must agree on the value out of band.
    """
    NONE = "none"
    ZLIB = "zlib"
    LZ4 = "lz4"
    ZSTD = "zstd"


# ============================================================================
# GLOBAL CONFIGURATION
# ============================================================================

class Config:
    """
    Global configuration for browsersync behavior.

    Settings are class attributes so they can be tuned at runtime (tests,
    embedding applications) without threading a settings object through
    every call.

    Attributes:
        VERBOSE_LOGGING (bool): INFO instead of WARNING as the default log level
        LOG_SENSITIVE_VALUES (bool): Log property values and fingerprints raw
            instead of as xxh64 digests
        FINGERPRINT_SEPARATOR (str): Join character for rule fingerprints
        MAX_ITEM_SIZE (int): Items above this approximate size are left out
            of outbound batches
        MAX_UPLOAD_SIZE (int): Hard cap on an outbound batch body in bytes
        MAX_RESOLUTION_ROUNDS (int): Upper bound on conflict resolution rounds
            for one downloaded batch
        DEFAULT_COMPRESSION (CompressionType): Body compression used by
            OutboundBatch.body() when none is given

    Example:
        >>> Config.LOG_SENSITIVE_VALUES = True   # local debugging only
        >>> Config.MAX_ITEM_SIZE = 64 * 1024
        >>> Config.reset_defaults()
    """
    # Logging
    VERBOSE_LOGGING: ClassVar[bool] = False
    LOG_SENSITIVE_VALUES: ClassVar[bool] = False

    # Conflict detection
    FINGERPRINT_SEPARATOR: ClassVar[str] = ","
    MAX_RESOLUTION_ROUNDS: ClassVar[int] = 64

    # Upload limits (server rejects anything larger)
    MAX_ITEM_SIZE: ClassVar[int] = 30 * 1024
    MAX_UPLOAD_SIZE: ClassVar[int] = 4 * 1024 * 1024

    # Transport
    DEFAULT_COMPRESSION: ClassVar[CompressionType] = CompressionType.NONE

    @classmethod
    def reset_defaults(cls) -> None:
        """Reset all configuration to default values."""
        defaults: Dict[str, object] = {
            "VERBOSE_LOGGING": False,
            "LOG_SENSITIVE_VALUES": False,
            "FINGERPRINT_SEPARATOR": ",",
            "MAX_RESOLUTION_ROUNDS": 64,
            "MAX_ITEM_SIZE": 30 * 1024,
            "MAX_UPLOAD_SIZE": 4 * 1024 * 1024,
            "DEFAULT_COMPRESSION": CompressionType.NONE,
        }
        for name, value in defaults.items():
            setattr(cls, name, value)


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

_default_log_level = logging.INFO if Config.VERBOSE_LOGGING else logging.WARNING
logging.basicConfig(
    level=_default_log_level,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger('browsersync')
logger.setLevel(_default_log_level)


def redact(value: Optional[str]) -> str:
    """
    Render a user value for a log line.

    Property values and fingerprints are user data (URLs, usernames). Unless
    Config.LOG_SENSITIVE_VALUES is set they are replaced by a short xxh64
    digest, which still lets identical values be correlated across lines.

    Example:
        >>> redact(None)
        '<none>'
        >>> redact("http://x") == redact("http://x")
        True
    """
    if value is None:
        return "<none>"
    if Config.LOG_SENSITIVE_VALUES:
        return repr(value)
    return "xxh64:" + xxhash.xxh64(value.encode('utf-8')).hexdigest()[:12]


# ============================================================================
# CUSTOM EXCEPTIONS
# ============================================================================

class SyncError(Exception):
    """
    Base exception for all browsersync errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code (53 matches the server's upload size error)

    Example:
        >>> raise SyncError("Flush already in flight", code=1)
    """
    def __init__(self, message: str, code: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self) -> str:
        return self.message


class ValidationError(SyncError):
    """
    Raised when input validation fails.

    This indicates a programming error: empty identity fields, non-string
    property values, keys or values the wire format cannot carry.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=2)


class ProtocolError(SyncError):
    """
    Raised for batch bodies that cannot be decoded at all (bad compression
    framing, invalid UTF-8).
    """
    def __init__(self, message: str, code: int = 5) -> None:
        super().__init__(message, code)


class CipherError(SyncError):
    """
    Raised by the CBC layer for bad IVs, lengths or padding.

    FieldCipher.decrypt catches it and reports a failed value as None.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=7)


class UploadTooLargeError(SyncError):
    """Raised when an outbound batch body exceeds Config.MAX_UPLOAD_SIZE."""
    def __init__(self, size: int, limit: int) -> None:
        super().__init__(
            f"Upload of {size} bytes exceeds the {limit} byte limit", code=53
        )
        self.size = size
        self.limit = limit


# ============================================================================
# ITEM IDENTITY
# ============================================================================

@functools.total_ordering
@dataclass(frozen=True)
class ItemKey:
    """
    Identity of a synchronized item: (component, item, type).

    Two items with equal keys are the same logical entity; key equality is
    the only identity test used anywhere in the engine. The string form is
    derived only at the boundary, with every part percent-encoded so that a
    "/" inside a field cannot make two different keys look alike.

    Attributes:
        component_id: Owning data source ("bookmarks", "passwords", ...)
        item_id: Identifier of the item within its component and type
        type_id: Optional sub-classification within the component

    Example:
        >>> key = ItemKey("bookmarks", "42", "folder")
        >>> key.to_string()
        'bookmarks/42/folder'
        >>> ItemKey.from_string(key.to_string()) == key
        True
    """
    component_id: str
    item_id: str
    type_id: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.component_id, str) or not self.component_id:
            raise ValidationError(f"component_id must be a non-empty string, got {self.component_id!r}")
        if not isinstance(self.item_id, str) or not self.item_id:
            raise ValidationError(f"item_id must be a non-empty string, got {self.item_id!r}")
        if self.type_id is not None and not isinstance(self.type_id, str):
            raise ValidationError(f"type_id must be a string or None, got {self.type_id!r}")

    def _sort_key(self) -> Tuple[str, bool, str, str]:
        return (self.component_id, self.type_id is not None, self.type_id or "", self.item_id)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, ItemKey):
            return NotImplemented
        return self._sort_key() < other._sort_key()

    def to_string(self) -> str:
        """Lookup string `component/item[/type]` with percent-encoded parts."""
        parts = [self.component_id, self.item_id]
        if self.type_id is not None:
            parts.append(self.type_id)
        return "/".join(quote(part, safe="") for part in parts)

    @classmethod
    def from_string(cls, text: str) -> "ItemKey":
        """Parse a string produced by to_string()."""
        if not isinstance(text, str):
            raise ValidationError(f"Lookup key must be a string, got {type(text).__name__}")
        parts = text.split("/")
        if len(parts) not in (2, 3):
            raise ValidationError(f"Malformed lookup key: {text!r}")
        decoded = [unquote(part) for part in parts]
        return cls(decoded[0], decoded[1], decoded[2] if len(decoded) == 3 else None)

    def cipher_context(self, property_name: str) -> str:
        """Encryption context binding a value to this item and property."""
        return f"{self.component_id}|{self.type_id or ''}|{self.item_id}|{property_name}|"

    def __str__(self) -> str:
        return self.to_string()


# ============================================================================
# SYNC ITEM
# ============================================================================

class SyncItem:
    """
    The unit of synchronized state: a property bag with an identity.

    Identity (component, item, type) is fixed at construction; properties
    are an insertion-ordered str -> str mapping changed only through the
    setters below.

    Args:
        component_id: Owning component
        item_id: Item identifier within the component
        type_id: Optional type within the component
        properties: Initial property values (all strings)
        is_remove: The item is a deletion tombstone
        is_remove_all: The item clears every item of its component
        is_encrypted: Property values are FieldCipher output

    Raises:
        ValidationError: If the identity or a property is malformed

    Example:
        >>> item = SyncItem("bookmarks", "42", properties={"url": "http://x"})
        >>> item.set_property("title", "X")
        >>> item.property_names()
        ['url', 'title']
    """

    __slots__ = ("_key", "_properties", "is_remove", "is_remove_all", "is_encrypted")

    def __init__(self, component_id: str, item_id: str, type_id: Optional[str] = None,
                 properties: Optional[Mapping[str, str]] = None, is_remove: bool = False,
                 is_remove_all: bool = False, is_encrypted: bool = False) -> None:
        self._key = ItemKey(component_id, item_id, type_id)
        self._properties: Dict[str, str] = {}
        self.is_remove = is_remove
        self.is_remove_all = is_remove_all
        self.is_encrypted = is_encrypted
        if properties:
            for name, value in properties.items():
                self.set_property(name, value)

    @classmethod
    def from_key(cls, key: ItemKey, **kwargs: Any) -> "SyncItem":
        return cls(key.component_id, key.item_id, key.type_id, **kwargs)

    @classmethod
    def remove_all(cls, component_id: str) -> "SyncItem":
        """Marker that clears every item of a component on the server."""
        return cls(component_id, REMOVE_ALL_ITEM_ID, is_remove=True, is_remove_all=True)

    # -- identity -----------------------------------------------------------

    @property
    def key(self) -> ItemKey:
        return self._key

    @property
    def component_id(self) -> str:
        return self._key.component_id

    @property
    def item_id(self) -> str:
        return self._key.item_id

    @property
    def type_id(self) -> Optional[str]:
        return self._key.type_id

    def lookup_key(self) -> str:
        return self._key.to_string()

    # -- properties ---------------------------------------------------------

    def set_property(self, name: str, value: str) -> None:
        if not isinstance(name, str) or not name:
            raise ValidationError(f"Property name must be a non-empty string, got {name!r}")
        if not isinstance(value, str):
            raise ValidationError(
                f"Property {name!r} of {self.lookup_key()} must be a string, "
                f"got {type(value).__name__}"
            )
        self._properties[name] = value

    def get_property(self, name: str) -> Optional[str]:
        return self._properties.get(name)

    def has_property(self, name: str) -> bool:
        return name in self._properties

    def delete_property(self, name: str) -> bool:
        return self._properties.pop(name, None) is not None

    def clear_properties(self) -> None:
        self._properties.clear()

    def property_names(self) -> List[str]:
        return list(self._properties)

    def properties(self) -> Dict[str, str]:
        """Copy of the property mapping, in insertion order."""
        return dict(self._properties)

    # -- copying and comparison ---------------------------------------------

    def clone(self) -> "SyncItem":
        return SyncItem(
            self.component_id, self.item_id, self.type_id,
            properties=self._properties, is_remove=self.is_remove,
            is_remove_all=self.is_remove_all, is_encrypted=self.is_encrypted,
        )

    def update_from(self, other: "SyncItem") -> bool:
        """
        Overwrite flags and properties with those of another item of the
        same identity. Returns False (and changes nothing) otherwise.
        """
        if other.key != self.key:
            logger.error(f"Refusing to update {self.lookup_key()} from {other.lookup_key()}")
            return False
        self.is_remove = other.is_remove
        self.is_remove_all = other.is_remove_all
        self.is_encrypted = other.is_encrypted
        self._properties = dict(other._properties)
        return True

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SyncItem):
            return NotImplemented
        return (
            self._key == other._key
            and self.is_remove == other.is_remove
            and self.is_remove_all == other.is_remove_all
            and self.is_encrypted == other.is_encrypted
            and self._properties == other._properties
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        flags = []
        if self.is_remove:
            flags.append("remove")
        if self.is_remove_all:
            flags.append("remove_all")
        if self.is_encrypted:
            flags.append("encrypted")
        flag_str = f" [{','.join(flags)}]" if flags else ""
        return f"SyncItem({self.lookup_key()!r}, props={len(self._properties)}{flag_str})"

    def approximate_length(self) -> int:
        """Size estimate used against Config.MAX_ITEM_SIZE."""
        total = len(self.component_id) + len(self.item_id) + len(self.type_id or "")
        for name, value in self._properties.items():
            total += len(name) + len(value)
        return total

    # -- encryption ---------------------------------------------------------

    def encrypt(self, cipher: "FieldCipher") -> None:
        """Encrypt every property value in place, each under its own context."""
        if self.is_encrypted:
            return
        for name, value in self._properties.items():
            self._properties[name] = cipher.encrypt(value, self._key.cipher_context(name))
        self.is_encrypted = True

    def decrypt(self, cipher: "FieldCipher") -> bool:
        """
        Decrypt every property value in place.

        Returns:
            False if any value fails to decrypt; the item is then left
            exactly as it was.
        """
        if not self.is_encrypted:
            return True
        plain: Dict[str, str] = {}
        for name, value in self._properties.items():
            result = cipher.decrypt(value, self._key.cipher_context(name))
            if result is None:
                logger.warning(f"Could not decrypt property {name!r} of {self.lookup_key()}")
                return False
            plain[name] = result
        self._properties = plain
        self.is_encrypted = False
        return True


# ============================================================================
# UPDATE QUEUE - Pending outbound mutations, one net entry per item
# ============================================================================

def smoosh_items(existing: SyncItem, new_item: SyncItem) -> bool:
    """
    Fold a new mutation into an existing item in place.

    A removal wipes the existing properties; any other mutation revives a
    removed item and overlays its properties, value by value.

    Args:
        existing: Item that receives the mutation
        new_item: The newer mutation

    Returns:
        True if anything about ``existing`` changed

    Example:
        >>> old = SyncItem("c", "1", properties={"foo": "bar"})
        >>> smoosh_items(old, SyncItem("c", "1", properties={"foo": "bar"}))
        False
    """
    changed = False
    if new_item.is_remove:
        if not existing.is_remove:
            existing.is_remove = True
            existing.clear_properties()
            changed = True
    else:
        if existing.is_remove:
            existing.is_remove = False
            changed = True
        for name, value in new_item.properties().items():
            if existing.get_property(name) != value:
                existing.set_property(name, value)
                changed = True
    return changed


KeyLike = Union[ItemKey, str]


def _as_key(key: KeyLike) -> ItemKey:
    if isinstance(key, ItemKey):
        return key
    return ItemKey.from_string(key)


class UpdateQueue:
    """
    Buffer of pending mutations with at most one live entry per item.

    Queued items are owned by the queue after add_item(); callers must not
    keep mutating them. Iteration and pop_next_item() follow the order in
    which keys were first queued.

    Example:
        >>> queue = UpdateQueue()
        >>> queue.add_item(SyncItem("c", "1", properties={"foo": "bar"}))
        True
        >>> queue.add_item(SyncItem("c", "1", properties={"foo": "baz", "hot": "dog"}))
        True
        >>> queue.pending_size()
        1
    """

    def __init__(self) -> None:
        self._pending: Dict[ItemKey, SyncItem] = {}

    def add_item(self, new_item: SyncItem) -> bool:
        """Merge a mutation into the queue. Returns True if the queue changed."""
        return self._enqueue(new_item, clobber=False)

    def replace_item(self, new_item: SyncItem) -> bool:
        """Like add_item, but prior properties of the entry are dropped first."""
        return self._enqueue(new_item, clobber=True)

    def _enqueue(self, new_item: SyncItem, clobber: bool) -> bool:
        key = new_item.key
        existing = self._pending.get(key)
        if existing is None:
            self._pending[key] = new_item
            logger.debug(f"Queued new entry {key}")
            return True
        if existing is new_item:
            return False

        if not clobber:
            return smoosh_items(existing, new_item)

        before = (existing.is_remove, existing.properties())
        existing.clear_properties()
        smoosh_items(existing, new_item)
        return (existing.is_remove, existing.properties()) != before

    def get_item_by_lookup_key(self, key: KeyLike) -> Optional[SyncItem]:
        return self._pending.get(_as_key(key))

    def delete_item_by_lookup_key(self, key: KeyLike) -> bool:
        item_key = _as_key(key)
        if self._pending.pop(item_key, None) is None:
            logger.debug(f"No pending entry to delete for {item_key}")
            return False
        return True

    def has_pending(self) -> bool:
        return bool(self._pending)

    def pending_size(self) -> int:
        return len(self._pending)

    def get_pending(self) -> List[SyncItem]:
        return list(self._pending.values())

    def pop_next_item(self) -> Optional[SyncItem]:
        if not self._pending:
            return None
        key = next(iter(self._pending))
        return self._pending.pop(key)

    def append(self, other: "UpdateQueue") -> None:
        """Merge every entry of another queue into this one (add_item semantics)."""
        for item in other.get_pending():
            self.add_item(item)

    def reset(self) -> None:
        self._pending.clear()

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, key: object) -> bool:
        if isinstance(key, SyncItem):
            key = key.key
        return key in self._pending

    def __repr__(self) -> str:
        return f"UpdateQueue(pending={len(self._pending)})"


# ============================================================================
# CONFLICT DETECTION - Fingerprint index per uniqueness rule
# ============================================================================

class AnomalyKind(Enum):
    COLLISION = "collision"
    IDENTITY_MISMATCH = "identity_mismatch"


@dataclass(frozen=True)
class IndexAnomaly:
    """
    A fingerprint index inconsistency for the owning component to resolve.

    Attributes:
        kind: What went wrong
        rule_name: Name of the rule whose index is affected
        fingerprint: Contested fingerprint (None for identity mismatches)
        existing_key: Item that keeps ownership
        incoming_key: Item that was refused
    """
    kind: AnomalyKind
    rule_name: str
    fingerprint: Optional[str]
    existing_key: ItemKey
    incoming_key: ItemKey

    def __str__(self) -> str:
        return (
            f"{self.kind.value} in rule {self.rule_name!r}: "
            f"fingerprint {redact(self.fingerprint)} owned by {self.existing_key}, "
            f"refused for {self.incoming_key}"
        )


AnomalyListener = Callable[[IndexAnomaly], None]


class ConflictRule:
    """
    A named uniqueness constraint over some item properties, plus the index
    from fingerprint to the item currently holding it.

    A fingerprint is the watched property values joined by
    Config.FINGERPRINT_SEPARATOR. Ownership is first-writer-wins: a second
    item claiming an occupied fingerprint is refused and reported as an
    IndexAnomaly, never silently given the fingerprint.

    Args:
        name: Identifier handed back to the component on conflicts
        type_scope: Only items of this type are fingerprinted (None = all)
        watched_properties: Ordered property names forming the fingerprint
        on_anomaly: Optional listener called with every IndexAnomaly

    Example:
        >>> rule = ConflictRule("url", None, ["url"])
        >>> a = SyncItem("bookmarks", "A", properties={"url": "http://x"})
        >>> rule.add_fingerprint(rule.fingerprint(a), a.key)
        >>> rule.lookup_key_for("http://x")
        ItemKey(component_id='bookmarks', item_id='A', type_id=None)
    """

    def __init__(self, name: str, type_scope: Optional[str], watched_properties: Sequence[str],
                 on_anomaly: Optional[AnomalyListener] = None) -> None:
        if isinstance(watched_properties, str) or not watched_properties:
            raise ValidationError(
                f"Rule {name!r} needs a non-empty sequence of property names"
            )
        self.name = name
        self.type_scope = type_scope
        self.watched_properties: Tuple[str, ...] = tuple(watched_properties)
        self.on_anomaly = on_anomaly
        self._index: Dict[str, ItemKey] = {}

    def clone_without_index(self) -> "ConflictRule":
        return ConflictRule(self.name, self.type_scope, self.watched_properties, self.on_anomaly)

    def fingerprint(self, item: SyncItem) -> Optional[str]:
        """
        Derive this rule's fingerprint for an item.

        Returns:
            "" for removals and out-of-scope items, None when only some of
            the watched properties are present, else the joined values.
        """
        if item.is_remove:
            return ""
        if self.type_scope is not None and item.type_id != self.type_scope:
            return ""

        values: List[str] = []
        missing = False
        for name in self.watched_properties:
            value = item.get_property(name)
            if value is None:
                missing = True
            else:
                values.append(value)

        if missing and values:
            logger.warning(
                f"Rule {self.name!r}: {item.lookup_key()} has only some of "
                f"{list(self.watched_properties)}, cannot fingerprint"
            )
            return None
        return Config.FINGERPRINT_SEPARATOR.join(values)

    def add_fingerprint(self, fingerprint: Optional[str], key: ItemKey) -> Optional[IndexAnomaly]:
        if not fingerprint:
            return None
        owner = self._index.get(fingerprint)
        if owner is not None and owner != key:
            return self._report(IndexAnomaly(AnomalyKind.COLLISION, self.name, fingerprint, owner, key))
        self._index[fingerprint] = key
        logger.debug(f"Rule {self.name!r}: {redact(fingerprint)} -> {key}")
        return None

    def remove_fingerprint(self, fingerprint: Optional[str], key: ItemKey) -> bool:
        if not fingerprint:
            return False
        owner = self._index.get(fingerprint)
        if owner != key:
            logger.warning(
                f"Rule {self.name!r}: not removing {redact(fingerprint)} for {key}, "
                f"owner is {owner}"
            )
            return False
        del self._index[fingerprint]
        return True

    def update_fingerprints(self, old_item: SyncItem, new_item: SyncItem) -> Optional[IndexAnomaly]:
        """
        Move an item's index entry from its old state to its new one.

        Returns:
            The IndexAnomaly raised by the move, if any. The index is left
            untouched when the two items have different identities.
        """
        key = old_item.key
        if new_item.key != key:
            return self._report(
                IndexAnomaly(AnomalyKind.IDENTITY_MISMATCH, self.name, None, key, new_item.key)
            )

        old_fp = self.fingerprint(old_item)
        if new_item.is_remove:
            self.remove_fingerprint(old_fp, key)
            return None

        new_fp = self.fingerprint(new_item)
        if old_fp == new_fp:
            return None
        self.remove_fingerprint(old_fp, key)
        return self.add_fingerprint(new_fp, key)

    def reconcile_pending_update(self, old_item: SyncItem, incoming: SyncItem) -> bool:
        """
        Evict the old fingerprint early for an update not yet applied
        locally, so it stops colliding with its own future state.
        """
        if incoming.is_remove or self.fingerprint(incoming):
            return self.remove_fingerprint(self.fingerprint(old_item), old_item.key)
        return False

    def has_fingerprint(self, fingerprint: Optional[str]) -> bool:
        return fingerprint is not None and fingerprint in self._index

    def lookup_key_for(self, fingerprint: Optional[str]) -> Optional[ItemKey]:
        if fingerprint is None:
            return None
        return self._index.get(fingerprint)

    def clear(self) -> None:
        self._index.clear()

    def rebuild(self, items: Iterable[SyncItem]) -> List[IndexAnomaly]:
        """Re-register an authoritative item set from scratch (cold start)."""
        self.clear()
        anomalies: List[IndexAnomaly] = []
        for item in items:
            anomaly = self.add_fingerprint(self.fingerprint(item), item.key)
            if anomaly is not None:
                anomalies.append(anomaly)
        logger.info(f"Rule {self.name!r}: rebuilt index with {len(self._index)} entries")
        return anomalies

    def sweep(self, live_keys: Iterable[ItemKey]) -> List[str]:
        """
        Drop every entry whose owner is not in ``live_keys``.

        Items deleted behind the engine's back (directly in the host store)
        never call remove_fingerprint; a periodic sweep against the store's
        current keys keeps their fingerprints from blocking new owners.

        Returns:
            The evicted fingerprints
        """
        live = set(live_keys)
        stale = [fp for fp, owner in self._index.items() if owner not in live]
        for fp in stale:
            del self._index[fp]
        if stale:
            logger.info(f"Rule {self.name!r}: swept {len(stale)} stale entries")
        return stale

    def _report(self, anomaly: IndexAnomaly) -> IndexAnomaly:
        if anomaly.kind is AnomalyKind.IDENTITY_MISMATCH:
            logger.error(f"Index anomaly: {anomaly}")
        else:
            logger.warning(f"Index anomaly: {anomaly}")
        if self.on_anomaly is not None:
            self.on_anomaly(anomaly)
        return anomaly

    def __len__(self) -> int:
        return len(self._index)

    def __repr__(self) -> str:
        return (
            f"ConflictRule({self.name!r}, type_scope={self.type_scope!r}, "
            f"watched={list(self.watched_properties)}, entries={len(self._index)})"
        )


# ============================================================================
# FIELD CIPHER - Deterministic AES-256-CBC with an HMAC-derived IV
#
# The IV is HMAC(plaintext || context) truncated to one block. Decryption
# recomputes it from the recovered plaintext and the caller's context and
# rejects the value on mismatch, so a ciphertext moved to another item or
# property does not decrypt.
# ============================================================================

class KeyedHasher:
    """
    SHA-1 HMAC over a 16-byte key block.

    Keys longer than the block are hashed first and the digest is cut to the
    block. The stdlib ``hmac`` module always uses SHA-1's native 64-byte
    block, so it cannot produce the values existing accounts were encrypted
    with; this class reproduces them.
    """

    __slots__ = ("_inner_pad", "_outer_pad")

    def __init__(self, key: bytes) -> None:
        if len(key) > _HMAC_BLOCK_SIZE:
            key = hashlib.sha1(key).digest()
        key = key[:_HMAC_BLOCK_SIZE].ljust(_HMAC_BLOCK_SIZE, b'\x00')
        self._inner_pad = bytes(b ^ _HMAC_IPAD for b in key)
        self._outer_pad = bytes(b ^ _HMAC_OPAD for b in key)

    def digest(self, *parts: bytes) -> bytes:
        inner = hashlib.sha1(self._inner_pad)
        for part in parts:
            inner.update(part)
        return hashlib.sha1(self._outer_pad + inner.digest()).digest()


class CBCMode:
    """
    AES-CBC with the 0x01 0x00.. padding scheme.

    Padding is always added: a 0x01 marker right after the plaintext, then
    zero bytes up to the block boundary (a full block for aligned input).
    """

    def __init__(self, key: bytes) -> None:
        self._algorithm = algorithms.AES(key)

    @staticmethod
    def _check_iv(iv: bytes) -> None:
        if len(iv) != BLOCK_SIZE:
            raise CipherError(f"IV must be {BLOCK_SIZE} bytes, got {len(iv)}")

    def encrypt(self, plaintext: bytes, iv: bytes) -> bytes:
        self._check_iv(iv)
        pad_length = BLOCK_SIZE - (len(plaintext) % BLOCK_SIZE)
        padded = plaintext + b'\x01' + b'\x00' * (pad_length - 1)
        encryptor = Cipher(self._algorithm, modes.CBC(iv)).encryptor()
        return encryptor.update(padded) + encryptor.finalize()

    def decrypt(self, ciphertext: bytes, iv: bytes) -> bytes:
        self._check_iv(iv)
        if not ciphertext or len(ciphertext) % BLOCK_SIZE:
            raise CipherError(
                f"Ciphertext length {len(ciphertext)} is not a positive multiple of {BLOCK_SIZE}"
            )
        decryptor = Cipher(self._algorithm, modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()

        # Padding lives entirely in the last block.
        for pos in range(len(padded) - 1, len(padded) - 1 - BLOCK_SIZE, -1):
            if padded[pos] == 0:
                continue
            if padded[pos] == 1:
                return padded[:pos]
            raise CipherError(f"Invalid padding byte 0x{padded[pos]:02x} at {pos}")
        raise CipherError("Could not find end of padding")


def _coerce_key(key: Union[bytes, bytearray, str]) -> bytes:
    if isinstance(key, str):
        try:
            key_bytes = base64.b64decode(key, validate=True)
        except ValueError as e:
            raise ValidationError(f"Key is not valid base64: {e}") from e
    elif isinstance(key, (bytes, bytearray)):
        key_bytes = bytes(key)
    else:
        raise ValidationError(f"Key must be bytes or a base64 string, got {type(key).__name__}")

    if len(key_bytes) == LEGACY_KEY_LENGTH:
        key_bytes += b'\x00' * (KEY_LENGTH - LEGACY_KEY_LENGTH)
    if len(key_bytes) != KEY_LENGTH:
        raise ValidationError(
            f"Key must be {LEGACY_KEY_LENGTH} or {KEY_LENGTH} bytes, got {len(key_bytes)}"
        )
    return key_bytes


class FieldCipher:
    """
    Encrypts single string values, binding each to a context string.

    Encoded form: ``base64(ciphertext) | base64(iv) * version``. Encryption
    is deterministic: the same (value, context) always yields the same
    string. The empty string encrypts to itself.

    Args:
        key: 32-byte key, a legacy 20-byte key (zero-padded), or either one
            as a base64 string. The same key drives AES and the HMAC.

    Raises:
        ValidationError: If the key has the wrong length or encoding

    Example:
        >>> cipher = FieldCipher(bytes(32))
        >>> cipher.encrypt("abc", "xyz")
        'yG4ZQx9Yydmosjeuv+/iGA==|o/TGFG3nAdgL1TrlDGuKQA==*3'
        >>> cipher.decrypt(cipher.encrypt("abc", "xyz"), "xyz")
        'abc'
        >>> cipher.decrypt(cipher.encrypt("abc", "xyz"), "other") is None
        True
    """

    def __init__(self, key: Union[bytes, bytearray, str]) -> None:
        key_bytes = _coerce_key(key)
        self._hasher = KeyedHasher(key_bytes)
        self._cbc = CBCMode(key_bytes)

    def _derive_iv(self, data: bytes, context: str) -> bytes:
        return self._hasher.digest(data, context.encode('utf-8'))[:BLOCK_SIZE]

    def encrypt(self, plaintext: str, context: str) -> str:
        if not isinstance(plaintext, str):
            raise ValidationError(f"encrypt expects a string, got {type(plaintext).__name__}")
        if not isinstance(context, str):
            raise ValidationError(f"Cipher context must be a string, got {type(context).__name__}")
        if not plaintext:
            return ""

        data = plaintext.encode('utf-8')
        iv = self._derive_iv(data, context)
        ciphertext = self._cbc.encrypt(data, iv)
        return (
            base64.b64encode(ciphertext).decode('ascii')
            + CIPHER_DELIMITER
            + base64.b64encode(iv).decode('ascii')
            + CIPHER_VERSION_DELIMITER
            + CIPHER_FORMAT_VERSION
        )

    def decrypt(self, encoded: str, context: str) -> Optional[str]:
        """
        Decrypt a value produced by encrypt().

        Returns:
            The plaintext, or None for unknown versions, malformed input, or
            a value that was encrypted under another key or context.
        """
        if not isinstance(encoded, str):
            raise ValidationError(f"decrypt expects a string, got {type(encoded).__name__}")
        if not isinstance(context, str):
            raise ValidationError(f"Cipher context must be a string, got {type(context).__name__}")
        if not encoded:
            return ""

        body, sep, version = encoded.partition(CIPHER_VERSION_DELIMITER)
        if not sep or version != CIPHER_FORMAT_VERSION:
            logger.error(f"Unexpected version for encrypted value: {version!r}")
            return None
        ct_text, sep, iv_text = body.partition(CIPHER_DELIMITER)
        if not sep:
            logger.error("Encrypted value has no IV part")
            return None

        try:
            ciphertext = base64.b64decode(ct_text, validate=True)
            iv = base64.b64decode(iv_text, validate=True)
            data = self._cbc.decrypt(ciphertext, iv)
        except (ValueError, CipherError) as e:
            logger.error(f"Could not decrypt value: {e}")
            return None

        if not hmac.compare_digest(self._derive_iv(data, context), iv):
            logger.error("IV check failed: wrong key or context, or tampered value")
            return None

        try:
            return data.decode('utf-8')
        except UnicodeDecodeError as e:
            logger.error(f"Decrypted value is not UTF-8: {e}")
            return None


# ============================================================================
# WIRE FORMAT - protocol4 "name:length:value" lines
# ============================================================================

_PROTOCOL4_LINE = re.compile(r'([^:]+):\d+:(.*)$')
_PROTOCOL4_NEWLINE = re.compile(r'\r?\n')


class WireCodec:
    """
    protocol4: one ``name:length:value`` line per entry, ``\\n`` terminated.

    Parsing is forgiving: lines that don't match are skipped, the length
    field is not checked against the value, and the last of repeated names
    wins. A line is matched anywhere after its start, so a leading segment
    that is not followed by a length is dropped (``x:y:3:abc`` reads as
    ``y`` -> ``abc``).

    Serializing is strict about anything that would break the line
    framing. Besides non-string values it also refuses values holding
    ``\\n`` or ``\\r``: parse splits on those, so such a value would come
    back truncated. Callers escape line breaks first (see encode_batch).

    Example:
        >>> WireCodec.parse("foo:3:bar\\nbar:3:baz\\r\\nbom:3:yaz\\n")
        {'foo': 'bar', 'bar': 'baz', 'bom': 'yaz'}
        >>> WireCodec.serialize({"a": "xyz"})
        'a:3:xyz\\n'
    """

    @staticmethod
    def parse(text: Optional[str]) -> Dict[str, str]:
        if text is None:
            return {}
        if not isinstance(text, str):
            raise ValidationError(f"protocol4 input must be a string, got {type(text).__name__}")

        result: Dict[str, str] = {}
        skipped = 0
        for line in _PROTOCOL4_NEWLINE.split(text):
            match = _PROTOCOL4_LINE.search(line)
            if match is None:
                if line:
                    skipped += 1
                continue
            result[match.group(1)] = match.group(2)
        if skipped:
            logger.debug(f"protocol4: skipped {skipped} unparseable lines")
        return result

    @staticmethod
    def serialize(fields: Mapping[str, str]) -> str:
        if not isinstance(fields, Mapping):
            raise ValidationError(f"protocol4 input must be a mapping, got {type(fields).__name__}")

        lines: List[str] = []
        for name, value in fields.items():
            if not isinstance(name, str) or not name:
                raise ValidationError(f"protocol4 name must be a non-empty string, got {name!r}")
            if ":" in name or "\n" in name or "\r" in name:
                raise ValidationError(f"protocol4 name {name!r} contains ':' or a line break")
            if not isinstance(value, str):
                raise ValidationError(
                    f"protocol4 value for {name!r} must be a string, got {type(value).__name__}"
                )
            if "\n" in value or "\r" in value:
                raise ValidationError(f"protocol4 value for {name!r} contains a line break")
            lines.append(f"{name}:{len(value.encode('utf-8'))}:{value}\n")
        return "".join(lines)


# ============================================================================
# COMPRESSION - Optional compression of batch bodies
# ============================================================================

# Levels used when a flush does not ask for one
_BODY_COMPRESSION_LEVELS: Dict[CompressionType, int] = {
    CompressionType.NONE: 0,
    CompressionType.ZLIB: 6,
    CompressionType.LZ4: 1,
    CompressionType.ZSTD: 3,
}


class CompressionRegistry:
    """Codecs for serialized batch bodies.

    OutboundBatch.body() compresses the protocol4 text before the upload
    size check, and SyncCoordinator.ingest() reverses it for bodies the
    transport hands back as bytes. Both sides must agree on the
    CompressionType out of band (a header, typically); the body carries no
    marker of its own.
    """
    _zstd_compressors: Dict[int, Any] = {}
    _zstd_decompressor: Optional[Any] = None

    @classmethod
    def compress(cls, data: bytes, comp_type: CompressionType, level: Optional[int] = None) -> bytes:
        """Compress an encoded batch body.

        Args:
            data: UTF-8 protocol4 body
            comp_type: Codec agreed with the server
            level: Codec level, defaults to get_compression_level(comp_type)

        Returns:
            The body to upload; ``data`` itself for CompressionType.NONE
        """
        if comp_type == CompressionType.NONE:
            return data
        if level is None:
            level = cls.get_compression_level(comp_type)
        if comp_type == CompressionType.ZLIB:
            return zlib.compress(data, level)
        if comp_type == CompressionType.LZ4:
            return cast(bytes, _lz4_frame.compress(data, compression_level=level))
        if comp_type == CompressionType.ZSTD:
            return cast(bytes, cls._get_zstd_compressor(level).compress(data))
        raise ValueError(f"Unsupported batch compression: {comp_type}")

    @classmethod
    def decompress(cls, data: bytes, comp_type: CompressionType) -> bytes:
        """Recover the protocol4 body of a received batch.

        Codec failures (zlib.error, RuntimeError from lz4, ZstdError)
        propagate; SyncCoordinator.ingest turns them into ProtocolError.
        """
        if comp_type == CompressionType.NONE:
            return data
        if comp_type == CompressionType.ZLIB:
            return zlib.decompress(data)
        if comp_type == CompressionType.LZ4:
            return cast(bytes, _lz4_frame.decompress(data))
        if comp_type == CompressionType.ZSTD:
            return cast(bytes, cls._get_zstd_decompressor().decompress(data))
        raise ValueError(f"Unsupported batch compression: {comp_type}")

    @classmethod
    def _get_zstd_compressor(cls, level: int) -> Any:
        # One compressor per level, reused across flushes
        if level not in cls._zstd_compressors:
            cls._zstd_compressors[level] = _zstandard.ZstdCompressor(level=level)
        return cls._zstd_compressors[level]

    @classmethod
    def _get_zstd_decompressor(cls) -> Any:
        if cls._zstd_decompressor is None:
            cls._zstd_decompressor = _zstandard.ZstdDecompressor()
        return cls._zstd_decompressor

    @classmethod
    def get_compression_level(cls, comp_type: CompressionType) -> int:
        return _BODY_COMPRESSION_LEVELS[comp_type]


# ============================================================================
# BATCH ENCODING - SyncItems <-> flat protocol4 maps
#
#   count                  number of items
#   cleared.count          number of components cleared wholesale
#   cleared.<n>            component id
#   item.<n>.component     \
#   item.<n>.id             | identity
#   item.<n>.type          /  (absent when the item has no type)
#   item.<n>.remove        "1" for tombstones
#   item.<n>.encrypted     "1" when prop values are FieldCipher output
#   item.<n>.prop.<name>   property value, name percent-encoded
#
# Values are backslash-escaped so line breaks survive the line framing.
# ============================================================================

_ESCAPES = {"\\": "\\\\", "\n": "\\n", "\r": "\\r"}
_UNESCAPES = {"\\": "\\", "n": "\n", "r": "\r"}
_ESCAPE_RE = re.compile(r'[\\\n\r]')
_UNESCAPE_RE = re.compile(r'\\(.)')


def _escape(value: str) -> str:
    return _ESCAPE_RE.sub(lambda m: _ESCAPES[m.group(0)], value)


def _unescape(value: str) -> str:
    return _UNESCAPE_RE.sub(lambda m: _UNESCAPES.get(m.group(1), m.group(1)), value)


def encode_batch(items: Iterable[SyncItem], cleared_components: Iterable[str] = ()) -> Dict[str, str]:
    """Flatten items (already encrypted where needed) into a protocol4 map."""
    cleared = list(cleared_components)
    body: Dict[str, str] = {}
    count = 0
    for item in items:
        prefix = f"item.{count}."
        body[prefix + "component"] = _escape(item.component_id)
        body[prefix + "id"] = _escape(item.item_id)
        if item.type_id is not None:
            body[prefix + "type"] = _escape(item.type_id)
        if item.is_remove:
            body[prefix + "remove"] = "1"
        if item.is_encrypted:
            body[prefix + "encrypted"] = "1"
        for name, value in item.properties().items():
            body[prefix + "prop." + quote(name, safe="")] = _escape(value)
        count += 1

    fields: Dict[str, str] = {"count": str(count), "cleared.count": str(len(cleared))}
    for n, component_id in enumerate(cleared):
        fields[f"cleared.{n}"] = _escape(component_id)
    fields.update(body)
    return fields


def _batch_index(text: str) -> Optional[int]:
    """Index from a ``cleared.<n>`` or ``item.<n>`` key, None unless plain ASCII digits."""
    if text.isascii() and text.isdigit():
        return int(text)
    return None


def decode_batch(fields: Mapping[str, str]) -> Tuple[List[str], List[SyncItem]]:
    """
    Rebuild cleared components and items from a protocol4 map.

    Unknown or malformed keys are ignored and items without a component or
    id are skipped with a warning, in the same forgiving spirit as
    WireCodec.parse. The declared counts are advisory: only the entries
    actually present are decoded.

    Returns:
        (cleared component ids, items in batch order)
    """
    cleared_slots: Dict[int, str] = {}
    groups: Dict[int, Dict[str, str]] = {}
    for name, value in fields.items():
        if name.startswith("cleared."):
            index = _batch_index(name[len("cleared."):])
            if index is not None and value:
                cleared_slots[index] = _unescape(value)
            continue
        if not name.startswith("item."):
            continue
        parts = name.split(".", 2)
        index = _batch_index(parts[1]) if len(parts) == 3 else None
        if index is None:
            logger.debug(f"Ignoring batch key {name!r}")
            continue
        groups.setdefault(index, {})[parts[2]] = value

    cleared = [cleared_slots[n] for n in sorted(cleared_slots)]
    declared_cleared = fields.get("cleared.count")
    if declared_cleared is not None and declared_cleared != str(len(cleared)):
        logger.warning(f"Batch declares {declared_cleared!r} cleared components, decoded {len(cleared)}")

    items: List[SyncItem] = []
    for index in sorted(groups):
        group = groups[index]
        component_id = _unescape(group.get("component", ""))
        item_id = _unescape(group.get("id", ""))
        if not component_id or not item_id:
            logger.warning(f"Skipping batch item {index}: missing component or id")
            continue
        item = SyncItem(
            component_id, item_id,
            _unescape(group["type"]) if "type" in group else None,
            is_remove=group.get("remove") == "1",
            is_encrypted=group.get("encrypted") == "1",
        )
        for sub, value in group.items():
            if not sub.startswith("prop."):
                continue
            prop_name = unquote(sub[len("prop."):])
            if not prop_name:
                logger.warning(f"Batch item {index}: ignoring property with an empty name")
                continue
            item.set_property(prop_name, _unescape(value))
        items.append(item)

    declared = fields.get("count")
    if declared is not None and declared != str(len(items)):
        logger.warning(f"Batch declares {declared!r} items, decoded {len(items)}")
    return cleared, items


@dataclass
class OutboundBatch:
    """
    One flush worth of changes, ready for the transport.

    Attributes:
        fields: protocol4 map of the batch
        items: Queue entries included in the batch (plaintext)
        skipped: Keys left out because they exceeded Config.MAX_ITEM_SIZE
        cleared_components: Components cleared wholesale by this batch
    """
    fields: Dict[str, str]
    items: List[SyncItem] = field(default_factory=list)
    skipped: List[ItemKey] = field(default_factory=list)
    cleared_components: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.items and not self.cleared_components

    def text(self) -> str:
        return WireCodec.serialize(self.fields)

    def body(self, compression: Optional[CompressionType] = None) -> bytes:
        """
        Serialized (and optionally compressed) request body.

        Raises:
            UploadTooLargeError: If the body exceeds Config.MAX_UPLOAD_SIZE
        """
        comp_type = compression if compression is not None else Config.DEFAULT_COMPRESSION
        payload = CompressionRegistry.compress(self.text().encode('utf-8'), comp_type)
        if len(payload) > Config.MAX_UPLOAD_SIZE:
            raise UploadTooLargeError(len(payload), Config.MAX_UPLOAD_SIZE)
        return payload


# ============================================================================
# SYNC COORDINATOR - Flush cycle and inbound decoding
# ============================================================================

class SyncCoordinator:
    """
    Owns the pending queue and drives it through flushes.

    Local changes keep queueing while a flush is in flight. On success the
    in-flight items are dropped; on abort they are merged back under any
    newer changes, so nothing is lost and nothing is considered confirmed
    until a later flush succeeds.

    Args:
        cipher: FieldCipher for encrypted components (optional if none are)
        encrypted_components: Component ids whose values are encrypted

    Example:
        >>> coordinator = SyncCoordinator()
        >>> coordinator.queue_change(SyncItem("prefs", "homepage", properties={"v": "x"}))
        True
        >>> batch = coordinator.begin_flush()
        >>> coordinator.abort_flush()
        >>> coordinator.pending.pending_size()
        1
    """

    def __init__(self, cipher: Optional[FieldCipher] = None,
                 encrypted_components: Iterable[str] = ()) -> None:
        self.cipher = cipher
        self._encrypted_components: Set[str] = set(encrypted_components)
        self._pending = UpdateQueue()
        self._in_flight: Optional[UpdateQueue] = None

    @property
    def pending(self) -> UpdateQueue:
        return self._pending

    @property
    def in_flight(self) -> Optional[UpdateQueue]:
        return self._in_flight

    def is_flushing(self) -> bool:
        return self._in_flight is not None

    def set_component_encrypted(self, component_id: str, encrypted: bool = True) -> None:
        if encrypted:
            self._encrypted_components.add(component_id)
        else:
            self._encrypted_components.discard(component_id)

    def is_encrypted_component(self, component_id: str) -> bool:
        return component_id in self._encrypted_components

    def queue_change(self, item: SyncItem) -> bool:
        return self._pending.add_item(item)

    def queue_replacement(self, item: SyncItem) -> bool:
        return self._pending.replace_item(item)

    def begin_flush(self) -> OutboundBatch:
        """
        Move the pending queue in flight and encode it.

        Raises:
            SyncError: If a flush is already in flight, or an encrypted
                component has items but no cipher is configured
        """
        if self._in_flight is not None:
            raise SyncError("A flush is already in flight")

        self._in_flight = self._pending
        self._pending = UpdateQueue()
        try:
            batch = self._build_batch(self._in_flight.get_pending())
        except SyncError:
            self.abort_flush()
            raise
        logger.info(
            f"Flushing {len(batch.items)} items, {len(batch.cleared_components)} cleared "
            f"components ({len(batch.skipped)} skipped as oversized)"
        )
        return batch

    def _build_batch(self, queued: List[SyncItem]) -> OutboundBatch:
        wire_items: List[SyncItem] = []
        sent: List[SyncItem] = []
        skipped: List[ItemKey] = []
        cleared: List[str] = []

        for item in queued:
            if item.is_remove_all:
                cleared.append(item.component_id)
                continue

            wire_item = item
            if self.is_encrypted_component(item.component_id):
                if self.cipher is None:
                    raise SyncError(f"No cipher configured for encrypted component {item.component_id!r}")
                wire_item = item.clone()
                wire_item.encrypt(self.cipher)

            size = wire_item.approximate_length()
            if size > Config.MAX_ITEM_SIZE:
                logger.warning(
                    f"Skipping {item.lookup_key()}: {size} bytes exceeds {Config.MAX_ITEM_SIZE}"
                )
                skipped.append(item.key)
                continue

            wire_items.append(wire_item)
            sent.append(item)

        return OutboundBatch(
            fields=encode_batch(wire_items, cleared),
            items=sent,
            skipped=skipped,
            cleared_components=cleared,
        )

    def complete_flush(self) -> None:
        """The transport confirmed the in-flight batch."""
        if self._in_flight is None:
            logger.warning("complete_flush() called with no flush in flight")
            return
        logger.info(f"Flush confirmed ({self._in_flight.pending_size()} items)")
        self._in_flight = None

    def abort_flush(self) -> None:
        """The in-flight batch failed; newer changes are merged over it."""
        if self._in_flight is None:
            logger.warning("abort_flush() called with no flush in flight")
            return
        recovered = self._in_flight
        self._in_flight = None
        recovered.append(self._pending)
        self._pending = recovered
        logger.info(f"Flush aborted, {recovered.pending_size()} items pending again")

    def is_confirmed(self, key: KeyLike) -> bool:
        item_key = _as_key(key)
        if item_key in self._pending:
            return False
        return self._in_flight is None or item_key not in self._in_flight

    def ingest(self, body: Union[str, bytes, bytearray, None],
               compression: CompressionType = CompressionType.NONE) -> List[SyncItem]:
        """
        Decode a batch received from the server.

        Returns:
            Remove-all markers for cleared components first, then the
            decoded (and decrypted) items. Items whose values cannot be
            decrypted are dropped and logged.

        Raises:
            ProtocolError: If a byte body cannot be decompressed or decoded
        """
        if isinstance(body, (bytes, bytearray)):
            try:
                raw = CompressionRegistry.decompress(bytes(body), compression)
                text: Optional[str] = raw.decode('utf-8')
            except (zlib.error, RuntimeError, _zstandard.ZstdError, UnicodeDecodeError) as e:
                raise ProtocolError(f"Could not decode {compression.value} batch body: {e}") from e
        else:
            text = body

        cleared, items = decode_batch(WireCodec.parse(text))
        result = [SyncItem.remove_all(component_id) for component_id in cleared]
        for item in items:
            if item.is_encrypted:
                if self.cipher is None:
                    logger.error(f"Dropping {item!r}: no cipher configured")
                    continue
                if not item.decrypt(self.cipher):
                    logger.error(f"Dropping {item!r}: decryption failed")
                    continue
            result.append(item)
        return result


# ============================================================================
# CONFLICT RESOLUTION - Downloaded items against local and offline state
# ============================================================================

class SyncComponent(Protocol):
    """What the resolver needs from a data-source component."""

    def on_item_conflict(self, rule_name: str, synced_item: SyncItem,
                         conflicting_item: SyncItem) -> Iterable[SyncItem]:
        """
        Resolve a conflict by editing ``synced_item`` in place. Extra items
        to process (e.g. a removal of the loser) are returned.
        """
        ...

    def get_item_by_id(self, item_id: str, type_id: Optional[str]) -> Optional[SyncItem]:
        """Full current state of a local item, or None."""
        ...


class ConflictResolver:
    """
    Matches downloaded items against local state and asks components to
    resolve fingerprint collisions.

    Rules are cloned without their index at construction, so the caller's
    rule objects are never touched. Previous item state is looked up in the
    apply queue first (full, already-merged state), then in the send queue
    (possibly a partial offline change).

    Args:
        rules: Component id -> rules for that component
        components: Component id -> SyncComponent
        send_queue: Changes bound for the server
        apply_queue: Changes to apply locally
        on_anomaly: Listener installed on every cloned rule
    """

    def __init__(self, rules: Mapping[str, Sequence[ConflictRule]],
                 components: Mapping[str, SyncComponent],
                 send_queue: UpdateQueue, apply_queue: UpdateQueue,
                 on_anomaly: Optional[AnomalyListener] = None) -> None:
        self._rules: Dict[str, List[ConflictRule]] = {}
        for component_id, component_rules in rules.items():
            clones = []
            for rule in component_rules:
                clone = rule.clone_without_index()
                if on_anomaly is not None:
                    clone.on_anomaly = on_anomaly
                clones.append(clone)
            self._rules[component_id] = clones
        self._components = dict(components)
        self.send_queue = send_queue
        self.apply_queue = apply_queue

    def rules_for(self, component_id: str) -> List[ConflictRule]:
        return self._rules.get(component_id, [])

    def find_queued(self, key: ItemKey) -> Optional[SyncItem]:
        item = self.apply_queue.get_item_by_lookup_key(key)
        if item is None:
            item = self.send_queue.get_item_by_lookup_key(key)
        return item

    def add_to_index(self, item: SyncItem) -> List[IndexAnomaly]:
        anomalies: List[IndexAnomaly] = []
        if item.is_remove:
            return anomalies
        for rule in self.rules_for(item.component_id):
            fingerprint = rule.fingerprint(item)
            if fingerprint is None:
                continue
            anomaly = rule.add_fingerprint(fingerprint, item.key)
            if anomaly is not None:
                anomalies.append(anomaly)
        return anomalies

    def update_index(self, items: Iterable[SyncItem], is_update: bool) -> List[IndexAnomaly]:
        """
        Bring the indices in line with new item states.

        Args:
            items: New states
            is_update: Items are partial updates over the queued state
                (True) rather than full replacements (False)
        """
        anomalies: List[IndexAnomaly] = []
        for item in items:
            rules = self.rules_for(item.component_id)
            if not rules:
                continue
            previous = self.find_queued(item.key)
            if previous is None or previous.is_remove:
                anomalies.extend(self.add_to_index(item))
                continue

            if is_update:
                current = previous.clone()
                smoosh_items(current, item)
            else:
                current = item
            for rule in rules:
                anomaly = rule.update_fingerprints(previous, current)
                if anomaly is not None:
                    anomalies.append(anomaly)
        return anomalies

    def evict_for_pending(self, old_item: SyncItem, update: SyncItem) -> None:
        for rule in self.rules_for(old_item.component_id):
            rule.reconcile_pending_update(old_item, update)

    def smoosh_with_offline(self, synced_item: SyncItem) -> bool:
        """
        Fold a queued offline change over a downloaded item (offline wins).

        A server-side delete of an item that was edited offline is turned
        back into the full local item, so the edit resurrects it. An offline
        change the download already contains is dropped from the send queue.

        Returns:
            True if the downloaded item equals the offline change
        """
        key = synced_item.key
        offline = self.send_queue.get_item_by_lookup_key(key)
        if offline is None:
            return False

        if synced_item.is_remove and not offline.is_remove:
            component = self._components.get(offline.component_id)
            full = component.get_item_by_id(offline.item_id, offline.type_id) if component else None
            if full is None:
                logger.warning(f"No full item for {key}, continuing with a possibly partial update")
            elif full.key != key:
                logger.error(f"Component returned {full.key} for {key}, continuing with a possibly partial update")
            else:
                offline = full
                self.update_index([offline], is_update=False)
                self.send_queue.replace_item(offline)

        changed = smoosh_items(synced_item, offline)
        if changed:
            return False
        self.send_queue.delete_item_by_lookup_key(key)
        return synced_item == offline

    def _resolve_item_conflicts(self, synced_item: SyncItem, rule: ConflictRule,
                                resolved: List[SyncItem]) -> bool:
        fingerprint = rule.fingerprint(synced_item)
        if fingerprint is None or not rule.has_fingerprint(fingerprint):
            return False

        synced_key = synced_item.key
        owner = rule.lookup_key_for(fingerprint)
        if owner is None or owner == synced_key:
            return False

        conflicting = self.find_queued(owner)
        if conflicting is None:
            logger.warning(f"Rule {rule.name!r}: owner {owner} of {redact(fingerprint)} is not queued")
            return False

        component = self._components.get(synced_item.component_id)
        if component is None:
            logger.error(f"No component registered for {synced_item.component_id!r}")
            return False

        logger.info(f"Rule {rule.name!r}: {synced_key} conflicts with {owner}")
        for extra in component.on_item_conflict(rule.name, synced_item, conflicting.clone()):
            if extra.key == synced_key:
                logger.error(
                    f"Component returned an update to {synced_key}; it must edit the synced item directly"
                )
                continue
            resolved.append(extra)
        return True

    def resolve_conflicts(self, synced_item: SyncItem, is_downloaded: bool) -> List[SyncItem]:
        """
        Detect and resolve conflicts for one item.

        Args:
            synced_item: Item to check; components edit it in place
            is_downloaded: The item came from the server as-is. Items
                produced by conflict resolution pass False: they are merged
                over any queued state and always uploaded.

        Returns:
            Extra items the components produced, for another round
        """
        should_upload = not is_downloaded
        if not is_downloaded:
            previous = self.find_queued(synced_item.key)
            if previous is not None:
                merged = previous.clone()
                smoosh_items(merged, synced_item)
                synced_item.update_from(merged)

        resolved: List[SyncItem] = []
        for rule in self.rules_for(synced_item.component_id):
            if self._resolve_item_conflicts(synced_item, rule, resolved):
                should_upload = True

        for extra in resolved:
            previous = self.find_queued(extra.key)
            if previous is not None:
                self.evict_for_pending(previous, extra)

        self.update_index([synced_item], is_update=False)

        if should_upload:
            logger.debug(f"Queueing {synced_item.key} for upload after resolution")
            self.send_queue.replace_item(synced_item)
        return resolved

    def resolve_all(self, items: Iterable[SyncItem]) -> int:
        """
        Run a downloaded batch through offline merging and conflict
        resolution, filling the apply queue.

        Returns:
            Number of resolution rounds used
        """
        batch = UpdateQueue()
        for item in items:
            batch.add_item(item)
        for item in batch.get_pending():
            if self.smoosh_with_offline(item):
                batch.delete_item_by_lookup_key(item.key)

        rounds = 0
        is_downloaded = True
        while batch.has_pending():
            if rounds >= Config.MAX_RESOLUTION_ROUNDS:
                logger.warning(
                    f"Stopping conflict resolution after {rounds} rounds, "
                    f"{batch.pending_size()} items left unresolved"
                )
                break
            rounds += 1
            next_batch = UpdateQueue()
            while batch.has_pending():
                item = cast(SyncItem, batch.pop_next_item())
                for extra in self.resolve_conflicts(item, is_downloaded):
                    next_batch.add_item(extra)
                self.apply_queue.replace_item(item)
            batch = next_batch
            is_downloaded = False
        return rounds
