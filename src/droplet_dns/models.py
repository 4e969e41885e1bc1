"""Core data models and errors used by droplet-dns."""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, FrozenSet, List, Optional

# =============================================================================
# Constants
# =============================================================================

# Low TTL so that frequently regenerated records propagate quickly.
RECORD_TTL = 100
SRV_PRIORITY = 10
SRV_WEIGHT = 10
DEFAULT_POLL_INTERVAL_SECONDS = 30

# Record types whose value is a hostname.
HOSTNAME_TYPES = {"CNAME", "MX", "NS", "PTR", "SRV"}

# =============================================================================
# Errors
# =============================================================================


class DropletDNSError(Exception):
    """Base exception for droplet-dns."""


class ConfigError(DropletDNSError):
    """Raised when the process configuration is missing or invalid."""


class RuleParseError(DropletDNSError):
    """Raised when the rule file cannot be parsed."""

    def __init__(self, message: str, line_no: int = 0, line: str = ""):
        self.message = message
        self.line_no = line_no
        self.line = line
        if line_no:
            message = f"line {line_no}: {message} ({line!r})"
        super().__init__(message)


class MalformedRule(RuleParseError):
    """A rule line is missing mandatory tokens or has an empty filter."""


class UnknownRecordKind(RuleParseError):
    """The record kind is not one of A, AAAA or SRV."""


class MissingPort(RuleParseError):
    """An SRV rule has no port token."""


class InvalidPort(RuleParseError):
    """An SRV rule port is not a positive integer."""


class TooManyTokens(RuleParseError):
    """A rule line has more than one trailing modifier."""


class InvalidPattern(RuleParseError):
    """A backtick pattern modifier does not compile."""


class UnrecognizedModifier(RuleParseError):
    """A trailing modifier is neither a [label] nor a `pattern`."""


class ApexResolutionError(DropletDNSError):
    """Raised when a hostname has no registrable domain."""


class InventoryFetchError(DropletDNSError):
    """Raised when the instance inventory cannot be listed."""


class ProviderError(DropletDNSError):
    """Raised when the DNS provider cannot be read or updated."""


# =============================================================================
# Enums
# =============================================================================


class RecordKind(Enum):
    """Record types a naming rule may produce."""

    A = "A"
    AAAA = "AAAA"
    SRV = "SRV"

    @classmethod
    def parse(cls, text: str) -> "RecordKind":
        try:
            return cls(text)
        except ValueError:
            raise UnknownRecordKind(f"Unknown rule record type '{text}'") from None


class CorrectionOp(Enum):
    CREATE = "CREATE"
    MODIFY = "MODIFY"
    DELETE = "DELETE"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class NameRule:
    """One line of the rule file.

    At most one of ``label`` and ``pattern`` is set. ``port`` is only set
    for SRV rules.
    """

    kind: RecordKind
    name_template: str
    target_template: str
    port: Optional[int] = None
    label: Optional[str] = None
    pattern: Optional[str] = None
    regex: Optional[re.Pattern] = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.pattern is not None and self.regex is None:
            object.__setattr__(self, "regex", re.compile(self.pattern))

    def to_line(self) -> str:
        """Render the rule back into rule-file syntax."""
        parts = [self.kind.value, self.name_template, self.target_template]
        if self.port is not None:
            parts.append(str(self.port))
        if self.label is not None:
            parts.append(f"[{self.label}]")
        elif self.pattern is not None:
            parts.append(f"`{self.pattern}`")
        return " ".join(parts)


@dataclass(frozen=True)
class Instance:
    """A running compute instance as reported by the inventory."""

    name: str
    tags: FrozenSet[str] = frozenset()
    public_ipv4: Optional[str] = None
    private_ipv4: Optional[str] = None
    public_ipv6: Optional[str] = None

    def has_tag(self, label: str) -> bool:
        return label in self.tags


@dataclass(frozen=True)
class GeneratedRecord:
    """A record produced by applying one rule to one instance."""

    kind: RecordKind
    fqdn: str
    name: str
    target: str
    zone: str
    ttl: int = RECORD_TTL
    priority: Optional[int] = None
    weight: Optional[int] = None
    port: Optional[int] = None


@dataclass
class ZoneDesiredState:
    """All generated records for one registrable zone apex."""

    zone: str
    records: List[GeneratedRecord] = field(default_factory=list)


@dataclass(frozen=True)
class ProviderRecord:
    """A record currently held by the DNS provider."""

    type: str
    name: str
    data: str
    ttl: int
    id: Optional[int] = None
    priority: Optional[int] = None
    port: Optional[int] = None
    weight: Optional[int] = None

    @classmethod
    def from_generated(cls, record: GeneratedRecord) -> "ProviderRecord":
        return cls(
            type=record.kind.value,
            name=record.name,
            data=record.target,
            ttl=record.ttl,
            priority=record.priority,
            port=record.port,
            weight=record.weight,
        )

    def canonical_name(self) -> str:
        return self.name.strip().rstrip(".").lower() or "@"

    def canonical_type(self) -> str:
        return self.type.upper()

    def canonical_data(self) -> str:
        """Return the record value normalised for comparisons."""
        value = self.data.strip()
        rtype = self.canonical_type()
        if rtype in {"A", "AAAA"}:
            try:
                return str(ipaddress.ip_address(value))
            except ValueError:
                return value
        if rtype in HOSTNAME_TYPES and value and value != "@":
            return value.rstrip(".").lower() + "."
        return value

    def key(self) -> tuple:
        return (self.canonical_name(), self.canonical_type())

    def value(self) -> tuple:
        """Comparable value; SRV and MX include their numeric fields."""
        rtype = self.canonical_type()
        if rtype == "SRV":
            return (self.canonical_data(), self.ttl, self.priority, self.weight, self.port)
        if rtype == "MX":
            return (self.canonical_data(), self.ttl, self.priority)
        return (self.canonical_data(), self.ttl)

    def describe(self, zone: str) -> str:
        """Human readable ``NAME DATA ttl=N`` used in correction messages."""
        fqdn = zone if self.canonical_name() == "@" else f"{self.canonical_name()}.{zone}"
        data = self.data
        if self.canonical_type() == "SRV":
            data = f"{self.priority} {self.weight} {self.port} {data}"
        elif self.canonical_type() == "MX":
            data = f"{self.priority} {data}"
        return f"{fqdn} {data} ttl={self.ttl}"


@dataclass
class Correction:
    """One provider operation needed to reconcile a zone.

    ``apply`` raises ProviderError when the provider rejects the change.
    """

    msg: str
    apply: Callable[[], None]
    op: Optional[CorrectionOp] = None
    record_type: str = ""

    def is_ns_deletion(self) -> bool:
        if self.op is CorrectionOp.DELETE and self.record_type.upper() == "NS":
            return True
        return "DELETE NS" in self.msg
