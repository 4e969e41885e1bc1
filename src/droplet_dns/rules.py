"""Naming rules: parsing, matching, templating and zone grouping.

Rule file syntax, one rule per line::

    KIND NAME_TEMPLATE TARGET_TEMPLATE [PORT] [MODIFIER]

KIND is A, AAAA or SRV (SRV requires PORT). MODIFIER is either ``[tag]``,
restricting the rule to instances carrying that tag, or a regular expression
wrapped in backticks matched against the instance name. Capture groups of the
expression are available to templates as ``$1``, ``$2``, ...

Placeholders:
    $DROP   instance name
    $PUB4   public IPv4 address
    $PRI4   private IPv4 address
    $PUB6   public IPv6 address

Example::

    A $DROP.example.com $PUB4
    SRV _node._tcp.pvt.example.com $DROP.pvt.example.com. 9100
    A *.$1.example.com $PUB4 `[a-z][a-z]\\-([a-z]+)\\d\\d`
"""

from __future__ import annotations

import ipaddress
import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import tldextract

from .models import (
    RECORD_TTL,
    SRV_PRIORITY,
    SRV_WEIGHT,
    ApexResolutionError,
    GeneratedRecord,
    Instance,
    InvalidPattern,
    InvalidPort,
    MalformedRule,
    MissingPort,
    NameRule,
    RecordKind,
    RuleParseError,
    TooManyTokens,
    UnrecognizedModifier,
    ZoneDesiredState,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\$(DROP|PUB4|PRI4|PUB6|[0-9]+)")
MAX_PORT = 65535
PORT_RE = re.compile(r"[0-9]+")

# =============================================================================
# Rule Parsing
# =============================================================================


def _parse_port(token: str) -> int:
    # ASCII digits only, so the rule renders back to the same token.
    if not PORT_RE.fullmatch(token):
        raise InvalidPort(f"SRV port '{token}' is not an integer")
    port = int(token)
    if port <= 0 or port > MAX_PORT:
        raise InvalidPort(f"SRV port {port} is out of range 1-{MAX_PORT}")
    return port


def _parse_modifier(token: str, strict: bool) -> Dict[str, str]:
    """Return the filter fields encoded by a trailing modifier token."""
    if len(token) >= 2 and token.startswith("[") and token.endswith("]"):
        label = token[1:-1]
        if not label:
            raise MalformedRule("Label modifier '[]' is empty")
        return {"label": label}

    if len(token) >= 2 and token.startswith("`") and token.endswith("`"):
        pattern = token[1:-1]
        try:
            re.compile(pattern)
        except re.error as e:
            raise InvalidPattern(f"Invalid pattern `{pattern}`: {e}") from e
        return {"pattern": pattern}

    if strict:
        raise UnrecognizedModifier(
            f"Unrecognized modifier '{token}', expected [label] or `pattern`"
        )
    logger.warning(f"Ignoring unrecognized rule modifier '{token}'; rule applies to all instances")
    return {}


def parse_rule(line: str, *, strict_modifiers: bool = True) -> NameRule:
    """Parse a single, non-comment rule line."""
    parts = line.split(" ")
    if len(parts) < 3:
        raise MalformedRule("Each name rule needs at least '$TYPE $FQDN $TARGET'")

    kind = RecordKind.parse(parts[0])
    fields: Dict[str, object] = {}
    rest = parts[3:]

    if kind is RecordKind.SRV:
        if not rest:
            raise MissingPort("SRV rule needs at least '$TYPE $FQDN $TARGET $PORT'")
        fields["port"] = _parse_port(rest[0])
        rest = rest[1:]

    if len(rest) > 1:
        raise TooManyTokens("Too many parts in rule")
    if rest:
        fields.update(_parse_modifier(rest[0], strict_modifiers))

    return NameRule(kind=kind, name_template=parts[1], target_template=parts[2], **fields)


def parse_rules(text: str, *, strict_modifiers: bool = True) -> List[NameRule]:
    """Parse rule file contents. Raises RuleParseError on the first bad line."""
    rules: List[NameRule] = []
    for line_no, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            rules.append(parse_rule(line, strict_modifiers=strict_modifiers))
        except RuleParseError as e:
            raise type(e)(e.message, line_no=line_no, line=line) from None
    return rules


def load_rules(path: str, *, strict_modifiers: bool = True) -> List[NameRule]:
    """Read and parse the rule file at ``path``."""
    try:
        text = Path(path).read_text("utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise RuleParseError(f"Failed to read rule file {path}: {e}") from e
    rules = parse_rules(text, strict_modifiers=strict_modifiers)
    logger.debug(f"Loaded {len(rules)} rule(s) from {path}")
    return rules


# =============================================================================
# Templating
# =============================================================================


def render_template(template: str, instance: Instance, captures: Sequence[str] = ()) -> str:
    """Substitute placeholders in a single pass.

    ``captures`` holds groups 1..n of the rule pattern match. Substituted text
    is never rescanned. A numbered placeholder without a matching group is
    left as written.
    """
    variables = {
        "DROP": instance.name,
        "PUB4": instance.public_ipv4 or "",
        "PRI4": instance.private_ipv4 or "",
        "PUB6": instance.public_ipv6 or "",
    }

    def _substitute(match: "re.Match[str]") -> str:
        token = match.group(1)
        if token in variables:
            return variables[token]
        if token.startswith("0"):
            return match.group(0)
        # Lower group numbers bind first: $12 is group 1 followed by a literal
        # "2" whenever group 1 exists.
        for end in range(1, len(token) + 1):
            index = int(token[:end])
            if 1 <= index <= len(captures):
                return captures[index - 1] + token[end:]
        return match.group(0)

    return PLACEHOLDER_RE.sub(_substitute, template)


def match_rule(rule: NameRule, instance: Instance) -> Optional[List[str]]:
    """Return the capture groups if ``rule`` applies to ``instance``, else None."""
    if rule.label is not None and not instance.has_tag(rule.label):
        return None
    if rule.regex is None:
        return []
    match = rule.regex.search(instance.name)
    if match is None:
        return None
    return [group or "" for group in match.groups()]


# =============================================================================
# Zone Apex Resolution
# =============================================================================


class PublicSuffixResolver:
    """Find the registrable domain (zone apex) of a hostname.

    Uses the public suffix list snapshot bundled with tldextract unless
    ``fetch`` is set, in which case the live list is downloaded and cached.
    """

    def __init__(self, fetch: bool = False):
        if fetch:
            self._extract = tldextract.TLDExtract(include_psl_private_domains=True)
        else:
            self._extract = tldextract.TLDExtract(
                suffix_list_urls=(), include_psl_private_domains=True
            )

    def effective_apex(self, fqdn: str) -> str:
        hostname = fqdn[:-1] if fqdn.endswith(".") else fqdn
        hostname = hostname.lower()
        if not hostname or any(not label for label in hostname.split(".")):
            raise ApexResolutionError(f"Empty label in domain '{fqdn}'")
        try:
            ipaddress.ip_address(hostname)
        except ValueError:
            pass
        else:
            raise ApexResolutionError(f"'{fqdn}' is an IP address, not a domain")

        result = self._extract(hostname)
        if result.suffix:
            if not result.domain:
                raise ApexResolutionError(f"Cannot derive a registrable domain from '{fqdn}'")
            return f"{result.domain}.{result.suffix}"

        # Unlisted TLDs count as single-label public suffixes.
        labels = hostname.split(".")
        if len(labels) < 2:
            raise ApexResolutionError(f"Cannot derive a registrable domain from '{fqdn}'")
        return ".".join(labels[-2:])


def relative_name(fqdn: str, zone: str) -> str:
    """Trim the zone apex from ``fqdn``; the apex itself becomes ``@``."""
    hostname = fqdn[:-1] if fqdn.endswith(".") else fqdn
    if hostname.lower() == zone:
        return "@"
    suffix = "." + zone
    if hostname.lower().endswith(suffix):
        return hostname[: -len(suffix)]
    return hostname


# =============================================================================
# Record Generation and Zone Grouping
# =============================================================================


def generate_records(
    instance: Instance,
    rules: Iterable[NameRule],
    resolver: PublicSuffixResolver,
) -> List[GeneratedRecord]:
    """Apply every rule to ``instance``, preserving rule order."""
    records: List[GeneratedRecord] = []
    for rule in rules:
        captures = match_rule(rule, instance)
        if captures is None:
            continue

        fqdn = render_template(rule.name_template, instance, captures)
        target = render_template(rule.target_template, instance, captures)
        zone = resolver.effective_apex(fqdn)

        srv_fields: Dict[str, Optional[int]] = {}
        if rule.kind is RecordKind.SRV:
            srv_fields = {"priority": SRV_PRIORITY, "weight": SRV_WEIGHT, "port": rule.port}

        records.append(
            GeneratedRecord(
                kind=rule.kind,
                fqdn=fqdn,
                name=relative_name(fqdn, zone),
                target=target,
                zone=zone,
                ttl=RECORD_TTL,
                **srv_fields,
            )
        )
    return records


def group_by_zone(records: Iterable[GeneratedRecord]) -> Dict[str, ZoneDesiredState]:
    """Partition records by zone apex, keeping insertion order per zone."""
    zones: Dict[str, ZoneDesiredState] = {}
    for record in records:
        zones.setdefault(record.zone, ZoneDesiredState(zone=record.zone)).records.append(record)
    return zones


def build_zone_states(
    instances: Iterable[Instance],
    rules: Sequence[NameRule],
    resolver: PublicSuffixResolver,
) -> Dict[str, ZoneDesiredState]:
    """Desired state for every zone touched by the rules.

    Any ApexResolutionError propagates; no partial mapping is returned.
    """
    records: List[GeneratedRecord] = []
    for instance in instances:
        records.extend(generate_records(instance, rules, resolver))
    return group_by_zone(records)
