"""Unit tests for rule matching, template rendering and record generation."""

from typing import Optional

import pytest

from droplet_dns.models import (
    RECORD_TTL,
    SRV_PRIORITY,
    SRV_WEIGHT,
    GeneratedRecord,
    Instance,
    RecordKind,
)
from droplet_dns.rules import (
    PublicSuffixResolver,
    generate_records,
    match_rule,
    parse_rule,
    parse_rules,
    render_template,
)


@pytest.fixture(scope="module")
def resolver() -> PublicSuffixResolver:
    return PublicSuffixResolver()


def make_instance(
    name: str,
    tags: tuple = (),
    public_ipv4: Optional[str] = "203.0.113.5",
    private_ipv4: Optional[str] = "10.0.0.5",
    public_ipv6: Optional[str] = "2001:db8::5",
) -> Instance:
    """Create an Instance for testing."""
    return Instance(
        name=name,
        tags=frozenset(tags),
        public_ipv4=public_ipv4,
        private_ipv4=private_ipv4,
        public_ipv6=public_ipv6,
    )


# =============================================================================
# Template Rendering
# =============================================================================


def test_render_template_variables() -> None:
    instance = make_instance("web-1")

    assert render_template("$DROP.example.com", instance) == "web-1.example.com"
    assert render_template("$PUB4", instance) == "203.0.113.5"
    assert render_template("$PRI4", instance) == "10.0.0.5"
    assert render_template("$PUB6", instance) == "2001:db8::5"


def test_render_template_without_placeholders_is_unchanged() -> None:
    instance = make_instance("web-1")

    assert render_template("static.example.com", instance) == "static.example.com"
    assert render_template("static.example.com", instance, ["a", "b"]) == "static.example.com"


def test_render_template_missing_address_renders_empty() -> None:
    instance = make_instance("web-1", public_ipv6=None)

    assert render_template("$PUB6", instance) == ""


def test_render_template_captures() -> None:
    instance = make_instance("us-east01")

    assert render_template("$2.$1.example.com", instance, ["east", "01"]) == "01.east.example.com"


def test_render_template_missing_capture_left_verbatim() -> None:
    """Placeholders for captures that do not exist are not an error."""
    instance = make_instance("web-1")

    assert render_template("$1.$2.example.com", instance, ["a"]) == "a.$2.example.com"
    assert render_template("$1.example.com", instance) == "$1.example.com"


def test_render_template_group_zero_is_never_substituted() -> None:
    instance = make_instance("web-1")

    assert render_template("$0", instance, ["a"]) == "$0"


def test_render_template_multi_digit_binds_lowest_group() -> None:
    instance = make_instance("web-1")
    captures = [str(i) + "x" for i in range(1, 13)]

    assert render_template("$12", instance, captures) == "1x2"
    assert render_template("$9", instance, captures) == "9x"
    assert render_template("$12", instance, ["first"]) == "first2"


def test_render_template_is_literal() -> None:
    """Substituted text is not rescanned for placeholders."""
    instance = make_instance("$PUB4")

    assert render_template("$DROP-$1", instance, ["$DROP"]) == "$PUB4-$DROP"


def test_render_template_order_independent() -> None:
    instance = make_instance("web-1")
    captures = ["east"]

    first = render_template("$DROP.$1.$PUB4", instance, captures)
    second = render_template("$PUB4.$1.$DROP", instance, captures)

    assert first == "web-1.east.203.0.113.5"
    assert second == "203.0.113.5.east.web-1"


# =============================================================================
# Matching
# =============================================================================


def test_label_rule_matches_only_tagged_instances() -> None:
    rule = parse_rule("A $DROP.example.com $PUB4 [db]")

    assert match_rule(rule, make_instance("host-1", tags=("db", "prod"))) == []
    assert match_rule(rule, make_instance("db", tags=("prod",))) is None
    assert match_rule(rule, make_instance("host-2", tags=("dbx",))) is None


def test_pattern_rule_returns_groups() -> None:
    rule = parse_rule("A *.$1.example.com $PUB4 `[a-z][a-z]\\-([a-z]+)\\d\\d`")

    assert match_rule(rule, make_instance("us-east01")) == ["east"]
    assert match_rule(rule, make_instance("web")) is None


def test_pattern_rule_optional_group_renders_empty() -> None:
    rule = parse_rule("A $1$2.example.com $PUB4 `^(web)(-\\d+)?$`")

    assert match_rule(rule, make_instance("web")) == ["web", ""]


def test_unfiltered_rule_matches_everything() -> None:
    rule = parse_rule("A $DROP.example.com $PUB4")

    assert match_rule(rule, make_instance("anything")) == []


# =============================================================================
# Record Generation
# =============================================================================


def test_generate_a_record(resolver: PublicSuffixResolver) -> None:
    rules = parse_rules("A $DROP.example.com $PUB4")
    instance = make_instance("web-1", public_ipv4="203.0.113.5")

    records = generate_records(instance, rules, resolver)

    assert records == [
        GeneratedRecord(
            kind=RecordKind.A,
            fqdn="web-1.example.com",
            name="web-1",
            target="203.0.113.5",
            zone="example.com",
            ttl=100,
        )
    ]


def test_generate_srv_record_for_tagged_instance(resolver: PublicSuffixResolver) -> None:
    rules = parse_rules("SRV _svc._tcp.example.com $DROP.example.com. 9100 [db]")

    records = generate_records(make_instance("host-2", tags=("db",)), rules, resolver)

    assert len(records) == 1
    record = records[0]
    assert record.kind is RecordKind.SRV
    assert record.name == "_svc._tcp"
    assert record.target == "host-2.example.com."
    assert record.port == 9100
    assert record.priority == 10
    assert record.weight == 10
    assert generate_records(make_instance("host-3"), rules, resolver) == []


def test_generate_records_srv_fixed_fields_regardless_of_template(
    resolver: PublicSuffixResolver,
) -> None:
    rules = parse_rules(
        "SRV _a._tcp.example.com $PUB4 1\n"
        "SRV _b._udp.$DROP.example.org static.example.org. 65535\n"
    )

    records = generate_records(make_instance("web-1"), rules, resolver)

    assert [(r.priority, r.weight, r.port) for r in records] == [
        (SRV_PRIORITY, SRV_WEIGHT, 1),
        (SRV_PRIORITY, SRV_WEIGHT, 65535),
    ]
    assert all(r.ttl == RECORD_TTL for r in records)


def test_generate_records_pattern_capture(resolver: PublicSuffixResolver) -> None:
    rules = parse_rules("A *.$1.example.com $PUB4 `[a-z][a-z]\\-([a-z]+)\\d\\d`")

    records = generate_records(make_instance("us-east01"), rules, resolver)

    assert len(records) == 1
    assert records[0].fqdn == "*.east.example.com"
    assert records[0].name == "*.east"
    assert records[0].zone == "example.com"


def test_generate_records_preserves_rule_order(resolver: PublicSuffixResolver) -> None:
    rules = parse_rules(
        "A $DROP.example.com $PUB4\n"
        "A $DROP.pvt.example.com $PRI4\n"
        "AAAA $DROP.example.com $PUB6\n"
    )

    records = generate_records(make_instance("web-1"), rules, resolver)

    assert [(r.kind, r.name, r.target) for r in records] == [
        (RecordKind.A, "web-1", "203.0.113.5"),
        (RecordKind.A, "web-1.pvt", "10.0.0.5"),
        (RecordKind.AAAA, "web-1", "2001:db8::5"),
    ]


def test_generate_records_empty_target_is_accepted(resolver: PublicSuffixResolver) -> None:
    rules = parse_rules("AAAA $DROP.example.com $PUB6")

    records = generate_records(make_instance("web-1", public_ipv6=None), rules, resolver)

    assert records[0].target == ""


def test_generate_records_zone_apex_name(resolver: PublicSuffixResolver) -> None:
    rules = parse_rules("A example.com $PUB4 `^web-1$`")

    records = generate_records(make_instance("web-1"), rules, resolver)

    assert records[0].name == "@"
    assert records[0].zone == "example.com"
