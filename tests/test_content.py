import random
from types import SimpleNamespace

import pytest

from app.services.content import (
    DEFAULT_DISCLAIMER,
    DEFAULT_ENCOURAGEMENT,
    ContentResolver,
    Template,
    insert_candidates,
    parse_template_key,
    render_email_html,
    render_sms_text,
    resolve_diagnosis_code,
)


def _lookup_from(table: dict):
    calls = []

    async def lookup(code, day, branch):
        calls.append((code, day, branch))
        return table.get((code, day, branch))

    lookup.calls = calls
    return lookup


async def _no_encouragements(limit):
    return []


def test_candidates_for_initial_branch():
    assert insert_candidates("sciatica", "initial") == [
        ("sciatica", "initial"),
        ("sciatica", "same"),
        ("generic", "initial"),
        ("generic", "same"),
    ]


def test_candidates_for_generic_are_not_duplicated():
    assert insert_candidates("generic", "worse") == [("generic", "worse")]


def test_worse_branch_never_borrows_other_branches():
    assert insert_candidates("sciatica", "worse") == [("sciatica", "worse"), ("generic", "worse")]


@pytest.mark.asyncio
async def test_unknown_code_falls_back_to_generic_worse():
    lookup = _lookup_from({("generic", 7, "worse"): "Flare-ups happen; ease back a little."})
    resolver = ContentResolver(lookup, _no_encouragements)
    text = await resolver.resolve_insert_text("unknown_code", 7, "worse")
    assert text == "Flare-ups happen; ease back a little."
    assert lookup.calls == [("unknown_code", 7, "worse"), ("generic", 7, "worse")]


@pytest.mark.asyncio
async def test_no_candidate_gives_empty_string():
    resolver = ContentResolver(_lookup_from({}), _no_encouragements)
    assert await resolver.resolve_insert_text("unknown_code", 7, "worse") == ""


@pytest.mark.asyncio
async def test_specific_text_wins_over_generic():
    lookup = _lookup_from({
        ("sciatica", 3, "same"): "Nerve pain settles slowly.",
        ("generic", 3, "initial"): "Generic day three.",
    })
    resolver = ContentResolver(lookup, _no_encouragements)
    assert await resolver.resolve_insert_text("sciatica", 3, "initial") == "Nerve pain settles slowly."


@pytest.mark.asyncio
async def test_lookup_error_skips_to_next_candidate():
    async def flaky(code, day, branch):
        if code == "sciatica":
            raise RuntimeError("db down")
        return "Generic text."

    resolver = ContentResolver(flaky, _no_encouragements)
    assert await resolver.resolve_insert_text("sciatica", 3, "better") == "Generic text."


@pytest.mark.asyncio
async def test_blank_insert_counts_as_missing():
    lookup = _lookup_from({("sciatica", 3, "better"): "   ", ("generic", 3, "better"): "Nice work."})
    resolver = ContentResolver(lookup, _no_encouragements)
    assert await resolver.resolve_insert_text("sciatica", 3, "better") == "Nice work."


@pytest.mark.asyncio
async def test_encouragement_falls_back_when_pool_is_empty():
    resolver = ContentResolver(_lookup_from({}), _no_encouragements)
    assert await resolver.resolve_encouragement_text() == DEFAULT_ENCOURAGEMENT


@pytest.mark.asyncio
async def test_encouragement_falls_back_on_lookup_error():
    async def broken(limit):
        raise RuntimeError("timeout")

    resolver = ContentResolver(_lookup_from({}), broken)
    assert await resolver.resolve_encouragement_text() == DEFAULT_ENCOURAGEMENT


@pytest.mark.asyncio
async def test_encouragement_is_drawn_from_the_pool():
    pool = ["One step at a time.", "Small wins add up."]
    seen_limits = []

    async def lookup(limit):
        seen_limits.append(limit)
        return pool

    resolver = ContentResolver(_lookup_from({}), lookup, rng=random.Random(3))
    for _ in range(10):
        assert await resolver.resolve_encouragement_text() in pool
    assert seen_limits[0] == 100


@pytest.mark.asyncio
async def test_template_default_when_row_missing():
    async def no_template(key):
        return None

    resolver = ContentResolver(_lookup_from({}), _no_encouragements, lookup_template=no_template)
    template = await resolver.resolve_template("day7.initial", 7)
    assert template.subject == "Quick check-in (Day 7)"
    assert "{{insert}}" in template.shell_text
    assert template.disclaimer_text == DEFAULT_DISCLAIMER


@pytest.mark.asyncio
async def test_template_row_is_used():
    row = SimpleNamespace(subject="Day 3!", shell_text="Hi.\n\n{{insert}}", disclaimer_text=None, channel="email")

    async def lookup(key):
        return row

    resolver = ContentResolver(_lookup_from({}), _no_encouragements, lookup_template=lookup)
    template = await resolver.resolve_template("day3.initial", 3)
    assert template.subject == "Day 3!"
    assert template.disclaimer_text == DEFAULT_DISCLAIMER


@pytest.mark.parametrize(
    "guide_type, expected",
    [
        ("sciatica", "sciatica"),
        ("muscular_nslbp", "nonspecific_lbp"),
        ("  Canal_Stenosis ", "canal_stenosis"),
        ("something_else", "generic"),
        (None, "generic"),
    ],
)
def test_resolve_diagnosis_code(guide_type, expected):
    assert resolve_diagnosis_code(guide_type) == expected


@pytest.mark.parametrize(
    "key, expected",
    [
        ("day7.worse", (7, "worse")),
        ("day3.initial", (3, "initial")),
        ("sms.day12", (12, "initial")),
        ("weekly", (None, "initial")),
    ],
)
def test_parse_template_key(key, expected):
    assert parse_template_key(key) == expected


LINKS = {
    "better": "https://app.test/c/i?token=b",
    "same": "https://app.test/c/i?token=s",
    "worse": "https://app.test/c/i?token=w",
}


def _template(shell="Hello.\n\n{{insert}}\n\n{{encouragement}}"):
    return Template("day3.initial", "Quick check-in (Day 3)", shell, DEFAULT_DISCLAIMER)


def test_email_contains_blocks_buttons_and_disclaimer():
    html = render_email_html(_template(), 3, "Walk <10> minutes.", "Keep going.", LINKS)
    assert "Day 3 Check-In" in html
    assert 'class="insert"' in html
    assert "Walk &lt;10&gt; minutes." in html
    assert 'class="encouragement"' in html
    for url in LINKS.values():
        assert url in html
    assert "Educational use only" in html


def test_email_omits_insert_block_when_empty():
    html = render_email_html(_template(), 3, "", "Keep going.", LINKS)
    assert 'class="insert"' not in html
    assert "{{insert}}" not in html


def test_email_adds_blocks_for_shell_without_placeholders():
    html = render_email_html(_template("Just checking in."), 3, "Insert text.", "Cheer.", LINKS)
    assert html.index("Just checking in.") < html.index("Insert text.") < html.index("Cheer.")


def test_sms_text_has_prompt_links_and_stop_footer():
    text = render_sms_text(_template(), 5, "Gentle walks help.", LINKS)
    lines = text.splitlines()
    assert lines[0] == "Day 5 check-in."
    assert "Gentle walks help." in lines
    assert "0 to 10" in text
    assert lines[-1] == "Reply STOP to opt out."
    assert LINKS["worse"] in text
