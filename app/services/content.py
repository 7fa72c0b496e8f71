"""Micro-copy resolution and message rendering for check-ins.

Content authors cannot cover every diagnosis/day/branch combination, so the
insert lookup walks an explicit candidate list (diagnosis-specific first,
then ``generic``) and an empty result simply drops the insert block.
"""

from __future__ import annotations

import html
import logging
import random
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

_LOGGER = logging.getLogger(__name__)

GENERIC_DIAGNOSIS = "generic"
DEFAULT_ENCOURAGEMENT = "Keep going, you are making progress."
DEFAULT_DISCLAIMER = (
    "Educational use only. Not a diagnosis or treatment. If symptoms worsen "
    "or new symptoms develop, seek medical care."
)
DEFAULT_SHELL = "{{insert}}\n\n{{encouragement}}\n\nLet us know how you are doing below."
ENCOURAGEMENT_POOL_LIMIT = 100

# Platform guide types → diagnosis codes used by the insert table.
DIAGNOSIS_MAP = {
    "facet_arthropathy": "facet_arthropathy",
    "lumbar_instability": "lumbar_instability",
    "muscular_nslbp": "nonspecific_lbp",
    "sciatica": "sciatica",
    "upper_lumbar_radiculopathy": "upper_lumbar_radiculopathy",
    "si_joint_dysfunction": "si_joint_dysfunction",
    "canal_stenosis": "canal_stenosis",
    "central_disc_bulge": "central_disc_bulge",
}

BUTTON_LABELS = {
    "better": "Feeling Better",
    "same": "About the Same",
    "worse": "Feeling Worse",
}

_TEMPLATE_KEY_RE = re.compile(r"^day(\d{1,2})\.(initial|better|same|worse)$")
_SMS_TEMPLATE_KEY_RE = re.compile(r"^sms\.day(\d{1,2})$")
_PLACEHOLDER_RE = re.compile(r"(\{\{\s*insert\s*\}\}|\{\{\s*encouragement\s*\}\})", re.IGNORECASE)

InsertLookup = Callable[[str, int, str], Awaitable[Optional[str]]]
EncouragementLookup = Callable[[int], Awaitable[list[str]]]
TemplateLookup = Callable[[str], Awaitable[Optional[object]]]


@dataclass
class Template:
    key: str
    subject: str
    shell_text: str
    disclaimer_text: str
    channel: str = "email"


def resolve_diagnosis_code(guide_type: Optional[str]) -> str:
    normalized = (guide_type or "").strip().lower()
    return DIAGNOSIS_MAP.get(normalized, GENERIC_DIAGNOSIS)


def parse_template_key(key: str) -> tuple[Optional[int], str]:
    """``day7.worse`` → (7, "worse"); ``sms.day5`` → (5, "initial")."""
    m = _TEMPLATE_KEY_RE.match(key or "")
    if m:
        return int(m.group(1)), m.group(2)
    m = _SMS_TEMPLATE_KEY_RE.match(key or "")
    if m:
        return int(m.group(1)), "initial"
    return None, "initial"


def insert_candidates(diagnosis_code: str, branch: str) -> list[tuple[str, str]]:
    """Ordered (diagnosis, branch) pairs to try for an insert."""
    branches = ["initial", "same"] if branch == "initial" else [branch]
    diagnoses = [diagnosis_code or GENERIC_DIAGNOSIS]
    if diagnoses[0] != GENERIC_DIAGNOSIS:
        diagnoses.append(GENERIC_DIAGNOSIS)
    return [(code, b) for code in diagnoses for b in branches]


def default_template(key: str, day: int, channel: str = "email") -> Template:
    return Template(
        key=key,
        subject=f"Quick check-in (Day {day})",
        shell_text=DEFAULT_SHELL,
        disclaimer_text=DEFAULT_DISCLAIMER,
        channel=channel,
    )


class ContentResolver:
    def __init__(
        self,
        lookup_insert: InsertLookup,
        list_encouragements: EncouragementLookup,
        lookup_template: Optional[TemplateLookup] = None,
        rng: Optional[random.Random] = None,
    ):
        self._lookup_insert = lookup_insert
        self._list_encouragements = list_encouragements
        self._lookup_template = lookup_template
        self._rng = rng or random.Random()

    async def resolve_insert_text(self, diagnosis_code: str, day: int, branch: str) -> str:
        for code, candidate_branch in insert_candidates(diagnosis_code, branch):
            try:
                text = await self._lookup_insert(code, day, candidate_branch)
            except Exception as exc:  # noqa: BLE001
                _LOGGER.warning("insert_lookup_error code=%s day=%s branch=%s err=%s",
                                code, day, candidate_branch, exc)
                continue
            if text and text.strip():
                return text
        return ""

    async def resolve_encouragement_text(self) -> str:
        try:
            pool = await self._list_encouragements(ENCOURAGEMENT_POOL_LIMIT)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("encouragement_lookup_error err=%s", exc)
            return DEFAULT_ENCOURAGEMENT
        pool = [t for t in (pool or [])[:ENCOURAGEMENT_POOL_LIMIT] if t and t.strip()]
        if not pool:
            return DEFAULT_ENCOURAGEMENT
        return self._rng.choice(pool)

    async def resolve_template(self, key: str, day: int, channel: str = "email") -> Template:
        row = None
        if self._lookup_template is not None:
            try:
                row = await self._lookup_template(key)
            except Exception as exc:  # noqa: BLE001
                _LOGGER.warning("template_lookup_error key=%s err=%s", key, exc)
        if row is None or not getattr(row, "shell_text", None):
            _LOGGER.info("template_default key=%s", key)
            return default_template(key, day, channel)
        return Template(
            key=key,
            subject=row.subject or f"Quick check-in (Day {day})",
            shell_text=row.shell_text,
            disclaimer_text=row.disclaimer_text or DEFAULT_DISCLAIMER,
            channel=getattr(row, "channel", None) or channel,
        )


# ──────────────────────────────────────────────────────────────────────
# Rendering
# ──────────────────────────────────────────────────────────────────────

def _paragraphs(text: str) -> list[str]:
    blocks = [b.strip() for b in re.split(r"\r?\n\s*\r?\n", text) if b.strip()]
    return [html.escape(b).replace("\n", "<br>") for b in blocks]


def _fill_shell_text(shell: str, insert: str, encouragement: str) -> list[tuple[str, str]]:
    """Split the shell into ("text"|"insert"|"encouragement", content) segments.

    Missing placeholders still get their block: insert after the first
    paragraph, encouragement at the end.
    """
    segments: list[tuple[str, str]] = []
    for part in _PLACEHOLDER_RE.split(shell.strip()):
        lowered = part.lower().replace(" ", "")
        if lowered == "{{insert}}":
            if insert.strip():
                segments.append(("insert", insert.strip()))
        elif lowered == "{{encouragement}}":
            if encouragement.strip():
                segments.append(("encouragement", encouragement.strip()))
        else:
            for paragraph in re.split(r"\r?\n\s*\r?\n", part):
                if paragraph.strip():
                    segments.append(("text", paragraph.strip()))

    kinds = {kind for kind, _ in segments}
    if "insert" not in kinds and not re.search(r"\{\{\s*insert\s*\}\}", shell, re.I) and insert.strip():
        segments.insert(min(1, len(segments)), ("insert", insert.strip()))
    if "encouragement" not in kinds and not re.search(r"\{\{\s*encouragement\s*\}\}", shell, re.I) \
            and encouragement.strip():
        segments.append(("encouragement", encouragement.strip()))
    return segments


def render_email_html(
    template: Template,
    day: int,
    insert: str,
    encouragement: str,
    links: dict[str, str],
) -> str:
    body: list[str] = []
    for kind, content in _fill_shell_text(template.shell_text, insert, encouragement):
        if kind == "insert":
            inner = "".join(f'<p style="margin:0;">{p}</p>' for p in _paragraphs(content))
            body.append(f'<div class="insert" style="margin:0 0 20px;padding:18px;'
                        f'background:#EFF5FF;border-radius:12px;">{inner}</div>')
        elif kind == "encouragement":
            body.append(f'<div class="encouragement" style="margin:0 0 20px;padding:18px;'
                        f'border:1px dashed #0B5394;border-radius:12px;">'
                        f'{html.escape(content)}</div>')
        else:
            body.append("".join(f"<p>{p}</p>" for p in _paragraphs(content)))

    buttons = " ".join(
        f'<a href="{html.escape(url, quote=True)}" class="btn {value}" '
        f'style="text-decoration:none;">{BUTTON_LABELS[value]}</a>'
        for value, url in links.items()
    )
    return (
        f"<h2>Day {day} Check-In</h2>\n"
        + "\n".join(body)
        + '\n<div style="text-align:center;margin:30px 0;">'
        + '<h3 style="margin-bottom:20px;">How are you feeling today?</h3>'
        + buttons
        + "</div>\n"
        + f'<div class="disclaimer">{html.escape(template.disclaimer_text)}</div>'
    )


def render_sms_text(
    template: Template,
    day: int,
    insert: str,
    links: dict[str, str],
) -> str:
    lines = [f"Day {day} check-in."]
    if insert.strip():
        lines.append(insert.strip())
    lines.append("Reply with your pain level from 0 to 10, or tap:")
    lines.extend(f"{BUTTON_LABELS[value]}: {url}" for value, url in links.items())
    lines.append("Reply STOP to opt out.")
    return "\n".join(lines)
