"""Small HTML pages served to people following a check-in link."""

from __future__ import annotations

import html

DISCLAIMER = (
    "Educational use only. Not a diagnosis or treatment. If symptoms worsen "
    "or new symptoms develop, seek medical care."
)
NOTE_LIMIT = 280

SAFETY_MESSAGE = (
    "Thanks for your note. Some symptoms can signal serious conditions. "
    "Please seek in-person care if you have any concerns. "
    "This information is educational and not a diagnosis."
)
THANKS_MESSAGE = "Thanks for your note; it has been logged successfully."
EMPTY_NOTE_MESSAGE = "No note provided."

_TITLES = {
    "better": "Great to hear!",
    "same": "Thanks for checking in",
    "worse": "We hear you",
}
_MESSAGES = {
    "better": "Great to hear you're feeling better on day {day}. Keep the momentum going.",
    "same": "Plateaus are normal around day {day}. Small, steady steps still count.",
    "worse": (
        "Sorry things feel tougher on day {day}. If symptoms escalate or feel urgent, "
        "please seek in-person medical care."
    ),
}

_STYLE = (
    "body{font-family:-apple-system,Segoe UI,Roboto,sans-serif;background:#F6F8FB;"
    "color:#1F2937;margin:0;padding:24px}"
    ".card{max-width:560px;margin:0 auto;background:#fff;border:1px solid #E2E8F5;"
    "border-radius:16px;padding:28px}"
    "textarea{width:100%;min-height:96px;box-sizing:border-box}"
    ".disclaimer{margin-top:24px;font-size:12px;color:#6B7280}"
)


def _page(title: str, inner: str) -> str:
    return (
        "<!DOCTYPE html><html lang=\"en\"><head><meta charset=\"utf-8\">"
        "<meta name=\"viewport\" content=\"width=device-width,initial-scale=1\">"
        f"<title>{html.escape(title)}</title><style>{_STYLE}</style></head>"
        f"<body><div class=\"card\">{inner}"
        f"<p class=\"disclaimer\">{html.escape(DISCLAIMER)}</p></div></body></html>"
    )


def render_confirmation(value: str, day: int, note_token: str, note_action: str = "/c/note") -> str:
    title = _TITLES.get(value, "Thanks for checking in")
    message = _MESSAGES.get(value, _MESSAGES["same"]).format(day=day)
    follow_up = ""
    if value == "worse":
        follow_up = (
            "<p class=\"follow-up\">If you're still concerned, use the note box below "
            "to tell us more.</p>"
        )
    form = (
        f"<form method=\"post\" action=\"{html.escape(note_action, quote=True)}\">"
        f"<input type=\"hidden\" name=\"token\" value=\"{html.escape(note_token, quote=True)}\">"
        f"<label for=\"note\">Anything you'd like to add? (optional)</label>"
        f"<textarea id=\"note\" name=\"note\" maxlength=\"{NOTE_LIMIT}\"></textarea>"
        "<button type=\"submit\">Send note</button></form>"
    )
    return _page(
        title,
        f"<h1>{html.escape(title)}</h1><p>{html.escape(message)}</p>{follow_up}{form}",
    )


def render_note_result(red_flag: bool, empty: bool = False) -> str:
    if empty:
        message = EMPTY_NOTE_MESSAGE
    else:
        message = SAFETY_MESSAGE if red_flag else THANKS_MESSAGE
    css = "safety" if red_flag else "thanks"
    return _page("Thank you", f"<h1>Thank you</h1><p class=\"{css}\">{html.escape(message)}</p>")


def render_invalid_link() -> str:
    return _page(
        "Link unavailable",
        "<h1>This link is no longer valid</h1>"
        "<p>It may have expired or already been used. Please use the most recent "
        "check-in message we sent you.</p>",
    )


def render_temporary_issue() -> str:
    return _page(
        "Temporary issue",
        "<h1>We hit a temporary issue</h1>"
        "<p>Your response could not be saved right now. Please try the link again in a few minutes.</p>",
    )
